"""
context-bundler — configuration schema and validation.

File: src/context_bundler/config/schema.py
Last updated: 2026-02-12

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support named profile overlays (``strict``, ``permissive``).
- Reject unknown keys, and reject embedded secrets outright.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from context_bundler.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_INSTRUCTIONS_DIR,
    DEFAULT_LOG_DIR,
    DEFAULT_MANIFEST_SCHEMA_VERSION,
    DEFAULT_STATE_DB,
    ROLE_IMPLEMENTATION,
    ROLE_PROCESS_REVIEW,
    ROLE_PROJECT_MANAGER,
    ROLE_QA,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials", "auth"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "instructions_dir"),
    ("observability", "log_dir"),
)

_SECTIONS: Final[tuple[str, ...]] = (
    "meta",
    "paths",
    "budgets",
    "selection",
    "builder",
    "quality_gate",
    "observability",
)


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    state_db: str
    instructions_dir: str


class RoleBudgetConfig(TypedDict):
    hard_limit: int
    display_name: str


class BudgetsConfig(TypedDict):
    roles: dict[str, RoleBudgetConfig]


class SelectionConfig(TypedDict):
    max_artifacts: int
    pinned_boost: float
    recency_decay_days: float
    keyword_weight: float
    tag_weight: float
    path_weight: float


class BuilderConfig(TypedDict):
    artifact_scan_limit: int
    repo_context_max_files: int
    excerpt_max_chars: int
    delta_summary_max_chars: int
    distill_concurrency: int
    version_retry_limit: int
    manifest_schema_version: str


class QualityGateConfig(TypedDict):
    min_functional_requirements: int
    min_edge_cases: int
    min_string_length: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class BundlerConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    budgets: BudgetsConfig
    selection: SelectionConfig
    builder: BuilderConfig
    quality_gate: QualityGateConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, Any]]


DEFAULT_CONFIG: Final[BundlerConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {
        "state_db": str(DEFAULT_STATE_DB),
        "instructions_dir": str(DEFAULT_INSTRUCTIONS_DIR),
    },
    "budgets": {
        "roles": {
            ROLE_IMPLEMENTATION: {"hard_limit": 200_000, "display_name": "Implementation Agent"},
            ROLE_QA: {"hard_limit": 200_000, "display_name": "QA Agent"},
            ROLE_PROJECT_MANAGER: {"hard_limit": 150_000, "display_name": "Project Manager"},
            ROLE_PROCESS_REVIEW: {"hard_limit": 100_000, "display_name": "Process Review"},
        },
    },
    "selection": {
        "max_artifacts": 10,
        "pinned_boost": 100.0,
        "recency_decay_days": 30.0,
        "keyword_weight": 10.0,
        "tag_weight": 15.0,
        "path_weight": 20.0,
    },
    "builder": {
        "artifact_scan_limit": 20,
        "repo_context_max_files": 5,
        "excerpt_max_chars": 300,
        "delta_summary_max_chars": 500,
        "distill_concurrency": 3,
        "version_retry_limit": 3,
        "manifest_schema_version": DEFAULT_MANIFEST_SCHEMA_VERSION,
    },
    "quality_gate": {
        "min_functional_requirements": 5,
        "min_edge_cases": 8,
        "min_string_length": 20,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(DEFAULT_LOG_DIR),
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "selection": {"max_artifacts": 5},
            "quality_gate": {"min_string_length": 30},
        },
        "permissive": {
            "builder": {"version_retry_limit": 5},
            "observability": {"log_level": "DEBUG"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        rendered = (
            "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
            if self.issues
            else "unknown validation failure"
        )
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> BundlerConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade bundler.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the context-bundler runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""

    materialized = _deep_copy_mapping(config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    overlay_raw = profiles_raw.get(selected) if isinstance(profiles_raw, Mapping) else None
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted representation suitable for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


# ---------------------------------------------------------------------------
# Section validators

_FieldParser = Callable[[object, str, _IssueCollector], Any]


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {*_SECTIONS, "profiles"}, "", issues)
    _require_keys(payload, set(_SECTIONS), "", issues)

    out: dict[str, Any] = {}
    for section in _SECTIONS:
        _section(payload, key=section, path="", issues=issues, partial=False, out=out)

    raw_profiles = payload.get("profiles")
    if raw_profiles is not None:
        profiles_obj = _as_object(raw_profiles, "profiles", issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, "profiles", issues)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    path: str,
    issues: _IssueCollector,
    partial: bool,
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_path = _join(path, key)
    section_obj = _as_object(raw, section_path, issues)
    if section_obj is None:
        return
    if key == "budgets":
        out[key] = _validate_budgets(section_obj, section_path, issues, partial=partial)
        return
    fields = _SECTION_FIELDS[key]
    out[key] = _validate_fields(section_obj, section_path, issues, fields, partial=partial)
    if key == "meta" and out[key].get("schema_version", ConfigSchemaVersion) != ConfigSchemaVersion:
        issues.add(
            _join(section_path, "schema_version"),
            migration_guidance(out[key]["schema_version"]),
        )


def _validate_fields(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    fields: Mapping[str, _FieldParser],
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(fields), path, issues)
    if not partial:
        _require_keys(payload, set(fields), path, issues)
    out: dict[str, Any] = {}
    for name, parser in fields.items():
        if name in payload:
            parsed = parser(payload[name], _join(path, name), issues)
            if parsed is not None:
                out[name] = parsed
    return out


def _validate_budgets(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"roles"}, path, issues)
    if not partial:
        _require_keys(payload, {"roles"}, path, issues)
    raw_roles = payload.get("roles")
    if raw_roles is None:
        return {}
    roles_path = _join(path, "roles")
    roles_obj = _as_object(raw_roles, roles_path, issues)
    if roles_obj is None:
        return {}
    if not partial and not roles_obj:
        issues.add(roles_path, "at least one role budget is required")

    roles: dict[str, Any] = {}
    for role in sorted(roles_obj):
        role_path = _join(roles_path, role)
        if not _ROLE_NAME_PATTERN.fullmatch(role):
            issues.add(role_path, "role name must match ^[a-z][a-z0-9-]*$")
            continue
        role_obj = _as_object(roles_obj[role], role_path, issues)
        if role_obj is None:
            continue
        roles[role] = _validate_fields(role_obj, role_path, issues, _ROLE_FIELDS, partial=partial)
    return {"roles": roles}


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        overlay_sections = set(_SECTIONS) - {"meta"}
        _reject_unknown_keys(profile_obj, overlay_sections, profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in sorted(overlay_sections):
            _section(
                profile_obj,
                key=section,
                path=profile_path,
                issues=issues,
                partial=True,
                out=overlay,
            )
        out[profile_name] = overlay
    return out


# ---------------------------------------------------------------------------
# Scalar parsers


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _int_field(*, minimum: int, maximum: int | None = None) -> _FieldParser:
    def parse(value: object, path: str, issues: _IssueCollector) -> int | None:
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if value < minimum:
            issues.add(path, f"must be >= {minimum}")
            return None
        if maximum is not None and value > maximum:
            issues.add(path, f"must be <= {maximum}")
            return None
        return value

    return parse


def _float_field(*, minimum: float, exclusive: bool = False) -> _FieldParser:
    def parse(value: object, path: str, issues: _IssueCollector) -> float | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.add(path, f"expected number, got {type(value).__name__}")
            return None
        parsed = float(value)
        if not math.isfinite(parsed):
            issues.add(path, "must be finite")
            return None
        if parsed < minimum or (exclusive and parsed == minimum):
            issues.add(path, f"must be {'>' if exclusive else '>='} {minimum}")
            return None
        return parsed

    return parse


def _enum_field(allowed_values: tuple[str, ...]) -> _FieldParser:
    def parse(value: object, path: str, issues: _IssueCollector) -> str | None:
        parsed = _as_str(value, path, issues)
        if parsed is None:
            return None
        if parsed not in allowed_values:
            expected = ", ".join(sorted(allowed_values))
            issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
            return None
        return parsed

    return parse


_ROLE_FIELDS: Final[dict[str, _FieldParser]] = {
    "hard_limit": _int_field(minimum=1),
    "display_name": _as_str,
}

_SECTION_FIELDS: Final[dict[str, dict[str, _FieldParser]]] = {
    "meta": {"schema_version": _int_field(minimum=1)},
    "paths": {"state_db": _as_path_text, "instructions_dir": _as_path_text},
    "selection": {
        "max_artifacts": _int_field(minimum=0),
        "pinned_boost": _float_field(minimum=0.0),
        "recency_decay_days": _float_field(minimum=0.0, exclusive=True),
        "keyword_weight": _float_field(minimum=0.0),
        "tag_weight": _float_field(minimum=0.0),
        "path_weight": _float_field(minimum=0.0),
    },
    "builder": {
        "artifact_scan_limit": _int_field(minimum=1, maximum=1000),
        "repo_context_max_files": _int_field(minimum=0),
        "excerpt_max_chars": _int_field(minimum=10),
        "delta_summary_max_chars": _int_field(minimum=1),
        "distill_concurrency": _int_field(minimum=1, maximum=64),
        "version_retry_limit": _int_field(minimum=1),
        "manifest_schema_version": _as_str,
    },
    "quality_gate": {
        "min_functional_requirements": _int_field(minimum=0),
        "min_edge_cases": _int_field(minimum=0),
        "min_string_length": _int_field(minimum=0),
    },
    "observability": {
        "log_level": _enum_field(LOG_LEVELS),
        "log_dir": _as_path_text,
        "log_to_stdout": _as_bool,
        "redact_secrets": _as_bool,
    },
}


# ---------------------------------------------------------------------------
# Key hygiene, merge and redaction


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in bundler config")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(key) else _redact_value(value[key], key)
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "BundlerConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
