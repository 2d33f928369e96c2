"""
context-bundler — runtime config loader.

File: src/context_bundler/config/loader.py
Last updated: 2026-02-16

Purpose
- Build the effective config from layered sources, lowest first: built-in
  defaults, ``bundler.toml``, the selected profile, ``BUNDLER_*`` environment
  variables, then CLI overrides.

Environment variables
- Every scalar default has exactly one variable, named after its path:
  ``selection.max_artifacts`` -> ``BUNDLER_SELECTION_MAX_ARTIFACTS``.
- Values are coerced to the type of the default they replace.
- ``BUNDLER_PROFILE`` selects a profile when none is passed explicitly.

Paths
- Relative path fields resolve against the directory holding the config file
  (the working directory when no file is used).
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from context_bundler.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "bundler.toml"
ENV_PREFIX: Final[str] = "BUNDLER_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(raw)


# Default value type -> (parser, description used in errors).
_COERCERS: Final[dict[type, tuple[Callable[[str], object], str]]] = {
    bool: (_parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
    int: (int, "an integer"),
    float: (float, "a number"),
    str: (str, "a string"),
}


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load and validate the effective config.

    A missing default ``bundler.toml`` is fine; an explicitly named file must
    exist. ``cli_overrides`` takes dotted keys (``{"selection.max_artifacts": 3}``)
    plus an optional ``"profile"`` entry.
    """

    if config_path is None:
        source = Path.cwd() / DEFAULT_CONFIG_FILE
    else:
        source = Path(config_path).expanduser()
    source = source.resolve()
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    selected = _select_profile(profile, overrides, env)
    if selected is not None:
        config = apply_profile_overlay(config, selected)

    for layer in (_env_layer(config, env), _cli_layer(overrides)):
        config = merge_config(config, layer)
    return normalize_paths(assert_valid_config(config), base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy of ``config`` with every path field made absolute."""

    resolved = merge_config({}, config)
    for field_path in PATH_FIELDS:
        *parents, leaf = field_path
        section: object = resolved
        for part in parents:
            section = section.get(part) if isinstance(section, dict) else None
        if isinstance(section, dict) and isinstance(section.get(leaf), str):
            section[leaf] = _absolute(section[leaf], base_dir)
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Sorted, compact JSON of ``config`` with secret-looking values redacted."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: tuple[str, ...]) -> str:
    """
    ``("budgets", "roles", "qa-agent", "hard_limit")`` maps to
    ``BUNDLER_BUDGETS_ROLES_QA_AGENT_HARD_LIMIT``.
    """
    return ENV_PREFIX + "_".join(part.upper().replace("-", "_") for part in path)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile")
        if candidate is not None and not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    if candidate is None:
        candidate = env.get(PROFILE_ENV_VAR)
    if candidate is None:
        return None
    return str(candidate).strip() or None


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, default in _scalar_leaves(config):
        name = env_name_for_path(path)
        raw = env.get(name)
        coercer = _COERCERS.get(type(default))
        if raw is None or coercer is None:
            continue
        parse, description = coercer
        try:
            value = parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(
                f"{name} -> {'.'.join(path)} must be {description}"
            ) from exc
        layer = merge_config(layer, _nest(path, value))
    return layer


def _scalar_leaves(
    node: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(node):
        if not prefix and key == "profiles":
            continue
        value = node[key]
        if isinstance(value, Mapping):
            yield from _scalar_leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    """Dotted keys (``selection.max_artifacts``) become nested objects."""
    layer: dict[str, Any] = {}
    for key, value in sorted(overrides.items()):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        layer = merge_config(layer, _nest(path, value))
    return layer


def _nest(path: tuple[str, ...], value: object) -> dict[str, Any]:
    nested: Any = merge_config({}, value) if isinstance(value, Mapping) else value
    for part in reversed(path):
        nested = {part: nested}
    return nested


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
]
