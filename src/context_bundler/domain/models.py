"""Dataclass domain records with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

from context_bundler.utils.canonical import is_checksum

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 1_000_000


class ValidationStatus(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    PENDING = "pending"


class FailureType(StrEnum):
    """Quality-gate failure categories, in report order."""

    COUNT = "count"
    PRESENCE = "presence"
    PLACEHOLDER = "placeholder"
    VAGUENESS = "vagueness"


class ExclusionReason(StrEnum):
    LOW_SCORE = "low_score"
    BUDGET_PRESSURE = "budget_pressure"


class ContinuityVerdict(StrEnum):
    PASS = "PASS"
    FAIL = "FAIL"


class ColdStartFailure(StrEnum):
    MISSING_RECEIPT = "missing_receipt"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    MISSING_MANIFEST_REFERENCE = "missing_manifest_reference"
    ARTIFACT_VERSION_MISMATCH = "artifact_version_mismatch"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


# ---------------------------------------------------------------------------
# References carried by receipts


@dataclass(frozen=True, slots=True)
class ChangeRef(CanonicalModel):
    """Pointer to the change request a bundle was built against."""

    base_sha: str
    head_sha: str
    pr_url: str | None = None
    pr_number: int | None = None

    def __post_init__(self) -> None:
        _as_str(self.base_sha, "ChangeRef.base_sha")
        _as_str(self.head_sha, "ChangeRef.head_sha")
        _as_optional_str(self.pr_url, "ChangeRef.pr_url")
        if self.pr_number is not None:
            _as_int(self.pr_number, "ChangeRef.pr_number", minimum=1)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ChangeRef:
        parsed = _expect_object(
            data, "ChangeRef", required={"base_sha", "head_sha"}, optional={"pr_url", "pr_number"}
        )
        return cls(
            base_sha=_as_str(parsed["base_sha"], "ChangeRef.base_sha"),
            head_sha=_as_str(parsed["head_sha"], "ChangeRef.head_sha"),
            pr_url=_as_optional_str(parsed.get("pr_url"), "ChangeRef.pr_url"),
            pr_number=_as_optional_int(parsed.get("pr_number"), "ChangeRef.pr_number"),
        )


@dataclass(frozen=True, slots=True)
class RedReference(CanonicalModel):
    red_id: str
    version: int

    def __post_init__(self) -> None:
        _as_str(self.red_id, "RedReference.red_id")
        _as_int(self.version, "RedReference.version", minimum=1)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RedReference:
        parsed = _expect_object(data, "RedReference", required={"red_id", "version"})
        return cls(
            red_id=_as_str(parsed["red_id"], "RedReference.red_id"),
            version=_as_int(parsed["version"], "RedReference.version", minimum=1),
        )


@dataclass(frozen=True, slots=True)
class ManifestReference(CanonicalModel):
    manifest_id: str
    version: int
    schema_version: str

    def __post_init__(self) -> None:
        _as_str(self.manifest_id, "ManifestReference.manifest_id")
        _as_int(self.version, "ManifestReference.version", minimum=1)
        _as_str(self.schema_version, "ManifestReference.schema_version")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ManifestReference:
        parsed = _expect_object(
            data, "ManifestReference", required={"manifest_id", "version", "schema_version"}
        )
        return cls(
            manifest_id=_as_str(parsed["manifest_id"], "ManifestReference.manifest_id"),
            version=_as_int(parsed["version"], "ManifestReference.version", minimum=1),
            schema_version=_as_str(parsed["schema_version"], "ManifestReference.schema_version"),
        )


@dataclass(frozen=True, slots=True)
class BudgetSnapshot(CanonicalModel):
    character_count: int
    hard_limit: int
    role: str

    def __post_init__(self) -> None:
        _as_int(self.character_count, "BudgetSnapshot.character_count", minimum=0)
        _as_int(self.hard_limit, "BudgetSnapshot.hard_limit", minimum=1)
        _as_str(self.role, "BudgetSnapshot.role")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BudgetSnapshot:
        parsed = _expect_object(
            data, "BudgetSnapshot", required={"character_count", "hard_limit", "role"}
        )
        return cls(
            character_count=_as_int(parsed["character_count"], "BudgetSnapshot.character_count"),
            hard_limit=_as_int(parsed["hard_limit"], "BudgetSnapshot.hard_limit", minimum=1),
            role=_as_str(parsed["role"], "BudgetSnapshot.role"),
        )


# ---------------------------------------------------------------------------
# Requirements documents


@dataclass(frozen=True, slots=True)
class RequirementsFailure(CanonicalModel):
    """One quality-gate finding against a requirements document."""

    type: FailureType
    field: str
    message: str
    expected: int | None = None
    found: int | None = None
    item: str | None = None

    def sort_key(self) -> tuple[int, str, str]:
        return (_FAILURE_ORDER[self.type], self.field, self.message)

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "type": self.type.value,
            "field": self.field,
            "message": self.message,
        }
        if self.expected is not None:
            payload["expected"] = self.expected
        if self.found is not None:
            payload["found"] = self.found
        if self.item is not None:
            payload["item"] = self.item
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RequirementsFailure:
        parsed = _expect_object(
            data,
            "RequirementsFailure",
            required={"type", "field", "message"},
            optional={"expected", "found", "item"},
        )
        return cls(
            type=_as_enum(FailureType, parsed["type"], "RequirementsFailure.type"),
            field=_as_str(parsed["field"], "RequirementsFailure.field"),
            message=_as_str(parsed["message"], "RequirementsFailure.message"),
            expected=_as_optional_int(parsed.get("expected"), "RequirementsFailure.expected"),
            found=_as_optional_int(parsed.get("found"), "RequirementsFailure.found"),
            item=_as_optional_str(parsed.get("item"), "RequirementsFailure.item", min_len=0),
        )


_FAILURE_ORDER: dict[FailureType, int] = {kind: index for index, kind in enumerate(FailureType)}


@dataclass(frozen=True, slots=True)
class RequirementsDocument(CanonicalModel):
    """One immutable version of a work item's requirements document (RED)."""

    red_id: str
    repo_full_name: str
    work_item_id: str
    version: int
    red_json: dict[str, JSONValue]
    content_checksum: str
    validation_status: ValidationStatus
    created_at: datetime
    validated_at: datetime | None = None
    validation_failures: tuple[RequirementsFailure, ...] = ()

    def __post_init__(self) -> None:
        _as_str(self.red_id, "RequirementsDocument.red_id")
        _as_str(self.repo_full_name, "RequirementsDocument.repo_full_name")
        _as_str(self.work_item_id, "RequirementsDocument.work_item_id")
        _as_int(self.version, "RequirementsDocument.version", minimum=1)
        _as_json_object(self.red_json, "RequirementsDocument.red_json")
        _as_enum(ValidationStatus, self.validation_status, "RequirementsDocument.validation_status")
        _as_datetime(self.created_at, "RequirementsDocument.created_at")

    @property
    def reference(self) -> RedReference:
        return RedReference(red_id=self.red_id, version=self.version)

    @property
    def is_valid(self) -> bool:
        return self.validation_status is ValidationStatus.VALID

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RequirementsDocument:
        path = "RequirementsDocument"
        parsed = _expect_object(
            data,
            path,
            required={
                "red_id",
                "repo_full_name",
                "work_item_id",
                "version",
                "red_json",
                "content_checksum",
                "validation_status",
                "created_at",
            },
            optional={"validated_at", "validation_failures"},
        )
        return cls(
            red_id=_as_str(parsed["red_id"], f"{path}.red_id"),
            repo_full_name=_as_str(parsed["repo_full_name"], f"{path}.repo_full_name"),
            work_item_id=_as_str(parsed["work_item_id"], f"{path}.work_item_id"),
            version=_as_int(parsed["version"], f"{path}.version", minimum=1),
            red_json=_as_json_object(parsed["red_json"], f"{path}.red_json"),
            content_checksum=_as_checksum(parsed["content_checksum"], f"{path}.content_checksum"),
            validation_status=_as_enum(
                ValidationStatus, parsed["validation_status"], f"{path}.validation_status"
            ),
            created_at=_as_datetime(parsed["created_at"], f"{path}.created_at"),
            validated_at=_as_optional_datetime(parsed.get("validated_at"), f"{path}.validated_at"),
            validation_failures=tuple(
                RequirementsFailure.from_dict(_as_mapping(item, f"{path}.validation_failures[]"))
                for item in _as_sequence(
                    parsed.get("validation_failures", []), f"{path}.validation_failures"
                )
            ),
        )


# ---------------------------------------------------------------------------
# Manifests, artifacts, instructions, runs, pins


@dataclass(frozen=True, slots=True)
class IntegrationManifest(CanonicalModel):
    manifest_id: str
    repo_full_name: str
    version: int
    schema_version: str
    manifest_json: dict[str, JSONValue]
    content_checksum: str
    created_at: datetime

    def __post_init__(self) -> None:
        _as_str(self.manifest_id, "IntegrationManifest.manifest_id")
        _as_int(self.version, "IntegrationManifest.version", minimum=1)
        _as_json_object(self.manifest_json, "IntegrationManifest.manifest_json")

    @property
    def reference(self) -> ManifestReference:
        return ManifestReference(
            manifest_id=self.manifest_id, version=self.version, schema_version=self.schema_version
        )

    @property
    def project_manifest(self) -> JSONValue:
        return self.manifest_json.get("project_manifest")

    @property
    def project_id(self) -> str:
        value = self.manifest_json.get("project_id")
        return value if isinstance(value, str) else ""

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> IntegrationManifest:
        path = "IntegrationManifest"
        parsed = _expect_object(
            data,
            path,
            required={
                "manifest_id",
                "repo_full_name",
                "version",
                "schema_version",
                "manifest_json",
                "content_checksum",
                "created_at",
            },
        )
        return cls(
            manifest_id=_as_str(parsed["manifest_id"], f"{path}.manifest_id"),
            repo_full_name=_as_str(parsed["repo_full_name"], f"{path}.repo_full_name"),
            version=_as_int(parsed["version"], f"{path}.version", minimum=1),
            schema_version=_as_str(parsed["schema_version"], f"{path}.schema_version"),
            manifest_json=_as_json_object(parsed["manifest_json"], f"{path}.manifest_json"),
            content_checksum=_as_checksum(parsed["content_checksum"], f"{path}.content_checksum"),
            created_at=_as_datetime(parsed["created_at"], f"{path}.created_at"),
        )


@dataclass(frozen=True, slots=True)
class DistilledArtifact(CanonicalModel):
    summary: str
    hard_facts: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> DistilledArtifact:
        parsed = _expect_object(
            data, "DistilledArtifact", required={"summary"}, optional={"hard_facts", "keywords"}
        )
        return cls(
            summary=_as_str(parsed["summary"], "DistilledArtifact.summary", min_len=0),
            hard_facts=_as_str_tuple(parsed.get("hard_facts", ()), "DistilledArtifact.hard_facts"),
            keywords=_as_str_tuple(parsed.get("keywords", ()), "DistilledArtifact.keywords"),
        )


@dataclass(frozen=True, slots=True)
class ArtifactCandidate(CanonicalModel):
    """A stored agent artifact as seen by the scorer."""

    artifact_id: str
    work_item_id: str
    title: str
    agent_type: str
    created_at: datetime | None
    body: str = ""
    distilled: DistilledArtifact | None = None
    pinned: bool = False

    def __post_init__(self) -> None:
        _as_str(self.artifact_id, "ArtifactCandidate.artifact_id")
        _as_str(self.work_item_id, "ArtifactCandidate.work_item_id")
        if self.created_at is not None:
            _as_datetime(self.created_at, "ArtifactCandidate.created_at")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ArtifactCandidate:
        path = "ArtifactCandidate"
        parsed = _expect_object(
            data,
            path,
            required={"artifact_id", "work_item_id", "title", "agent_type", "created_at"},
            optional={"body", "distilled", "pinned"},
        )
        distilled = parsed.get("distilled")
        return cls(
            artifact_id=_as_str(parsed["artifact_id"], f"{path}.artifact_id"),
            work_item_id=_as_str(parsed["work_item_id"], f"{path}.work_item_id"),
            title=_as_str(parsed["title"], f"{path}.title", min_len=0),
            agent_type=_as_str(parsed["agent_type"], f"{path}.agent_type", min_len=0),
            created_at=_as_optional_datetime(parsed["created_at"], f"{path}.created_at"),
            body=_as_str(parsed.get("body", ""), f"{path}.body", min_len=0, strip=False),
            distilled=(
                None
                if distilled is None
                else DistilledArtifact.from_dict(_as_mapping(distilled, f"{path}.distilled"))
            ),
            pinned=_as_bool(parsed.get("pinned", False), f"{path}.pinned"),
        )


@dataclass(frozen=True, slots=True)
class Instruction(CanonicalModel):
    repo_full_name: str
    topic_id: str
    filename: str
    title: str
    content_md: str
    agent_types: tuple[str, ...] = ()
    always_apply: bool = False

    def applies_to(self, agent_type: str) -> bool:
        return self.always_apply or "all" in self.agent_types or agent_type in self.agent_types

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Instruction:
        path = "Instruction"
        parsed = _expect_object(
            data,
            path,
            required={"repo_full_name", "topic_id", "filename", "title", "content_md"},
            optional={"agent_types", "always_apply"},
        )
        return cls(
            repo_full_name=_as_str(parsed["repo_full_name"], f"{path}.repo_full_name"),
            topic_id=_as_str(parsed["topic_id"], f"{path}.topic_id"),
            filename=_as_str(parsed["filename"], f"{path}.filename"),
            title=_as_str(parsed["title"], f"{path}.title", min_len=0),
            content_md=_as_str(parsed["content_md"], f"{path}.content_md", min_len=0, strip=False),
            agent_types=_as_str_tuple(parsed.get("agent_types", ()), f"{path}.agent_types"),
            always_apply=_as_bool(parsed.get("always_apply", False), f"{path}.always_apply"),
        )


@dataclass(frozen=True, slots=True)
class AgentRun(CanonicalModel):
    run_id: str
    work_item_id: str
    agent_type: str
    status: str
    created_at: datetime

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AgentRun:
        path = "AgentRun"
        parsed = _expect_object(
            data, path, required={"run_id", "work_item_id", "agent_type", "status", "created_at"}
        )
        return cls(
            run_id=_as_str(parsed["run_id"], f"{path}.run_id"),
            work_item_id=_as_str(parsed["work_item_id"], f"{path}.work_item_id"),
            agent_type=_as_str(parsed["agent_type"], f"{path}.agent_type"),
            status=_as_str(parsed["status"], f"{path}.status"),
            created_at=_as_datetime(parsed["created_at"], f"{path}.created_at"),
        )


@dataclass(frozen=True, slots=True)
class ArtifactPin(CanonicalModel):
    """Pin of an artifact for a work item; ``role=None`` pins it for every role."""

    pin_id: str
    work_item_id: str
    artifact_id: str
    role: str | None
    created_at: datetime

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ArtifactPin:
        path = "ArtifactPin"
        parsed = _expect_object(
            data, path, required={"pin_id", "work_item_id", "artifact_id", "role", "created_at"}
        )
        return cls(
            pin_id=_as_str(parsed["pin_id"], f"{path}.pin_id"),
            work_item_id=_as_str(parsed["work_item_id"], f"{path}.work_item_id"),
            artifact_id=_as_str(parsed["artifact_id"], f"{path}.artifact_id"),
            role=_as_optional_str(parsed["role"], f"{path}.role"),
            created_at=_as_datetime(parsed["created_at"], f"{path}.created_at"),
        )


# ---------------------------------------------------------------------------
# Bundles, receipts, continuity checks


@dataclass(frozen=True, slots=True)
class BundleRecord(CanonicalModel):
    """A persisted, versioned context bundle."""

    bundle_id: str
    repo_full_name: str
    work_item_id: str
    role: str
    version: int
    bundle_json: dict[str, JSONValue]
    content_checksum: str
    bundle_checksum: str
    created_at: datetime

    def __post_init__(self) -> None:
        _as_str(self.bundle_id, "BundleRecord.bundle_id")
        _as_int(self.version, "BundleRecord.version", minimum=1)
        _as_json_object(self.bundle_json, "BundleRecord.bundle_json")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BundleRecord:
        path = "BundleRecord"
        parsed = _expect_object(
            data,
            path,
            required={
                "bundle_id",
                "repo_full_name",
                "work_item_id",
                "role",
                "version",
                "bundle_json",
                "content_checksum",
                "bundle_checksum",
                "created_at",
            },
        )
        return cls(
            bundle_id=_as_str(parsed["bundle_id"], f"{path}.bundle_id"),
            repo_full_name=_as_str(parsed["repo_full_name"], f"{path}.repo_full_name"),
            work_item_id=_as_str(parsed["work_item_id"], f"{path}.work_item_id"),
            role=_as_str(parsed["role"], f"{path}.role"),
            version=_as_int(parsed["version"], f"{path}.version", minimum=1),
            bundle_json=_as_json_object(parsed["bundle_json"], f"{path}.bundle_json"),
            content_checksum=_as_checksum(parsed["content_checksum"], f"{path}.content_checksum"),
            bundle_checksum=_as_checksum(parsed["bundle_checksum"], f"{path}.bundle_checksum"),
            created_at=_as_datetime(parsed["created_at"], f"{path}.created_at"),
        )


@dataclass(frozen=True, slots=True)
class BundleReceipt(CanonicalModel):
    """Immutable audit record written once per generated bundle."""

    receipt_id: str
    bundle_id: str
    work_item_id: str
    role: str
    content_checksum: str
    bundle_checksum: str
    section_metrics: dict[str, int]
    total_characters: int
    budget: BudgetSnapshot
    created_at: datetime
    red_reference: RedReference | None = None
    integration_manifest_reference: ManifestReference | None = None
    change_ref: ChangeRef | None = None
    artifact_references: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _as_str(self.receipt_id, "BundleReceipt.receipt_id")
        _as_str(self.bundle_id, "BundleReceipt.bundle_id")
        _as_int(self.total_characters, "BundleReceipt.total_characters", minimum=0)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BundleReceipt:
        path = "BundleReceipt"
        parsed = _expect_object(
            data,
            path,
            required={
                "receipt_id",
                "bundle_id",
                "work_item_id",
                "role",
                "content_checksum",
                "bundle_checksum",
                "section_metrics",
                "total_characters",
                "budget",
                "created_at",
            },
            optional={
                "red_reference",
                "integration_manifest_reference",
                "change_ref",
                "artifact_references",
            },
        )
        metrics = _as_mapping(parsed["section_metrics"], f"{path}.section_metrics")
        red = parsed.get("red_reference")
        manifest = parsed.get("integration_manifest_reference")
        change = parsed.get("change_ref")
        return cls(
            receipt_id=_as_str(parsed["receipt_id"], f"{path}.receipt_id"),
            bundle_id=_as_str(parsed["bundle_id"], f"{path}.bundle_id"),
            work_item_id=_as_str(parsed["work_item_id"], f"{path}.work_item_id"),
            role=_as_str(parsed["role"], f"{path}.role"),
            content_checksum=_as_checksum(parsed["content_checksum"], f"{path}.content_checksum"),
            bundle_checksum=_as_checksum(parsed["bundle_checksum"], f"{path}.bundle_checksum"),
            section_metrics={
                key: _as_int(value, f"{path}.section_metrics.{key}", minimum=0)
                for key, value in metrics.items()
            },
            total_characters=_as_int(parsed["total_characters"], f"{path}.total_characters"),
            budget=BudgetSnapshot.from_dict(_as_mapping(parsed["budget"], f"{path}.budget")),
            created_at=_as_datetime(parsed["created_at"], f"{path}.created_at"),
            red_reference=(
                None
                if red is None
                else RedReference.from_dict(_as_mapping(red, f"{path}.red_reference"))
            ),
            integration_manifest_reference=(
                None
                if manifest is None
                else ManifestReference.from_dict(
                    _as_mapping(manifest, f"{path}.integration_manifest_reference")
                )
            ),
            change_ref=(
                None
                if change is None
                else ChangeRef.from_dict(_as_mapping(change, f"{path}.change_ref"))
            ),
            artifact_references=_as_str_tuple(
                parsed.get("artifact_references", ()), f"{path}.artifact_references"
            ),
        )


@dataclass(frozen=True, slots=True)
class ContinuityCheckRecord(CanonicalModel):
    check_id: str
    bundle_id: str | None
    run_at: datetime
    verdict: ContinuityVerdict
    summary: str
    failure_reason: ColdStartFailure | None = None
    details: dict[str, JSONValue] | None = None

    @property
    def passed(self) -> bool:
        return self.verdict is ContinuityVerdict.PASS

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ContinuityCheckRecord:
        path = "ContinuityCheckRecord"
        parsed = _expect_object(
            data,
            path,
            required={"check_id", "bundle_id", "run_at", "verdict", "summary"},
            optional={"failure_reason", "details"},
        )
        reason = parsed.get("failure_reason")
        details = parsed.get("details")
        return cls(
            check_id=_as_str(parsed["check_id"], f"{path}.check_id"),
            bundle_id=_as_optional_str(parsed["bundle_id"], f"{path}.bundle_id"),
            run_at=_as_datetime(parsed["run_at"], f"{path}.run_at"),
            verdict=_as_enum(ContinuityVerdict, parsed["verdict"], f"{path}.verdict"),
            summary=_as_str(parsed["summary"], f"{path}.summary"),
            failure_reason=(
                None
                if reason is None
                else _as_enum(ColdStartFailure, reason, f"{path}.failure_reason")
            ),
            details=None if details is None else _as_json_object(details, f"{path}.details"),
        )


# ---------------------------------------------------------------------------
# Validation helpers


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    parsed = dict(_as_mapping(value, path))
    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")
    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    for key in value:
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
    return cast("Mapping[str, object]", value)


def _as_checksum(value: object, path: str) -> str:
    if not is_checksum(value):
        _fail(path, "expected a 64-digit lowercase hex checksum")
    return cast("str", value)


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > _MAX_TEXT:
        _fail(path, f"must be <= {_MAX_TEXT} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, min_len: int = 1) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, min_len=min_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_optional_int(value: object, path: str) -> int | None:
    if value is None:
        return None
    return _as_int(value, path)


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None or value == "":
        return None
    return _as_datetime(value, path)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    return tuple(
        _as_str(item, f"{path}[{index}]", min_len=0, strip=False)
        for index, item in enumerate(_as_sequence(value, path))
    )


def _as_json_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        mapping = _as_mapping(value, path)
        return {key: _as_json_value(item, f"{path}.{key}") for key, item in mapping.items()}
    _fail(path, f"not a JSON value: {type(value).__name__}")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(_as_mapping(value, path), path)
    return cast("dict[str, JSONValue]", parsed)


def iso8601z(value: datetime) -> str:
    """Render ``value`` as UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime(value: object, path: str = "datetime") -> datetime:
    return _as_datetime(value, path)


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return cast("JSONValue", value)
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        return cast("JSONValue", value.value)
    if isinstance(value, datetime):
        return iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        return {key: _serialize_value(item, f"{path}.{key}") for key, item in value.items()}
    if isinstance(value, CanonicalModel) and type(value).to_dict is not CanonicalModel.to_dict:
        return value.to_dict()
    if is_dataclass(value):
        return {
            dataclass_field.name: _serialize_value(
                getattr(value, dataclass_field.name), f"{path}.{dataclass_field.name}"
            )
            for dataclass_field in fields(value)
        }
    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "AgentRun",
    "ArtifactCandidate",
    "ArtifactPin",
    "BudgetSnapshot",
    "BundleReceipt",
    "BundleRecord",
    "CanonicalModel",
    "ChangeRef",
    "ColdStartFailure",
    "ContinuityCheckRecord",
    "ContinuityVerdict",
    "DistilledArtifact",
    "ExclusionReason",
    "FailureType",
    "Instruction",
    "IntegrationManifest",
    "JSONValue",
    "ManifestReference",
    "RedReference",
    "RequirementsDocument",
    "RequirementsFailure",
    "UTC",
    "ValidationStatus",
    "iso8601z",
    "parse_datetime",
]
