"""
context-bundler — repositories

File: src/context_bundler/persistence/repositories.py
Last updated: 2026-02-12

Purpose
- Repository/DAO classes reading and writing bundler records in the state DB.

Functional requirements
- Version allocation (``max + 1``) happens in the same ``BEGIN IMMEDIATE``
  transaction as the insert; ``UNIQUE`` constraints catch any race and surface
  ``sqlite3.IntegrityError`` to the caller for bounded retry.
- A bundle and its receipt are written in one transaction.
- Requirements documents never change; each (re)validation appends a row and
  the newest row defines the document's status.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Final

from context_bundler.domain import ids
from context_bundler.domain.models import (
    UTC,
    AgentRun,
    ArtifactCandidate,
    ArtifactPin,
    BundleReceipt,
    BundleRecord,
    ContinuityCheckRecord,
    DistilledArtifact,
    Instruction,
    IntegrationManifest,
    JSONValue,
    RequirementsDocument,
    RequirementsFailure,
    ValidationStatus,
    iso8601z,
    parse_datetime,
)
from context_bundler.persistence.state_db import RowValue, StateDB, canonical_json
from context_bundler.utils.canonical import canonicalize, checksum

_MAX_PAGE_SIZE: Final[int] = 1_000
_ALL_ROLES_KEY: Final[str] = ""

_RED_SELECT: Final[str] = """
SELECT d.red_id, d.repo_full_name, d.work_item_id, d.version, d.content_checksum,
       d.created_at, d.red_json, v.status, v.validated_at, v.failures_json
FROM requirements_documents AS d
LEFT JOIN requirements_validations AS v
  ON v.validation_seq = (
      SELECT MAX(validation_seq) FROM requirements_validations WHERE red_id = d.red_id
  )
"""


class RequirementsVersionConflictError(RuntimeError):
    """Raised when a requirements document version could not be allocated."""


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.ensure_migrated()

    @staticmethod
    def _validate_page(limit: int, offset: int = 0) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class RequirementsDocumentRepo(_BaseRepo):
    """Append-only store of versioned requirements documents (REDs)."""

    def insert_version(
        self,
        repo_full_name: str,
        work_item_id: str,
        red_json: Mapping[str, JSONValue],
        *,
        status: ValidationStatus = ValidationStatus.PENDING,
        failures: Sequence[RequirementsFailure] = (),
        validated_at: datetime | None = None,
        created_at: datetime | None = None,
    ) -> RequirementsDocument:
        now = created_at or _utc_now()
        red_id = ids.new_id(ids.IdKind.REQUIREMENTS_DOCUMENT)
        payload = dict(red_json)
        try:
            with self._db.transaction() as conn:
                version = _next_version(
                    self._db,
                    conn,
                    "requirements_documents",
                    {"repo_full_name": repo_full_name, "work_item_id": work_item_id},
                )
                self._db.execute(
                    """
                    INSERT INTO requirements_documents (
                        red_id, repo_full_name, work_item_id, version,
                        content_checksum, created_at, red_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        red_id,
                        repo_full_name,
                        work_item_id,
                        version,
                        checksum(payload),
                        iso8601z(now),
                        canonicalize(payload),
                    ),
                    conn=conn,
                )
                if status is not ValidationStatus.PENDING:
                    self._insert_validation(conn, red_id, status, failures, validated_at or now)
        except sqlite3.IntegrityError as exc:
            raise RequirementsVersionConflictError(
                f"could not allocate requirements version for {repo_full_name}/{work_item_id}"
            ) from exc
        document = self.get(red_id)
        if document is None:
            raise RequirementsVersionConflictError(f"inserted document vanished: {red_id}")
        return document

    def record_validation(
        self,
        red_id: str,
        status: ValidationStatus,
        failures: Sequence[RequirementsFailure],
        *,
        validated_at: datetime | None = None,
    ) -> RequirementsDocument:
        with self._db.transaction() as conn:
            self._insert_validation(conn, red_id, status, failures, validated_at or _utc_now())
        document = self.get(red_id)
        if document is None:
            raise LookupError(f"requirements document not found: {red_id}")
        return document

    def get(self, red_id: str) -> RequirementsDocument | None:
        row = self._db.query_one(f"{_RED_SELECT} WHERE d.red_id = ?", (red_id,))
        return None if row is None else _red_from_row(row)

    def get_version(
        self, repo_full_name: str, work_item_id: str, version: int
    ) -> RequirementsDocument | None:
        row = self._db.query_one(
            f"{_RED_SELECT} WHERE d.repo_full_name = ? AND d.work_item_id = ? AND d.version = ?",
            (repo_full_name, work_item_id, version),
        )
        return None if row is None else _red_from_row(row)

    def get_latest_valid(
        self, repo_full_name: str, work_item_id: str
    ) -> RequirementsDocument | None:
        row = self._db.query_one(
            f"""
            {_RED_SELECT}
            WHERE d.repo_full_name = ? AND d.work_item_id = ? AND v.status = ?
            ORDER BY d.version DESC
            LIMIT 1
            """,
            (repo_full_name, work_item_id, ValidationStatus.VALID.value),
        )
        return None if row is None else _red_from_row(row)

    def list_versions(
        self, repo_full_name: str, work_item_id: str, *, limit: int = 100
    ) -> list[RequirementsDocument]:
        self._validate_page(limit)
        rows = self._db.query_all(
            f"""
            {_RED_SELECT}
            WHERE d.repo_full_name = ? AND d.work_item_id = ?
            ORDER BY d.version DESC
            LIMIT ?
            """,
            (repo_full_name, work_item_id, limit),
        )
        return [_red_from_row(row) for row in rows]

    def _insert_validation(
        self,
        conn: sqlite3.Connection,
        red_id: str,
        status: ValidationStatus,
        failures: Sequence[RequirementsFailure],
        validated_at: datetime,
    ) -> None:
        self._db.execute(
            """
            INSERT INTO requirements_validations (red_id, status, validated_at, failures_json)
            VALUES (?, ?, ?, ?)
            """,
            (
                red_id,
                status.value,
                iso8601z(validated_at),
                canonical_json([failure.to_dict() for failure in failures]),
            ),
            conn=conn,
        )


class ManifestRepo(_BaseRepo):
    """Versioned integration manifests per (repo, schema version)."""

    def add(
        self,
        repo_full_name: str,
        manifest_json: Mapping[str, JSONValue],
        *,
        schema_version: str = "v0",
        created_at: datetime | None = None,
    ) -> IntegrationManifest:
        payload = dict(manifest_json)
        with self._db.transaction() as conn:
            version = _next_version(
                self._db,
                conn,
                "integration_manifests",
                {"repo_full_name": repo_full_name, "schema_version": schema_version},
            )
            manifest = IntegrationManifest(
                manifest_id=ids.new_id(ids.IdKind.MANIFEST),
                repo_full_name=repo_full_name,
                version=version,
                schema_version=schema_version,
                manifest_json=payload,
                content_checksum=checksum(payload),
                created_at=created_at or _utc_now(),
            )
            self._db.execute(
                """
                INSERT INTO integration_manifests (
                    manifest_id, repo_full_name, schema_version, version,
                    content_checksum, created_at, payload_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    manifest.manifest_id,
                    repo_full_name,
                    schema_version,
                    version,
                    manifest.content_checksum,
                    iso8601z(manifest.created_at),
                    manifest.to_json(),
                ),
                conn=conn,
            )
        return manifest

    def get_latest(self, repo_full_name: str, schema_version: str) -> IntegrationManifest | None:
        row = self._db.query_one(
            """
            SELECT payload_json FROM integration_manifests
            WHERE repo_full_name = ? AND schema_version = ?
            ORDER BY version DESC
            LIMIT 1
            """,
            (repo_full_name, schema_version),
        )
        return None if row is None else _manifest_from_row(row)

    def get_version(
        self, repo_full_name: str, version: int, schema_version: str
    ) -> IntegrationManifest | None:
        row = self._db.query_one(
            """
            SELECT payload_json FROM integration_manifests
            WHERE repo_full_name = ? AND schema_version = ? AND version = ?
            """,
            (repo_full_name, schema_version, version),
        )
        return None if row is None else _manifest_from_row(row)


class ArtifactRepo(_BaseRepo):
    """Agent artifacts; only the cached distillation is ever updated."""

    def add(self, artifact: ArtifactCandidate) -> ArtifactCandidate:
        self._db.execute(
            """
            INSERT INTO artifacts (
                artifact_id, work_item_id, title, agent_type, created_at, body,
                distilled_json, distilled_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.artifact_id,
                artifact.work_item_id,
                artifact.title,
                artifact.agent_type,
                None if artifact.created_at is None else iso8601z(artifact.created_at),
                artifact.body,
                None if artifact.distilled is None else artifact.distilled.to_json(),
                None if artifact.distilled is None else iso8601z(_utc_now()),
            ),
        )
        return artifact

    def get(self, artifact_id: str) -> ArtifactCandidate | None:
        row = self._db.query_one("SELECT * FROM artifacts WHERE artifact_id = ?", (artifact_id,))
        return None if row is None else _artifact_from_row(row)

    def get_many(self, artifact_ids: Sequence[str]) -> dict[str, ArtifactCandidate]:
        if not artifact_ids:
            return {}
        placeholders = ", ".join("?" for _ in artifact_ids)
        rows = self._db.query_all(
            f"SELECT * FROM artifacts WHERE artifact_id IN ({placeholders})", tuple(artifact_ids)
        )
        artifacts = (_artifact_from_row(row) for row in rows)
        return {artifact.artifact_id: artifact for artifact in artifacts}

    def list_for_work_item(
        self, work_item_id: str, *, limit: int = 20, offset: int = 0
    ) -> list[ArtifactCandidate]:
        """Newest first; artifacts without a timestamp sort last."""
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT * FROM artifacts
            WHERE work_item_id = ?
            ORDER BY created_at IS NULL, created_at DESC, artifact_id ASC
            LIMIT ? OFFSET ?
            """,
            (work_item_id, limit, offset),
        )
        return [_artifact_from_row(row) for row in rows]

    def record_distillation(
        self,
        artifact_id: str,
        distilled: DistilledArtifact,
        *,
        distilled_at: datetime | None = None,
    ) -> None:
        updated = self._db.execute(
            "UPDATE artifacts SET distilled_json = ?, distilled_at = ? WHERE artifact_id = ?",
            (distilled.to_json(), iso8601z(distilled_at or _utc_now()), artifact_id),
        )
        if updated == 0:
            raise LookupError(f"artifact not found: {artifact_id}")


class InstructionRepo(_BaseRepo):
    """Per-repository agent instructions keyed by filename."""

    def upsert(self, instruction: Instruction) -> Instruction:
        self._db.execute(
            """
            INSERT INTO instructions (
                repo_full_name, filename, topic_id, title, content_md,
                agent_types_json, always_apply, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(repo_full_name, filename) DO UPDATE SET
                topic_id = excluded.topic_id,
                title = excluded.title,
                content_md = excluded.content_md,
                agent_types_json = excluded.agent_types_json,
                always_apply = excluded.always_apply,
                updated_at = excluded.updated_at
            """,
            (
                instruction.repo_full_name,
                instruction.filename,
                instruction.topic_id,
                instruction.title,
                instruction.content_md,
                canonical_json(list(instruction.agent_types)),
                1 if instruction.always_apply else 0,
                iso8601z(_utc_now()),
            ),
        )
        return instruction

    def list_for_repo(self, repo_full_name: str) -> list[Instruction]:
        rows = self._db.query_all(
            "SELECT * FROM instructions WHERE repo_full_name = ? ORDER BY filename ASC",
            (repo_full_name,),
        )
        return [
            Instruction(
                repo_full_name=_row_text(row, "repo_full_name", "instructions.repo_full_name"),
                topic_id=_row_text(row, "topic_id", "instructions.topic_id"),
                filename=_row_text(row, "filename", "instructions.filename"),
                title=_row_text(row, "title", "instructions.title"),
                content_md=_row_text(row, "content_md", "instructions.content_md"),
                agent_types=tuple(
                    str(item)
                    for item in _load_json_list(
                        _row_text(row, "agent_types_json", "instructions.agent_types_json"),
                        "instructions.agent_types_json",
                    )
                ),
                always_apply=row.get("always_apply") == 1,
            )
            for row in rows
        ]


class AgentRunRepo(_BaseRepo):
    def add(self, run: AgentRun) -> AgentRun:
        self._db.execute(
            """
            INSERT INTO agent_runs (run_id, work_item_id, agent_type, status, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (run.run_id, run.work_item_id, run.agent_type, run.status, iso8601z(run.created_at)),
        )
        return run

    def list_for_work_item(
        self, work_item_id: str, *, agent_type: str | None = None, limit: int = 10
    ) -> list[AgentRun]:
        self._validate_page(limit)
        sql = "SELECT * FROM agent_runs WHERE work_item_id = ?"
        params: list[RowValue] = [work_item_id]
        if agent_type is not None:
            sql += " AND agent_type = ?"
            params.append(agent_type)
        sql += " ORDER BY created_at DESC, run_id DESC LIMIT ?"
        params.append(limit)
        return [
            AgentRun(
                run_id=_row_text(row, "run_id", "agent_runs.run_id"),
                work_item_id=_row_text(row, "work_item_id", "agent_runs.work_item_id"),
                agent_type=_row_text(row, "agent_type", "agent_runs.agent_type"),
                status=_row_text(row, "status", "agent_runs.status"),
                created_at=parse_datetime(row.get("created_at"), "agent_runs.created_at"),
            )
            for row in self._db.query_all(sql, tuple(params))
        ]


class PinRepo(_BaseRepo):
    """Artifact pins; unique per (work item, artifact, role or all roles)."""

    def pin(
        self, work_item_id: str, artifact_id: str, *, role: str | None = None
    ) -> tuple[ArtifactPin, bool]:
        """Return the pin and whether it was newly created."""
        role_key = role or _ALL_ROLES_KEY
        with self._db.transaction() as conn:
            existing = self._db.query_one(
                """
                SELECT * FROM artifact_pins
                WHERE work_item_id = ? AND artifact_id = ? AND role_key = ?
                """,
                (work_item_id, artifact_id, role_key),
                conn=conn,
            )
            if existing is not None:
                return _pin_from_row(existing), False
            pin = ArtifactPin(
                pin_id=ids.new_id(ids.IdKind.PIN),
                work_item_id=work_item_id,
                artifact_id=artifact_id,
                role=role,
                created_at=_utc_now(),
            )
            self._db.execute(
                """
                INSERT INTO artifact_pins (pin_id, work_item_id, artifact_id, role_key, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (pin.pin_id, work_item_id, artifact_id, role_key, iso8601z(pin.created_at)),
                conn=conn,
            )
        return pin, True

    def unpin(self, work_item_id: str, artifact_id: str, *, role: str | None = None) -> int:
        """Remove one role's pin, or every pin of the artifact when ``role`` is None."""
        if role is None:
            return self._db.execute(
                "DELETE FROM artifact_pins WHERE work_item_id = ? AND artifact_id = ?",
                (work_item_id, artifact_id),
            )
        return self._db.execute(
            """
            DELETE FROM artifact_pins
            WHERE work_item_id = ? AND artifact_id = ? AND role_key = ?
            """,
            (work_item_id, artifact_id, role),
        )

    def pinned_artifact_ids(self, work_item_id: str, role: str) -> frozenset[str]:
        rows = self._db.query_all(
            """
            SELECT DISTINCT artifact_id FROM artifact_pins
            WHERE work_item_id = ? AND role_key IN (?, ?)
            """,
            (work_item_id, role, _ALL_ROLES_KEY),
        )
        return frozenset(_row_text(row, "artifact_id", "artifact_pins.artifact_id") for row in rows)

    def list_for_work_item(self, work_item_id: str) -> list[ArtifactPin]:
        rows = self._db.query_all(
            """
            SELECT * FROM artifact_pins WHERE work_item_id = ?
            ORDER BY created_at ASC, pin_id ASC
            """,
            (work_item_id,),
        )
        return [_pin_from_row(row) for row in rows]


ComposeBundle = Callable[[int], tuple[BundleRecord, BundleReceipt]]


class BundleRepo(_BaseRepo):
    """Append-only context bundles and their receipts."""

    def insert_next_version(
        self,
        repo_full_name: str,
        work_item_id: str,
        role: str,
        compose: ComposeBundle,
    ) -> tuple[BundleRecord, BundleReceipt]:
        """
        Allocate ``max(version) + 1`` for the triple and persist what ``compose``
        returns for it, bundle and receipt together.

        ``sqlite3.IntegrityError`` propagates on a version collision.
        """
        with self._db.transaction() as conn:
            version = _next_version(
                self._db,
                conn,
                "context_bundles",
                {"repo_full_name": repo_full_name, "work_item_id": work_item_id, "role": role},
            )
            record, receipt = compose(version)
            self._db.execute(
                """
                INSERT INTO context_bundles (
                    bundle_id, repo_full_name, work_item_id, role, version,
                    content_checksum, bundle_checksum, created_at, bundle_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.bundle_id,
                    record.repo_full_name,
                    record.work_item_id,
                    record.role,
                    record.version,
                    record.content_checksum,
                    record.bundle_checksum,
                    iso8601z(record.created_at),
                    canonicalize(record.bundle_json),
                ),
                conn=conn,
            )
            self._db.execute(
                """
                INSERT INTO bundle_receipts (receipt_id, bundle_id, created_at, payload_json)
                VALUES (?, ?, ?, ?)
                """,
                (
                    receipt.receipt_id,
                    receipt.bundle_id,
                    iso8601z(receipt.created_at),
                    receipt.to_json(),
                ),
                conn=conn,
            )
        return record, receipt

    def get(self, bundle_id: str) -> BundleRecord | None:
        row = self._db.query_one("SELECT * FROM context_bundles WHERE bundle_id = ?", (bundle_id,))
        return None if row is None else _bundle_from_row(row)

    def get_latest(
        self,
        *,
        repo_full_name: str | None = None,
        work_item_id: str | None = None,
        role: str | None = None,
    ) -> BundleRecord | None:
        """Newest bundle matching every given filter (newest overall when none)."""
        clauses: list[str] = []
        params: list[RowValue] = []
        for column, value in (
            ("repo_full_name", repo_full_name),
            ("work_item_id", work_item_id),
            ("role", role),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        row = self._db.query_one(
            f"""
            SELECT * FROM context_bundles
            {where}
            ORDER BY created_at DESC, version DESC, bundle_id DESC
            LIMIT 1
            """,
            tuple(params),
        )
        return None if row is None else _bundle_from_row(row)

    def list_versions(
        self, repo_full_name: str, work_item_id: str, role: str, *, limit: int = 100
    ) -> list[BundleRecord]:
        self._validate_page(limit)
        rows = self._db.query_all(
            """
            SELECT * FROM context_bundles
            WHERE repo_full_name = ? AND work_item_id = ? AND role = ?
            ORDER BY version DESC
            LIMIT ?
            """,
            (repo_full_name, work_item_id, role, limit),
        )
        return [_bundle_from_row(row) for row in rows]

    def get_receipt(self, receipt_id: str) -> BundleReceipt | None:
        row = self._db.query_one(
            "SELECT payload_json FROM bundle_receipts WHERE receipt_id = ?", (receipt_id,)
        )
        return None if row is None else _receipt_from_row(row)

    def get_receipt_for_bundle(self, bundle_id: str) -> BundleReceipt | None:
        row = self._db.query_one(
            "SELECT payload_json FROM bundle_receipts WHERE bundle_id = ?", (bundle_id,)
        )
        return None if row is None else _receipt_from_row(row)


class ContinuityCheckRepo(_BaseRepo):
    """Append-only log of cold-start continuity checks."""

    def add(self, record: ContinuityCheckRecord) -> ContinuityCheckRecord:
        self._db.execute(
            """
            INSERT INTO continuity_checks (
                check_id, bundle_id, verdict, failure_reason, run_at, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.check_id,
                record.bundle_id,
                record.verdict.value,
                None if record.failure_reason is None else record.failure_reason.value,
                iso8601z(record.run_at),
                record.to_json(),
            ),
        )
        return record

    def list_recent(self, *, limit: int = 20, offset: int = 0) -> list[ContinuityCheckRecord]:
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT payload_json FROM continuity_checks
            ORDER BY run_at DESC, check_id DESC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        return [
            ContinuityCheckRecord.from_json(
                _row_text(row, "payload_json", "continuity_checks.payload_json")
            )
            for row in rows
        ]


# ---------------------------------------------------------------------------
# Row mapping helpers


def _next_version(
    db: StateDB, conn: sqlite3.Connection, table: str, keys: Mapping[str, str]
) -> int:
    where = " AND ".join(f"{column} = ?" for column in keys)
    row = db.query_one(
        f"SELECT COALESCE(MAX(version), 0) AS max_version FROM {table} WHERE {where}",
        tuple(keys.values()),
        conn=conn,
    )
    current = 0 if row is None else row.get("max_version")
    if not isinstance(current, int):
        raise ValueError(f"{table}.version: expected integer")
    return current + 1


def _red_from_row(row: Mapping[str, RowValue]) -> RequirementsDocument:
    status_raw = row.get("status")
    failures_raw = row.get("failures_json")
    failures = (
        ()
        if not isinstance(failures_raw, str)
        else tuple(
            RequirementsFailure.from_dict(_as_mapping(item, "requirements_validations.failures"))
            for item in _load_json_list(failures_raw, "requirements_validations.failures_json")
        )
    )
    validated_at = row.get("validated_at")
    return RequirementsDocument(
        red_id=_row_text(row, "red_id", "requirements_documents.red_id"),
        repo_full_name=_row_text(row, "repo_full_name", "requirements_documents.repo_full_name"),
        work_item_id=_row_text(row, "work_item_id", "requirements_documents.work_item_id"),
        version=_row_int(row, "version", "requirements_documents.version"),
        red_json=_load_json_object(
            _row_text(row, "red_json", "requirements_documents.red_json"),
            "requirements_documents.red_json",
        ),
        content_checksum=_row_text(
            row, "content_checksum", "requirements_documents.content_checksum"
        ),
        validation_status=(
            ValidationStatus.PENDING if status_raw is None else ValidationStatus(str(status_raw))
        ),
        created_at=parse_datetime(row.get("created_at"), "requirements_documents.created_at"),
        validated_at=(
            None
            if validated_at is None
            else parse_datetime(validated_at, "requirements_validations.validated_at")
        ),
        validation_failures=failures,
    )


def _manifest_from_row(row: Mapping[str, RowValue]) -> IntegrationManifest:
    return IntegrationManifest.from_json(
        _row_text(row, "payload_json", "integration_manifests.payload_json")
    )


def _artifact_from_row(row: Mapping[str, RowValue]) -> ArtifactCandidate:
    distilled_raw = row.get("distilled_json")
    created_at = row.get("created_at")
    return ArtifactCandidate(
        artifact_id=_row_text(row, "artifact_id", "artifacts.artifact_id"),
        work_item_id=_row_text(row, "work_item_id", "artifacts.work_item_id"),
        title=_row_text(row, "title", "artifacts.title"),
        agent_type=_row_text(row, "agent_type", "artifacts.agent_type"),
        created_at=(
            None if created_at is None else parse_datetime(created_at, "artifacts.created_at")
        ),
        body=_row_text(row, "body", "artifacts.body"),
        distilled=(
            None
            if not isinstance(distilled_raw, str)
            else DistilledArtifact.from_json(distilled_raw)
        ),
    )


def _pin_from_row(row: Mapping[str, RowValue]) -> ArtifactPin:
    role_key = _row_text(row, "role_key", "artifact_pins.role_key")
    return ArtifactPin(
        pin_id=_row_text(row, "pin_id", "artifact_pins.pin_id"),
        work_item_id=_row_text(row, "work_item_id", "artifact_pins.work_item_id"),
        artifact_id=_row_text(row, "artifact_id", "artifact_pins.artifact_id"),
        role=role_key or None,
        created_at=parse_datetime(row.get("created_at"), "artifact_pins.created_at"),
    )


def _bundle_from_row(row: Mapping[str, RowValue]) -> BundleRecord:
    return BundleRecord(
        bundle_id=_row_text(row, "bundle_id", "context_bundles.bundle_id"),
        repo_full_name=_row_text(row, "repo_full_name", "context_bundles.repo_full_name"),
        work_item_id=_row_text(row, "work_item_id", "context_bundles.work_item_id"),
        role=_row_text(row, "role", "context_bundles.role"),
        version=_row_int(row, "version", "context_bundles.version"),
        bundle_json=_load_json_object(
            _row_text(row, "bundle_json", "context_bundles.bundle_json"),
            "context_bundles.bundle_json",
        ),
        content_checksum=_row_text(row, "content_checksum", "context_bundles.content_checksum"),
        bundle_checksum=_row_text(row, "bundle_checksum", "context_bundles.bundle_checksum"),
        created_at=parse_datetime(row.get("created_at"), "context_bundles.created_at"),
    )


def _receipt_from_row(row: Mapping[str, RowValue]) -> BundleReceipt:
    return BundleReceipt.from_json(_row_text(row, "payload_json", "bundle_receipts.payload_json"))


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _row_int(row: Mapping[str, RowValue], key: str, path: str) -> int:
    value = row.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer value")
    return value


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected object, got {type(value).__name__}")
    return value


def _load_json_object(payload: str, path: str) -> dict[str, JSONValue]:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected JSON object")
    return parsed


def _load_json_list(payload: str, path: str) -> Iterable[object]:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path}: invalid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise ValueError(f"{path}: expected JSON array")
    return parsed


def _utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = [
    "AgentRunRepo",
    "ArtifactRepo",
    "BundleRepo",
    "ComposeBundle",
    "ContinuityCheckRepo",
    "InstructionRepo",
    "ManifestRepo",
    "PinRepo",
    "RequirementsDocumentRepo",
    "RequirementsVersionConflictError",
]
