"""
context-bundler — bundle service

File: src/context_bundler/control_plane/bundle_service.py
Last updated: 2026-02-16

Purpose
- Single entry point over the state DB, the builder and the continuity
  verifier. The CLI and tests talk to this class only.

Writes
- ``generate_bundle``, ``pin_artifact`` / ``unpin_artifact``, RED insertion
  and validation, instruction import and cold-start checks write. Every other
  operation is read-only, including ``preview_bundle`` and
  ``verify_continuity`` (distillations computed on those paths are not
  cached).

Correlation
- Each operation runs inside ``correlation_scope`` so process log records
  carry the work item, role and bundle they concern.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Final

import structlog

from context_bundler.config.schema import assert_valid_config, default_config, merge_config
from context_bundler.control_plane.budgets import BudgetReport, BudgetTable
from context_bundler.domain.ids import IdKind, new_id
from context_bundler.domain.models import (
    BundleReceipt,
    BundleRecord,
    ColdStartFailure,
    ContinuityCheckRecord,
    ContinuityVerdict,
    Instruction,
    JSONValue,
    RequirementsDocument,
    ValidationStatus,
)
from context_bundler.integration_plane.sources import (
    ChangeRequestProvider,
    DegradedReason,
    Distiller,
)
from context_bundler.knowledge_plane.instructions import load_instruction_dir
from context_bundler.knowledge_plane.scoring import ScoredArtifact
from context_bundler.observability.logging import correlation_scope
from context_bundler.persistence.repositories import (
    AgentRunRepo,
    ArtifactRepo,
    BundleRepo,
    ContinuityCheckRepo,
    InstructionRepo,
    ManifestRepo,
    PinRepo,
    RequirementsDocumentRepo,
)
from context_bundler.persistence.state_db import StateDB
from context_bundler.quality.requirements_gate import (
    GateThresholds,
    ValidationResult,
    validate_requirements_document,
)
from context_bundler.synthesis_plane.bundle_builder import (
    BuildError,
    BuilderOptions,
    BuildRequest,
    BuildResult,
    BundleBuilder,
)
from context_bundler.synthesis_plane.handoff import RenderedHandoff, render_handoff
from context_bundler.verification_plane.continuity import (
    ContinuityReport,
    ContinuityVerifier,
    cold_start_verdict,
)

try:
    from datetime import UTC
except ImportError:  # pragma: no cover - py<3.11 fallback
    UTC = timezone.utc  # noqa: UP017

PIN_STATUS_PINNED: Final[str] = "pinned"
PIN_STATUS_ALREADY_PINNED: Final[str] = "already_pinned"
PIN_STATUS_UNPINNED: Final[str] = "unpinned"
PIN_STATUS_NOT_PINNED: Final[str] = "not_pinned"


class NotFoundError(LookupError):
    """Raised when a bundle, receipt, document or artifact lookup finds nothing."""


@dataclass(frozen=True, slots=True)
class GenerateOutcome:
    record: BundleRecord
    receipt: BundleReceipt
    budget: BudgetReport
    degraded: tuple[DegradedReason, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "bundle": self.record.to_dict(),
            "receipt": self.receipt.to_dict(),
            "budget": self.budget.to_dict(),
            "degraded": [reason.to_dict() for reason in self.degraded],
        }


@dataclass(frozen=True, slots=True)
class PreviewOutcome:
    result: BuildResult
    budget: BudgetReport

    def to_dict(self) -> dict[str, object]:
        return {
            "budget": self.budget.to_dict(),
            "section_metrics": self.result.section_metrics,
            "content_checksum": self.result.content_checksum,
            "bundle": self.result.bundle,
            "ranking": [item.to_dict() for item in self.result.ranking],
            "degraded": [reason.to_dict() for reason in self.result.degraded],
        }


@dataclass(frozen=True, slots=True)
class PinResult:
    status: str
    work_item_id: str
    artifact_id: str
    role: str | None
    pin_id: str | None = None
    removed: int = 0

    @property
    def pinned(self) -> bool:
        return self.status in {PIN_STATUS_PINNED, PIN_STATUS_ALREADY_PINNED}

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "pinned": self.pinned,
            "work_item_id": self.work_item_id,
            "artifact_id": self.artifact_id,
            "role": self.role,
            "pin_id": self.pin_id,
            "removed": self.removed,
        }


@dataclass(frozen=True, slots=True)
class RequirementsOutcome:
    document: RequirementsDocument
    validation: ValidationResult

    def to_dict(self) -> dict[str, object]:
        return {
            "red_id": self.document.red_id,
            "repo_full_name": self.document.repo_full_name,
            "work_item_id": self.document.work_item_id,
            "version": self.document.version,
            "content_checksum": self.document.content_checksum,
            "validation_status": self.document.validation_status.value,
            "validation": self.validation.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class ImportedInstructions:
    repo_full_name: str
    instructions: tuple[Instruction, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "repo_full_name": self.repo_full_name,
            "count": len(self.instructions),
            "filenames": [instruction.filename for instruction in self.instructions],
        }


class BundleService:
    """Facade over persistence, bundle building and continuity verification."""

    def __init__(
        self,
        *,
        db: StateDB,
        config: Mapping[str, object] | None = None,
        change_provider: ChangeRequestProvider | None = None,
        distiller: Distiller | None = None,
        logger: Any | None = None,
    ) -> None:
        effective = assert_valid_config(merge_config(default_config(), config or {}))
        self._config = effective
        self._db = db
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self.requirements = RequirementsDocumentRepo(db)
        self.manifests = ManifestRepo(db)
        self.artifacts = ArtifactRepo(db)
        self.instructions = InstructionRepo(db)
        self.agent_runs = AgentRunRepo(db)
        self.pins = PinRepo(db)
        self.bundles = BundleRepo(db)
        self.continuity_checks = ContinuityCheckRepo(db)

        self._budgets = BudgetTable.from_config(effective)
        self._thresholds = GateThresholds.from_config(effective.get("quality_gate"))
        self.builder = BundleBuilder(
            requirements=self.requirements,
            manifests=self.manifests,
            artifacts=self.artifacts,
            instructions=self.instructions,
            pins=self.pins,
            bundles=self.bundles,
            change_provider=change_provider,
            distiller=distiller,
            budgets=self._budgets,
            options=BuilderOptions.from_config(effective),
            logger=self._logger,
        )
        self.verifier = ContinuityVerifier(
            builder=self.builder,
            bundles=self.bundles,
            agent_runs=self.agent_runs,
            logger=self._logger,
        )

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        change_provider: ChangeRequestProvider | None = None,
        distiller: Distiller | None = None,
        logger: Any | None = None,
    ) -> BundleService:
        """Open the state DB named by ``paths.state_db`` and wire the service."""
        state_db_path = os.fspath(config["paths"]["state_db"])
        return cls(
            db=StateDB(state_db_path),
            config=config,
            change_provider=change_provider,
            distiller=distiller,
            logger=logger,
        )

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    @property
    def budgets(self) -> BudgetTable:
        return self._budgets

    # ------------------------------------------------------------------
    # Bundles

    def generate_bundle(self, request: BuildRequest) -> GenerateOutcome | BuildError:
        """Build, budget-check and persist the next bundle version."""
        with correlation_scope(work_item_id=request.work_item_id, role=request.role):
            built = self.builder.build(request)
            if isinstance(built, BuildError):
                return built
            persisted = self.builder.persist(built)
            if isinstance(persisted, BuildError):
                return persisted
            record, receipt = persisted
            with correlation_scope(bundle_id=record.bundle_id):
                self._logger.info(
                    "bundle_generated",
                    bundle_id=record.bundle_id,
                    receipt_id=receipt.receipt_id,
                    version=record.version,
                    content_checksum=record.content_checksum,
                )
            return GenerateOutcome(
                record=record,
                receipt=receipt,
                budget=self.builder.evaluate_budget(built),
                degraded=built.degraded,
            )

    def preview_bundle(self, request: BuildRequest) -> PreviewOutcome | BuildError:
        """Build without persisting; over-budget previews are still returned."""
        with correlation_scope(work_item_id=request.work_item_id, role=request.role):
            built = self.builder.build(request, cache_distillations=False)
            if isinstance(built, BuildError):
                return built
            report = self.builder.evaluate_budget(built)
            self._logger.info(
                "bundle_previewed",
                character_count=report.character_count,
                hard_limit=report.hard_limit,
                exceeds=report.exceeds,
            )
            return PreviewOutcome(result=built, budget=report)

    def get_bundle(self, bundle_id: str) -> BundleRecord:
        record = self.bundles.get(bundle_id)
        if record is None:
            raise NotFoundError(f"bundle not found: {bundle_id}")
        return record

    def get_receipt(
        self, *, receipt_id: str | None = None, bundle_id: str | None = None
    ) -> BundleReceipt:
        """Look a receipt up by its own id or by the bundle it describes."""
        if receipt_id is not None:
            receipt = self.bundles.get_receipt(receipt_id)
            if receipt is None:
                raise NotFoundError(f"receipt not found: {receipt_id}")
            return receipt
        if bundle_id is not None:
            receipt = self.bundles.get_receipt_for_bundle(bundle_id)
            if receipt is None:
                raise NotFoundError(f"receipt not found for bundle: {bundle_id}")
            return receipt
        raise ValueError("receipt_id or bundle_id is required")

    def verify_continuity(
        self, *, receipt_id: str | None = None, bundle_id: str | None = None
    ) -> ContinuityReport:
        receipt = self.get_receipt(receipt_id=receipt_id, bundle_id=bundle_id)
        with correlation_scope(
            work_item_id=receipt.work_item_id, role=receipt.role, bundle_id=receipt.bundle_id
        ):
            return self.verifier.verify(receipt)

    def render_handoff(self, bundle_id: str) -> RenderedHandoff:
        record = self.get_bundle(bundle_id)
        receipt = self.bundles.get_receipt_for_bundle(bundle_id)
        return render_handoff(record, receipt)

    # ------------------------------------------------------------------
    # Artifacts

    def rank_artifacts(
        self,
        repo_full_name: str,
        work_item_id: str,
        role: str,
        *,
        query: str = "",
        max_artifacts: int | None = None,
    ) -> tuple[ScoredArtifact, ...] | BuildError:
        """Score the work item's candidates as a build would, without distilling."""
        self._budgets.require(role)
        request = BuildRequest(
            repo_full_name=repo_full_name,
            work_item_id=work_item_id,
            role=role,
            retrieval_query=query,
            max_artifacts=max_artifacts,
        )
        with correlation_scope(work_item_id=work_item_id, role=role):
            candidates = self.builder.load_candidates(request)
            ranked = self.builder.rank(request, candidates, now=datetime.now(tz=UTC))
            if isinstance(ranked, BuildError):
                return ranked
            ranking, _chosen = ranked
            self._logger.debug(
                "artifacts_ranked",
                candidate_count=len(candidates),
                selected_count=sum(1 for item in ranking if item.selected),
            )
            return ranking

    def pin_artifact(
        self, work_item_id: str, artifact_id: str, *, role: str | None = None
    ) -> PinResult:
        self._check_pin_target(work_item_id, artifact_id, role)
        with correlation_scope(work_item_id=work_item_id, role=role):
            pin, created = self.pins.pin(work_item_id, artifact_id, role=role)
            status = PIN_STATUS_PINNED if created else PIN_STATUS_ALREADY_PINNED
            self._logger.info("artifact_pin", artifact_id=artifact_id, status=status)
            return PinResult(
                status=status,
                work_item_id=work_item_id,
                artifact_id=artifact_id,
                role=role,
                pin_id=pin.pin_id,
            )

    def unpin_artifact(
        self, work_item_id: str, artifact_id: str, *, role: str | None = None
    ) -> PinResult:
        """Remove the role's pin, or every pin of the artifact when ``role`` is None."""
        self._check_pin_target(work_item_id, artifact_id, role)
        with correlation_scope(work_item_id=work_item_id, role=role):
            removed = self.pins.unpin(work_item_id, artifact_id, role=role)
            status = PIN_STATUS_UNPINNED if removed else PIN_STATUS_NOT_PINNED
            self._logger.info(
                "artifact_unpin", artifact_id=artifact_id, status=status, removed=removed
            )
            return PinResult(
                status=status,
                work_item_id=work_item_id,
                artifact_id=artifact_id,
                role=role,
                removed=removed,
            )

    def _check_pin_target(self, work_item_id: str, artifact_id: str, role: str | None) -> None:
        if role is not None:
            self._budgets.require(role)
        artifact = self.artifacts.get(artifact_id)
        if artifact is None or artifact.work_item_id != work_item_id:
            raise NotFoundError(f"Artifact {artifact_id} not found for work item {work_item_id}")

    # ------------------------------------------------------------------
    # Requirements documents

    def insert_requirements_document(
        self, repo_full_name: str, work_item_id: str, red_json: Mapping[str, JSONValue]
    ) -> RequirementsOutcome:
        """Store the next RED version with the quality gate's verdict attached."""
        with correlation_scope(work_item_id=work_item_id):
            validation = validate_requirements_document(red_json, thresholds=self._thresholds)
            document = self.requirements.insert_version(
                repo_full_name,
                work_item_id,
                red_json,
                status=_status_for(validation),
                failures=validation.failures,
                validated_at=validation.validated_at,
            )
            self._logger.info(
                "requirements_document_inserted",
                red_id=document.red_id,
                version=document.version,
                validation_status=document.validation_status.value,
                failure_count=len(validation.failures),
            )
            return RequirementsOutcome(document=document, validation=validation)

    def validate_requirements_document(self, red_id: str) -> RequirementsOutcome:
        """Re-run the gate over a stored RED and record the verdict; the document is unchanged."""
        document = self.requirements.get(red_id)
        if document is None:
            raise NotFoundError(f"requirements document not found: {red_id}")
        with correlation_scope(work_item_id=document.work_item_id):
            validation = validate_requirements_document(
                document.red_json, thresholds=self._thresholds
            )
            updated = self.requirements.record_validation(
                red_id,
                _status_for(validation),
                validation.failures,
                validated_at=validation.validated_at,
            )
            self._logger.info(
                "requirements_document_validated",
                red_id=red_id,
                validation_status=updated.validation_status.value,
                failure_count=len(validation.failures),
            )
            return RequirementsOutcome(document=updated, validation=validation)

    # ------------------------------------------------------------------
    # Instructions

    def import_instructions(
        self, repo_full_name: str, directory: str | os.PathLike[str] | None = None
    ) -> ImportedInstructions:
        source = directory if directory is not None else self._config["paths"]["instructions_dir"]
        loaded = load_instruction_dir(repo_full_name, source)
        for instruction in loaded:
            self.instructions.upsert(instruction)
        self._logger.info(
            "instructions_imported",
            repo_full_name=repo_full_name,
            count=len(loaded),
            directory=os.fspath(source),
        )
        return ImportedInstructions(repo_full_name=repo_full_name, instructions=tuple(loaded))

    # ------------------------------------------------------------------
    # Cold-start checks

    def run_cold_start_check(
        self,
        *,
        bundle_id: str | None = None,
        work_item_id: str | None = None,
        role: str | None = None,
        repo_full_name: str | None = None,
    ) -> ContinuityCheckRecord:
        """
        Rebuild a stored bundle from its receipt alone and record the verdict.

        The target is ``bundle_id`` when given, else the newest bundle matching
        the other filters, else the newest bundle overall.
        """
        run_at = datetime.now(tz=UTC)
        if bundle_id is not None:
            record = self.bundles.get(bundle_id)
        else:
            record = self.bundles.get_latest(
                repo_full_name=repo_full_name, work_item_id=work_item_id, role=role
            )

        if record is None:
            target = bundle_id or "matching the given filters"
            return self._record_check(
                ContinuityCheckRecord(
                    check_id=new_id(IdKind.CONTINUITY_CHECK),
                    bundle_id=bundle_id,
                    run_at=run_at,
                    verdict=ContinuityVerdict.FAIL,
                    failure_reason=ColdStartFailure.MISSING_RECEIPT,
                    summary=f"No bundle found {target}",
                    details={
                        "repo_full_name": repo_full_name,
                        "work_item_id": work_item_id,
                        "role": role,
                    },
                )
            )

        receipt = self.bundles.get_receipt_for_bundle(record.bundle_id)
        if receipt is None:
            return self._record_check(
                ContinuityCheckRecord(
                    check_id=new_id(IdKind.CONTINUITY_CHECK),
                    bundle_id=record.bundle_id,
                    run_at=run_at,
                    verdict=ContinuityVerdict.FAIL,
                    failure_reason=ColdStartFailure.MISSING_RECEIPT,
                    summary=f"No receipt found for bundle {record.bundle_id}",
                    details={"work_item_id": record.work_item_id, "role": record.role},
                )
            )

        with correlation_scope(
            work_item_id=record.work_item_id, role=record.role, bundle_id=record.bundle_id
        ):
            report = self.verifier.verify(receipt)
            verdict = cold_start_verdict(report)
            return self._record_check(
                ContinuityCheckRecord(
                    check_id=new_id(IdKind.CONTINUITY_CHECK),
                    bundle_id=record.bundle_id,
                    run_at=run_at,
                    verdict=verdict.verdict,
                    failure_reason=verdict.failure_reason,
                    summary=verdict.summary,
                    details=_json_details(report.to_dict()),
                )
            )

    def list_continuity_checks(self, *, limit: int = 20) -> list[ContinuityCheckRecord]:
        return self.continuity_checks.list_recent(limit=limit)

    def _record_check(self, check: ContinuityCheckRecord) -> ContinuityCheckRecord:
        stored = self.continuity_checks.add(check)
        log = self._logger.info if stored.passed else self._logger.warning
        log(
            "cold_start_check_recorded",
            check_id=stored.check_id,
            bundle_id=stored.bundle_id,
            verdict=stored.verdict.value,
            failure_reason=None if stored.failure_reason is None else stored.failure_reason.value,
        )
        return stored


def _status_for(validation: ValidationResult) -> ValidationStatus:
    return ValidationStatus.VALID if validation.passed else ValidationStatus.INVALID


def _json_details(payload: Mapping[str, object]) -> dict[str, JSONValue]:
    # Report payloads are plain dict/list/str/int/bool/None trees already.
    return {key: _as_json(value) for key, value in payload.items()}


def _as_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _as_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_as_json(item) for item in value]
    return str(value)


__all__ = [
    "BundleService",
    "GenerateOutcome",
    "ImportedInstructions",
    "NotFoundError",
    "PinResult",
    "PreviewOutcome",
    "RequirementsOutcome",
]
