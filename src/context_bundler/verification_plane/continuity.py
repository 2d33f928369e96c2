"""
context-bundler — continuity verifier

File: src/context_bundler/verification_plane/continuity.py
Last updated: 2026-02-15

Purpose
- Prove a stored bundle is reproducible: rebuild it from nothing but its
  receipt's references and compare checksums.

Normative behavior
- The rebuild pins the RED version, the manifest version (or no manifest when
  the receipt has none), the change ref, the artifact list and ``created_at``.
- Checksum and RED-reference mismatches are errors. A missing RED or manifest
  reference, or a manifest that no longer resolves, is a warning.
- ``passed = checksum_match and not errors``.
- Agent-run continuity is informational: zero, one or several runs for the
  role all keep ``continuity_maintained``; only the explanation differs.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Final

import structlog

from context_bundler.constants import agent_type_for_role
from context_bundler.domain.models import (
    AgentRun,
    BundleReceipt,
    ColdStartFailure,
    ContinuityVerdict,
)
from context_bundler.integration_plane.sources import AgentRunStore, SourceName
from context_bundler.persistence.repositories import BundleRepo
from context_bundler.synthesis_plane.bundle_builder import (
    BuildError,
    BuildRequest,
    BundleBuilder,
)
from context_bundler.utils.canonical import bundle_checksum

CHECKSUM_PREVIEW_CHARS: Final[int] = 16
AGENT_RUN_LIMIT: Final[int] = 10


class RunContinuityCase(StrEnum):
    NO_RUNS = "no_runs"
    SINGLE_RUN = "single_run"
    MULTIPLE_RESUMABLE_RUNS = "multiple_resumable_runs"


@dataclass(frozen=True, slots=True)
class RunIdContinuity:
    case: RunContinuityCase
    continuity_maintained: bool
    run_ids: tuple[str, ...]
    explanation: str

    @property
    def original_run_id(self) -> str | None:
        return self.run_ids[-1] if self.run_ids else None

    @property
    def resumed_run_id(self) -> str | None:
        return self.run_ids[0] if self.run_ids else None

    def to_dict(self) -> dict[str, object]:
        return {
            "case": self.case.value,
            "continuity_maintained": self.continuity_maintained,
            "run_ids": list(self.run_ids),
            "original_run_id": self.original_run_id,
            "resumed_run_id": self.resumed_run_id,
            "explanation": self.explanation,
        }


@dataclass(frozen=True, slots=True)
class ContinuityReport:
    receipt_id: str
    bundle_id: str
    passed: bool
    checksum_match: bool
    original_checksum: str
    rebuilt_checksum: str | None
    run_id_continuity: RunIdContinuity
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    bundle_checksum_match: bool = False
    manifest_reference_resolved: bool = True
    artifacts_resolved: bool = True
    rebuild_error: dict[str, object] | None = None
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "receipt_id": self.receipt_id,
            "bundle_id": self.bundle_id,
            "passed": self.passed,
            "checksum_match": self.checksum_match,
            "bundle_checksum_match": self.bundle_checksum_match,
            "original_checksum": self.original_checksum,
            "rebuilt_checksum": self.rebuilt_checksum,
            "run_id_continuity": self.run_id_continuity.to_dict(),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "rebuild_error": self.rebuild_error,
            "details": dict(self.details),
        }


@dataclass(frozen=True, slots=True)
class ColdStartVerdict:
    verdict: ContinuityVerdict
    failure_reason: ColdStartFailure | None
    summary: str


class ContinuityVerifier:
    """Rebuild bundles from receipts and compare them to what was stored."""

    def __init__(
        self,
        *,
        builder: BundleBuilder,
        bundles: BundleRepo,
        agent_runs: AgentRunStore | None = None,
        logger: Any | None = None,
    ) -> None:
        self._builder = builder
        self._bundles = bundles
        self._agent_runs = agent_runs
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def verify(self, receipt: BundleReceipt) -> ContinuityReport:
        return asyncio.run(self.verify_async(receipt))

    async def verify_async(self, receipt: BundleReceipt) -> ContinuityReport:
        record = await asyncio.to_thread(self._bundles.get, receipt.bundle_id)
        run_continuity = await asyncio.to_thread(
            self._run_continuity, receipt.work_item_id, receipt.role
        )
        base: dict[str, Any] = {
            "receipt_id": receipt.receipt_id,
            "bundle_id": receipt.bundle_id,
            "original_checksum": receipt.content_checksum,
            "run_id_continuity": run_continuity,
        }
        if record is None:
            return self._finish(
                ContinuityReport(
                    passed=False,
                    checksum_match=False,
                    rebuilt_checksum=None,
                    errors=(f"Bundle {receipt.bundle_id} referenced by the receipt was not found",),
                    **base,
                )
            )

        warnings: list[str] = []
        if receipt.red_reference is None:
            warnings.append(
                "Receipt missing RED reference - bundle may not be fully reconstructible"
            )
        if receipt.integration_manifest_reference is None:
            warnings.append(
                "Receipt missing Integration Manifest reference - "
                "bundle may not be fully reconstructible"
            )

        request = BuildRequest(
            repo_full_name=record.repo_full_name,
            work_item_id=receipt.work_item_id,
            role=receipt.role,
            selected_artifact_ids=tuple(receipt.artifact_references),
            change_ref=receipt.change_ref,
            red_reference=receipt.red_reference,
            manifest_reference=receipt.integration_manifest_reference,
            resolve_latest_manifest=False,
            created_at=receipt.created_at,
        )
        details: dict[str, object] = {
            "work_item_id": receipt.work_item_id,
            "role": receipt.role,
            "repo_full_name": record.repo_full_name,
            "version": record.version,
            "rebuilt_from": {
                "red_reference": _optional_dict(receipt.red_reference),
                "integration_manifest_reference": _optional_dict(
                    receipt.integration_manifest_reference
                ),
                "change_ref": _optional_dict(receipt.change_ref),
                "artifact_references": list(receipt.artifact_references),
            },
        }

        result = await self._builder.build_async(request, cache_distillations=False)
        if isinstance(result, BuildError):
            return self._finish(
                ContinuityReport(
                    passed=False,
                    checksum_match=False,
                    rebuilt_checksum=None,
                    errors=(result.message,),
                    warnings=tuple(warnings),
                    rebuild_error=result.to_dict(),
                    details=details,
                    **base,
                )
            )

        errors: list[str] = []
        checksum_match = result.content_checksum == receipt.content_checksum
        if not checksum_match:
            errors.append(
                "Content checksum mismatch: "
                f"original={_preview(receipt.content_checksum)}..., "
                f"rebuilt={_preview(result.content_checksum)}..."
            )
        rebuilt_bundle_checksum = bundle_checksum(
            result.bundle,
            repo_full_name=record.repo_full_name,
            ticket_pk=record.work_item_id,
            ticket_id=record.work_item_id,
            role=record.role,
            version=record.version,
        )
        bundle_checksum_match = rebuilt_bundle_checksum == receipt.bundle_checksum
        if not bundle_checksum_match:
            errors.append(
                "Bundle checksum mismatch: "
                f"original={_preview(receipt.bundle_checksum)}..., "
                f"rebuilt={_preview(rebuilt_bundle_checksum)}..."
            )

        if receipt.red_reference is not None and result.red_reference != receipt.red_reference:
            errors.append(
                f"RED reference mismatch: receipt={receipt.red_reference.red_id} "
                f"v{receipt.red_reference.version}, rebuilt={result.red_reference.red_id} "
                f"v{result.red_reference.version}"
            )

        expected_manifest = receipt.integration_manifest_reference
        manifest_resolved = True
        if expected_manifest is not None and result.manifest_reference != expected_manifest:
            manifest_resolved = False
            rebuilt = result.manifest_reference
            warnings.append(
                "Integration Manifest version mismatch: "
                f"receipt={expected_manifest.manifest_id} v{expected_manifest.version}, "
                + (
                    "rebuilt=none"
                    if rebuilt is None
                    else f"rebuilt={rebuilt.manifest_id} v{rebuilt.version}"
                )
                + " (this may be expected if manifest was updated)"
            )

        artifacts_resolved = result.artifact_references == tuple(
            receipt.artifact_references
        ) and not any(reason.source is SourceName.ARTIFACTS for reason in result.degraded)
        details["degraded"] = [reason.to_dict() for reason in result.degraded]
        details["rebuilt_artifact_references"] = list(result.artifact_references)
        details["rebuilt_bundle_checksum"] = rebuilt_bundle_checksum

        return self._finish(
            ContinuityReport(
                passed=checksum_match and not errors,
                checksum_match=checksum_match,
                rebuilt_checksum=result.content_checksum,
                errors=tuple(errors),
                warnings=tuple(warnings),
                bundle_checksum_match=bundle_checksum_match,
                manifest_reference_resolved=manifest_resolved,
                artifacts_resolved=artifacts_resolved,
                details=details,
                **base,
            )
        )

    def _run_continuity(self, work_item_id: str, role: str) -> RunIdContinuity:
        agent_type = agent_type_for_role(role)
        runs: list[AgentRun] = []
        if self._agent_runs is not None:
            runs = self._agent_runs.list_for_work_item(
                work_item_id, agent_type=agent_type, limit=AGENT_RUN_LIMIT
            )
        return run_id_continuity(runs, role=role)

    def _finish(self, report: ContinuityReport) -> ContinuityReport:
        log = self._logger.info if report.passed else self._logger.warning
        log(
            "continuity_verified",
            receipt_id=report.receipt_id,
            bundle_id=report.bundle_id,
            passed=report.passed,
            checksum_match=report.checksum_match,
            error_count=len(report.errors),
            warning_count=len(report.warnings),
        )
        return report


def run_id_continuity(runs: list[AgentRun], *, role: str) -> RunIdContinuity:
    """Classify agent runs (newest first) for the role's agent type."""
    run_ids = tuple(run.run_id for run in runs)
    if not run_ids:
        return RunIdContinuity(
            case=RunContinuityCase.NO_RUNS,
            continuity_maintained=True,
            run_ids=(),
            explanation=(
                f"No agent runs found for role {role} (agent_type {agent_type_for_role(role)}). "
                "Continuity check passed (no runs to verify)."
            ),
        )
    if len(run_ids) == 1:
        return RunIdContinuity(
            case=RunContinuityCase.SINGLE_RUN,
            continuity_maintained=True,
            run_ids=run_ids,
            explanation=(
                f"Single agent run found ({run_ids[0]}). "
                "Continuity maintained - no new unrelated run created."
            ),
        )
    return RunIdContinuity(
        case=RunContinuityCase.MULTIPLE_RESUMABLE_RUNS,
        continuity_maintained=True,
        run_ids=run_ids,
        explanation=(
            f"Multiple agent runs found ({len(run_ids)} total). Most recent run {run_ids[0]} "
            "would be resumed. This is acceptable for continuation scenarios."
        ),
    )


def cold_start_verdict(report: ContinuityReport) -> ColdStartVerdict:
    """Collapse a continuity report into the PASS/FAIL record of a cold-start check."""
    if report.rebuild_error is not None:
        return ColdStartVerdict(
            verdict=ContinuityVerdict.FAIL,
            failure_reason=ColdStartFailure.CHECKSUM_MISMATCH,
            summary=f"Failed to rebuild bundle: {report.errors[0] if report.errors else 'unknown'}",
        )

    reason: ColdStartFailure | None = None
    issues: list[str] = []
    if not report.checksum_match or not report.bundle_checksum_match:
        reason = ColdStartFailure.CHECKSUM_MISMATCH
        issues.extend(error for error in report.errors if "checksum mismatch" in error)
    if not report.manifest_reference_resolved:
        reason = reason or ColdStartFailure.MISSING_MANIFEST_REFERENCE
        issues.append("Missing manifest reference in rebuilt bundle")
    if not report.artifacts_resolved:
        reason = reason or ColdStartFailure.ARTIFACT_VERSION_MISMATCH
        issues.append("Referenced artifacts could not all be resolved")
    remaining = [
        error
        for error in report.errors
        if "checksum mismatch" not in error and error not in issues
    ]
    if remaining:
        reason = reason or ColdStartFailure.CHECKSUM_MISMATCH
        issues.extend(remaining)

    if reason is None:
        return ColdStartVerdict(
            verdict=ContinuityVerdict.PASS,
            failure_reason=None,
            summary="All checks passed: checksums match and manifest references are consistent",
        )
    return ColdStartVerdict(
        verdict=ContinuityVerdict.FAIL,
        failure_reason=reason,
        summary=f"Check failed: {'; '.join(issues)}",
    )


def _preview(value: str) -> str:
    return value[:CHECKSUM_PREVIEW_CHARS]


def _optional_dict(value: Any) -> dict[str, object] | None:
    return None if value is None else value.to_dict()


__all__ = [
    "ColdStartVerdict",
    "ContinuityReport",
    "ContinuityVerifier",
    "RunContinuityCase",
    "RunIdContinuity",
    "cold_start_verdict",
    "run_id_continuity",
]
