"""
context-bundler — bundle builder

File: src/context_bundler/synthesis_plane/bundle_builder.py
Last updated: 2026-02-14

Purpose
- Assemble one context bundle for a (work item, role) pair from the stored
  requirements document, integration manifest, change request, artifacts and
  instruction files; checksum it, measure it against the role budget and
  persist it with its receipt.

Sources
- The latest valid requirements document is a hard prerequisite. Without one
  nothing else is fetched.
- Manifest, diff, changed files, artifacts and instructions are fetched
  concurrently, each as a ``SourceResult``. A degraded source narrows the
  bundle and is reported beside it, never inside it, so it cannot affect the
  checksum.

Rebuilds
- A request that pins ``red_reference``, ``manifest_reference``,
  ``selected_artifact_ids`` and ``created_at`` reproduces the bundle a receipt
  describes, provided the referenced sources are unchanged.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Final, TypeVar, cast

import structlog

from context_bundler.constants import DEFAULT_MANIFEST_SCHEMA_VERSION, agent_type_for_role
from context_bundler.control_plane.budgets import BudgetReport, BudgetTable
from context_bundler.domain.ids import IdKind, new_id
from context_bundler.domain.models import (
    ArtifactCandidate,
    BudgetSnapshot,
    BundleReceipt,
    BundleRecord,
    ChangeRef,
    DistilledArtifact,
    Instruction,
    IntegrationManifest,
    JSONValue,
    ManifestReference,
    RedReference,
    RequirementsDocument,
    iso8601z,
)
from context_bundler.integration_plane.sources import (
    ArtifactStore,
    ChangedFilesResult,
    ChangeRequestProvider,
    DegradedReason,
    DiffResult,
    Distiller,
    InstructionStore,
    ManifestStore,
    NullDistiller,
    PinStore,
    RequirementsStore,
    SourceName,
    SourceResult,
)
from context_bundler.knowledge_plane.scoring import (
    ScoredArtifact,
    ScoringOptions,
    SelectionInvariantError,
    rank_candidates,
    select_artifacts,
)
from context_bundler.persistence.repositories import BundleRepo
from context_bundler.synthesis_plane.distillation import distill_candidates
from context_bundler.synthesis_plane.repo_context import (
    build_repo_context,
    empty_repo_context,
    recent_deltas_from_diff,
)
from context_bundler.utils.canonical import (
    bundle_checksum,
    calculate_section_metrics,
    calculate_total_characters,
    content_checksum,
    section_breakdown,
    serialized_length,
)

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

T = TypeVar("T")

# Length of the hex digest written into ``meta.content_checksum``.
CHECKSUM_HEX_LENGTH: Final[int] = 64
TICKET_LIST_FIELDS: Final[tuple[str, ...]] = (
    "acceptance_criteria",
    "out_of_scope",
    "definition_of_done",
)
_BUILDER_KEYS: Final[tuple[str, ...]] = (
    "artifact_scan_limit",
    "repo_context_max_files",
    "excerpt_max_chars",
    "delta_summary_max_chars",
    "distill_concurrency",
    "version_retry_limit",
    "manifest_schema_version",
)


class BuildErrorKind(StrEnum):
    NO_VALID_REQUIREMENTS_DOCUMENT = "no_valid_requirements_document"
    UNKNOWN_ROLE = "unknown_role"
    VERSION_CONFLICT = "version_conflict"
    BUDGET_EXCEEDED = "budget_exceeded"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True, slots=True)
class BuildError:
    """Structured, fatal-to-operation outcome of a build or persist call."""

    kind: BuildErrorKind
    message: str
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind.value, "message": self.message, "details": dict(self.details)}


@dataclass(frozen=True, slots=True)
class BuilderOptions:
    artifact_scan_limit: int = 20
    repo_context_max_files: int = 5
    excerpt_max_chars: int = 300
    delta_summary_max_chars: int = 500
    distill_concurrency: int = 3
    version_retry_limit: int = 3
    manifest_schema_version: str = DEFAULT_MANIFEST_SCHEMA_VERSION
    max_artifacts: int = 10
    selection: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.artifact_scan_limit <= 0:
            raise ValueError("artifact_scan_limit must be > 0")
        if self.distill_concurrency <= 0:
            raise ValueError("distill_concurrency must be > 0")
        if self.version_retry_limit <= 0:
            raise ValueError("version_retry_limit must be > 0")
        if self.max_artifacts < 0:
            raise ValueError("max_artifacts must be >= 0")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> BuilderOptions:
        """Read ``[builder]`` and ``[selection]`` from a validated config."""
        builder = config.get("builder") or {}
        selection = config.get("selection") or {}
        values: dict[str, Any] = {key: builder[key] for key in _BUILDER_KEYS if key in builder}
        if "max_artifacts" in selection:
            values["max_artifacts"] = int(selection["max_artifacts"])
        return cls(selection=dict(selection), **values)


@dataclass(frozen=True, slots=True)
class BuildRequest:
    repo_full_name: str
    work_item_id: str
    role: str
    selected_artifact_ids: tuple[str, ...] | None = None
    change_ref: ChangeRef | None = None
    retrieval_query: str = ""
    max_artifacts: int | None = None
    red_reference: RedReference | None = None
    manifest_reference: ManifestReference | None = None
    resolve_latest_manifest: bool = True
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        for name in ("repo_full_name", "work_item_id", "role"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"BuildRequest.{name} must be a non-empty string")
        if self.selected_artifact_ids is not None and not isinstance(
            self.selected_artifact_ids, tuple
        ):
            raise TypeError("BuildRequest.selected_artifact_ids must be a tuple or None")
        if self.max_artifacts is not None and self.max_artifacts < 0:
            raise ValueError("BuildRequest.max_artifacts must be >= 0")


@dataclass(frozen=True, slots=True)
class BuildResult:
    request: BuildRequest
    bundle: dict[str, JSONValue]
    content_checksum: str
    created_at: datetime
    red_reference: RedReference
    manifest_reference: ManifestReference | None
    artifact_references: tuple[str, ...]
    ranking: tuple[ScoredArtifact, ...] = ()
    degraded: tuple[DegradedReason, ...] = ()

    @property
    def section_metrics(self) -> dict[str, int]:
        return calculate_section_metrics(self.bundle)


class BundleBuilder:
    """Deterministic context bundle builder over narrow source interfaces."""

    def __init__(
        self,
        *,
        requirements: RequirementsStore,
        manifests: ManifestStore,
        artifacts: ArtifactStore,
        instructions: InstructionStore,
        pins: PinStore | None = None,
        bundles: BundleRepo | None = None,
        change_provider: ChangeRequestProvider | None = None,
        distiller: Distiller | None = None,
        budgets: BudgetTable | None = None,
        options: BuilderOptions | None = None,
        logger: Any | None = None,
    ) -> None:
        self._requirements = requirements
        self._manifests = manifests
        self._artifacts = artifacts
        self._instructions = instructions
        self._pins = pins
        self._bundles = bundles
        self._change_provider = change_provider
        self._distiller: Distiller = distiller if distiller is not None else NullDistiller()
        self._budgets = budgets if budgets is not None else BudgetTable.default()
        self._options = options or BuilderOptions()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def budgets(self) -> BudgetTable:
        return self._budgets

    @property
    def options(self) -> BuilderOptions:
        return self._options

    def build(
        self, request: BuildRequest, *, cache_distillations: bool = True
    ) -> BuildResult | BuildError:
        """Synchronous wrapper around :meth:`build_async`."""
        return asyncio.run(self.build_async(request, cache_distillations=cache_distillations))

    async def build_async(
        self, request: BuildRequest, *, cache_distillations: bool = True
    ) -> BuildResult | BuildError:
        """
        Assemble and checksum a bundle without persisting it.

        New distillations are written back to the artifact store unless
        ``cache_distillations`` is False.
        """
        if self._budgets.get(request.role) is None:
            return self._reject(
                BuildErrorKind.UNKNOWN_ROLE,
                f"Unknown role: {request.role}",
                request,
                known_roles=list(self._budgets.roles),
            )

        red = await asyncio.to_thread(self._resolve_requirements, request)
        if red is None:
            return self._reject(
                BuildErrorKind.NO_VALID_REQUIREMENTS_DOCUMENT,
                f"No valid RED found for work item {request.work_item_id}. "
                "Bundle builder requires a valid RED document.",
                request,
                red_reference=(
                    None if request.red_reference is None else request.red_reference.to_dict()
                ),
            )

        manifest, diff, changed, candidates, instructions = await asyncio.gather(
            self._fetch_manifest(request),
            self._fetch_diff(request),
            self._fetch_changed_files(request),
            self._fetch_artifacts(request),
            self._fetch_instructions(request),
        )
        degraded = [
            result.degraded
            for result in (manifest, diff, changed, candidates, instructions)
            if result.degraded is not None
        ]

        ready, distill_degraded = await self._distill(
            candidates.value or (), cache=cache_distillations
        )
        degraded.extend(distill_degraded)

        created_at = _to_milliseconds(request.created_at or datetime.now(tz=UTC))
        sections: dict[str, Any] = {
            "request": request,
            "red": red,
            "manifest": manifest.value,
            "created_at": created_at,
            "recent_deltas": self._recent_deltas(diff.value),
            "repo_context": self._repo_context(request.repo_full_name, changed.value),
            "instructions": instructions.value or (),
        }
        headroom = self.artifact_headroom(request.role, assemble_bundle(artifacts=(), **sections))
        ranked = self.rank(request, ready, now=created_at, headroom=headroom)
        if isinstance(ranked, BuildError):
            return ranked
        ranking, chosen = ranked

        bundle = assemble_bundle(artifacts=chosen, **sections)
        checksum = content_checksum(bundle)
        meta = cast("dict[str, JSONValue]", bundle["meta"])
        meta["content_checksum"] = checksum

        for reason in degraded:
            self._logger.warning(
                "bundle_source_degraded",
                work_item_id=request.work_item_id,
                role=request.role,
                source=reason.source.value,
                code=reason.code,
                reason=reason.message,
            )
        self._logger.info(
            "bundle_assembled",
            work_item_id=request.work_item_id,
            role=request.role,
            red_version=red.version,
            artifact_count=len(chosen),
            degraded_sources=len(degraded),
            content_checksum=checksum,
        )
        return BuildResult(
            request=request,
            bundle=bundle,
            content_checksum=checksum,
            created_at=created_at,
            red_reference=red.reference,
            manifest_reference=None if manifest.value is None else manifest.value.reference,
            artifact_references=tuple(candidate.artifact_id for candidate in chosen),
            ranking=ranking,
            degraded=tuple(degraded),
        )

    def artifact_headroom(self, role: str, base_bundle: Mapping[str, object]) -> int:
        """Characters left for ``relevant_artifacts`` once every other section is laid out.

        ``base_bundle`` has no artifacts and a blank ``meta.content_checksum``;
        the digest that fills it in is counted here.
        """
        used = serialized_length(base_bundle) + CHECKSUM_HEX_LENGTH
        return self._budgets.require(role).hard_limit - used

    def evaluate_budget(self, result: BuildResult) -> BudgetReport:
        """Measure the exact serialized payload against the role's hard limit."""
        return self._budgets.evaluate(result.request.role, serialized_length(result.bundle))

    def persist(self, result: BuildResult) -> tuple[BundleRecord, BundleReceipt] | BuildError:
        """
        Store ``result`` as the next version for its (repo, work item, role).

        Over-budget bundles are rejected with the per-section breakdown. A
        version collision is retried up to ``version_retry_limit`` attempts.
        """
        if self._bundles is None:
            raise RuntimeError("BundleBuilder was created without a bundle store")
        report = self.evaluate_budget(result)
        if report.exceeds:
            return self.budget_error(result, report)

        request = result.request
        metrics = result.section_metrics
        snapshot = BudgetSnapshot(
            character_count=report.character_count,
            hard_limit=report.hard_limit,
            role=report.role,
        )

        def compose(version: int) -> tuple[BundleRecord, BundleReceipt]:
            bundle_id = new_id(IdKind.BUNDLE)
            stored_checksum = bundle_checksum(
                result.bundle,
                repo_full_name=request.repo_full_name,
                ticket_pk=request.work_item_id,
                ticket_id=request.work_item_id,
                role=request.role,
                version=version,
            )
            record = BundleRecord(
                bundle_id=bundle_id,
                repo_full_name=request.repo_full_name,
                work_item_id=request.work_item_id,
                role=request.role,
                version=version,
                bundle_json=result.bundle,
                content_checksum=result.content_checksum,
                bundle_checksum=stored_checksum,
                created_at=result.created_at,
            )
            receipt = BundleReceipt(
                receipt_id=new_id(IdKind.RECEIPT),
                bundle_id=bundle_id,
                work_item_id=request.work_item_id,
                role=request.role,
                content_checksum=result.content_checksum,
                bundle_checksum=stored_checksum,
                section_metrics=metrics,
                total_characters=calculate_total_characters(metrics),
                budget=snapshot,
                created_at=result.created_at,
                red_reference=result.red_reference,
                integration_manifest_reference=result.manifest_reference,
                change_ref=request.change_ref,
                artifact_references=result.artifact_references,
            )
            return record, receipt

        attempts = self._options.version_retry_limit
        for attempt in range(1, attempts + 1):
            try:
                record, receipt = self._bundles.insert_next_version(
                    request.repo_full_name, request.work_item_id, request.role, compose
                )
            except sqlite3.IntegrityError as exc:
                self._logger.warning(
                    "bundle_version_collision",
                    work_item_id=request.work_item_id,
                    role=request.role,
                    attempt=attempt,
                    attempts=attempts,
                    error=str(exc),
                )
                continue
            self._logger.info(
                "bundle_persisted",
                bundle_id=record.bundle_id,
                receipt_id=receipt.receipt_id,
                work_item_id=record.work_item_id,
                role=record.role,
                version=record.version,
                character_count=report.character_count,
            )
            return record, receipt

        return self._reject(
            BuildErrorKind.VERSION_CONFLICT,
            f"Could not allocate a bundle version after {attempts} attempts",
            request,
            attempts=attempts,
        )

    def budget_error(self, result: BuildResult, report: BudgetReport) -> BuildError:
        return self._reject(
            BuildErrorKind.BUDGET_EXCEEDED,
            f"Bundle exceeds character budget for {report.display_name}: "
            f"{report.character_count} > {report.hard_limit} (over by {report.overage})",
            result.request,
            character_count=report.character_count,
            hard_limit=report.hard_limit,
            overage=report.overage,
            section_breakdown=section_breakdown(result.bundle),
        )

    # ------------------------------------------------------------------
    # Sources

    def _resolve_requirements(self, request: BuildRequest) -> RequirementsDocument | None:
        reference = request.red_reference
        if reference is None:
            return self._requirements.get_latest_valid(request.repo_full_name, request.work_item_id)
        document = self._requirements.get_version(
            request.repo_full_name, request.work_item_id, reference.version
        )
        if document is None or document.red_id != reference.red_id:
            return None
        return document

    async def _fetch(
        self, source: SourceName, call: Callable[[], T | None], *, missing: str
    ) -> SourceResult[T]:
        try:
            value = await asyncio.to_thread(call)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "bundle_source_failed",
                source=source.value,
                error=f"{type(exc).__name__}: {exc}",
            )
            return SourceResult.degrade(source, "fetch_failed", str(exc) or type(exc).__name__)
        if value is None:
            return SourceResult.degrade(source, "not_found", missing)
        return SourceResult.ok(value)

    async def _fetch_manifest(self, request: BuildRequest) -> SourceResult[IntegrationManifest]:
        repo = request.repo_full_name
        reference = request.manifest_reference
        if reference is not None:
            result = await self._fetch(
                SourceName.MANIFEST,
                lambda: self._manifests.get_version(
                    repo, reference.version, reference.schema_version
                ),
                missing=f"manifest version {reference.version} ({reference.schema_version}) "
                f"not found for {repo}",
            )
            if result.value is not None and result.value.manifest_id != reference.manifest_id:
                return SourceResult.degrade(
                    SourceName.MANIFEST,
                    "reference_mismatch",
                    f"manifest version {reference.version} is {result.value.manifest_id}, "
                    f"expected {reference.manifest_id}",
                )
            return result
        if not request.resolve_latest_manifest:
            return SourceResult()
        schema_version = self._options.manifest_schema_version
        return await self._fetch(
            SourceName.MANIFEST,
            lambda: self._manifests.get_latest(repo, schema_version),
            missing=f"no integration manifest ({schema_version}) for {repo}",
        )

    async def _fetch_diff(self, request: BuildRequest) -> SourceResult[DiffResult]:
        ref = request.change_ref
        if ref is None:
            return SourceResult()
        provider = self._change_provider
        if provider is None:
            return SourceResult.degrade(
                SourceName.DIFF, "not_configured", "no change-request provider configured"
            )
        return await self._fetch(
            SourceName.DIFF, lambda: provider.get_diff(ref), missing="diff unavailable"
        )

    async def _fetch_changed_files(
        self, request: BuildRequest
    ) -> SourceResult[ChangedFilesResult]:
        ref = request.change_ref
        if ref is None:
            return SourceResult()
        provider = self._change_provider
        if provider is None:
            return SourceResult.degrade(
                SourceName.CHANGED_FILES, "not_configured", "no change-request provider configured"
            )
        return await self._fetch(
            SourceName.CHANGED_FILES,
            lambda: provider.get_changed_files(ref),
            missing="changed files unavailable",
        )

    async def _fetch_artifacts(
        self, request: BuildRequest
    ) -> SourceResult[tuple[ArtifactCandidate, ...]]:
        result = await self._fetch(
            SourceName.ARTIFACTS,
            lambda: self.load_candidates(request),
            missing="artifact store returned nothing",
        )
        wanted = request.selected_artifact_ids
        if wanted is None or result.value is None:
            return result
        found = {candidate.artifact_id for candidate in result.value}
        absent = [artifact_id for artifact_id in wanted if artifact_id not in found]
        if not absent:
            return result
        return SourceResult(
            value=result.value,
            degraded=DegradedReason(
                source=SourceName.ARTIFACTS,
                code="not_found",
                message=f"artifacts not found: {', '.join(absent)}",
            ),
        )

    def load_candidates(self, request: BuildRequest) -> tuple[ArtifactCandidate, ...]:
        """Explicitly selected artifacts in request order, else the newest ones plus pins."""
        wanted = request.selected_artifact_ids
        if wanted is not None:
            found = self._artifacts.get_many(wanted)
            return tuple(found[artifact_id] for artifact_id in wanted if artifact_id in found)

        listed = self._artifacts.list_for_work_item(
            request.work_item_id, limit=self._options.artifact_scan_limit
        )
        pinned = (
            frozenset()
            if self._pins is None
            else self._pins.pinned_artifact_ids(request.work_item_id, request.role)
        )
        # Pins outside the scan window are still candidates.
        listed_ids = {candidate.artifact_id for candidate in listed}
        extra_ids = sorted(pinned - listed_ids)
        extra = self._artifacts.get_many(extra_ids) if extra_ids else {}
        candidates = [*listed, *(extra[key] for key in extra_ids if key in extra)]
        return tuple(
            replace(candidate, pinned=candidate.artifact_id in pinned) for candidate in candidates
        )

    async def _fetch_instructions(
        self, request: BuildRequest
    ) -> SourceResult[tuple[Instruction, ...]]:
        agent_type = agent_type_for_role(request.role)
        result = await self._fetch(
            SourceName.INSTRUCTIONS,
            lambda: self._instructions.list_for_repo(request.repo_full_name),
            missing="instruction store returned nothing",
        )
        if result.value is None:
            return SourceResult(value=(), degraded=result.degraded)
        applicable = tuple(
            instruction
            for instruction in sorted(result.value, key=lambda item: item.filename)
            if instruction.applies_to(agent_type)
        )
        if applicable:
            return SourceResult.ok(applicable)
        return SourceResult(
            value=(),
            degraded=DegradedReason(
                source=SourceName.INSTRUCTIONS,
                code="empty",
                message=f"no instructions apply to {request.role} in {request.repo_full_name}",
            ),
        )

    # ------------------------------------------------------------------
    # Artifacts

    async def _distill(
        self, candidates: Sequence[ArtifactCandidate], *, cache: bool
    ) -> tuple[list[ArtifactCandidate], list[DegradedReason]]:
        outcomes = await distill_candidates(
            candidates,
            self._distiller,
            max_concurrency=self._options.distill_concurrency,
            logger=self._logger,
        )
        ready: list[ArtifactCandidate] = []
        degraded: list[DegradedReason] = []
        for candidate, outcome in zip(candidates, outcomes, strict=True):
            if outcome.distilled is None:
                # Scored and bundled on its raw title and body.
                degraded.append(
                    DegradedReason(
                        source=SourceName.DISTILLATION,
                        code="distillation_failed",
                        message=f"{candidate.artifact_id}: {outcome.error}",
                    )
                )
                ready.append(candidate)
                continue
            if cache and not outcome.cached:
                await self._cache_distillation(candidate.artifact_id, outcome.distilled)
            ready.append(replace(candidate, distilled=outcome.distilled))
        return ready, degraded

    async def _cache_distillation(self, artifact_id: str, distilled: DistilledArtifact) -> None:
        try:
            await asyncio.to_thread(self._artifacts.record_distillation, artifact_id, distilled)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "artifact_distillation_cache_failed",
                artifact_id=artifact_id,
                error=f"{type(exc).__name__}: {exc}",
            )

    def rank(
        self,
        request: BuildRequest,
        ready: Sequence[ArtifactCandidate],
        *,
        now: datetime,
        headroom: int | None = None,
    ) -> tuple[tuple[ScoredArtifact, ...], list[ArtifactCandidate]] | BuildError:
        """
        Score and select ``ready``; an explicit selection skips scoring.

        With ``headroom``, unpinned artifacts stop being added once the next
        one's bundle entry would not fit in that many characters.
        """
        if request.selected_artifact_ids is not None:
            return (), list(ready)
        options = ScoringOptions.from_config(
            self._options.selection, query=request.retrieval_query, role=request.role, now=now
        )
        limit = self._options.max_artifacts
        if request.max_artifacts is not None:
            limit = request.max_artifacts
        costs = None
        if headroom is not None:
            # Entry plus its separating comma.
            costs = {
                candidate.artifact_id: serialized_length(artifact_entry(candidate)) + 1
                for candidate in ready
            }
        try:
            ranking = select_artifacts(
                rank_candidates(ready, options),
                max_artifacts=limit,
                costs=costs,
                headroom=headroom,
            )
        except SelectionInvariantError as exc:
            return self._reject(
                BuildErrorKind.INTERNAL_ERROR,
                f"Artifact selection broke an invariant: {exc}",
                request,
                candidate_ids=[candidate.artifact_id for candidate in ready],
            )
        by_id = {candidate.artifact_id: candidate for candidate in ready}
        return ranking, [by_id[item.artifact_id] for item in ranking if item.selected]

    # ------------------------------------------------------------------
    # Sections

    def _recent_deltas(self, diff: DiffResult | None) -> dict[str, object] | None:
        if diff is None or not diff.diff:
            return None
        return recent_deltas_from_diff(diff.diff, max_chars=self._options.delta_summary_max_chars)

    def _repo_context(
        self, repo_full_name: str, changed: ChangedFilesResult | None
    ) -> dict[str, object]:
        if changed is None:
            return empty_repo_context(repo_full_name)
        return build_repo_context(
            repo_full_name,
            changed.files,
            max_files=self._options.repo_context_max_files,
            excerpt_max_chars=self._options.excerpt_max_chars,
        )

    def _reject(
        self, kind: BuildErrorKind, message: str, request: BuildRequest, **details: object
    ) -> BuildError:
        self._logger.warning(
            "bundle_build_rejected",
            kind=kind.value,
            work_item_id=request.work_item_id,
            role=request.role,
            reason=message,
        )
        payload: dict[str, object] = {
            "repo_full_name": request.repo_full_name,
            "work_item_id": request.work_item_id,
            "role": request.role,
        }
        payload.update(details)
        return BuildError(kind=kind, message=message, details=payload)


def assemble_bundle(
    *,
    request: BuildRequest,
    red: RequirementsDocument,
    manifest: IntegrationManifest | None,
    created_at: datetime,
    recent_deltas: Mapping[str, object] | None,
    repo_context: Mapping[str, object],
    artifacts: Sequence[ArtifactCandidate],
    instructions: Sequence[Instruction],
) -> dict[str, JSONValue]:
    """Lay out the bundle sections; ``meta.content_checksum`` is left blank."""
    red_json = red.red_json
    project_manifest = None if manifest is None else manifest.project_manifest
    ticket: dict[str, JSONValue] = {
        "title": _text(red_json.get("title")),
        "description": _text(red_json.get("description")),
    }
    for name in TICKET_LIST_FIELDS:
        ticket[name] = _strings(red_json.get(name))

    relevant: list[JSONValue] = [artifact_entry(candidate) for candidate in artifacts]

    return {
        "meta": {
            "project_id": (
                manifest.project_id if manifest is not None and project_manifest is not None else ""
            ),
            "ticket_id": request.work_item_id,
            "role": request.role,
            "created_at": iso8601z(created_at),
            "content_checksum": "",
        },
        "project_manifest": project_manifest,
        "ticket": ticket,
        "state_snapshot": {
            "statuses": {},
            "open_findings": [],
            "failing_tests": [],
            "last_known_good_commit": None,
        },
        "recent_deltas": _json_object(recent_deltas),
        "repo_context": _json_object(repo_context),
        "relevant_artifacts": relevant,
        "instructions": [
            {
                "topic_id": instruction.topic_id,
                "filename": instruction.filename,
                "title": instruction.title,
                "content_md": instruction.content_md or "",
            }
            for instruction in instructions
        ],
    }


def artifact_entry(candidate: ArtifactCandidate) -> dict[str, JSONValue]:
    """One ``relevant_artifacts`` item; an undistilled artifact gets an empty summary."""
    distilled = candidate.distilled
    return {
        "artifact_id": candidate.artifact_id,
        "artifact_title": candidate.title or "Untitled",
        "summary": "" if distilled is None else distilled.summary,
        "hard_facts": [] if distilled is None else list(distilled.hard_facts),
    }


def _text(value: object) -> str:
    return value if isinstance(value, str) else ""


def _strings(value: object) -> list[JSONValue]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _json_object(value: Mapping[str, object] | None) -> JSONValue:
    if value is None:
        return None
    return {key: _json_value(item) for key, item in value.items()}


def _json_value(value: object) -> JSONValue:
    if isinstance(value, Mapping):
        return {str(key): _json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise TypeError(f"bundle values must be JSON-compatible, got {type(value).__name__}")


def _to_milliseconds(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("created_at must be timezone-aware")
    normalized = value.astimezone(UTC)
    return normalized.replace(microsecond=(normalized.microsecond // 1000) * 1000)


__all__ = [
    "BuildError",
    "BuildErrorKind",
    "BuildRequest",
    "BuildResult",
    "BuilderOptions",
    "BundleBuilder",
    "CHECKSUM_HEX_LENGTH",
    "TICKET_LIST_FIELDS",
    "artifact_entry",
    "assemble_bundle",
]
