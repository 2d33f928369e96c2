"""Shared deterministic fixtures and builders for context-bundler tests."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Final

from context_bundler.control_plane.bundle_service import BundleService
from context_bundler.domain import ids
from context_bundler.domain.models import ArtifactCandidate, ChangeRef, DistilledArtifact
from context_bundler.integration_plane.sources import (
    ChangedFile,
    ChangedFilesResult,
    DiffResult,
    DistillResult,
)
from context_bundler.persistence.state_db import StateDB
from context_bundler.synthesis_plane.bundle_builder import BuildRequest
from context_bundler.synthesis_plane.distillation import ExtractiveDistiller

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)
REPO: Final[str] = "acme/widgets"
WORK_ITEM: Final[str] = "W-101"
ROLE: Final[str] = "implementation-agent"


def fixed_now(seed: int = 0) -> datetime:
    return BASE_TS + timedelta(seconds=seed)


def _randbytes(seed: int):
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


def make_id(kind: ids.IdKind, seed: int) -> str:
    return ids.new_id(
        kind,
        timestamp_ms=int(BASE_TS.timestamp() * 1000) + seed,
        randbytes=_randbytes(seed),
    )


def make_red_json(*, valid: bool = True, title: str = "Frame parser hardening") -> dict[str, Any]:
    red: dict[str, Any] = {
        "title": title,
        "description": "Harden the frame parser against malformed input from peers.",
        "functional_requirements": [
            "Reject frames whose declared length exceeds 64 KiB",
            "Parse nested frames up to a depth of eight levels",
            "Report the byte offset of the first malformed header",
            "Expose a streaming API that yields one frame at a time",
            "Preserve frame ordering across partial socket reads",
        ],
        "edge_cases": [
            "A zero-length frame is accepted and yields an empty payload",
            "A header split across two reads is reassembled correctly",
            "A declared length of exactly 64 KiB is accepted",
            "Nested depth nine raises a depth error with the offset",
            "Trailing garbage after the last frame is reported once",
            "A connection closed mid-frame raises a truncation error",
            "Unicode payloads round-trip without re-encoding",
            "Two back-to-back empty frames produce two events",
        ],
        "non_functional_requirements": [
            "Parsing one megabyte of frames completes under fifty milliseconds",
        ],
        "out_of_scope": ["Compression of frame payloads is handled by another layer"],
        "assumptions": ["Peers always send big-endian length prefixes on the wire"],
        "acceptance_criteria": [
            "All edge cases are covered by parser unit tests",
            "Benchmarks show no regression against the previous release",
        ],
    }
    if not valid:
        red["functional_requirements"] = red["functional_requirements"][:3]
        red["edge_cases"] = [*red["edge_cases"][:7], "TBD once the protocol review lands"]
    return red


def make_artifact(
    seed: int,
    *,
    work_item_id: str = WORK_ITEM,
    title: str | None = None,
    agent_type: str = "implementation",
    body: str | None = None,
    created_at: datetime | None = None,
    distilled: DistilledArtifact | None = None,
) -> ArtifactCandidate:
    return ArtifactCandidate(
        artifact_id=make_id(ids.IdKind.ARTIFACT, seed),
        work_item_id=work_item_id,
        title=title if title is not None else f"Parser notes {seed}",
        agent_type=agent_type,
        created_at=created_at if created_at is not None else BASE_TS - timedelta(days=seed + 1),
        body=(
            body
            if body is not None
            else (
                f"Summary: Parser investigation number {seed}.\n\n"
                f"- Frames are length prefixed ({seed})\n"
                "- Oversized frames raise an error\n"
            )
        ),
        distilled=distilled,
    )


def make_request(**overrides: Any) -> BuildRequest:
    values: dict[str, Any] = {
        "repo_full_name": REPO,
        "work_item_id": WORK_ITEM,
        "role": ROLE,
        "created_at": BASE_TS,
    }
    values.update(overrides)
    return BuildRequest(**values)


def make_service(
    tmp_path: Path,
    config: Mapping[str, object] | None = None,
    **kwargs: Any,
) -> BundleService:
    kwargs.setdefault("distiller", ExtractiveDistiller())
    return BundleService(db=StateDB(tmp_path / "state.sqlite3"), config=config, **kwargs)


def make_change_ref(seed: int = 1) -> ChangeRef:
    return ChangeRef(base_sha=f"{seed:040x}", head_sha=f"{seed + 1:040x}")


SAMPLE_PATCH: Final[str] = (
    "@@ -10,3 +10,4 @@ def parse(buffer):\n"
    "     header = read_header(buffer)\n"
    "     length = header.length\n"
    "+    if length > MAX_FRAME:\n"
    "+        raise FrameTooLarge(length)\n"
)

SAMPLE_DIFF: Final[str] = (
    "diff --git a/src/parser.py b/src/parser.py\n"
    "index 1111111..2222222 100644\n"
    "--- a/src/parser.py\n"
    "+++ b/src/parser.py\n" + SAMPLE_PATCH
)


class FakeChangeProvider:
    """In-memory change-request provider that counts its calls."""

    def __init__(
        self,
        *,
        diff: str = SAMPLE_DIFF,
        files: tuple[ChangedFile, ...] | None = None,
        fail: bool = False,
    ) -> None:
        self.diff = diff
        self.files = (
            files
            if files is not None
            else (ChangedFile(path="src/parser.py", additions=2, deletions=0, patch=SAMPLE_PATCH),)
        )
        self.fail = fail
        self.calls: list[str] = []

    def get_diff(self, ref: ChangeRef) -> DiffResult:
        self.calls.append("diff")
        if self.fail:
            raise RuntimeError("change provider unavailable")
        return DiffResult(diff=self.diff)

    def get_changed_files(self, ref: ChangeRef) -> ChangedFilesResult:
        self.calls.append("files")
        if self.fail:
            raise RuntimeError("change provider unavailable")
        return ChangedFilesResult(files=self.files)


class FailingDistiller:
    """Distiller that fails for the given titles and delegates the rest."""

    def __init__(self, *failing_titles: str) -> None:
        self._failing = set(failing_titles)
        self._delegate = ExtractiveDistiller()
        self.calls: list[str] = []

    async def distill(self, title: str, body: str) -> DistillResult:
        self.calls.append(title)
        if title in self._failing:
            return DistillResult(error=f"distiller rejected {title}")
        return await self._delegate.distill(title, body)


def seed_work_item(
    service: BundleService,
    *,
    artifacts: int = 3,
    red: Mapping[str, Any] | None = None,
    manifest: Mapping[str, Any] | None = None,
) -> list[ArtifactCandidate]:
    """Insert a valid RED, a manifest and ``artifacts`` artifacts for the default work item."""
    service.insert_requirements_document(REPO, WORK_ITEM, dict(red or make_red_json()))
    service.manifests.add(
        REPO,
        dict(
            manifest
            or {
                "project_id": "proj-widgets",
                "project_manifest": {"name": "widgets", "services": ["parser", "gateway"]},
            }
        ),
        created_at=BASE_TS,
    )
    return [service.artifacts.add(make_artifact(seed)) for seed in range(artifacts)]


__all__ = [
    "BASE_TS",
    "FailingDistiller",
    "FakeChangeProvider",
    "REPO",
    "ROLE",
    "SAMPLE_DIFF",
    "SAMPLE_PATCH",
    "UTC",
    "WORK_ITEM",
    "fixed_now",
    "make_artifact",
    "make_change_ref",
    "make_id",
    "make_red_json",
    "make_request",
    "make_service",
    "seed_work_item",
]
