"""
Artifact distillation: the local extractive distiller and bounded fan-out.

``ExtractiveDistiller`` never generates text. It lifts a summary, bullet-point
facts and capitalized terms straight out of the artifact body (or out of a JSON
object embedded in it), so identical bodies always distill identically.

``distill_candidates`` runs a distiller over many artifacts with a fixed
concurrency ceiling, reuses cached distillations and returns outcomes in input
order. A failing distillation is an outcome, never an exception.
"""

from __future__ import annotations

import json
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Final

import structlog

from context_bundler.domain.models import ArtifactCandidate, DistilledArtifact
from context_bundler.integration_plane.sources import Distiller, DistillResult
from context_bundler.utils.concurrency import WorkerPool

DEFAULT_DISTILL_CONCURRENCY: Final[int] = 3
MAX_BODY_CHARS: Final[int] = 50_000
MAX_HARD_FACTS: Final[int] = 5
MAX_KEYWORDS: Final[int] = 10
MAX_SUMMARY_CHARS: Final[int] = 400

_JSON_OBJECT: Final[re.Pattern[str]] = re.compile(r"\{.*\}", re.DOTALL)
_SUMMARY_LINE: Final[re.Pattern[str]] = re.compile(r"summary\s*[:\-]\s*([^\n]+)", re.IGNORECASE)
_BULLET: Final[re.Pattern[str]] = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$", re.MULTILINE)
_CAPITALIZED_TERM: Final[re.Pattern[str]] = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
_HEADING: Final[re.Pattern[str]] = re.compile(r"^\s*#{1,6}\s+")


@dataclass(frozen=True, slots=True)
class DistillationOutcome:
    artifact_id: str
    distilled: DistilledArtifact | None
    error: str | None = None
    cached: bool = False

    @property
    def success(self) -> bool:
        return self.distilled is not None


class ExtractiveDistiller:
    """Deterministic distiller that only copies text already present in the artifact."""

    async def distill(self, title: str, body: str) -> DistillResult:
        text = body.strip()
        if not text:
            return DistillResult(error="artifact body is empty or missing")
        text = text[:MAX_BODY_CHARS]
        structured = _structured_distillation(text)
        if structured is not None:
            return DistillResult(distilled=structured)

        label = title or "Untitled"
        summary = _first_summary(text) or f"Summary of {label}"
        facts = [match.strip() for match in _BULLET.findall(text) if match.strip()]
        keywords = list(dict.fromkeys(_CAPITALIZED_TERM.findall(text)))
        return DistillResult(
            distilled=DistilledArtifact(
                summary=summary[:MAX_SUMMARY_CHARS],
                hard_facts=tuple(facts[:MAX_HARD_FACTS]) or (f"Content from {label}",),
                keywords=tuple(keywords[:MAX_KEYWORDS]) or ((title or "untitled").lower(),),
            )
        )


async def distill_candidates(
    candidates: Sequence[ArtifactCandidate],
    distiller: Distiller,
    *,
    max_concurrency: int = DEFAULT_DISTILL_CONCURRENCY,
    logger: Any | None = None,
) -> list[DistillationOutcome]:
    """Distill every candidate that has no cached distillation; results keep input order."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    pool: WorkerPool[DistillationOutcome] = WorkerPool(max_concurrency=max_concurrency)

    def factory(candidate: ArtifactCandidate) -> Callable[[], Awaitable[DistillationOutcome]]:
        async def run() -> DistillationOutcome:
            if candidate.distilled is not None:
                return DistillationOutcome(
                    artifact_id=candidate.artifact_id, distilled=candidate.distilled, cached=True
                )
            try:
                result = await distiller.distill(candidate.title, candidate.body)
            except Exception as exc:  # noqa: BLE001
                log.warning(
                    "artifact_distillation_raised",
                    artifact_id=candidate.artifact_id,
                    error=f"{type(exc).__name__}: {exc}",
                )
                return DistillationOutcome(
                    artifact_id=candidate.artifact_id, distilled=None, error=str(exc) or repr(exc)
                )
            if not result.success:
                log.info(
                    "artifact_distillation_failed",
                    artifact_id=candidate.artifact_id,
                    error=result.error,
                )
            return DistillationOutcome(
                artifact_id=candidate.artifact_id, distilled=result.distilled, error=result.error
            )

        return run

    if not candidates:
        return []
    return await pool.gather_ordered([factory(candidate) for candidate in candidates])


def _structured_distillation(text: str) -> DistilledArtifact | None:
    match = _JSON_OBJECT.search(text)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("summary"), str):
        return None
    facts = parsed.get("hard_facts", [])
    keywords = parsed.get("keywords", [])
    if not isinstance(facts, list) or not isinstance(keywords, list):
        return None
    return DistilledArtifact(
        summary=parsed["summary"].strip(),
        hard_facts=tuple(item for item in facts if isinstance(item, str)),
        keywords=tuple(item for item in keywords if isinstance(item, str)),
    )


def _first_summary(text: str) -> str:
    labelled = _SUMMARY_LINE.search(text)
    if labelled is not None:
        return labelled.group(1).strip()
    for paragraph in re.split(r"\n\s*\n", text):
        lines = [
            line.strip()
            for line in paragraph.splitlines()
            if line.strip() and not _BULLET.match(line) and not _HEADING.match(line)
        ]
        if lines:
            return " ".join(lines)
    return ""


__all__ = [
    "DEFAULT_DISTILL_CONCURRENCY",
    "DistillationOutcome",
    "ExtractiveDistiller",
    "distill_candidates",
]
