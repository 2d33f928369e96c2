from __future__ import annotations

import asyncio
from dataclasses import replace

from context_bundler.domain.models import DistilledArtifact
from context_bundler.integration_plane.sources import DistillResult
from context_bundler.synthesis_plane.distillation import ExtractiveDistiller, distill_candidates

from tests import make_artifact


class _RecordingLogger:
    def __init__(self) -> None:
        self.events: list[str] = []

    def info(self, event: str, **fields: object) -> None:
        self.events.append(event)

    def warning(self, event: str, **fields: object) -> None:
        self.events.append(event)


class _SlowDistiller:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.calls: list[str] = []

    async def distill(self, title: str, body: str) -> DistillResult:
        self.calls.append(title)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.active -= 1
        if title == "explode":
            raise RuntimeError("distiller crashed")
        return DistillResult(distilled=DistilledArtifact(summary=f"summary of {title}"))


async def test_extractive_distiller_lifts_text_from_the_body() -> None:
    result = await ExtractiveDistiller().distill("Parser notes", make_artifact(0).body)

    assert result.distilled == DistilledArtifact(
        summary="Parser investigation number 0.",
        hard_facts=("Frames are length prefixed (0)", "Oversized frames raise an error"),
        keywords=("Summary", "Parser", "Frames", "Oversized"),
    )


async def test_extractive_distiller_prefers_embedded_json() -> None:
    body = 'Agent output:\n{"summary": " Done ", "hard_facts": ["a", 3], "keywords": ["k"]}'

    result = await ExtractiveDistiller().distill("Run", body)

    assert result.distilled == DistilledArtifact(summary="Done", hard_facts=("a",), keywords=("k",))


async def test_extractive_distiller_fallbacks() -> None:
    distiller = ExtractiveDistiller()

    plain = await distiller.distill("Retry Notes", "# heading\nplain words only.\n")
    empty = await distiller.distill("Retry Notes", "  \n ")

    assert plain.distilled == DistilledArtifact(
        summary="plain words only.",
        hard_facts=("Content from Retry Notes",),
        keywords=("retry notes",),
    )
    assert empty.error == "artifact body is empty or missing"


async def test_distill_candidates_keeps_order_and_reuses_cache() -> None:
    cached = DistilledArtifact(summary="cached")
    candidates = [
        make_artifact(0, title="first"),
        replace(make_artifact(1, title="second"), distilled=cached),
        make_artifact(2, title="explode"),
        make_artifact(3, title="fourth"),
    ]
    distiller = _SlowDistiller()
    logger = _RecordingLogger()

    outcomes = await distill_candidates(candidates, distiller, max_concurrency=2, logger=logger)

    assert [item.artifact_id for item in outcomes] == [item.artifact_id for item in candidates]
    assert outcomes[1].cached and outcomes[1].distilled == cached
    assert not outcomes[2].success
    assert outcomes[2].error == "distiller crashed"
    assert outcomes[3].distilled == DistilledArtifact(summary="summary of fourth")
    assert sorted(distiller.calls) == ["explode", "first", "fourth"]
    assert distiller.peak <= 2
    assert logger.events == ["artifact_distillation_raised"]


async def test_distill_candidates_logs_error_results() -> None:
    logger = _RecordingLogger()

    outcomes = await distill_candidates(
        [make_artifact(0, body="")], ExtractiveDistiller(), logger=logger
    )

    assert outcomes[0].error == "artifact body is empty or missing"
    assert logger.events == ["artifact_distillation_failed"]
    assert await distill_candidates([], ExtractiveDistiller()) == []
