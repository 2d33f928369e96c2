"""
Relevance scoring and budget-constrained selection of agent artifacts.

Scoring is a left fold of named rules over an immutable accumulator. Each rule
inspects the candidate and may add points plus one human-readable reason:

- ``pinned``   : ``+pinned_boost``
- ``keyword``  : whole-word query matches, capped at 50 points
- ``tag``      : agent type overlaps the role
- ``path``     : a file-path-shaped token contains the query
- ``recency``  : linear decay over ``recency_decay_days``, at most 20 points

Selection keeps every pinned candidate and fills the remaining slots with the
best unpinned ones that fit the character headroom. Results are deterministic
for identical inputs and ``now``.
"""

from __future__ import annotations

import functools
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Final

from context_bundler.domain.models import ArtifactCandidate, ExclusionReason, iso8601z

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

KEYWORD_SCORE_CAP: Final[float] = 50.0
RECENCY_MAX_SCORE: Final[float] = 20.0
MIN_KEYWORD_LENGTH: Final[int] = 3
SCORE_TIE_TOLERANCE: Final[float] = 0.01
LOW_SCORE_THRESHOLD: Final[float] = 1.0

_SECONDS_PER_DAY: Final[float] = 86_400.0
_PATH_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?:^|\s)(?:\./|\.\./)?[\w\-./]+\."
    r"(?:ts|tsx|js|jsx|mdc|md|json|sql|py|go|rs|java|rb|php|yml|yaml)(?:\s|$)",
    re.ASCII,
)


class SelectionInvariantError(RuntimeError):
    """Raised when a pinned candidate would end up unselected."""


@dataclass(frozen=True, slots=True)
class ScoringOptions:
    query: str = ""
    role: str = ""
    pinned_boost: float = 100.0
    recency_decay_days: float = 30.0
    keyword_weight: float = 10.0
    tag_weight: float = 15.0
    path_weight: float = 20.0
    now: datetime | None = None

    def __post_init__(self) -> None:
        if self.recency_decay_days <= 0:
            raise ValueError("recency_decay_days must be > 0")
        for name in ("pinned_boost", "keyword_weight", "tag_weight", "path_weight"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_config(
        cls,
        selection: Mapping[str, Any],
        *,
        query: str = "",
        role: str = "",
        now: datetime | None = None,
    ) -> ScoringOptions:
        """Build options from a validated ``[selection]`` config section."""
        weights = {
            name: float(selection[name])
            for name in (
                "pinned_boost",
                "recency_decay_days",
                "keyword_weight",
                "tag_weight",
                "path_weight",
            )
            if name in selection
        }
        return cls(query=query, role=role, now=now, **weights)


@dataclass(frozen=True, slots=True)
class ScoredArtifact:
    artifact_id: str
    title: str
    agent_type: str
    created_at: datetime | None
    score: float
    reasons: tuple[str, ...]
    pinned: bool
    selected: bool = False
    exclusion_reason: ExclusionReason | None = None
    exclusion_message: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "artifact_id": self.artifact_id,
            "title": self.title,
            "agent_type": self.agent_type,
            "created_at": "" if self.created_at is None else iso8601z(self.created_at),
            "score": self.score,
            "reasons": list(self.reasons),
            "pinned": self.pinned,
            "selected": self.selected,
        }
        if self.exclusion_reason is not None:
            payload["exclusion_reason"] = self.exclusion_reason.value
            payload["exclusion_message"] = self.exclusion_message
        return payload


@dataclass(frozen=True, slots=True)
class _Accumulator:
    score: float = 0.0
    reasons: tuple[str, ...] = ()

    def add(self, points: float, reason: str) -> _Accumulator:
        return _Accumulator(score=self.score + points, reasons=(*self.reasons, reason))


@dataclass(frozen=True, slots=True)
class _Context:
    candidate: ArtifactCandidate
    options: ScoringOptions
    searchable_text: str
    query_lower: str
    now: datetime


ScoringRule = Callable[[_Accumulator, _Context], _Accumulator]


def _pinned_rule(acc: _Accumulator, ctx: _Context) -> _Accumulator:
    if not ctx.candidate.pinned:
        return acc
    boost = ctx.options.pinned_boost
    return acc.add(boost, f"Pinned (+{_format_points(boost)})")


def _keyword_rule(acc: _Accumulator, ctx: _Context) -> _Accumulator:
    if not ctx.query_lower or not ctx.searchable_text:
        return acc
    words = [word for word in ctx.query_lower.split() if len(word) >= MIN_KEYWORD_LENGTH]
    matches = sum(
        len(re.findall(rf"\b{re.escape(word)}\b", ctx.searchable_text)) for word in words
    )
    if matches == 0:
        return acc
    points = min(matches * ctx.options.keyword_weight, KEYWORD_SCORE_CAP)
    return acc.add(points, f"Keyword overlap: {matches} matches (+{points:.1f})")


def _tag_rule(acc: _Accumulator, ctx: _Context) -> _Accumulator:
    role = ctx.options.role.lower()
    agent_type = ctx.candidate.agent_type.lower()
    if not role or not agent_type:
        return acc
    if agent_type not in role and role not in agent_type:
        return acc
    weight = ctx.options.tag_weight
    return acc.add(
        weight, f"Agent type match: {ctx.candidate.agent_type} (+{_format_points(weight)})"
    )


def _path_rule(acc: _Accumulator, ctx: _Context) -> _Accumulator:
    if not ctx.query_lower or not ctx.searchable_text:
        return acc
    paths = [match.group(0) for match in _PATH_PATTERN.finditer(ctx.searchable_text)]
    if not any(ctx.query_lower in path for path in paths):
        return acc
    weight = ctx.options.path_weight
    return acc.add(weight, f"Path match: found {len(paths)} path(s) (+{_format_points(weight)})")


def _recency_rule(acc: _Accumulator, ctx: _Context) -> _Accumulator:
    created_at = ctx.candidate.created_at
    if created_at is None:
        return acc
    days = (ctx.now - _as_utc(created_at)).total_seconds() / _SECONDS_PER_DAY
    decay = ctx.options.recency_decay_days
    if not 0 <= days < decay:
        return acc
    points = (decay - days) / decay * RECENCY_MAX_SCORE
    if points <= 0:
        return acc
    return acc.add(points, f"Recency: {int(days + 0.5)} days ago (+{points:.1f})")


SCORING_RULES: Final[tuple[tuple[str, ScoringRule], ...]] = (
    ("pinned", _pinned_rule),
    ("keyword", _keyword_rule),
    ("tag", _tag_rule),
    ("path", _path_rule),
    ("recency", _recency_rule),
)


def score_artifact(candidate: ArtifactCandidate, options: ScoringOptions) -> ScoredArtifact:
    """Score one candidate. Pure given ``options.now``."""
    now = _as_utc(options.now) if options.now is not None else datetime.now(tz=UTC)
    ctx = _Context(
        candidate=candidate,
        options=options,
        searchable_text=_searchable_text(candidate),
        query_lower=options.query.strip().lower(),
        now=now,
    )
    acc = _Accumulator()
    for _name, rule in SCORING_RULES:
        acc = rule(acc, ctx)
    reasons = acc.reasons or ("Base score",)
    return ScoredArtifact(
        artifact_id=candidate.artifact_id,
        title=candidate.title or "Untitled",
        agent_type=candidate.agent_type or "unknown",
        created_at=candidate.created_at,
        score=round(max(0.0, acc.score), 2),
        reasons=reasons,
        pinned=candidate.pinned,
    )


def rank_candidates(
    candidates: Iterable[ArtifactCandidate], options: ScoringOptions
) -> list[ScoredArtifact]:
    return [score_artifact(candidate, options) for candidate in candidates]


def select_artifacts(
    scored: Sequence[ScoredArtifact],
    *,
    max_artifacts: int = 10,
    costs: Mapping[str, int] | None = None,
    headroom: int | None = None,
) -> tuple[ScoredArtifact, ...]:
    """Order by relevance and mark the selected subset.

    Every pinned candidate is selected; ``max(0, max_artifacts - pinned)`` of
    the best unpinned ones fill the rest. With ``headroom``, pinned costs are
    charged first and unpinned candidates stop at the first one whose cost
    (``costs[artifact_id]``, 0 when absent) would overrun it. Unselected
    entries carry exactly one exclusion reason.
    """
    if max_artifacts < 0:
        raise ValueError("max_artifacts must be >= 0")
    sizes = costs or {}

    seeded = sorted(scored, key=lambda item: item.artifact_id)
    ordered = sorted(seeded, key=functools.cmp_to_key(_compare_ranked))

    pinned_ids = {item.artifact_id for item in ordered if item.pinned}
    remaining = max(0, max_artifacts - len(pinned_ids))
    unpinned_ids: list[str] = []
    crowded_ids: set[str] = set()
    spent = sum(sizes.get(artifact_id, 0) for artifact_id in pinned_ids)
    for item in ordered:
        if item.pinned or len(unpinned_ids) >= remaining:
            continue
        cost = sizes.get(item.artifact_id, 0)
        if crowded_ids or (headroom is not None and spent + cost > headroom):
            crowded_ids.add(item.artifact_id)
            continue
        unpinned_ids.append(item.artifact_id)
        spent += cost
    selected_ids = pinned_ids | set(unpinned_ids)

    result: list[ScoredArtifact] = []
    for item in ordered:
        if item.artifact_id in selected_ids:
            result.append(replace(item, selected=True))
            continue
        if item.pinned:
            raise SelectionInvariantError(f"pinned artifact {item.artifact_id} was not selected")
        if item.score < LOW_SCORE_THRESHOLD:
            reason, message = ExclusionReason.LOW_SCORE, "Low score (< 1.0)"
        elif item.artifact_id in crowded_ids:
            reason = ExclusionReason.BUDGET_PRESSURE
            message = f"Budget pressure: {headroom} characters of headroom used"
        else:
            reason = ExclusionReason.BUDGET_PRESSURE
            message = f"Budget pressure: Top {max_artifacts} selected"
        result.append(
            replace(item, selected=False, exclusion_reason=reason, exclusion_message=message)
        )
    return tuple(result)


def _compare_ranked(left: ScoredArtifact, right: ScoredArtifact) -> int:
    if abs(left.score - right.score) > SCORE_TIE_TOLERANCE:
        return -1 if left.score > right.score else 1
    left_ts = _timestamp(left.created_at)
    right_ts = _timestamp(right.created_at)
    if left_ts != right_ts:
        return -1 if left_ts > right_ts else 1
    if left.artifact_id != right.artifact_id:
        return -1 if left.artifact_id < right.artifact_id else 1
    return 0


def _timestamp(value: datetime | None) -> float:
    # Missing timestamps rank after every dated artifact.
    return float("-inf") if value is None else _as_utc(value).timestamp()


def _searchable_text(candidate: ArtifactCandidate) -> str:
    parts = [candidate.title, candidate.body]
    if candidate.distilled is not None:
        parts.extend(candidate.distilled.keywords)
        parts.extend(candidate.distilled.hard_facts)
        parts.append(candidate.distilled.summary)
    return " ".join(part for part in parts if part).lower()


def _format_points(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


__all__ = [
    "KEYWORD_SCORE_CAP",
    "LOW_SCORE_THRESHOLD",
    "RECENCY_MAX_SCORE",
    "SCORING_RULES",
    "ScoredArtifact",
    "ScoringOptions",
    "ScoringRule",
    "SelectionInvariantError",
    "rank_candidates",
    "score_artifact",
    "select_artifacts",
]
