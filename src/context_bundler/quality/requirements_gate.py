"""
Quality gate for requirements documents (REDs).

A RED must pass before any bundle can be built from it. The gate checks, in
report order:

1. ``count``       - minimum item counts for functional requirements and edge cases
2. ``presence``    - non-functional requirements, out-of-scope and assumptions are non-empty
3. ``placeholder`` - no unresolved markers (TBD, TODO, FIXME, XXX, HACK, PLACEHOLDER)
4. ``vagueness``   - items are specific: long enough and not a generic phrase

An item that carries a placeholder is not additionally reported as vague.
Failures are sorted by ``(type order, field, message)`` so identical documents
always produce identical reports.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Final

from context_bundler.domain.models import FailureType, RequirementsFailure, iso8601z

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

ITEM_PREVIEW_CHARS: Final[int] = 100

COUNTED_FIELDS: Final[tuple[str, ...]] = ("functional_requirements", "edge_cases")
PRESENCE_FIELDS: Final[tuple[str, ...]] = (
    "non_functional_requirements",
    "out_of_scope",
    "assumptions",
)

_PLACEHOLDER_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(?:TBD|TODO|FIXME|XXX|HACK|PLACEHOLDER)\b", re.IGNORECASE
)
# A generic phrase on its own, or opening the item: "handle errors", "Handle errors gracefully".
_GENERIC_PHRASES: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(rf"(?:{pattern})(?:\s|\.?\Z)", re.IGNORECASE)
    for pattern in (
        r"handle\s+errors?",
        r"make\s+it\s+robust",
        r"optimi[sz]e\s+performance",
        r"make\s+it\s+work",
        r"ensure\s+quality",
        r"improve\s+(?:the\s+)?user\s+experience",
        r"add\s+validation",
        r"fix\s+bugs?",
        r"make\s+it\s+better",
    )
)

_THRESHOLD_KEYS: Final[tuple[str, ...]] = (
    "min_functional_requirements",
    "min_edge_cases",
    "min_string_length",
)


@dataclass(frozen=True, slots=True)
class GateThresholds:
    min_functional_requirements: int = 5
    min_edge_cases: int = 8
    min_string_length: int = 20

    def __post_init__(self) -> None:
        for name in ("min_functional_requirements", "min_edge_cases", "min_string_length"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"GateThresholds.{name} must be an integer >= 0")

    @classmethod
    def from_config(cls, section: Mapping[str, Any] | None) -> GateThresholds:
        """Build from a validated ``[quality_gate]`` section; missing keys keep defaults."""
        if not section:
            return cls()
        return cls(**{key: int(section[key]) for key in _THRESHOLD_KEYS if key in section})

    def minimum_for(self, field: str) -> int:
        if field == "functional_requirements":
            return self.min_functional_requirements
        return self.min_edge_cases


@dataclass(frozen=True, slots=True)
class ValidationResult:
    passed: bool
    failures: tuple[RequirementsFailure, ...]
    validated_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "pass": self.passed,
            "failures": [failure.to_dict() for failure in self.failures],
            "validated_at": iso8601z(self.validated_at),
        }


def validate_requirements_document(
    red_json: Mapping[str, object],
    *,
    thresholds: GateThresholds | None = None,
    now: datetime | None = None,
) -> ValidationResult:
    """Run the gate over a RED payload. Never raises for content problems."""
    limits = thresholds or GateThresholds()
    failures: list[RequirementsFailure] = []

    for field in COUNTED_FIELDS:
        items = _field_items(red_json, field)
        minimum = limits.minimum_for(field)
        if len(items) < minimum:
            failures.append(
                RequirementsFailure(
                    type=FailureType.COUNT,
                    field=field,
                    message=f"{field}: expected >= {minimum} items, found {len(items)}",
                    expected=minimum,
                    found=len(items),
                )
            )
        failures.extend(_check_items(field, items, limits))

    for field in PRESENCE_FIELDS:
        items = _field_items(red_json, field)
        if not any(isinstance(item, str) and item.strip() for item in items):
            failures.append(
                RequirementsFailure(
                    type=FailureType.PRESENCE,
                    field=field,
                    message=f"{field}: required but missing or empty",
                )
            )
            continue
        failures.extend(_check_items(field, items, limits))

    failures.sort(key=RequirementsFailure.sort_key)
    return ValidationResult(
        passed=not failures,
        failures=tuple(failures),
        validated_at=now if now is not None else datetime.now(tz=UTC),
    )


def has_placeholder(text: str) -> bool:
    return _PLACEHOLDER_PATTERN.search(text) is not None


def is_vague(text: str, *, min_length: int = 20) -> bool:
    """True when ``text`` is too short or opens with a generic phrase.

    A generic phrase later in the item does not count.
    """
    stripped = text.strip()
    if len(stripped) < min_length:
        return True
    return any(pattern.match(stripped) for pattern in _GENERIC_PHRASES)


def _check_items(
    field: str, items: list[object], limits: GateThresholds
) -> list[RequirementsFailure]:
    failures: list[RequirementsFailure] = []
    for index, item in enumerate(items):
        if not isinstance(item, str):
            continue
        preview = item[:ITEM_PREVIEW_CHARS]
        if has_placeholder(item):
            failures.append(
                RequirementsFailure(
                    type=FailureType.PLACEHOLDER,
                    field=field,
                    message=f"{field}[{index}]: contains unresolved placeholder",
                    item=preview,
                )
            )
        elif is_vague(item, min_length=limits.min_string_length):
            failures.append(
                RequirementsFailure(
                    type=FailureType.VAGUENESS,
                    field=field,
                    message=(
                        f"{field}[{index}]: item is too vague or too short "
                        f"(minimum {limits.min_string_length} characters, avoid generic phrases)"
                    ),
                    item=preview,
                )
            )
    return failures


def _field_items(red_json: Mapping[str, object], field: str) -> list[object]:
    value = red_json.get(field)
    if value is None:
        value = red_json.get(_camel_case(field))
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _camel_case(field: str) -> str:
    head, *rest = field.split("_")
    return head + "".join(part.capitalize() for part in rest)


__all__ = [
    "COUNTED_FIELDS",
    "GateThresholds",
    "PRESENCE_FIELDS",
    "ValidationResult",
    "has_placeholder",
    "is_vague",
    "validate_requirements_document",
]
