"""
context-bundler — canonical serialization and checksums

File: src/context_bundler/utils/canonical.py
Last updated: 2026-02-12

Purpose
- Serialize JSON-like values into one byte-stable text form so logically equal
  values always hash to the same SHA-256 digest.
- Measure bundles per top-level section for receipts and budget reports.

Canonical form
- Object keys are sorted at every depth; array order is preserved.
- No insignificant whitespace; strings use JSON escaping without forcing ASCII.
- Floats render the way JavaScript prints numbers: no fraction when integral
  (``1.0`` -> ``1``), exponent form only below 1e-6 or from 1e21 up
  (``1e22`` -> ``1e+22``, ``1e-07`` -> ``1e-7``).
- ``NaN`` and the infinities render as ``null``. This is lossy: a bundle that
  carried a non-finite number hashes the same as one that carried ``null``.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Final

# Well-known bundle sections, in report order.
BUNDLE_SECTIONS: Final[tuple[str, ...]] = (
    "meta",
    "project_manifest",
    "ticket",
    "state_snapshot",
    "recent_deltas",
    "repo_context",
    "relevant_artifacts",
    "instructions",
)
STRUCTURAL_OVERHEAD_KEY: Final[str] = "_structure"
_CHECKSUM_PATTERN: Final[re.Pattern[str]] = re.compile(r"[0-9a-f]{64}")

__all__ = [
    "BUNDLE_SECTIONS",
    "STRUCTURAL_OVERHEAD_KEY",
    "bundle_checksum",
    "calculate_section_metrics",
    "calculate_total_characters",
    "canonicalize",
    "checksum",
    "content_checksum",
    "is_checksum",
    "section_breakdown",
    "serialized_length",
    "sha256_text",
]


def canonicalize(value: object) -> str:
    """Return the canonical JSON text for ``value``."""

    parts: list[str] = []
    _emit(value, parts)
    return "".join(parts)


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def checksum(value: object) -> str:
    """SHA-256 hex digest of the canonical UTF-8 form of ``value``."""

    return sha256_text(canonicalize(value))


def is_checksum(value: object) -> bool:
    """True for a lowercase 64-digit hex digest as produced by :func:`checksum`."""

    return isinstance(value, str) and _CHECKSUM_PATTERN.fullmatch(value) is not None


def content_checksum(bundle: Mapping[str, object]) -> str:
    """
    Checksum a bundle's content independent of its own checksum fields.

    ``meta.content_checksum`` is blanked and ``meta.bundle_checksum`` removed
    before hashing, so a bundle can carry its checksum and still verify.
    """

    return checksum(_strip_checksums(bundle))


def bundle_checksum(
    bundle: Mapping[str, object],
    *,
    repo_full_name: str,
    ticket_pk: str,
    ticket_id: str,
    role: str,
    version: int,
) -> str:
    """Checksum a bundle together with the metadata identifying its stored version."""

    return checksum(
        {
            "bundle": bundle,
            "metadata": {
                "repo_full_name": repo_full_name,
                "ticket_pk": ticket_pk,
                "ticket_id": ticket_id,
                "role": role,
                "version": version,
            },
        }
    )


def serialized_length(bundle: object) -> int:
    """Exact character length of the canonical payload."""

    return len(canonicalize(bundle))


def calculate_section_metrics(bundle: Mapping[str, object]) -> dict[str, int]:
    """
    Characters per top-level section.

    Known sections come first in their fixed order, then any other keys in
    sorted order. Absent known sections are omitted; ``None`` counts as zero.
    """

    metrics: dict[str, int] = {}
    for key in BUNDLE_SECTIONS:
        if key in bundle:
            metrics[key] = _section_length(bundle[key])
    for key in sorted(bundle):
        if key not in metrics:
            metrics[key] = _section_length(bundle[key])
    return metrics


def calculate_total_characters(metrics: Mapping[str, int]) -> int:
    return sum(metrics.values())


def section_breakdown(bundle: Mapping[str, object]) -> dict[str, int]:
    """
    Section metrics plus the structural overhead (braces, keys, separators).

    The values always sum to ``serialized_length(bundle)``.
    """

    breakdown = calculate_section_metrics(bundle)
    breakdown[STRUCTURAL_OVERHEAD_KEY] = serialized_length(bundle) - calculate_total_characters(
        breakdown
    )
    return breakdown


def _section_length(value: object) -> int:
    if value is None:
        return 0
    return len(canonicalize(value))


def _strip_checksums(bundle: Mapping[str, object]) -> dict[str, object]:
    stripped = dict(bundle)
    meta = bundle.get("meta")
    if isinstance(meta, Mapping):
        cleaned = {key: val for key, val in meta.items() if key != "bundle_checksum"}
        cleaned["content_checksum"] = ""
        stripped["meta"] = cleaned
    return stripped


def _emit(value: object, parts: list[str]) -> None:
    if value is None:
        parts.append("null")
    elif value is True:
        parts.append("true")
    elif value is False:
        parts.append("false")
    elif isinstance(value, str):
        parts.append(_quote(value))
    elif isinstance(value, int):
        parts.append(str(int(value)))
    elif isinstance(value, float):
        parts.append(_format_float(value))
    elif isinstance(value, Mapping):
        parts.append("{")
        for index, key in enumerate(sorted(value, key=_require_str_key)):
            if index:
                parts.append(",")
            parts.append(_quote(key))
            parts.append(":")
            _emit(value[key], parts)
        parts.append("}")
    elif isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        parts.append("[")
        for index, item in enumerate(value):
            if index:
                parts.append(",")
            _emit(item, parts)
        parts.append("]")
    else:
        raise TypeError(f"value of type {type(value).__name__} is not JSON-serializable")


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def _require_str_key(key: object) -> str:
    if not isinstance(key, str):
        raise TypeError(f"object keys must be strings, got {type(key).__name__}")
    return key


def _format_float(value: float) -> str:
    """ECMAScript ``Number#toString`` rendering: shortest digits, exponent form
    only below ``1e-6`` or from ``1e21`` up."""
    if not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).normalize().as_tuple()
    digits = "".join(str(digit) for digit in digit_tuple)
    # abs(value) == 0.<digits> * 10**point
    point = int(exponent) + len(digits)
    if len(digits) <= point <= 21:
        return sign + digits + "0" * (point - len(digits))
    if 0 < point <= 21:
        return f"{sign}{digits[:point]}.{digits[point:]}"
    if -6 < point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    power = point - 1
    mantissa = digits if len(digits) == 1 else f"{digits[0]}.{digits[1:]}"
    return f"{sign}{mantissa}e{'+' if power > 0 else '-'}{abs(power)}"