"""Prefixed ULID identifiers for persisted bundler records."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_SEPARATOR: Final[str] = "-"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

RandBytes = Callable[[int], bytes]


class IdKind(StrEnum):
    """Record kinds and the prefix each kind's identifiers carry."""

    BUNDLE = "bnd"
    RECEIPT = "rcpt"
    REQUIREMENTS_DOCUMENT = "red"
    MANIFEST = "man"
    ARTIFACT = "art"
    PIN = "pin"
    CONTINUITY_CHECK = "chk"
    AGENT_RUN = "run"
    INSTRUCTION = "ins"


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    """Generate a 26-character uppercase Crockford Base32 ULID."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(ts_ms, int) or not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")
    raw = bytes((randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES))
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(raw, "big")
    chars = []
    for _ in range(ULID_LENGTH):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0b11111])
        value >>= 5
    return "".join(reversed(chars))


def new_id(
    kind: IdKind,
    *,
    timestamp_ms: int | None = None,
    randbytes: RandBytes | None = None,
) -> str:
    """Return ``<prefix>-<ulid>`` for ``kind``."""
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{kind.value}{_SEPARATOR}{ulid}"


def validate_id(value: object, kind: IdKind) -> None:
    """Raise ``ValueError`` unless ``value`` is a well-formed identifier of ``kind``."""
    if not isinstance(value, str):
        raise ValueError(f"{kind.name.lower()} id must be a string, got {type(value).__name__}")
    lead = f"{kind.value}{_SEPARATOR}"
    if not value.startswith(lead):
        raise ValueError(f"expected prefix {lead!r} in {value!r}")
    ulid_part = value[len(lead) :]
    if len(ulid_part) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(ulid_part)}")
    for index, char in enumerate(ulid_part):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
    if _DECODE_TABLE[ulid_part[0].upper()] > 7:
        raise ValueError("ulid overflow: value exceeds 128 bits")


def id_kind_of(value: str) -> IdKind | None:
    """Return the kind whose prefix ``value`` carries, if any."""
    prefix, sep, _ = value.partition(_SEPARATOR)
    if not sep:
        return None
    try:
        return IdKind(prefix)
    except ValueError:
        return None


def short_id(value: str) -> str:
    """Last 8 characters, for compact display."""
    return value[-8:]


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "IdKind",
    "RandBytes",
    "ULID_LENGTH",
    "generate_ulid",
    "id_kind_of",
    "new_id",
    "short_id",
    "validate_id",
]
