from __future__ import annotations

import pytest

from context_bundler.domain.ids import (
    CROCKFORD_BASE32_ALPHABET,
    ULID_LENGTH,
    IdKind,
    generate_ulid,
    id_kind_of,
    new_id,
    short_id,
    validate_id,
)


def _fixed_bytes(size: int) -> bytes:
    return b"\x01" * size


def test_generate_ulid_is_deterministic_for_fixed_inputs() -> None:
    first = generate_ulid(timestamp_ms=1_700_000_000_000, randbytes=_fixed_bytes)
    second = generate_ulid(timestamp_ms=1_700_000_000_000, randbytes=_fixed_bytes)
    assert first == second
    assert len(first) == ULID_LENGTH
    assert set(first) <= set(CROCKFORD_BASE32_ALPHABET)


def test_ulids_sort_by_timestamp() -> None:
    early = generate_ulid(timestamp_ms=1_000, randbytes=_fixed_bytes)
    late = generate_ulid(timestamp_ms=2_000, randbytes=_fixed_bytes)
    assert early < late


def test_generate_ulid_rejects_bad_inputs() -> None:
    with pytest.raises(ValueError, match="timestamp_ms"):
        generate_ulid(timestamp_ms=-1)
    with pytest.raises(ValueError, match="exactly"):
        generate_ulid(timestamp_ms=0, randbytes=lambda size: b"\x00")


@pytest.mark.parametrize("kind", list(IdKind))
def test_new_id_round_trips_through_validation(kind: IdKind) -> None:
    value = new_id(kind)
    validate_id(value, kind)
    assert id_kind_of(value) is kind
    assert value.startswith(f"{kind.value}-")


def test_validate_id_reports_specific_problems() -> None:
    bundle_id = new_id(IdKind.BUNDLE)
    with pytest.raises(ValueError, match="prefix"):
        validate_id(bundle_id, IdKind.RECEIPT)
    with pytest.raises(ValueError, match="length"):
        validate_id("bnd-ABC", IdKind.BUNDLE)
    with pytest.raises(ValueError, match="invalid ULID character"):
        validate_id("bnd-" + "U" * ULID_LENGTH, IdKind.BUNDLE)
    with pytest.raises(ValueError, match="must be a string"):
        validate_id(42, IdKind.BUNDLE)


def test_id_kind_of_unknown_prefixes() -> None:
    assert id_kind_of("nope") is None
    assert id_kind_of("zzz-01ARZ3NDEKTSV4RRFFQ69G5FAV") is None


def test_short_id_takes_the_tail() -> None:
    assert short_id("bnd-01ARZ3NDEKTSV4RRFFQ69G5FAV") == "Q69G5FAV"
