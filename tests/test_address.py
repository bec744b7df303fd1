from __future__ import annotations

import pytest

from mirrorseed.address import CanonicalAddress
from mirrorseed.address import address_key
from mirrorseed.address import canonicalize_address
from mirrorseed.address import parse_house_number
from mirrorseed.address import raw_lookup_key
from mirrorseed.errors import AddressError


def test_canonicalize_normalizes_postal_code_number_and_addition() -> None:
    result = canonicalize_address("1234 AB", "7", "bis")

    assert result == CanonicalAddress(postal_code="1234AB", house_number=7, addition="BIS")
    assert result.key == "1234AB|7|BIS"


def test_canonicalize_is_idempotent() -> None:
    inputs = [
        ("1234 ab", "7", "bis"),
        (" 5611AB ", 10, None),
        ("9999zz", "13a", ""),
        ("1011 AA", "2 - III", None),
    ]
    for postal_code, house_number, addition in inputs:
        once = canonicalize_address(postal_code, house_number, addition)
        twice = canonicalize_address(once.postal_code, once.house_number, once.addition)
        assert twice == once


def test_missing_addition_uses_empty_sentinel() -> None:
    assert canonicalize_address("1234AB", 7).addition == ""
    assert canonicalize_address("1234AB", 7, "  ").addition == ""
    assert canonicalize_address("1234AB", 7, None).key == "1234AB|7|"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("13", (13, "")),
        ("13A", (13, "A")),
        ("13a", (13, "A")),
        ("13-bis", (13, "BIS")),
        ("13 a", (13, "A")),
        ("13/2", (13, "2")),
        (13, (13, "")),
    ],
)
def test_parse_house_number_splits_composites(raw: str | int, expected: tuple[int, str]) -> None:
    assert parse_house_number(raw) == expected


def test_explicit_addition_wins_over_composite_house_number() -> None:
    assert canonicalize_address("1234AB", "13A", "b").addition == "B"
    assert canonicalize_address("1234AB", "13A", None).addition == "A"


@pytest.mark.parametrize("house_number", ["abc", "", "   ", None, -1, True])
def test_invalid_house_number_raises(house_number: object) -> None:
    with pytest.raises(AddressError):
        canonicalize_address("1234AB", house_number)  # type: ignore[arg-type]


def test_postal_code_validation() -> None:
    with pytest.raises(AddressError):
        canonicalize_address("", "7")
    with pytest.raises(AddressError):
        canonicalize_address(None, "7")
    with pytest.raises(AddressError):
        canonicalize_address("12345", "7")

    assert canonicalize_address("12345", "7", strict_postal=False).postal_code == "12345"


def test_address_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        canonicalize_address("1234AB", "x")


def test_raw_lookup_key_uses_leading_digits_only() -> None:
    assert raw_lookup_key("12 ab", "7x", "b") == "12AB|7|B"
    assert raw_lookup_key("1234AB", "13A") == "1234AB|13|"
    assert raw_lookup_key("1234AB", 7, None) == "1234AB|7|"


def test_raw_lookup_key_returns_none_without_a_number_or_postal_code() -> None:
    assert raw_lookup_key("1234AB", "x") is None
    assert raw_lookup_key("1234AB", None) is None
    assert raw_lookup_key(None, "7") is None
    assert raw_lookup_key("  ", "7") is None


def test_address_key_falls_back_to_raw_key() -> None:
    assert address_key("1234 ab", "7", "bis") == ("1234AB|7|BIS", True)
    assert address_key("12345", "7") == ("12345|7|", False)
    assert address_key("", "7") == (None, False)
