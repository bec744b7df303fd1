"""Address canonicalization shared by the property index and both matchers.

Stored property addresses and incoming mirror addresses go through the same
functions here. Any divergence between the two paths turns into silent
false-negative matches, so nothing else in the package builds join keys.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from mirrorseed.errors import AddressError


POSTAL_CODE_RE = re.compile(r"^\d{4}[A-Z]{2}$")
# Leading digits, an optional separator, then whatever is left as the addition.
COMPOSITE_HOUSE_NUMBER_RE = re.compile(r"^(\d+)\s*[-/]?\s*(.*)$")
LEADING_DIGITS_RE = re.compile(r"^\s*(\d+)")
WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class CanonicalAddress:
    postal_code: str
    house_number: int
    addition: str = ""

    @property
    def key(self) -> str:
        return build_lookup_key(self.postal_code, self.house_number, self.addition)


def build_lookup_key(postal_code: str, house_number: int, addition: str | None) -> str:
    """Format the join key ``POSTALCODE|HOUSENUMBER|ADDITION``."""
    return f"{postal_code}|{house_number}|{addition or ''}"


def normalize_postal_code(raw: str | None, *, strict: bool = True) -> str:
    if raw is None:
        raise AddressError("Missing postal code")
    stripped = WHITESPACE_RE.sub("", str(raw)).upper()
    if not stripped:
        raise AddressError("Missing postal code")
    if strict and not POSTAL_CODE_RE.match(stripped):
        raise AddressError(f"Invalid postal code: {raw!r} (normalized: {stripped!r})")
    return stripped


def normalize_addition(raw: str | None) -> str:
    if raw is None:
        return ""
    return str(raw).strip().upper()


def parse_house_number(raw: str | int | None) -> tuple[int, str]:
    """
    Split a possibly composite house number into ``(number, addition)``.

    ``"13"`` -> ``(13, "")``, ``"13a"`` -> ``(13, "A")``, ``"13 -bis"`` ->
    ``(13, "BIS")``, ``13`` -> ``(13, "")``.
    """
    if raw is None:
        raise AddressError("Missing house number")
    if isinstance(raw, bool):
        raise AddressError(f"Invalid house number: {raw!r}")
    if isinstance(raw, int):
        if raw < 0:
            raise AddressError(f"Invalid house number: {raw}")
        return raw, ""

    text = str(raw).strip()
    if not text:
        raise AddressError("Invalid house number: empty string")
    match = COMPOSITE_HOUSE_NUMBER_RE.match(text)
    if not match:
        raise AddressError(f"Invalid house number: {text!r} does not start with a digit")
    return int(match.group(1)), normalize_addition(match.group(2))


def canonicalize_address(
    postal_code: str | None,
    house_number: str | int | None,
    addition: str | None = None,
    *,
    strict_postal: bool = True,
) -> CanonicalAddress:
    """
    Canonicalize raw address fields into a comparable key.

    An explicit non-empty ``addition`` wins over one parsed out of a composite
    house number. Raises ``AddressError`` when the fields cannot form a key.
    """
    normalized_postal = normalize_postal_code(postal_code, strict=strict_postal)
    number, parsed_addition = parse_house_number(house_number)
    explicit = normalize_addition(addition)
    return CanonicalAddress(
        postal_code=normalized_postal,
        house_number=number,
        addition=explicit or parsed_addition,
    )


def raw_lookup_key(
    postal_code: str | None,
    house_number: str | int | None,
    addition: str | None = None,
) -> str | None:
    """
    Less strict key for the fallback lookup.

    Skips postal code validation and composite parsing: only the leading digits
    of the house number count and the addition is taken as given. Returns
    ``None`` when no key can be formed at all.
    """
    if not postal_code:
        return None
    pc = WHITESPACE_RE.sub("", str(postal_code)).upper()
    if not pc:
        return None
    if isinstance(house_number, bool) or house_number is None:
        return None
    if isinstance(house_number, int):
        number = house_number
    else:
        match = LEADING_DIGITS_RE.match(str(house_number))
        if not match:
            return None
        number = int(match.group(1))
    return build_lookup_key(pc, number, (addition or "").upper())


def address_key(
    postal_code: str | None,
    house_number: str | int | None,
    addition: str | None = None,
) -> tuple[str | None, bool]:
    """
    Key used to index or look up an address.

    Returns ``(key, canonical)``: the canonical key when strict
    canonicalization succeeds, otherwise the raw key (``canonical`` False),
    or ``(None, False)`` when neither can be formed.
    """
    try:
        return canonicalize_address(postal_code, house_number, addition).key, True
    except AddressError:
        return raw_lookup_key(postal_code, house_number, addition), False
