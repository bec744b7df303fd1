from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from mirrorseed.address import canonicalize_address
from mirrorseed.address import raw_lookup_key
from mirrorseed.errors import AddressError
from mirrorseed.property_index import PropertyIndex


@dataclass(frozen=True, slots=True)
class MatchOutcome:
    property_id: str | None
    method: str | None = None
    unparseable: bool = False

    @property
    def matched(self) -> bool:
        return self.property_id is not None


def cache_key_for(
    postal_code: str | None,
    house_number: str | int | None,
    addition: str | None = None,
) -> str | None:
    """
    Key a mirror address for the spatial scratch table and override lookups.

    Returns ``None`` when neither a canonical nor a raw key can be formed; such
    an address has nothing to tell it apart from any other and is never
    resolved spatially.
    """
    try:
        return canonicalize_address(postal_code, house_number, addition).key
    except AddressError:
        return raw_lookup_key(postal_code, house_number, addition)


class ExactMatcher:
    """
    Resolves mirror addresses against the shared property index.

    The canonical key is tried first; when canonicalization fails or misses, a
    single lookup with the raw key follows. ``overrides`` holds per-source
    spatial resolutions keyed by ``cache_key_for``.
    """

    def __init__(
        self, index: PropertyIndex, overrides: Mapping[str, str] | None = None
    ) -> None:
        self.index = index
        self.overrides = MappingProxyType(dict(overrides or {}))

    def with_overrides(self, overrides: Mapping[str, str]) -> ExactMatcher:
        merged = dict(self.overrides)
        merged.update(overrides)
        return ExactMatcher(self.index, merged)

    def match(
        self,
        postal_code: str | None,
        house_number: str | int | None,
        addition: str | None = None,
    ) -> MatchOutcome:
        unparseable = False
        try:
            key = canonicalize_address(postal_code, house_number, addition).key
        except AddressError:
            unparseable = True
            key = None

        if key is not None:
            property_id = self.index.lookup(key)
            if property_id is not None:
                return MatchOutcome(property_id, "canonical")

        raw_key = raw_lookup_key(postal_code, house_number, addition)
        if raw_key is not None and raw_key != key:
            property_id = self.index.lookup(raw_key)
            if property_id is not None:
                return MatchOutcome(property_id, "raw")
        override_key = key or raw_key
        if override_key is None:
            return MatchOutcome(None, None, True)

        if self.overrides:
            override = self.overrides.get(override_key)
            if override is not None:
                return MatchOutcome(override, "spatial")

        return MatchOutcome(None, None, unparseable)
