# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Place Resolver
--------------
Turns a ``PlaceQuery`` into exactly one ``ResolvedPlace``.

Coordinates:
    reverse adapters in priority order (commercial geocoder first, open
    geocoder second). When every adapter fails the place still resolves,
    with coordinates only and a warning, so downstream lookups can run.

Free text:
    1. city-like suggestions (class=place, type in city/town/village/municipality)
    2. unrestricted forward search over the forward adapters
    3. ``LocationNotFoundError``

The selection scope derived from the map zoom decides both the reverse
precision requested and which address components make up the label.
"""

import logging
from typing import Optional, Sequence

from .cancellation import CancellationToken
from .errors import LocationNotFoundError
from .geocoding_adapters import GeocodingAdapter
from .location_cache import LocationCache, coordinate_key
from .models import PlaceCandidate, PlaceQuery, ProviderResponse, ResolvedPlace, SelectionScope
from .resilience import try_in_order
from .suggestions import POPULAR_FALLBACK_SOURCE, SuggestionService

logger = logging.getLogger(__name__)

COORDINATES_ONLY_WARNING = "Reverse geocoding unavailable; only coordinates are known"


def _join(*parts: Optional[str]) -> Optional[str]:
    seen = []
    for part in parts:
        if part and part not in seen:
            seen.append(part)
    return ", ".join(seen) if seen else None


def build_label(candidate: PlaceCandidate, scope: SelectionScope) -> Optional[str]:
    """
    Scope-appropriate label: coarse scopes promote country/region/city,
    fine scopes assemble road + house number + locality.
    """
    address = candidate.address
    locality = address.city or address.district or address.region

    if scope is SelectionScope.COUNTRY:
        label = address.country
    elif scope is SelectionScope.REGION:
        label = _join(address.region, address.country)
    elif scope is SelectionScope.CITY:
        label = _join(address.city or candidate.name, address.country)
    elif scope is SelectionScope.DISTRICT:
        label = _join(address.district, address.city or address.region)
    else:
        label = _join(address.street, address.house_number, locality) if address.street else None

    return label or candidate.display_label


class PlaceResolver:
    """Multi-provider place resolution with ordered fallback chains."""

    def __init__(
        self,
        reverse_adapters: Sequence[GeocodingAdapter],
        forward_adapters: Sequence[GeocodingAdapter],
        suggestions: SuggestionService,
        reverse_cache: LocationCache,
    ):
        self.reverse_adapters = list(reverse_adapters)
        self.forward_adapters = list(forward_adapters)
        self.suggestions = suggestions
        self.reverse_cache = reverse_cache
        self.logger = logging.getLogger(__name__)

    async def resolve(self, query: PlaceQuery, token: Optional[CancellationToken] = None) -> ResolvedPlace:
        """Resolve text or coordinates; only an unresolvable text query raises."""
        query = query.validate()
        if query.is_coordinates:
            scope = SelectionScope.from_zoom(query.zoom, default=SelectionScope.STREET)
            return await self.resolve_coordinates(query.latitude, query.longitude, scope, token)

        scope = SelectionScope.from_zoom(query.zoom, default=SelectionScope.CITY)
        return await self.resolve_text(query.text, scope, token)

    # ------------------------------------------------------------------
    # Coordinates
    # ------------------------------------------------------------------

    async def reverse(
        self,
        latitude: float,
        longitude: float,
        precision: int,
        token: Optional[CancellationToken] = None,
    ) -> Optional[PlaceCandidate]:
        """First non-empty reverse answer across the adapters, cached per rounded point."""
        key = coordinate_key(latitude, longitude, precision)

        async def fetch() -> Optional[ProviderResponse]:
            outcome = await try_in_order(
                [
                    (adapter.name,
                     lambda adapter=adapter: adapter.reverse_search(latitude, longitude, precision, token=token))
                    for adapter in self.reverse_adapters
                ],
                accept=lambda response: response.is_ok,
            )
            return outcome.value if outcome else None

        response = await self.reverse_cache.get_or_fetch(key, fetch, should_cache=lambda r: r is not None)
        return response.first if response else None

    async def resolve_coordinates(
        self,
        latitude: float,
        longitude: float,
        scope: SelectionScope,
        token: Optional[CancellationToken] = None,
    ) -> ResolvedPlace:
        candidate = await self.reverse(latitude, longitude, scope.precision, token)
        if candidate is None:
            self.logger.warning(f"⚠️ No reverse geocoder answered for ({latitude}, {longitude})")
            return ResolvedPlace(
                candidate=PlaceCandidate(latitude=latitude, longitude=longitude, display_label=None),
                scope=scope,
                label=None,
                warning=COORDINATES_ONLY_WARNING,
            )

        # Keep the clicked point; the provider position may be a centroid
        clicked = PlaceCandidate(
            latitude=latitude,
            longitude=longitude,
            display_label=candidate.display_label,
            address=candidate.address,
            source_provider=candidate.source_provider,
            classification=candidate.classification,
            name=candidate.name,
            importance=candidate.importance,
        )
        return ResolvedPlace(candidate=clicked, scope=scope, label=build_label(clicked, scope))

    async def reverse_label(
        self,
        latitude: float,
        longitude: float,
        scope: SelectionScope = SelectionScope.CITY,
        token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """Display name of a point at ``scope`` (raw provider label), or None."""
        candidate = await self.reverse(latitude, longitude, scope.precision, token)
        return candidate.display_label if candidate else None

    # ------------------------------------------------------------------
    # Free text
    # ------------------------------------------------------------------

    async def _city_suggestion(self, text: str, token: Optional[CancellationToken]) -> Optional[PlaceCandidate]:
        suggestions = await self.suggestions.suggest(text, city_only=True, token=token)
        for candidate in suggestions:
            if candidate.is_city_like and candidate.source_provider != POPULAR_FALLBACK_SOURCE:
                return candidate
        return None

    async def forward(self, text: str, token: Optional[CancellationToken] = None) -> Optional[PlaceCandidate]:
        """First forward-search candidate across the forward adapters."""
        outcome = await try_in_order(
            [
                (adapter.name, lambda adapter=adapter: adapter.forward_search(text, token=token))
                for adapter in self.forward_adapters
            ],
            accept=lambda response: response.is_ok,
        )
        return outcome.value.first if outcome else None

    async def find_candidate(self, text: str, token: Optional[CancellationToken] = None) -> Optional[PlaceCandidate]:
        """City-like suggestion first, then unrestricted forward search."""
        outcome = await try_in_order([
            ("city_suggestion", lambda: self._city_suggestion(text, token)),
            ("forward_search", lambda: self.forward(text, token)),
        ])
        return outcome.value if outcome else None

    async def resolve_text(
        self,
        text: str,
        scope: SelectionScope = SelectionScope.CITY,
        token: Optional[CancellationToken] = None,
    ) -> ResolvedPlace:
        candidate = await self.find_candidate(text, token)
        if candidate is None:
            self.logger.info(f"❌ No candidate for '{text}'")
            raise LocationNotFoundError(text)
        self.logger.info(
            f"📍 Resolved '{text}' via {candidate.source_provider} -> "
            f"({candidate.latitude:.4f}, {candidate.longitude:.4f})"
        )
        return ResolvedPlace(candidate=candidate, scope=scope, label=build_label(candidate, scope))
