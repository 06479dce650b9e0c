# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Geocoding provider adapters.

Each adapter exposes the same three operations and answers with a
``ProviderResponse``:

- ``forward_search(text)``        -> ok(candidates) | empty | unavailable
- ``reverse_search(lat, lon, p)`` -> ok([candidate]) | empty | unavailable
- ``suggest(text, city_only)``    -> ok(candidates) | empty | unavailable

Provider field names (``municipality`` vs ``town``, ``countrySubdivision`` vs
``state`` ...) never leave this module: everything is parsed into
``PlaceCandidate``.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .cancellation import CancellationToken
from .errors import UpstreamUnavailableError
from .http_client import ProviderHttpClient
from .models import (
    AddressComponents,
    PlaceCandidate,
    PlaceClassification,
    ProviderResponse,
    coordinates_valid,
)
from .resilience import APICircuitBreaker, ResolverMetrics

logger = logging.getLogger(__name__)

# Reverse precision ladder, finest first (Nominatim zoom levels)
PRECISION_LADDER = (18, 14, 10, 5, 3)
# Coarser precisions tried after an empty reverse answer
REVERSE_RETRY_STEPS = 2


def _first(mapping: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = mapping.get(key)
        if value:
            return str(value)
    return None


def coarser_precisions(precision: int, steps: int = REVERSE_RETRY_STEPS) -> List[int]:
    """The next ``steps`` precisions below ``precision`` on the ladder."""
    return [p for p in PRECISION_LADDER if p < precision][:steps]


class GeocodingAdapter:
    """Common call accounting: circuit breaker, metrics, failure conversion."""

    name = "geocoder"

    def __init__(
        self,
        http: ProviderHttpClient,
        timeout: float,
        circuit_breaker: Optional[APICircuitBreaker] = None,
        metrics: Optional[ResolverMetrics] = None,
    ):
        self.http = http
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or APICircuitBreaker()
        self.metrics = metrics or ResolverMetrics()

    @property
    def available(self) -> bool:
        return True

    async def _call(
        self,
        operation: str,
        fetch: Callable[[], Awaitable[List[PlaceCandidate]]],
    ) -> ProviderResponse:
        if not self.available:
            return ProviderResponse.unavailable(self.name, "not configured")
        if not self.circuit_breaker.is_available(self.name):
            return ProviderResponse.unavailable(self.name, "circuit open")

        start = time.monotonic()
        try:
            candidates = await fetch()
        except UpstreamUnavailableError as e:
            self.circuit_breaker.record_failure(self.name, e.reason)
            self.metrics.record_failure(self.name)
            logger.warning(f"⚠️ {self.name} {operation} unavailable: {e.reason}")
            return ProviderResponse.unavailable(self.name, e.reason)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self.circuit_breaker.record_failure(self.name, str(e))
            self.metrics.record_failure(self.name)
            logger.warning(f"⚠️ {self.name} {operation} returned a malformed payload: {e}")
            return ProviderResponse.unavailable(self.name, "malformed payload")

        latency = (time.monotonic() - start) * 1000
        self.circuit_breaker.record_success(self.name)
        if candidates:
            self.metrics.record_success(self.name, latency)
        else:
            self.metrics.record_empty(self.name, latency)
        logger.debug(f"{self.name} {operation}: {len(candidates)} candidates ({latency:.0f}ms)")
        return ProviderResponse.ok(self.name, candidates)

    async def forward_search(self, text: str, token: Optional[CancellationToken] = None) -> ProviderResponse:
        raise NotImplementedError

    async def reverse_search(
        self, latitude: float, longitude: float, precision: int, token: Optional[CancellationToken] = None
    ) -> ProviderResponse:
        raise NotImplementedError

    async def suggest(
        self, text: str, city_only: bool, token: Optional[CancellationToken] = None
    ) -> ProviderResponse:
        raise NotImplementedError


# ============================================================================
# NOMINATIM (open geocoder)
# ============================================================================

class NominatimAdapter(GeocodingAdapter):
    """OpenStreetMap Nominatim search/reverse endpoints."""

    name = "nominatim"

    def __init__(self, http: ProviderHttpClient, base_url: str, timeout: float, suggest_timeout: float = None, **kwargs):
        super().__init__(http, timeout, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.suggest_timeout = suggest_timeout or timeout

    @staticmethod
    def parse_item(item: Dict[str, Any]) -> Optional[PlaceCandidate]:
        """Parse one Nominatim result (``json`` or ``jsonv2`` format)."""
        if not isinstance(item, dict) or item.get("error"):
            return None
        lat, lon = item.get("lat"), item.get("lon")
        if not coordinates_valid(lat, lon):
            return None

        address = item.get("address") or {}
        components = AddressComponents(
            city=_first(address, "city", "town", "village", "municipality", "hamlet"),
            country=_first(address, "country"),
            region=_first(address, "state", "region", "province", "county"),
            district=_first(address, "city_district", "suburb", "district", "borough", "quarter", "neighbourhood"),
            street=_first(address, "road", "pedestrian", "footway", "square"),
            house_number=_first(address, "house_number"),
        )
        try:
            importance = float(item.get("importance") or 0.0)
        except (TypeError, ValueError):
            importance = 0.0

        return PlaceCandidate(
            latitude=float(lat),
            longitude=float(lon),
            display_label=item.get("display_name"),
            address=components,
            source_provider="nominatim",
            # jsonv2 renames "class" to "category"
            classification=PlaceClassification(
                place_class=item.get("class") or item.get("category"),
                place_type=item.get("type"),
            ),
            name=item.get("name") or components.street,
            importance=importance,
        )

    def _parse_list(self, payload: Any) -> List[PlaceCandidate]:
        if not isinstance(payload, list):
            raise ValueError("expected a list of results")
        candidates = []
        for item in payload:
            candidate = self.parse_item(item)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    async def forward_search(self, text: str, token: Optional[CancellationToken] = None) -> ProviderResponse:
        async def fetch():
            payload = await self.http.get_json(
                f"{self.base_url}/search",
                provider=self.name,
                timeout=self.timeout,
                params={"q": text, "format": "json", "addressdetails": "1", "limit": "5"},
                token=token,
            )
            return self._parse_list(payload)

        return await self._call("forward", fetch)

    async def _reverse_once(
        self, latitude: float, longitude: float, precision: int, fmt: str, token: Optional[CancellationToken]
    ) -> List[PlaceCandidate]:
        payload = await self.http.get_json(
            f"{self.base_url}/reverse",
            provider=self.name,
            timeout=self.timeout,
            params={
                "format": fmt,
                "lat": str(latitude),
                "lon": str(longitude),
                "zoom": str(precision),
                "addressdetails": "1",
            },
            token=token,
        )
        candidate = self.parse_item(payload)
        return [candidate] if candidate else []

    async def reverse_search(
        self, latitude: float, longitude: float, precision: int, token: Optional[CancellationToken] = None
    ) -> ProviderResponse:
        async def fetch():
            candidates = await self._reverse_once(latitude, longitude, precision, "json", token)
            for lower in coarser_precisions(precision):
                if candidates:
                    break
                logger.info(f"🔄 Nominatim reverse empty at zoom {precision}, retrying at {lower}")
                candidates = await self._reverse_once(latitude, longitude, lower, "jsonv2", token)
            return candidates

        return await self._call("reverse", fetch)

    async def suggest(
        self, text: str, city_only: bool, token: Optional[CancellationToken] = None
    ) -> ProviderResponse:
        base_params = {"q": text, "format": "json", "addressdetails": "1", "dedupe": "1", "limit": "50"}

        async def search(params: Dict[str, str]) -> Optional[List[PlaceCandidate]]:
            try:
                payload = await self.http.get_json(
                    f"{self.base_url}/search",
                    provider=self.name,
                    timeout=self.suggest_timeout,
                    params=params,
                    token=token,
                )
                return self._parse_list(payload)
            except (UpstreamUnavailableError, ValueError) as e:
                logger.debug(f"Nominatim suggestion query failed: {e}")
                return None

        async def fetch():
            general, cities = await asyncio.gather(
                search(base_params),
                search({**base_params, "featuretype": "city"}),
            )
            if general is None and cities is None:
                raise UpstreamUnavailableError(self.name, "suggestion queries failed")
            # City-typed hits first, then the general ones
            return (cities or []) + (general or [])

        return await self._call("suggest", fetch)


# ============================================================================
# AZURE MAPS (commercial geocoder)
# ============================================================================

# Azure Maps geography entity types mapped onto OSM-style place types
_AZURE_ENTITY_TYPES = {
    "Country": "country",
    "CountrySubdivision": "state",
    "CountrySecondarySubdivision": "county",
    "CountryTertiarySubdivision": "municipality",
    "Municipality": "city",
    "MunicipalitySubdivision": "suburb",
    "Neighbourhood": "neighbourhood",
    "PostalCodeArea": "postcode",
}

# Reverse entityType requested per precision; None asks for a street address
_AZURE_REVERSE_ENTITY = {
    3: "Country",
    5: "CountrySubdivision",
    10: "Municipality",
    14: "MunicipalitySubdivision",
    18: None,
}


class AzureMapsAdapter(GeocodingAdapter):
    """Azure Maps Search (fuzzy, reverse) - requires a subscription key."""

    name = "azure_maps"

    def __init__(
        self,
        http: ProviderHttpClient,
        subscription_key: Optional[str],
        timeout: float,
        base_url: str = "https://atlas.microsoft.com",
        language: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(http, timeout, **kwargs)
        self.subscription_key = subscription_key
        self.base_url = base_url.rstrip("/")
        self.language = language

    @property
    def available(self) -> bool:
        return bool(self.subscription_key)

    def _params(self, **extra: str) -> Dict[str, str]:
        params = {"api-version": "1.0", "subscription-key": self.subscription_key}
        if self.language:
            params["language"] = self.language
        params.update({k: v for k, v in extra.items() if v is not None})
        return params

    @staticmethod
    def _classification(result: Dict[str, Any]) -> PlaceClassification:
        result_type = result.get("type")
        if result_type == "Geography":
            entity = result.get("entityType")
            return PlaceClassification("place", _AZURE_ENTITY_TYPES.get(entity, (entity or "").lower() or None))
        if result_type == "POI":
            categories = (result.get("poi") or {}).get("categories") or []
            return PlaceClassification("amenity", categories[0] if categories else None)
        if result_type:
            return PlaceClassification("address", result_type.lower().replace(" ", "_"))
        return PlaceClassification()

    @staticmethod
    def _components(address: Dict[str, Any]) -> AddressComponents:
        return AddressComponents(
            city=_first(address, "municipality", "localName"),
            country=_first(address, "country"),
            region=_first(address, "countrySubdivisionName", "countrySubdivision", "countrySecondarySubdivision"),
            district=_first(address, "municipalitySubdivision", "neighbourhood"),
            street=_first(address, "streetName"),
            house_number=_first(address, "streetNumber"),
        )

    def parse_search_result(self, result: Dict[str, Any]) -> Optional[PlaceCandidate]:
        position = result.get("position") or {}
        lat, lon = position.get("lat"), position.get("lon")
        if not coordinates_valid(lat, lon):
            return None
        address = result.get("address") or {}
        poi_name = (result.get("poi") or {}).get("name")
        components = self._components(address)
        try:
            importance = float(result.get("score") or 0.0)
        except (TypeError, ValueError):
            importance = 0.0
        return PlaceCandidate(
            latitude=float(lat),
            longitude=float(lon),
            display_label=address.get("freeformAddress"),
            address=components,
            source_provider=self.name,
            classification=self._classification(result),
            name=poi_name or components.city or components.region or components.country,
            importance=importance,
        )

    def parse_reverse_result(
        self, entry: Dict[str, Any], latitude: float, longitude: float
    ) -> Optional[PlaceCandidate]:
        address = entry.get("address") or {}
        if not address:
            return None
        lat, lon = latitude, longitude
        position = entry.get("position")
        if isinstance(position, str) and "," in position:
            raw_lat, raw_lon = position.split(",", 1)
            if coordinates_valid(raw_lat, raw_lon):
                lat, lon = float(raw_lat), float(raw_lon)
        components = self._components(address)
        entity_type = address.get("entityType")
        classification = (
            PlaceClassification("place", _AZURE_ENTITY_TYPES.get(entity_type))
            if entity_type else PlaceClassification("address", "point_address")
        )
        return PlaceCandidate(
            latitude=lat,
            longitude=lon,
            display_label=address.get("freeformAddress"),
            address=components,
            source_provider=self.name,
            classification=classification,
            name=components.street or components.city,
        )

    async def _fuzzy(self, text: str, token: Optional[CancellationToken], **extra: str) -> List[PlaceCandidate]:
        payload = await self.http.get_json(
            f"{self.base_url}/search/fuzzy/json",
            provider=self.name,
            timeout=self.timeout,
            params=self._params(query=text, limit="10", **extra),
            token=token,
        )
        results = payload.get("results", [])
        candidates = []
        for result in results:
            candidate = self.parse_search_result(result)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    async def forward_search(self, text: str, token: Optional[CancellationToken] = None) -> ProviderResponse:
        return await self._call("forward", lambda: self._fuzzy(text, token, typeahead="false"))

    async def suggest(
        self, text: str, city_only: bool, token: Optional[CancellationToken] = None
    ) -> ProviderResponse:
        extra = {"typeahead": "true"}
        if city_only:
            extra["idxSet"] = "Geo"
        return await self._call("suggest", lambda: self._fuzzy(text, token, **extra))

    async def _reverse_once(
        self, latitude: float, longitude: float, precision: int, token: Optional[CancellationToken]
    ) -> List[PlaceCandidate]:
        entity_type = _AZURE_REVERSE_ENTITY.get(precision)
        payload = await self.http.get_json(
            f"{self.base_url}/search/address/reverse/json",
            provider=self.name,
            timeout=self.timeout,
            params=self._params(query=f"{latitude},{longitude}", entityType=entity_type),
            token=token,
        )
        for entry in payload.get("addresses", []):
            candidate = self.parse_reverse_result(entry, latitude, longitude)
            if candidate is not None:
                return [candidate]
        return []

    async def reverse_search(
        self, latitude: float, longitude: float, precision: int, token: Optional[CancellationToken] = None
    ) -> ProviderResponse:
        async def fetch():
            candidates = await self._reverse_once(latitude, longitude, precision, token)
            for lower in coarser_precisions(precision):
                if candidates:
                    break
                logger.info(f"🔄 Azure Maps reverse empty at precision {precision}, retrying at {lower}")
                candidates = await self._reverse_once(latitude, longitude, lower, token)
            return candidates

        return await self._call("reverse", fetch)
