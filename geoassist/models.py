# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Request-scoped data model shared by the resolver, aggregator and comparator.

All records are frozen dataclasses: they are assembled once from provider
responses and never mutated afterwards. ``to_dict`` renders the flat,
JSON-compatible wire shape with explicit nulls for unknown values.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidInputError


def coordinates_valid(latitude: Any, longitude: Any) -> bool:
    """Finite latitude in [-90, 90] and longitude in [-180, 180]."""
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


# ============================================================================
# SELECTION SCOPE
# ============================================================================

class SelectionScope(Enum):
    """Granularity at which a location is labelled and reverse-geocoded."""
    COUNTRY = "country"
    REGION = "region"
    CITY = "city"
    DISTRICT = "district"
    STREET = "street"

    @classmethod
    def from_zoom(cls, zoom: Optional[float], default: "SelectionScope" = None) -> "SelectionScope":
        """Map a web-map zoom level onto a scope (<=5, <=7, <=10, <=12, else)."""
        if zoom is None:
            return default or cls.STREET
        if zoom <= 5:
            return cls.COUNTRY
        if zoom <= 7:
            return cls.REGION
        if zoom <= 10:
            return cls.CITY
        if zoom <= 12:
            return cls.DISTRICT
        return cls.STREET

    @property
    def precision(self) -> int:
        """Reverse-geocoding precision (Nominatim zoom) requested for this scope."""
        return _SCOPE_PRECISION[self]

    def coarser(self) -> Optional["SelectionScope"]:
        """The next coarser scope, or None at country level."""
        order = list(SelectionScope)
        index = order.index(self)
        return order[index - 1] if index > 0 else None


_SCOPE_PRECISION = {
    SelectionScope.COUNTRY: 3,
    SelectionScope.REGION: 5,
    SelectionScope.CITY: 10,
    SelectionScope.DISTRICT: 14,
    SelectionScope.STREET: 18,
}


# ============================================================================
# PLACE CANDIDATES
# ============================================================================

@dataclass(frozen=True)
class AddressComponents:
    """Provider-neutral address parts; every part is optional."""
    city: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    district: Optional[str] = None
    street: Optional[str] = None
    house_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "city": self.city,
            "country": self.country,
            "region": self.region,
            "district": self.district,
            "street": self.street,
            "houseNumber": self.house_number,
        }


@dataclass(frozen=True)
class PlaceClassification:
    """Class/type pair such as ``place/city`` or ``boundary/administrative``."""
    place_class: Optional[str] = None
    place_type: Optional[str] = None

    @property
    def path(self) -> Optional[str]:
        if not self.place_class and not self.place_type:
            return None
        return f"{self.place_class or ''}/{self.place_type or ''}"


@dataclass(frozen=True)
class PlaceCandidate:
    """An unconfirmed place match produced by a geocoding adapter."""
    latitude: float
    longitude: float
    display_label: Optional[str]
    address: AddressComponents = field(default_factory=AddressComponents)
    source_provider: Optional[str] = None
    classification: PlaceClassification = field(default_factory=PlaceClassification)
    name: Optional[str] = None
    importance: float = 0.0
    score: float = 0.0

    def __post_init__(self):
        if not coordinates_valid(self.latitude, self.longitude):
            raise ValueError(f"Invalid coordinates: ({self.latitude}, {self.longitude})")

    @property
    def is_city_like(self) -> bool:
        return (
            self.classification.place_class == "place"
            and self.classification.place_type in CITY_TYPES
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.latitude,
            "lon": self.longitude,
            "display_name": self.display_label,
            "name": self.name,
            "address": self.address.to_dict(),
            "source": self.source_provider,
            "class": self.classification.place_class,
            "type": self.classification.place_type,
            "importance": self.importance,
            "score": round(self.score, 4),
        }


CITY_TYPES = frozenset({"city", "town", "village", "municipality"})


@dataclass(frozen=True)
class ResolvedPlace:
    """
    The chosen candidate plus its selection scope.

    ``label`` is the scope-appropriate label; it is None (with ``warning``
    set) when every reverse geocoder failed and only coordinates are known.
    """
    candidate: PlaceCandidate
    scope: SelectionScope
    label: Optional[str]
    warning: Optional[str] = None

    @property
    def latitude(self) -> float:
        return self.candidate.latitude

    @property
    def longitude(self) -> float:
        return self.candidate.longitude

    @property
    def address(self) -> AddressComponents:
        return self.candidate.address

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.latitude,
            "lon": self.longitude,
            "label": self.label,
            "display_name": self.candidate.display_label,
            "scope": self.scope.value,
            "address": self.address.to_dict(),
            "source": self.candidate.source_provider,
            "classification": self.candidate.classification.path,
            "warning": self.warning,
        }


# ============================================================================
# PROVIDER RESPONSES
# ============================================================================

class ProviderStatus(Enum):
    OK = "ok"
    EMPTY = "empty"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ProviderResponse:
    """Tagged result of one adapter call: ok(candidates) | empty | unavailable(reason)."""
    provider: str
    status: ProviderStatus
    candidates: Tuple[PlaceCandidate, ...] = ()
    reason: Optional[str] = None

    @classmethod
    def ok(cls, provider: str, candidates: List[PlaceCandidate]) -> "ProviderResponse":
        if not candidates:
            return cls.empty(provider)
        return cls(provider, ProviderStatus.OK, tuple(candidates))

    @classmethod
    def empty(cls, provider: str) -> "ProviderResponse":
        return cls(provider, ProviderStatus.EMPTY)

    @classmethod
    def unavailable(cls, provider: str, reason: str) -> "ProviderResponse":
        return cls(provider, ProviderStatus.UNAVAILABLE, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status is ProviderStatus.OK

    @property
    def first(self) -> Optional[PlaceCandidate]:
        return self.candidates[0] if self.candidates else None


# ============================================================================
# KNOWLEDGE GRAPH
# ============================================================================

@dataclass(frozen=True)
class EntityCandidate:
    """One knowledge-graph search hit, in provider relevance order."""
    entity_id: str
    label: Optional[str]
    country_label: Optional[str] = None
    rank: int = 0
    country_id: Optional[str] = None


@dataclass(frozen=True)
class Observation:
    """A numeric statement with optional point-in-time and unit identifier."""
    value: float
    timestamp: Optional[str] = None
    unit: Optional[str] = None


@dataclass(frozen=True)
class KnowledgeFacts:
    """Raw statements for one entity, before reconciliation."""
    entity_id: str
    population: Tuple[Observation, ...] = ()
    area: Tuple[Observation, ...] = ()
    elevation: Optional[float] = None
    male_population: Tuple[Observation, ...] = ()
    female_population: Tuple[Observation, ...] = ()
    flag_url: Optional[str] = None


# ============================================================================
# AGGREGATED RECORDS
# ============================================================================

@dataclass(frozen=True)
class UrbanContext:
    """Land-use / amenity summary near a point."""
    source: Optional[str]
    summary: Optional[str]
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "summary": self.summary, "details": self.details}


@dataclass(frozen=True)
class FactRecord:
    """
    Normalized, merged per-place data.

    ``density`` is derived only: it must be None whenever population or area
    is unknown, and area must be strictly positive for it to exist.
    """
    name: Optional[str]
    latitude: float
    longitude: float
    population: Optional[int] = None
    area_km2: Optional[float] = None
    density: Optional[int] = None
    elevation: Optional[float] = None
    male_percent: Optional[float] = None
    female_percent: Optional[float] = None
    flag_image_url: Optional[str] = None
    aqi: Optional[float] = None
    aqi_label: Optional[str] = None
    flood_risk_level: Optional[str] = None
    flood_risk_value: Optional[float] = None
    fire_risk_level: Optional[str] = None
    fire_risk_value: Optional[float] = None
    urban: Optional[UrbanContext] = None
    entity_id: Optional[str] = None

    def __post_init__(self):
        if self.density is not None and (
            self.population is None or self.area_km2 is None or self.area_km2 <= 0
        ):
            raise ValueError("density requires both population and a positive area")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "lat": self.latitude,
            "lon": self.longitude,
            "population": self.population,
            "areaKm2": self.area_km2,
            "density": self.density,
            "elevation": self.elevation,
            "malePercent": self.male_percent,
            "femalePercent": self.female_percent,
            "flagImageUrl": self.flag_image_url,
            "aqi": self.aqi,
            "aqiLabel": self.aqi_label,
            "risk": self.flood_risk_level,
            "riskValue": self.flood_risk_value,
            "fireRisk": self.fire_risk_level,
            "fireRiskValue": self.fire_risk_value,
            "urban": self.urban.to_dict() if self.urban else None,
            "entityId": self.entity_id,
        }


@dataclass(frozen=True)
class ComparisonResult:
    """Two fact records plus derived, ordered comparison statements."""
    record_a: FactRecord
    record_b: FactRecord
    statements: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cityA": self.record_a.to_dict(),
            "cityB": self.record_b.to_dict(),
            "comparison": list(self.statements),
        }


# ============================================================================
# INBOUND QUERY
# ============================================================================

MAX_MAP_ZOOM = 22


@dataclass(frozen=True)
class PlaceQuery:
    """Raw user input: free text or an explicit coordinate pair, plus map zoom."""
    text: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    zoom: Optional[float] = None

    @property
    def is_coordinates(self) -> bool:
        return self.latitude is not None or self.longitude is not None

    def validate(self) -> "PlaceQuery":
        """Reject malformed input before any network call; returns a trimmed copy."""
        text = self.text.strip() if isinstance(self.text, str) else None
        if self.zoom is not None:
            if not isinstance(self.zoom, (int, float)) or not math.isfinite(self.zoom) or not 0 <= self.zoom <= MAX_MAP_ZOOM:
                raise InvalidInputError("mapZoom", f"mapZoom must be a number between 0 and {MAX_MAP_ZOOM}")

        if self.is_coordinates:
            if text:
                raise InvalidInputError("queryText", "Provide either queryText or coordinates, not both")
            if self.latitude is None:
                raise InvalidInputError("lat", "Latitude is required with longitude")
            if self.longitude is None:
                raise InvalidInputError("lon", "Longitude is required with latitude")
            if not coordinates_valid(self.latitude, 0.0):
                raise InvalidInputError("lat", f"Invalid latitude: {self.latitude}")
            if not coordinates_valid(0.0, self.longitude):
                raise InvalidInputError("lon", f"Invalid longitude: {self.longitude}")
            return PlaceQuery(None, float(self.latitude), float(self.longitude), self.zoom)

        if not text:
            raise InvalidInputError("queryText", "A place name or coordinates are required")
        return PlaceQuery(text, None, None, self.zoom)
