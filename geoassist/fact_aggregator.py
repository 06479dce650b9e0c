# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Fact Aggregator
---------------
Builds one ``FactRecord`` per resolved place from five independent lookups
issued concurrently:

    urban context | flood risk | fire risk | knowledge-graph facts | air quality

Each lookup has its own timeout and its own failure domain. A failed or
timed-out lookup leaves its fields as None; ``aggregate`` itself never raises
except for cancellation.
"""

import asyncio
import logging
import math
from typing import Any, Awaitable, Iterable, Optional, Tuple

from .cancellation import CancellationToken
from .entity_disambiguator import EntityDisambiguator
from .environment_providers import (
    AirQualityProvider,
    FireRisk,
    FireRiskProvider,
    FloodRisk,
    FloodRiskProvider,
    UrbanContextProvider,
    classify_aqi,
)
from .knowledge_graph import (
    UNIT_HECTARE,
    UNIT_SQUARE_KILOMETRE,
    UNIT_SQUARE_METRE,
    WikidataClient,
)
from .models import FactRecord, KnowledgeFacts, Observation, ResolvedPlace, UrbanContext
from .text_normalizer import split_city_country

logger = logging.getLogger(__name__)

# Unit-less areas above this are taken to be square metres
UNITLESS_AREA_THRESHOLD = 10_000

_KM2_UNITS = {UNIT_SQUARE_KILOMETRE, "km2", "km²"}
_M2_UNITS = {UNIT_SQUARE_METRE, "m2", "m²"}
_HECTARE_UNITS = {UNIT_HECTARE, "ha", "hectare"}


# ============================================================================
# RECONCILIATION
# ============================================================================

def pick_observation(observations: Iterable[Observation]) -> Optional[Observation]:
    """Most recent timestamp wins; ties and missing timestamps go to the larger value."""
    observations = list(observations)
    if not observations:
        return None
    return max(observations, key=lambda o: (o.timestamp or "", o.value))


def area_to_km2(observation: Observation) -> Optional[float]:
    """Normalize one area statement to km²; None for an unrecognised unit."""
    value = observation.value
    unit = observation.unit
    if unit is None:
        return value / 1_000_000 if value > UNITLESS_AREA_THRESHOLD else value
    if unit in _KM2_UNITS:
        return value
    if unit in _M2_UNITS:
        return value / 1_000_000
    if unit in _HECTARE_UNITS:
        return value / 100
    logger.debug(f"Ignoring area statement with unit {unit}")
    return None


def normalize_area(observations: Iterable[Observation]) -> Optional[float]:
    """Largest of all normalized area candidates."""
    candidates = [a for a in (area_to_km2(o) for o in observations) if a is not None and a > 0]
    if not candidates:
        return None
    return round(max(candidates), 3)


def derive_density(population: Optional[int], area_km2: Optional[float]) -> Optional[int]:
    if population is None or area_km2 is None or area_km2 <= 0:
        return None
    # .5 rounds up
    return math.floor(population / area_km2 + 0.5)


def sex_ratio(
    male: Optional[Observation], female: Optional[Observation]
) -> Tuple[Optional[float], Optional[float]]:
    """Male/female percentages (1 decimal) when both counts are known."""
    if male is None or female is None:
        return None, None
    total = male.value + female.value
    if total <= 0:
        return None, None
    return round(male.value / total * 100, 1), round(female.value / total * 100, 1)


def build_record(
    name: Optional[str],
    latitude: float,
    longitude: float,
    facts: Optional[KnowledgeFacts] = None,
    flood: Optional[FloodRisk] = None,
    fire: Optional[FireRisk] = None,
    urban: Optional[UrbanContext] = None,
    aqi: Optional[float] = None,
) -> FactRecord:
    """Keyed merge of whatever lookups succeeded."""
    population = area_km2 = elevation = flag_url = entity_id = None
    male_percent = female_percent = None
    if facts is not None:
        entity_id = facts.entity_id
        chosen = pick_observation(facts.population)
        population = int(round(chosen.value)) if chosen else None
        area_km2 = normalize_area(facts.area)
        elevation = facts.elevation
        flag_url = facts.flag_url
        male_percent, female_percent = sex_ratio(
            pick_observation(facts.male_population), pick_observation(facts.female_population)
        )

    return FactRecord(
        name=name,
        latitude=latitude,
        longitude=longitude,
        population=population,
        area_km2=area_km2,
        density=derive_density(population, area_km2),
        elevation=elevation,
        male_percent=male_percent,
        female_percent=female_percent,
        flag_image_url=flag_url,
        aqi=aqi,
        aqi_label=classify_aqi(aqi),
        flood_risk_level=flood.level if flood else None,
        flood_risk_value=flood.value if flood else None,
        fire_risk_level=fire.level if fire else None,
        fire_risk_value=fire.value if fire else None,
        urban=urban,
        entity_id=entity_id,
    )


def knowledge_names(place: ResolvedPlace) -> Tuple[Optional[str], Optional[str]]:
    """City and country names to disambiguate, from the address or the label."""
    address = place.address
    city = address.city or place.candidate.name
    country = address.country
    if city:
        return city, country
    parts = split_city_country(place.label or place.candidate.display_label)
    return parts["city"], country or parts["country"]


# ============================================================================
# AGGREGATOR
# ============================================================================

class FactAggregator:
    """Concurrent, failure-isolated fact collection for a resolved place."""

    def __init__(
        self,
        disambiguator: EntityDisambiguator,
        knowledge: WikidataClient,
        flood: FloodRiskProvider,
        urban: UrbanContextProvider,
        air_quality: AirQualityProvider,
        fire: FireRiskProvider,
        lookup_timeout: float = 8.0,
        knowledge_timeout: float = 24.0,
    ):
        self.disambiguator = disambiguator
        self.knowledge = knowledge
        self.flood = flood
        self.urban = urban
        self.air_quality = air_quality
        self.fire = fire
        self.lookup_timeout = lookup_timeout
        self.knowledge_timeout = knowledge_timeout
        self.logger = logging.getLogger(__name__)

    async def _bounded(self, name: str, awaitable: Awaitable[Any], timeout: float) -> Any:
        """Await one lookup; timeout or failure becomes None, cancellation propagates."""
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"⏱️ {name} lookup timed out after {timeout}s")
        except Exception as e:
            self.logger.warning(f"⚠️ {name} lookup failed: {e}")
        return None

    async def fetch_knowledge(
        self, city: Optional[str], country: Optional[str], token: Optional[CancellationToken] = None
    ) -> Optional[KnowledgeFacts]:
        if not city:
            return None
        entity_id = await self.disambiguator.find_entity(city, country, token=token)
        if entity_id is None:
            return None
        return await self.knowledge.get_facts(entity_id, token=token)

    async def aggregate(
        self,
        place: ResolvedPlace,
        name: Optional[str] = None,
        city: Optional[str] = None,
        country: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> FactRecord:
        """
        Collect facts for ``place``.

        ``city``/``country`` override the names used for the knowledge-graph
        lookup (comparison mode passes the user's own input); ``name`` is the
        display name of the record.
        """
        lat, lon = place.latitude, place.longitude
        if city is None:
            city, country = knowledge_names(place)
        display_name = name or place.label or place.candidate.display_label

        self.logger.info(f"🔎 Aggregating facts for {display_name or f'({lat:.4f}, {lon:.4f})'}")
        urban, flood, fire, facts, aqi = await asyncio.gather(
            self._bounded("urban", self.urban.lookup(lat, lon, token=token), self.lookup_timeout),
            self._bounded("flood", self.flood.lookup(lat, lon, token=token), self.lookup_timeout),
            self._bounded("fire", self.fire.lookup(lat, lon, token=token), self.lookup_timeout),
            self._bounded("knowledge", self.fetch_knowledge(city, country, token), self.knowledge_timeout),
            self._bounded("air_quality", self.air_quality.lookup(lat, lon, token=token), self.lookup_timeout),
        )
        if token is not None:
            token.raise_if_cancelled()

        record = build_record(display_name, lat, lon, facts=facts, flood=flood, fire=fire, urban=urban, aqi=aqi)
        self.logger.info(
            f"✅ Facts for {display_name}: population={record.population}, area={record.area_km2}, "
            f"aqi={record.aqi}, risk={record.flood_risk_level}, fire={record.fire_risk_level}"
        )
        return record
