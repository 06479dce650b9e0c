# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Process-wide wiring of the resolution and aggregation engine.

``build_engine`` creates every adapter, cache and service once, around a
single ``aiohttp.ClientSession`` owned by the HTTP application.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict

import aiohttp

from core.config import Settings

from .climate_history import ClimateHistoryService
from .comparison import CompareService, ComparisonSynthesizer
from .entity_disambiguator import EntityDisambiguator
from .environment_providers import (
    AirQualityProvider,
    FireRiskProvider,
    FloodRiskProvider,
    ShelterService,
    UrbanContextProvider,
)
from .fact_aggregator import FactAggregator
from .geocoding_adapters import AzureMapsAdapter, NominatimAdapter
from .http_client import ProviderHttpClient
from .knowledge_graph import WikidataClient
from .location_cache import LocationCache
from .location_resolver import PlaceResolver
from .resilience import APICircuitBreaker, ResolverMetrics
from .suggestions import SuggestionService

logger = logging.getLogger(__name__)


@dataclass
class GeoAssistEngine:
    resolver: PlaceResolver
    suggestions: SuggestionService
    aggregator: FactAggregator
    compare: CompareService
    fire: FireRiskProvider
    shelters: ShelterService
    history: ClimateHistoryService
    circuit_breaker: APICircuitBreaker
    metrics: ResolverMetrics
    caches: Dict[str, LocationCache] = field(default_factory=dict)
    providers: Dict[str, bool] = field(default_factory=dict)

    def health(self) -> Dict[str, Any]:
        return {
            "providers": dict(self.providers),
            "circuit_breakers": self.circuit_breaker.get_status(),
            "metrics": self.metrics.get_summary(),
            "caches": {name: cache.stats() for name, cache in self.caches.items()},
        }


def build_engine(session: aiohttp.ClientSession, settings: Settings) -> GeoAssistEngine:
    http = ProviderHttpClient(session, settings.user_agent, language=settings.preferred_language)
    circuit_breaker = APICircuitBreaker()
    metrics = ResolverMetrics()

    caches = {
        "reverse": LocationCache("reverse", settings.reverse_cache_ttl, settings.cache_max_entries),
        "suggest": LocationCache("suggest", settings.suggest_cache_ttl, settings.cache_max_entries),
        "knowledge": LocationCache("knowledge", settings.facts_cache_ttl, settings.cache_max_entries),
        "shelters": LocationCache("shelters", settings.shelters_cache_ttl, settings.cache_max_entries),
    }

    nominatim = NominatimAdapter(
        http,
        settings.nominatim_base_url,
        settings.geocoder_timeout,
        suggest_timeout=settings.suggest_timeout,
        circuit_breaker=circuit_breaker,
        metrics=metrics,
    )
    azure_maps = AzureMapsAdapter(
        http,
        settings.azure_maps_subscription_key,
        settings.geocoder_timeout,
        base_url=settings.azure_maps_base_url,
        language=settings.preferred_language,
        circuit_breaker=circuit_breaker,
        metrics=metrics,
    )

    suggestions = SuggestionService([nominatim, azure_maps], caches["suggest"])
    resolver = PlaceResolver(
        reverse_adapters=[azure_maps, nominatim],
        forward_adapters=[azure_maps, nominatim],
        suggestions=suggestions,
        reverse_cache=caches["reverse"],
    )

    wikidata = WikidataClient(http, settings.wikidata_sparql_url, settings.knowledge_timeout, caches["knowledge"])
    air_quality = AirQualityProvider(http, settings.aqicn_base_url, settings.aqicn_token, settings.environment_timeout)
    fire = FireRiskProvider(http, settings.gwis_wms_url, settings.environment_timeout)
    aggregator = FactAggregator(
        disambiguator=EntityDisambiguator(wikidata, settings.preferred_language),
        knowledge=wikidata,
        flood=FloodRiskProvider(http, settings.glofas_wms_url, settings.environment_timeout),
        urban=UrbanContextProvider(http, settings.ign_wms_url, settings.overpass_url, settings.environment_timeout),
        air_quality=air_quality,
        fire=fire,
        lookup_timeout=settings.environment_timeout * 2,
        knowledge_timeout=settings.knowledge_timeout * 2,
    )

    history = ClimateHistoryService(
        http, settings.open_meteo_archive_url, settings.usgs_events_url, settings.history_timeout
    )
    shelters = ShelterService(http, settings.overpass_url, settings.history_timeout, caches["shelters"])

    providers = {
        "azure_maps": azure_maps.available,
        "nominatim": nominatim.available,
        "wikidata": True,
        "glofas": True,
        "gwis": True,
        "urban": True,
        "air_quality": air_quality.available,
    }
    logger.info(f"🔐 Providers - Azure Maps: {'✓' if azure_maps.available else '✗'}, "
                f"AQICN: {'✓' if air_quality.available else '✗'}")

    return GeoAssistEngine(
        resolver=resolver,
        suggestions=suggestions,
        aggregator=aggregator,
        compare=CompareService(resolver, aggregator, ComparisonSynthesizer()),
        fire=fire,
        shelters=shelters,
        history=history,
        circuit_breaker=circuit_breaker,
        metrics=metrics,
        caches=caches,
        providers=providers,
    )
