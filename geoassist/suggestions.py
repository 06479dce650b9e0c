# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Place suggestions: ranking, city-only filtering and the curated city list.

The ranking is a declarative sum of named sub-scores so each heuristic can be
tested on its own. Weights are tuned for Nominatim results, whose
``importance`` (0..1) is the base score.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence

from .cancellation import CancellationToken
from .geocoding_adapters import GeocodingAdapter
from .location_cache import LocationCache, text_key
from .models import CITY_TYPES, AddressComponents, PlaceCandidate, PlaceClassification
from .resilience import try_in_order
from .text_normalizer import has_latin_letters, normalize

logger = logging.getLogger(__name__)

# Ranking weights
PLACE_TYPE_BONUS = 0.8
CITY_TYPE_BONUS = 0.4
NAME_PREFIX_BONUS = 0.4
LABEL_PREFIX_BONUS = 0.2
PRIMARY_TOKEN_PREFIX_BONUS = 0.3
SCRIPT_MISMATCH_PENALTY = 0.6
AEROWAY_PENALTY = 0.6

# Curated city weights
POPULAR_NAME_PREFIX_BONUS = 2.0
POPULAR_LABEL_PREFIX_BONUS = 1.5
POPULAR_LABEL_CONTAINS_BONUS = 1.0
POPULAR_MATCH_OFFSET = 5.0
POPULAR_FALLBACK_SCORE = 4.0
POPULAR_FALLBACK_LIMIT = 3

MAX_SUGGESTIONS = 12
PLACE_FILTER_MIN_QUERY = 3

PLACE_BOOST_TYPES = frozenset({
    "city", "town", "village", "municipality", "capital", "country", "state", "region",
})

POPULAR_SOURCE = "popular_cities"
POPULAR_FALLBACK_SOURCE = "popular_fallback"

POPULAR_CITIES = [
    {"name": "Madrid", "region": "Comunidad de Madrid", "country": "España", "lat": 40.4168, "lon": -3.7038},
    {"name": "Barcelona", "region": "Cataluña", "country": "España", "lat": 41.3874, "lon": 2.1686},
    {"name": "Valencia", "region": "Comunidad Valenciana", "country": "España", "lat": 39.4699, "lon": -0.3763},
    {"name": "Sevilla", "region": "Andalucía", "country": "España", "lat": 37.3891, "lon": -5.9845},
    {"name": "Zaragoza", "region": "Aragón", "country": "España", "lat": 41.6488, "lon": -0.8891},
    {"name": "Málaga", "region": "Andalucía", "country": "España", "lat": 36.7213, "lon": -4.4214},
    {"name": "Bilbao", "region": "País Vasco", "country": "España", "lat": 43.2630, "lon": -2.9350},
    {"name": "Granada", "region": "Andalucía", "country": "España", "lat": 37.1773, "lon": -3.5986},
    {"name": "Alicante", "region": "Comunidad Valenciana", "country": "España", "lat": 38.3452, "lon": -0.4810},
    {"name": "Murcia", "region": "Región de Murcia", "country": "España", "lat": 37.9922, "lon": -1.1307},
    {"name": "Palma", "region": "Islas Baleares", "country": "España", "lat": 39.5696, "lon": 2.6502},
    {"name": "Las Palmas", "region": "Canarias", "country": "España", "lat": 28.1235, "lon": -15.4363},
    {"name": "París", "region": "Île-de-France", "country": "Francia", "lat": 48.8566, "lon": 2.3522},
    {"name": "Londres", "region": "Inglaterra", "country": "Reino Unido", "lat": 51.5072, "lon": -0.1276},
    {"name": "Roma", "region": "Lacio", "country": "Italia", "lat": 41.9028, "lon": 12.4964},
    {"name": "Berlín", "region": "Berlín", "country": "Alemania", "lat": 52.5200, "lon": 13.4050},
    {"name": "Nueva York", "region": "Nueva York", "country": "Estados Unidos", "lat": 40.7128, "lon": -74.0060},
    {"name": "Los Ángeles", "region": "California", "country": "Estados Unidos", "lat": 34.0522, "lon": -118.2437},
    {"name": "Tokio", "region": "Tokio", "country": "Japón", "lat": 35.6762, "lon": 139.6503},
    {"name": "Ciudad de México", "region": "CDMX", "country": "México", "lat": 19.4326, "lon": -99.1332},
    {"name": "Buenos Aires", "region": "Buenos Aires", "country": "Argentina", "lat": -34.6037, "lon": -58.3816},
    {"name": "São Paulo", "region": "São Paulo", "country": "Brasil", "lat": -23.5505, "lon": -46.6333},
]


@dataclass(frozen=True)
class SuggestionScore:
    """Named sub-scores of one ranked result."""
    importance: float = 0.0
    type_bonus: float = 0.0
    prefix_bonus: float = 0.0
    language_penalty: float = 0.0
    class_penalty: float = 0.0

    @property
    def total(self) -> float:
        return self.importance + self.type_bonus + self.prefix_bonus - self.language_penalty - self.class_penalty


def type_bonus(classification: PlaceClassification) -> float:
    if classification.place_class != "place":
        return 0.0
    bonus = 0.0
    if classification.place_type in PLACE_BOOST_TYPES:
        bonus += PLACE_TYPE_BONUS
    if classification.place_type in CITY_TYPES:
        bonus += CITY_TYPE_BONUS
    return bonus


def prefix_bonus(normalized_query: str, name: Optional[str], label: Optional[str]) -> float:
    if not normalized_query:
        return 0.0
    normalized_name = normalize(name)
    normalized_label = normalize(label)
    primary_token = normalized_label.split(" ")[0] if normalized_label else ""
    bonus = 0.0
    if normalized_name.startswith(normalized_query):
        bonus += NAME_PREFIX_BONUS
    if normalized_label.startswith(normalized_query):
        bonus += LABEL_PREFIX_BONUS
    if primary_token.startswith(normalized_query):
        bonus += PRIMARY_TOKEN_PREFIX_BONUS
    return bonus


def language_penalty(query: str, label: Optional[str]) -> float:
    """Latin-script query against a label with no Latin letters at all."""
    if has_latin_letters(query) and not has_latin_letters(label):
        return SCRIPT_MISMATCH_PENALTY
    return 0.0


def class_penalty(classification: PlaceClassification) -> float:
    return AEROWAY_PENALTY if classification.place_class == "aeroway" else 0.0


def score_candidate(query: str, candidate: PlaceCandidate) -> SuggestionScore:
    normalized_query = normalize(query)
    return SuggestionScore(
        importance=candidate.importance,
        type_bonus=type_bonus(candidate.classification),
        prefix_bonus=prefix_bonus(normalized_query, candidate.name, candidate.display_label),
        language_penalty=language_penalty(query, candidate.display_label),
        class_penalty=class_penalty(candidate.classification),
    )


def _popular_candidate(city: Dict, score: float, source: str) -> PlaceCandidate:
    label = f"{city['name']}, {city['region']}, {city['country']}"
    return PlaceCandidate(
        latitude=city["lat"],
        longitude=city["lon"],
        display_label=label,
        address=AddressComponents(city=city["name"], region=city["region"], country=city["country"]),
        source_provider=source,
        classification=PlaceClassification("place", "city"),
        name=city["name"],
        importance=1.0,
        score=score,
    )


def popular_score(normalized_query: str, city: Dict) -> float:
    if not normalized_query:
        return 0.0
    label = normalize(f"{city['name']}, {city['region']}, {city['country']}")
    name = normalize(city["name"])
    score = 0.0
    if name.startswith(normalized_query):
        score += POPULAR_NAME_PREFIX_BONUS
    if label.startswith(normalized_query):
        score += POPULAR_LABEL_PREFIX_BONUS
    if normalized_query in label:
        score += POPULAR_LABEL_CONTAINS_BONUS
    return score + POPULAR_MATCH_OFFSET if score else 0.0


def popular_matches(query: str) -> List[PlaceCandidate]:
    normalized_query = normalize(query)
    matches = []
    for city in POPULAR_CITIES:
        score = popular_score(normalized_query, city)
        if score > 0:
            matches.append(_popular_candidate(city, score, POPULAR_SOURCE))
    return matches


def popular_fallback(query: str) -> List[PlaceCandidate]:
    """Up to three curated cities sharing the query's first letter."""
    first_char = normalize(query)[:1]
    picks = [city for city in POPULAR_CITIES if normalize(city["name"]).startswith(first_char)]
    return [
        _popular_candidate(city, POPULAR_FALLBACK_SCORE, POPULAR_FALLBACK_SOURCE)
        for city in picks[:POPULAR_FALLBACK_LIMIT]
    ]


def rank_suggestions(query: str, candidates: Sequence[PlaceCandidate], city_only: bool) -> List[PlaceCandidate]:
    """Merge curated matches with scored provider results, filter, dedupe and cap."""
    scored = [replace(c, score=score_candidate(query, c).total) for c in candidates]
    scored.sort(key=lambda c: c.score, reverse=True)
    merged = popular_matches(query) + scored

    place_results = [c for c in merged if c.classification.place_class == "place"]
    city_results = [c for c in place_results if c.is_city_like]

    if city_only:
        filtered = city_results or place_results
    elif len(normalize(query)) >= PLACE_FILTER_MIN_QUERY and place_results:
        filtered = place_results
    else:
        filtered = merged

    if city_only and not filtered:
        filtered = popular_fallback(query)

    unique: Dict[str, PlaceCandidate] = {}
    for candidate in filtered:
        key = f"{candidate.latitude}-{candidate.longitude}-{candidate.display_label}"
        unique.setdefault(key, candidate)
    return list(unique.values())[:MAX_SUGGESTIONS]


class SuggestionService:
    """Suggestion lookups over the suggestion-capable adapters, cached by normalized query."""

    def __init__(self, adapters: Sequence[GeocodingAdapter], cache: LocationCache):
        self.adapters = list(adapters)
        self.cache = cache

    async def _provider_candidates(self, query: str, city_only: bool, token: Optional[CancellationToken]):
        outcome = await try_in_order(
            [
                (adapter.name, lambda adapter=adapter: adapter.suggest(query, city_only, token=token))
                for adapter in self.adapters
            ],
            accept=lambda response: response.is_ok,
        )
        return list(outcome.value.candidates) if outcome else []

    async def suggest(
        self, query: str, city_only: bool = False, token: Optional[CancellationToken] = None
    ) -> List[PlaceCandidate]:
        key = text_key("suggest", query, int(city_only))

        async def fetch():
            candidates = await self._provider_candidates(query, city_only, token)
            return rank_suggestions(query, candidates, city_only)

        results = await self.cache.get_or_fetch(key, fetch, should_cache=bool)
        logger.debug(f"Suggestions for '{query}' (city_only={city_only}): {len(results)}")
        return results
