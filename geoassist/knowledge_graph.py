# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Wikidata knowledge-graph access.

Two operations:

- ``search_entities(name, language, type_filter, country_filter)`` runs the
  MediaWiki entity search through the SPARQL ``mwapi`` service so that the
  provider's relevance order (``?ordinal``) and type / country restrictions
  are applied in one round trip.
- ``get_facts(entity_id)`` fetches the raw statements used by the fact
  aggregator. Population and sex statements keep their point-in-time
  qualifier (P585) and areas keep their unit item, so reconciliation can
  happen later without another request.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from .cancellation import CancellationToken
from .http_client import ProviderHttpClient
from .location_cache import LocationCache, text_key
from .models import EntityCandidate, KnowledgeFacts, Observation

logger = logging.getLogger(__name__)

PROVIDER = "wikidata"
ENTITY_PREFIX = "http://www.wikidata.org/entity/"
SPARQL_ACCEPT = "application/sparql-results+json"

# Type filters: human settlement, or sovereign state / country
TYPE_FILTERS = {
    "populated_place": ("Q486972",),
    "country": ("Q6256", "Q3624078"),
}

# Quantity unit items
UNIT_SQUARE_KILOMETRE = "Q712226"
UNIT_SQUARE_METRE = "Q25343"
UNIT_HECTARE = "Q35852"
UNIT_ONE = "Q199"

SEARCH_LIMIT = 10


def entity_id_from_uri(uri: Optional[str]) -> Optional[str]:
    if not uri:
        return None
    return uri.rsplit("/", 1)[-1] or None


def sparql_literal(value: str) -> str:
    """Quote ``value`` as a SPARQL string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ").replace("\r", " ")
    return f'"{escaped}"'


def build_search_query(
    term: str,
    language: str,
    type_filter: str = "populated_place",
    country_filter: Optional[str] = None,
    limit: int = SEARCH_LIMIT,
) -> str:
    types = " ".join(f"wd:{qid}" for qid in TYPE_FILTERS[type_filter])
    if type_filter == "country":
        type_clause = f"VALUES ?type {{ {types} }} ?item wdt:P31 ?type ."
    else:
        type_clause = f"VALUES ?type {{ {types} }} ?item wdt:P31/wdt:P279* ?type ."
    country_clause = f"?item wdt:P17 wd:{country_filter} ." if country_filter else ""
    return f"""
SELECT DISTINCT ?item ?itemLabel ?country ?countryLabel ?ordinal WHERE {{
  SERVICE wikibase:mwapi {{
    bd:serviceParam wikibase:endpoint "www.wikidata.org" ;
                    wikibase:api "EntitySearch" ;
                    mwapi:search {sparql_literal(term)} ;
                    mwapi:language {sparql_literal(language)} .
    ?item wikibase:apiOutputItem mwapi:item .
    ?ordinal wikibase:apiOrdinal true .
  }}
  {type_clause}
  {country_clause}
  OPTIONAL {{ ?item wdt:P17 ?country . }}
  SERVICE wikibase:label {{ bd:serviceParam wikibase:language "{language},en" . }}
}}
ORDER BY ?ordinal
LIMIT {int(limit)}
"""


def build_facts_query(entity_id: str) -> str:
    entity = f"wd:{entity_id}"
    return f"""
SELECT ?kind ?value ?time ?unit WHERE {{
  {{ {entity} p:P1082 ?st . ?st ps:P1082 ?value . OPTIONAL {{ ?st pq:P585 ?time . }} BIND("population" AS ?kind) }}
  UNION
  {{ {entity} p:P2046 ?st . ?st psv:P2046 ?node . ?node wikibase:quantityAmount ?value .
     OPTIONAL {{ ?node wikibase:quantityUnit ?unit . }} BIND("area" AS ?kind) }}
  UNION
  {{ {entity} wdt:P2044 ?value . BIND("elevation" AS ?kind) }}
  UNION
  {{ {entity} p:P1540 ?st . ?st ps:P1540 ?value . OPTIONAL {{ ?st pq:P585 ?time . }} BIND("male" AS ?kind) }}
  UNION
  {{ {entity} p:P1539 ?st . ?st ps:P1539 ?value . OPTIONAL {{ ?st pq:P585 ?time . }} BIND("female" AS ?kind) }}
  UNION
  {{ {entity} wdt:P41 ?value . BIND("flag" AS ?kind) }}
}}
"""


def _binding(row: Dict[str, Any], name: str) -> Optional[str]:
    cell = row.get(name)
    if not isinstance(cell, dict):
        return None
    return cell.get("value")


def _number(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_search_results(payload: Dict[str, Any]) -> List[EntityCandidate]:
    """Bindings -> candidates in provider relevance order, one per entity."""
    candidates: List[EntityCandidate] = []
    seen = set()
    for row in payload["results"]["bindings"]:
        entity_id = entity_id_from_uri(_binding(row, "item"))
        if not entity_id or entity_id in seen:
            continue
        seen.add(entity_id)
        ordinal = _number(_binding(row, "ordinal"))
        candidates.append(EntityCandidate(
            entity_id=entity_id,
            label=_binding(row, "itemLabel"),
            country_label=_binding(row, "countryLabel"),
            country_id=entity_id_from_uri(_binding(row, "country")),
            rank=int(ordinal) if ordinal is not None else len(candidates),
        ))
    candidates.sort(key=lambda c: c.rank)
    return candidates


def parse_facts(entity_id: str, payload: Dict[str, Any]) -> KnowledgeFacts:
    series: Dict[str, List[Observation]] = {"population": [], "area": [], "male": [], "female": []}
    elevation = None
    flag_url = None

    for row in payload["results"]["bindings"]:
        kind = _binding(row, "kind")
        raw = _binding(row, "value")
        if kind == "flag":
            if raw and not flag_url:
                flag_url = raw.replace("http://", "https://", 1)
            continue
        value = _number(raw)
        if value is None:
            continue
        if kind == "elevation":
            if elevation is None:
                elevation = value
            continue
        if kind in series:
            unit = entity_id_from_uri(_binding(row, "unit"))
            series[kind].append(Observation(
                value=value,
                timestamp=_binding(row, "time"),
                unit=None if unit == UNIT_ONE else unit,
            ))

    return KnowledgeFacts(
        entity_id=entity_id,
        population=tuple(series["population"]),
        area=tuple(series["area"]),
        elevation=elevation,
        male_population=tuple(series["male"]),
        female_population=tuple(series["female"]),
        flag_url=flag_url,
    )


class WikidataClient:
    """Entity search and facts over the Wikidata SPARQL endpoint, cached."""

    def __init__(self, http: ProviderHttpClient, sparql_url: str, timeout: float, cache: LocationCache):
        self.http = http
        self.sparql_url = sparql_url
        self.timeout = timeout
        self.cache = cache

    async def _sparql(self, query: str, token: Optional[CancellationToken]) -> Dict[str, Any]:
        return await self.http.get_json(
            self.sparql_url,
            PROVIDER,
            self.timeout,
            params={"query": query, "format": "json"},
            headers={"Accept": SPARQL_ACCEPT},
            token=token,
        )

    async def search_entities(
        self,
        name: str,
        language: str,
        type_filter: str = "populated_place",
        country_filter: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[EntityCandidate]:
        """
        Ranked entity candidates for ``name``; an empty list is a valid answer.

        Raises ``UpstreamUnavailableError`` when the endpoint cannot be reached.
        """
        key = text_key("search", name, language, type_filter, country_filter or "")

        async def fetch():
            payload = await self._sparql(
                build_search_query(name, language, type_filter, country_filter), token
            )
            return parse_search_results(payload)

        candidates = await self.cache.get_or_fetch(key, fetch)
        logger.debug(
            f"Wikidata search '{name}' [{language}, {type_filter}, country={country_filter}]: "
            f"{len(candidates)} hits"
        )
        return candidates

    async def get_facts(self, entity_id: str, token: Optional[CancellationToken] = None) -> KnowledgeFacts:
        key = text_key("facts", entity_id)

        async def fetch():
            payload = await self._sparql(build_facts_query(entity_id), token)
            return parse_facts(entity_id, payload)

        facts = await self.cache.get_or_fetch(key, fetch)
        logger.debug(
            f"Wikidata facts {entity_id}: {len(facts.population)} population, {len(facts.area)} area statements"
        )
        return facts
