# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Entity Disambiguator
--------------------
Maps a city name (and optional country name) onto one knowledge-graph entity.

Search order is fixed: term variants ``"{city}, {country}"`` then ``"{city}"``,
each in the preferred language then English. The first combination that
yields an accepted candidate wins; results are never merged across
combinations.
"""

import logging
from typing import List, Optional, Sequence

from .cancellation import CancellationToken
from .knowledge_graph import WikidataClient
from .models import EntityCandidate
from .resilience import try_in_order
from .text_normalizer import label_matches

logger = logging.getLogger(__name__)


def pick_candidate(candidates: Sequence[EntityCandidate], name: str) -> Optional[EntityCandidate]:
    """Prefer a label match for ``name``; otherwise the provider's top-ranked hit."""
    for candidate in candidates:
        if label_matches(candidate.label, name):
            return candidate
    return candidates[0] if candidates else None


def filter_by_country(
    candidates: Sequence[EntityCandidate], country: str, country_id: Optional[str] = None
) -> List[EntityCandidate]:
    """Keep candidates whose declared country is ``country_id`` or whose country label matches ``country``."""
    return [
        c for c in candidates
        if (country_id and c.country_id == country_id) or label_matches(c.country_label, country)
    ]


class EntityDisambiguator:
    """Knowledge-entity lookup with country filtering and language fallback."""

    def __init__(self, client: WikidataClient, preferred_language: str = "es"):
        self.client = client
        self.languages = list(dict.fromkeys([preferred_language or "en", "en"]))
        self.logger = logging.getLogger(__name__)

    async def find_country(self, country: str, token: Optional[CancellationToken] = None) -> Optional[str]:
        """Entity id of a country-typed entity named ``country``."""

        async def search(language: str) -> Optional[str]:
            hits = await self.client.search_entities(country, language, "country", token=token)
            chosen = pick_candidate(hits, country)
            return chosen.entity_id if chosen else None

        outcome = await try_in_order([
            (f"country:{language}", lambda language=language: search(language))
            for language in self.languages
        ])
        return outcome.value if outcome else None

    async def _attempt(
        self,
        term: str,
        city: str,
        language: str,
        country: Optional[str],
        country_id: Optional[str],
        token: Optional[CancellationToken],
    ) -> Optional[EntityCandidate]:
        if not country_id:
            hits = await self.client.search_entities(term, language, token=token)
            return pick_candidate(hits, city)

        hits = await self.client.search_entities(term, language, country_filter=country_id, token=token)
        if hits:
            return pick_candidate(hits, city)

        # Unfiltered fallback must still land in the requested country
        hits = await self.client.search_entities(term, language, token=token)
        return pick_candidate(filter_by_country(hits, country, country_id), city)

    async def find_entity(
        self,
        city: str,
        country: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """
        Knowledge-entity id for ``city``, or None when nothing acceptable is found.

        Lookup failures are treated like empty answers: a missing entity only
        means the demographic fields stay unknown.
        """
        city = (city or "").strip()
        country = (country or "").strip() or None
        if not city:
            return None

        country_id = await self.find_country(country, token) if country else None
        if country and not country_id:
            self.logger.info(f"🌍 No country entity for '{country}', searching without a country filter")

        terms = [f"{city}, {country}", city] if country else [city]
        strategies = [
            (
                f"{term}|{language}",
                lambda term=term, language=language: self._attempt(
                    term, city, language, country, country_id, token
                ),
            )
            for term in terms
            for language in self.languages
        ]
        outcome = await try_in_order(strategies)
        if outcome is None:
            self.logger.info(f"❌ No knowledge entity for '{city}' (country={country})")
            return None

        self.logger.info(f"✅ Knowledge entity for '{city}': {outcome.value.entity_id} via {outcome.strategy}")
        return outcome.value.entity_id
