# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Comparison Synthesizer
----------------------
Derives ordered, human-readable statements from two fact records.

Dimensions, in order: population, area, density, air quality (lower is
better), flood risk (lower is better), built environment. A dimension is
skipped when either side lacks its data; equal values produce a neutral
statement. The result is never empty.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from .cancellation import CancellationToken
from .environment_providers import flood_risk_rank
from .errors import InvalidInputError
from .fact_aggregator import FactAggregator
from .location_resolver import PlaceResolver
from .models import ComparisonResult, FactRecord, ResolvedPlace, SelectionScope
from .resilience import try_in_order
from .text_normalizer import split_city_country

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA = "There is not enough data for a detailed comparison."


def _fmt(value) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return f"{value:,}" if isinstance(value, int) else f"{value:,.2f}"


def _winner(a: FactRecord, b: FactRecord, value_a, value_b, lower_is_better: bool = False) -> Optional[FactRecord]:
    if value_a == value_b:
        return None
    a_wins = value_a < value_b if lower_is_better else value_a > value_b
    return a if a_wins else b


def _building_count(record: FactRecord) -> Optional[int]:
    if record.urban is None or not isinstance(record.urban.details, dict):
        return None
    count = record.urban.details.get("building_count")
    return count if isinstance(count, int) and not isinstance(count, bool) else None


def compare_population(a: FactRecord, b: FactRecord) -> Optional[str]:
    if a.population is None or b.population is None:
        return None
    winner = _winner(a, b, a.population, b.population)
    if winner is None:
        return "Both places have a similar population."
    return f"{winner.name} has the larger population ({_fmt(max(a.population, b.population))})."


def compare_area(a: FactRecord, b: FactRecord) -> Optional[str]:
    if a.area_km2 is None or b.area_km2 is None:
        return None
    winner = _winner(a, b, a.area_km2, b.area_km2)
    if winner is None:
        return "Both places cover a similar area."
    return f"{winner.name} covers the larger area ({_fmt(max(a.area_km2, b.area_km2))} km²)."


def compare_density(a: FactRecord, b: FactRecord) -> Optional[str]:
    if a.density is None or b.density is None:
        return None
    winner = _winner(a, b, a.density, b.density)
    if winner is None:
        return f"Both places have a similar population density ({_fmt(a.density)} inhabitants/km²)."
    return f"{winner.name} is more densely populated ({_fmt(max(a.density, b.density))} inhabitants/km²)."


def compare_air_quality(a: FactRecord, b: FactRecord) -> Optional[str]:
    if a.aqi is None or b.aqi is None:
        return None
    winner = _winner(a, b, a.aqi, b.aqi, lower_is_better=True)
    if winner is None:
        return "Air quality is similar in both places."
    return f"{winner.name} shows better air quality (AQI {_fmt(min(a.aqi, b.aqi))})."


def compare_flood_risk(a: FactRecord, b: FactRecord) -> Optional[str]:
    rank_a = flood_risk_rank(a.flood_risk_level)
    rank_b = flood_risk_rank(b.flood_risk_level)
    if rank_a is None or rank_b is None:
        return None
    winner = _winner(a, b, rank_a, rank_b, lower_is_better=True)
    if winner is None:
        return f"Flood risk is similar in both places ({a.flood_risk_level})."
    return (
        f"{winner.name} has the lower flood risk "
        f"({a.name}: {a.flood_risk_level}, {b.name}: {b.flood_risk_level})."
    )


def _urban_summary(record: FactRecord) -> Optional[str]:
    return record.urban.summary if record.urban is not None and record.urban.summary else None


def compare_urban(a: FactRecord, b: FactRecord) -> Optional[str]:
    """Building counts when both sides have one, otherwise the two summaries side by side."""
    summary_a = _urban_summary(a)
    summary_b = _urban_summary(b)
    if summary_a is None or summary_b is None:
        return None
    count_a = _building_count(a)
    count_b = _building_count(b)
    if count_a is None or count_b is None:
        return f"Urban context: {a.name} ({summary_a}) vs {b.name} ({summary_b})."
    winner = _winner(a, b, count_a, count_b)
    if winner is None:
        return "Both places have a similar built environment nearby."
    return f"{winner.name} has the denser built environment ({_fmt(max(count_a, count_b))} buildings nearby)."


DIMENSIONS: Tuple[Tuple[str, Callable[[FactRecord, FactRecord], Optional[str]]], ...] = (
    ("population", compare_population),
    ("area", compare_area),
    ("density", compare_density),
    ("air_quality", compare_air_quality),
    ("flood_risk", compare_flood_risk),
    ("urban", compare_urban),
)


class ComparisonSynthesizer:
    """Pure, total comparison of two fact records."""

    def compare(self, record_a: FactRecord, record_b: FactRecord) -> ComparisonResult:
        statements: List[str] = []
        for _, dimension in DIMENSIONS:
            statement = dimension(record_a, record_b)
            if statement:
                statements.append(statement)
        if not statements:
            statements.append(INSUFFICIENT_DATA)
        return ComparisonResult(record_a, record_b, tuple(statements))


class CompareService:
    """Resolves, aggregates and compares two user-typed places concurrently."""

    def __init__(
        self,
        resolver: PlaceResolver,
        aggregator: FactAggregator,
        synthesizer: Optional[ComparisonSynthesizer] = None,
    ):
        self.resolver = resolver
        self.aggregator = aggregator
        self.synthesizer = synthesizer or ComparisonSynthesizer()
        self.logger = logging.getLogger(__name__)

    async def display_name(
        self, text: str, place: ResolvedPlace, token: Optional[CancellationToken] = None
    ) -> str:
        """The user's own text when comma-qualified, otherwise an auto-completed label."""
        if "," in text:
            return text

        async def reverse_label():
            return await self.resolver.reverse_label(
                place.latitude, place.longitude, SelectionScope.CITY, token=token
            )

        async def candidate_label():
            return place.candidate.display_label

        async def raw_input():
            return text

        outcome = await try_in_order([
            ("reverse_label", reverse_label),
            ("candidate_label", candidate_label),
            ("raw_input", raw_input),
        ], accept=bool)
        return outcome.value if outcome else text

    async def _side(self, text: str, token: Optional[CancellationToken]) -> Tuple[ResolvedPlace, str]:
        place = await self.resolver.resolve_text(text, SelectionScope.CITY, token=token)
        return place, await self.display_name(text, place, token)

    async def compare(
        self, city_a: str, city_b: str, token: Optional[CancellationToken] = None
    ) -> ComparisonResult:
        """
        Compare two places; both must resolve.

        Raises ``InvalidInputError`` for a missing side and
        ``LocationNotFoundError`` when either side cannot be resolved.
        """
        text_a = city_a.strip() if isinstance(city_a, str) else ""
        text_b = city_b.strip() if isinstance(city_b, str) else ""
        if not text_a:
            raise InvalidInputError("cityA", "Two places are required for a comparison")
        if not text_b:
            raise InvalidInputError("cityB", "Two places are required for a comparison")

        sides = await asyncio.gather(self._side(text_a, token), self._side(text_b, token), return_exceptions=True)
        for side in sides:
            if isinstance(side, BaseException):
                raise side
        (place_a, name_a), (place_b, name_b) = sides

        parts_a = split_city_country(text_a)
        parts_b = split_city_country(text_b)
        record_a, record_b = await asyncio.gather(
            self.aggregator.aggregate(
                place_a,
                name=name_a,
                city=parts_a["city"],
                country=parts_a["country"] or place_a.address.country,
                token=token,
            ),
            self.aggregator.aggregate(
                place_b,
                name=name_b,
                city=parts_b["city"],
                country=parts_b["country"] or place_b.address.country,
                token=token,
            ),
        )

        result = self.synthesizer.compare(record_a, record_b)
        self.logger.info(f"⚖️ Compared '{name_a}' with '{name_b}': {len(result.statements)} statements")
        return result
