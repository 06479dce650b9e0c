"""
Tests for the comparison synthesizer and the two-place compare flow.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_candidate
from geoassist.comparison import (
    DIMENSIONS,
    INSUFFICIENT_DATA,
    ComparisonSynthesizer,
    CompareService,
    compare_air_quality,
    compare_flood_risk,
    compare_urban,
)
from geoassist.errors import InvalidInputError, LocationNotFoundError
from geoassist.fact_aggregator import derive_density
from geoassist.models import FactRecord, ResolvedPlace, SelectionScope, UrbanContext


def record(name, population=None, area=None, aqi=None, risk=None, buildings=None) -> FactRecord:
    urban = None
    if buildings is not None:
        urban = UrbanContext("OpenStreetMap (Overpass)", "summary", {"building_count": buildings})
    return FactRecord(
        name=name,
        latitude=0.0,
        longitude=0.0,
        population=population,
        area_km2=area,
        density=derive_density(population, area),
        aqi=aqi,
        flood_risk_level=risk,
        urban=urban,
    )


# ============================================================================
# Synthesizer
# ============================================================================

class TestComparisonSynthesizer:

    def setup_method(self):
        self.synthesizer = ComparisonSynthesizer()

    def test_population_area_and_equal_density(self):
        a = record("A", population=1_000_000, area=100.0)
        b = record("B", population=500_000, area=50.0)

        statements = self.synthesizer.compare(a, b).statements

        assert statements == (
            "A has the larger population (1,000,000).",
            "A covers the larger area (100 km²).",
            "Both places have a similar population density (10,000 inhabitants/km²).",
        )

    def test_equal_values_are_neutral(self):
        a = record("A", population=42)
        b = record("B", population=42)
        assert self.synthesizer.compare(a, b).statements == ("Both places have a similar population.",)

    def test_never_empty(self):
        result = self.synthesizer.compare(record("A"), record("B"))
        assert result.statements == (INSUFFICIENT_DATA,)

    def test_dimension_skipped_when_one_side_missing(self):
        a = record("A", population=10, aqi=30)
        b = record("B", aqi=60)
        statements = self.synthesizer.compare(a, b).statements
        assert len(statements) == 1
        assert statements[0].startswith("A shows better air quality")

    def test_statements_follow_dimension_order(self):
        a = record("A", population=10, area=1.0, aqi=90, risk="High", buildings=5)
        b = record("B", population=20, area=4.0, aqi=20, risk="Low", buildings=50)

        statements = self.synthesizer.compare(a, b).statements

        assert len(statements) == len(DIMENSIONS)
        assert statements[2] == "A is more densely populated (10 inhabitants/km²)."
        assert "population" in statements[0]
        assert "area" in statements[1]
        assert "densely" in statements[2]
        assert "air quality" in statements[3]
        assert "flood risk" in statements[4]
        assert "buildings" in statements[5]

    def test_to_dict_shape(self):
        result = self.synthesizer.compare(record("A", population=1), record("B", population=2))
        data = result.to_dict()
        assert data["cityA"]["name"] == "A"
        assert data["cityB"]["population"] == 2
        assert data["comparison"] == ["B has the larger population (2)."]


class TestDimensions:

    def test_lower_aqi_wins(self):
        statement = compare_air_quality(record("Oslo", aqi=18), record("Delhi", aqi=160))
        assert statement == "Oslo shows better air quality (AQI 18)."

    def test_flood_unknown_is_skipped(self):
        assert compare_flood_risk(record("A", risk="Unknown"), record("B", risk="Low")) is None

    def test_flood_lower_risk_wins(self):
        statement = compare_flood_risk(record("A", risk="Very high"), record("B", risk="Very low"))
        assert statement.startswith("B has the lower flood risk")

    def test_urban_skipped_without_a_summary_on_both_sides(self):
        assert compare_urban(record("A"), record("B", buildings=3)) is None
        no_summary = FactRecord(name="A", latitude=0, longitude=0, urban=UrbanContext("IGN WMS", None))
        assert compare_urban(no_summary, record("B", buildings=3)) is None

    def test_urban_building_counts(self):
        assert compare_urban(record("A", buildings=3), record("B", buildings=3)).startswith("Both places")
        assert compare_urban(record("A", buildings=30), record("B", buildings=3)) == (
            "A has the denser built environment (30 buildings nearby)."
        )

    def test_urban_summaries_without_building_counts(self):
        ign = UrbanContext("IGN WMS", "Result obtained from IGN Base.", {"tipo": "urbano"})
        a = FactRecord(name="Toledo", latitude=0, longitude=0, urban=ign)
        b = FactRecord(name="Segovia", latitude=0, longitude=0, urban=ign)

        statements = ComparisonSynthesizer().compare(a, b).statements

        assert statements == (
            "Urban context: Toledo (Result obtained from IGN Base.) vs Segovia (Result obtained from IGN Base.).",
        )

    def test_urban_mixed_sources_fall_back_to_summaries(self):
        ign = FactRecord(name="A", latitude=0, longitude=0, urban=UrbanContext("IGN WMS", "x", {"tipo": "urbano"}))
        assert compare_urban(ign, record("B", buildings=3)) == "Urban context: A (x) vs B (summary)."


# ============================================================================
# Compare service
# ============================================================================

def resolved(candidate) -> ResolvedPlace:
    return ResolvedPlace(candidate=candidate, scope=SelectionScope.CITY, label=candidate.name)


def make_service(places, reverse_label="Madrid, Comunidad de Madrid, España"):
    async def resolve_text(text, scope=SelectionScope.CITY, token=None):
        place = places.get(text)
        if place is None:
            raise LocationNotFoundError(text)
        return place

    resolver = MagicMock()
    resolver.resolve_text = AsyncMock(side_effect=resolve_text)
    resolver.reverse_label = AsyncMock(return_value=reverse_label)

    async def aggregate(place, name=None, city=None, country=None, token=None):
        population = 3_300_000 if place.candidate.name == "Madrid" else 1_600_000
        return record(name, population=population)

    aggregator = MagicMock()
    aggregator.aggregate = AsyncMock(side_effect=aggregate)
    return CompareService(resolver, aggregator)


class TestCompareService:

    PLACES = {
        "Madrid": resolved(make_candidate()),
        "Barcelona, Spain": resolved(make_candidate(
            name="Barcelona", lat=41.3874, lon=2.1686, label="Barcelona, Catalunya, España", region="Catalunya",
        )),
    }

    @pytest.mark.asyncio
    async def test_compare_two_places(self):
        service = make_service(self.PLACES)

        result = await service.compare("Madrid", "Barcelona, Spain")

        assert result.record_a.name == "Madrid, Comunidad de Madrid, España"
        assert result.record_b.name == "Barcelona, Spain"
        assert result.statements[0] == "Madrid, Comunidad de Madrid, España has the larger population (3,300,000)."

    @pytest.mark.asyncio
    async def test_knowledge_names_come_from_user_input(self):
        service = make_service(self.PLACES)

        await service.compare("Madrid", "Barcelona, Spain")

        calls = {c.kwargs["city"]: c.kwargs["country"] for c in service.aggregator.aggregate.await_args_list}
        assert calls == {"Madrid": "España", "Barcelona": "Spain"}

    @pytest.mark.asyncio
    async def test_display_name_falls_back_when_reverse_fails(self):
        service = make_service(self.PLACES)
        service.resolver.reverse_label = AsyncMock(return_value=None)

        name = await service.display_name("Madrid", self.PLACES["Madrid"])

        assert name == "Madrid, Comunidad de Madrid, España"

    @pytest.mark.asyncio
    async def test_display_name_uses_raw_text_last(self):
        service = make_service(self.PLACES)
        service.resolver.reverse_label = AsyncMock(side_effect=RuntimeError("down"))
        place = resolved(make_candidate(label=None))

        assert await service.display_name("Madrid", place) == "Madrid"

    @pytest.mark.asyncio
    async def test_unresolvable_side_fails_the_comparison(self):
        service = make_service(self.PLACES)

        with pytest.raises(LocationNotFoundError) as exc_info:
            await service.compare("Madrid", "Atlantis")

        assert exc_info.value.query == "Atlantis"
        service.aggregator.aggregate.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("city_a,city_b,field", [
        ("", "Madrid", "cityA"),
        ("Madrid", "   ", "cityB"),
        (None, "Madrid", "cityA"),
    ])
    async def test_missing_side_is_invalid(self, city_a, city_b, field):
        service = make_service(self.PLACES)
        with pytest.raises(InvalidInputError) as exc_info:
            await service.compare(city_a, city_b)
        assert exc_info.value.field == field
