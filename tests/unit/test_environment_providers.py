"""
Tests for flood risk, urban context and air quality point lookups.
"""

import json
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from geoassist.environment_providers import (
    FLOOD_RISK_LEVELS,
    SHELTER_LIMIT,
    AirQualityProvider,
    FireRiskProvider,
    FloodRiskProvider,
    ShelterService,
    UrbanContextProvider,
    build_overpass_query,
    build_shelter_query,
    classify_flood_risk,
    classify_fwi,
    extract_numeric,
    flood_risk_rank,
    gwis_feature_info_params,
    parse_bbox,
    parse_fwi_metrics,
    shelter_items,
    summarize_overpass,
    wms_feature_info_params,
)
from geoassist.errors import InvalidInputError, UpstreamUnavailableError
from geoassist.location_cache import LocationCache


def make_http(get_text=None, get_json=None, post_json=None) -> MagicMock:
    http = MagicMock()
    http.get_text = AsyncMock(side_effect=get_text) if isinstance(get_text, BaseException) else AsyncMock(return_value=get_text)
    http.get_json = AsyncMock(return_value=get_json)
    http.post_json = AsyncMock(return_value=post_json)
    return http


# ============================================================================
# WMS request shape
# ============================================================================

def test_feature_info_params_center_pixel():
    params = wms_feature_info_params(40.0, -3.0, "FloodHazard100y")
    assert params["VERSION"] == "1.3.0"
    assert params["I"] == params["J"] == "50"
    assert params["WIDTH"] == "101"
    south, west, north, east = (float(v) for v in params["BBOX"].split(","))
    assert south == pytest.approx(39.98) and north == pytest.approx(40.02)
    assert west == pytest.approx(-3.02) and east == pytest.approx(-2.98)
    assert params["QUERY_LAYERS"] == "FloodHazard100y"


# ============================================================================
# Flood risk
# ============================================================================

class TestFloodClassification:

    @pytest.mark.parametrize("value,level", [
        (None, "Unknown"),
        (0, "Very low"),
        (0.1, "Low"),
        (0.2, "Low"),
        (0.35, "Medium"),
        (0.8, "High"),
        (0.81, "Very high"),
        (12, "Very high"),
    ])
    def test_levels(self, value, level):
        assert classify_flood_risk(value) == level

    def test_rank_orders_known_levels(self):
        ranks = [flood_risk_rank(level) for level in FLOOD_RISK_LEVELS]
        assert ranks == sorted(ranks)
        assert flood_risk_rank("Unknown") is None
        assert flood_risk_rank(None) is None

    def test_extract_from_feature_properties(self):
        payload = {"features": [{"properties": {"name": "cell", "flag": True, "depth": "0.4"}}]}
        assert extract_numeric(payload, "") == 0.4

    def test_extract_falls_back_to_raw_text(self):
        assert extract_numeric(None, "GRAY_INDEX = 0.65\n") == 0.65
        assert extract_numeric(None, "no data") is None


class TestFloodRiskProvider:

    @pytest.mark.asyncio
    async def test_lookup_classifies_value(self):
        body = json.dumps({"features": [{"properties": {"value": 0.6}}]})
        provider = FloodRiskProvider(make_http(get_text=(200, body)), "https://glofas.example/wms", 5)

        risk = await provider.lookup(40.4, -3.7)

        assert risk.value == 0.6
        assert risk.level == "High"
        assert risk.to_dict()["risk_level"] == "High"

    @pytest.mark.asyncio
    async def test_negative_value_is_no_data(self):
        provider = FloodRiskProvider(make_http(get_text=(200, "-9999")), "https://glofas.example/wms", 5)
        risk = await provider.lookup(40.4, -3.7)
        assert risk.value is None
        assert risk.level == "Unknown"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        provider = FloodRiskProvider(make_http(get_text=(502, "Bad Gateway")), "https://glofas.example/wms", 5)
        with pytest.raises(UpstreamUnavailableError):
            await provider.lookup(40.4, -3.7)


# ============================================================================
# Urban context
# ============================================================================

OVERPASS_PAYLOAD = {
    "elements": [
        {"tags": {"landuse": "residential"}},
        {"tags": {"landuse": "residential"}},
        {"tags": {"landuse": "commercial"}},
        {"tags": {"amenity": "cafe"}},
        {"tags": {"amenity": "school"}},
        {"tags": {"amenity": "cafe", "building": "yes"}},
        {"tags": {"building": "apartments"}},
        {"tags": {}},
    ]
}


class TestUrbanContext:

    def test_overpass_query_uses_radius(self):
        query = build_overpass_query(40.0, -3.0)
        assert "(around:600,40.0,-3.0)" in query
        assert "[out:json]" in query

    def test_summary_counts(self):
        context = summarize_overpass(OVERPASS_PAYLOAD)
        assert context.source == "OpenStreetMap (Overpass)"
        details = context.details
        assert details["radius_m"] == 600
        assert details["building_count"] == 2
        assert details["landuse"][0] == {"type": "residential", "count": 2}
        assert details["amenities"][0] == {"type": "cafe", "count": 2}

    def test_summary_keeps_top_five(self):
        payload = {"elements": [{"tags": {"amenity": f"a{i}"}} for i in range(9)]}
        assert len(summarize_overpass(payload).details["amenities"]) == 5

    @pytest.mark.asyncio
    async def test_ign_result_used_first(self):
        body = json.dumps({"features": [{"properties": {"tipo": "urbano"}}]})
        http = make_http(get_text=(200, body))
        provider = UrbanContextProvider(http, "https://ign.example/wms", "https://overpass.example", 5)

        context = await provider.lookup(40.4, -3.7)

        assert context.source == "IGN WMS"
        assert context.details == {"tipo": "urbano"}
        http.post_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_to_overpass(self):
        http = make_http(get_text=(200, json.dumps({"features": []})), post_json=OVERPASS_PAYLOAD)
        provider = UrbanContextProvider(http, "https://ign.example/wms", "https://overpass.example", 5)

        context = await provider.lookup(40.4, -3.7)

        assert context.source == "OpenStreetMap (Overpass)"
        http.post_json.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ign_outage_falls_back_to_overpass(self):
        http = make_http(get_text=UpstreamUnavailableError("ign", "timeout"), post_json=OVERPASS_PAYLOAD)
        provider = UrbanContextProvider(http, "https://ign.example/wms", "https://overpass.example", 5)

        context = await provider.lookup(40.4, -3.7)

        assert context.details["building_count"] == 2


# ============================================================================
# Air quality
# ============================================================================

class TestAirQualityProvider:

    @pytest.mark.asyncio
    async def test_without_token_no_call(self):
        http = make_http()
        provider = AirQualityProvider(http, "https://api.waqi.info", None, 5)

        assert provider.available is False
        assert await provider.lookup(40.4, -3.7) is None
        http.get_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reads_aqi(self):
        http = make_http(get_json={"status": "ok", "data": {"aqi": 42}})
        provider = AirQualityProvider(http, "https://api.waqi.info/", "secret", 5)

        assert await provider.lookup(40.4, -3.7) == 42.0
        url = http.get_json.await_args.args[0]
        assert url == "https://api.waqi.info/feed/geo:40.4;-3.7/"
        assert http.get_json.await_args.kwargs["params"] == {"token": "secret"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"status": "error", "data": "Unknown station"},
        {"status": "ok", "data": {"aqi": "-"}},
        {"status": "ok", "data": None},
        None,
    ])
    async def test_unusable_payloads(self, payload):
        provider = AirQualityProvider(make_http(get_json=payload), "https://api.waqi.info", "secret", 5)
        assert await provider.lookup(40.4, -3.7) is None


# ============================================================================
# Fire risk
# ============================================================================

GWIS_TABLE = (
    "<html><body><table>"
    "<tr><td>Fire Weather Index (FWI)</td><td>23.4</td></tr>"
    "<tr><td>Initial Spread Index (ISI)</td><td>6.1</td></tr>"
    "<tr><td>Build Up Index (BUI)</td><td>80.2</td></tr>"
    "<tr><td>Fine Fuel Moisture Code (FFMC)</td><td>91.0</td></tr>"
    "<tr><td>Duff Moisture Code (DMC)</td><td>40.5</td></tr>"
    "<tr><td>Drought Code (DC)</td><td>410.0</td></tr>"
    "<tr><td>Fire Weather Index (FWI)</td><td>99</td></tr>"
    "</table></body></html>"
)
NO_RESULTS = "<html>Search returned no results</html>"


def fire_provider(*responses) -> FireRiskProvider:
    http = MagicMock()
    http.get_text = AsyncMock(side_effect=list(responses))
    return FireRiskProvider(http, "https://gwis.example/wms", 5, today=lambda: date(2025, 7, 2))


class TestFireClassification:

    @pytest.mark.parametrize("fwi,level", [
        (None, "Unknown"),
        (0, "Low"),
        (4.99, "Low"),
        (5, "Moderate"),
        (11.9, "Moderate"),
        (12, "High"),
        (29.9, "High"),
        (30, "Very high"),
        (49.9, "Very high"),
        (50, "Extreme"),
        (120, "Extreme"),
    ])
    def test_bands(self, fwi, level):
        assert classify_fwi(fwi) == level

    def test_feature_info_params_lon_lat_order(self):
        params = gwis_feature_info_params(40.0, -3.0, "2025-07-01")
        assert params["VERSION"] == "1.1.1"
        assert params["SRS"] == "EPSG:4326"
        assert params["X"] == params["Y"] == "50"
        assert params["LAYERS"] == "mf025.fwi"
        assert params["QUERY_LAYERS"] == "mf025.query"
        assert params["TIME"] == "2025-07-01"
        min_lon, min_lat, max_lon, max_lat = (float(v) for v in params["BBOX"].split(","))
        assert min_lon == pytest.approx(-3.02) and max_lon == pytest.approx(-2.98)
        assert min_lat == pytest.approx(39.98) and max_lat == pytest.approx(40.02)

    def test_table_rows_first_label_wins(self):
        metrics, warning = parse_fwi_metrics(GWIS_TABLE)
        assert warning is None
        assert metrics["Fire Weather Index (FWI)"] == 23.4
        assert metrics["Drought Code (DC)"] == 410.0

    @pytest.mark.parametrize("body,warning", [
        ("", "Empty response"),
        ("   \n", "Empty response"),
        ("<ServiceExceptionReport>bad layer</ServiceExceptionReport>", "WMS error"),
        (NO_RESULTS, "No data"),
        ("<table><tr><td>Fire Weather Index (FWI)</td><td>n/a</td></tr></table>", None),
    ])
    def test_bodies_without_metrics(self, body, warning):
        assert parse_fwi_metrics(body) == (None, warning)


class TestFireRiskProvider:

    @pytest.mark.asyncio
    async def test_lookup_reads_fwi_and_components(self):
        provider = fire_provider((200, GWIS_TABLE))

        risk = await provider.lookup(40.4, -3.7)

        assert risk.value == 23.4
        assert risk.level == "High"
        assert risk.danger is True
        assert risk.day == "2025-07-02"
        assert risk.details == {"fwi": 23.4, "isi": 6.1, "bui": 80.2, "ffmc": 91.0, "dmc": 40.5, "dc": 410.0}
        assert provider.http.get_text.await_args.kwargs["headers"] == {"Accept": "text/html"}

    @pytest.mark.asyncio
    async def test_no_data_today_uses_previous_day(self):
        provider = fire_provider((200, NO_RESULTS), (200, GWIS_TABLE))

        risk = await provider.lookup(40.4, -3.7)

        assert risk.value == 23.4
        assert risk.day == "2025-07-01"
        assert risk.warning == "No data today; used the previous day."
        days = [call.kwargs["params"]["TIME"] for call in provider.http.get_text.await_args_list]
        assert days == ["2025-07-02", "2025-07-01"]

    @pytest.mark.asyncio
    async def test_explicit_day_has_no_fallback(self):
        provider = fire_provider((200, NO_RESULTS))

        risk = await provider.lookup(40.4, -3.7, day="2024-08-15")

        assert risk.value is None
        assert risk.level == "Unknown"
        assert risk.danger is None
        assert risk.day == "2024-08-15"
        assert risk.warning == "No data"
        assert provider.http.get_text.await_count == 1

    @pytest.mark.asyncio
    async def test_fallback_outage_keeps_first_answer(self):
        provider = fire_provider((200, ""), UpstreamUnavailableError("gwis", "timeout after 5s"))

        risk = await provider.lookup(40.4, -3.7)

        assert risk.value is None
        assert risk.day == "2025-07-02"
        assert risk.warning == "Empty response"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        with pytest.raises(UpstreamUnavailableError):
            await fire_provider((503, "Service Unavailable")).lookup(40.4, -3.7)

    @pytest.mark.asyncio
    async def test_assess_reports_outage(self):
        provider = fire_provider((503, "Service Unavailable"))

        body = await provider.assess(40.4, -3.7, day="2025-06-30")

        assert body["risk_level"] == "Unknown"
        assert body["value"] is None
        assert body["warning"] == "HTTP 503"
        assert body["source"] == "Copernicus GWIS WMS"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("lat,lon,day,field", [
        (None, -3.7, None, "lat"),
        (40.4, None, None, "lon"),
        (95.0, -3.7, None, "lat"),
        (40.4, -3.7, "yesterday", "date"),
        (40.4, -3.7, "2025-7-1", "date"),
    ])
    async def test_assess_rejects_invalid_input(self, lat, lon, day, field):
        provider = fire_provider()
        with pytest.raises(InvalidInputError) as excinfo:
            await provider.assess(lat, lon, day=day)
        assert excinfo.value.field == field
        provider.http.get_text.assert_not_awaited()


# ============================================================================
# Shelters
# ============================================================================

SHELTER_PAYLOAD = {
    "elements": [
        {"type": "node", "id": 3, "lat": 40.41, "lon": -3.70, "tags": {"military": "bunker"}},
        {"type": "way", "id": 7, "center": {"lat": 40.42, "lon": -3.71},
         "tags": {"amenity": "shelter", "name:es": "Marquesina"}},
        {"type": "node", "id": 9, "lat": 40.43, "lon": -3.69,
         "tags": {"emergency": "shelter", "amenity": "shelter", "name": "Refugio Norte"}},
        {"type": "relation", "id": 11, "tags": {"amenity": "shelter"}},
    ]
}


class TestShelterParsing:

    @pytest.mark.parametrize("value", [
        None,
        "",
        "40,-4,41",
        "40,-4,41,-3,0",
        "a,-4,41,-3",
        "40,-4,nan,-3",
        "41,-4,40,-3",
        "40,-3,41,-3",
    ])
    def test_invalid_bbox(self, value):
        with pytest.raises(InvalidInputError) as excinfo:
            parse_bbox(value)
        assert excinfo.value.field == "bbox"

    def test_bbox_parts(self):
        assert parse_bbox(" 40.1, -3.9 ,40.6,-3.4") == (40.1, -3.9, 40.6, -3.4)

    def test_query_covers_every_shelter_kind(self):
        query = build_shelter_query((40.0, -4.0, 41.0, -3.0))
        for selector in ('["emergency"="shelter"]', '["amenity"="shelter"]', '["military"="bunker"]'):
            for kind in ("node", "way", "relation"):
                assert f"{kind}{selector}(40.0,-4.0,41.0,-3.0);" in query
        assert "out center tags;" in query

    def test_items_ordered_by_category(self):
        items = shelter_items(SHELTER_PAYLOAD)

        assert [item["id"] for item in items] == ["node-9", "way-7", "node-3"]
        assert [item["category"] for item in items] == ["emergency", "amenity", "bunker"]
        assert [item["typeLabel"] for item in items] == ["Emergency shelter", "Shelter", "Bunker"]
        assert items[0]["name"] == "Refugio Norte"
        assert items[1]["name"] == "Marquesina"
        assert (items[1]["lat"], items[1]["lon"]) == (40.42, -3.71)
        assert items[2]["name"] is None

    def test_unusable_payload(self):
        assert shelter_items(None) == []
        assert shelter_items({"remark": "runtime error"}) == []


class TestShelterService:

    def make_service(self, payload, now=None):
        http = make_http(post_json=payload)
        clock = now or (lambda: 0.0)
        return ShelterService(http, "https://overpass.example", 12, LocationCache("shelters", 300, clock=clock))

    @pytest.mark.asyncio
    async def test_payload(self):
        service = self.make_service(SHELTER_PAYLOAD)

        body = await service.lookup("40.3,-3.8,40.5,-3.6")

        assert body["source"] == "OpenStreetMap (Overpass)"
        assert body["count"] == 3
        assert len(body["items"]) == 3
        assert service.http.post_json.await_args.kwargs["headers"] == {"Content-Type": "text/plain"}

    @pytest.mark.asyncio
    async def test_count_is_total_before_truncation(self):
        elements = [
            {"type": "node", "id": i, "lat": 40.0, "lon": -3.0, "tags": {"amenity": "shelter"}}
            for i in range(SHELTER_LIMIT + 5)
        ]
        body = await self.make_service({"elements": elements}).lookup("39,-4,41,-2")

        assert body["count"] == SHELTER_LIMIT + 5
        assert len(body["items"]) == SHELTER_LIMIT

    @pytest.mark.asyncio
    async def test_nearby_boxes_share_a_cache_entry(self):
        service = self.make_service(SHELTER_PAYLOAD)

        first = await service.lookup("40.3001,-3.8,40.5,-3.6")
        second = await service.lookup("40.3002,-3.8,40.5,-3.6")

        assert first == second
        service.http.post_json.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self):
        now = [0.0]
        service = self.make_service(SHELTER_PAYLOAD, now=lambda: now[0])

        await service.lookup("40.3,-3.8,40.5,-3.6")
        now[0] = 301.0
        await service.lookup("40.3,-3.8,40.5,-3.6")

        assert service.http.post_json.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_bbox_makes_no_call(self):
        service = self.make_service(SHELTER_PAYLOAD)
        with pytest.raises(InvalidInputError):
            await service.lookup("41,-4,40,-3")
        service.http.post_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_outage_is_not_cached(self):
        http = MagicMock()
        http.post_json = AsyncMock(side_effect=[UpstreamUnavailableError("overpass", "HTTP 504"), SHELTER_PAYLOAD])
        service = ShelterService(http, "https://overpass.example", 12, LocationCache("shelters", 300))

        with pytest.raises(UpstreamUnavailableError):
            await service.lookup("40.3,-3.8,40.5,-3.6")
        body = await service.lookup("40.3,-3.8,40.5,-3.6")

        assert body["count"] == 3
