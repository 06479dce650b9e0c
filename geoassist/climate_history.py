# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Fifty-year climate and seismic history around a point.

Climate comes from the Open-Meteo daily archive, earthquakes from the USGS
FDSN event service. Both halves run concurrently and fail independently.
"""

import asyncio
import logging
import math
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .cancellation import CancellationToken
from .errors import InvalidInputError, UpstreamUnavailableError
from .http_client import ProviderHttpClient
from .models import coordinates_valid

logger = logging.getLogger(__name__)

HISTORY_YEARS = 50
QUAKE_RADIUS_KM = 100
QUAKE_MIN_MAGNITUDE = 4.5
QUAKE_LIMIT = 50
EARTH_RADIUS_KM = 6371.0

EVENTS_UNAVAILABLE = "Could not query nearby events."


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def _finite(values: List[Any]) -> List[float]:
    return [float(v) for v in values if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)]


def _avg(values: List[float]) -> Optional[float]:
    return round(sum(values) / len(values), 1) if values else None


def _total(values: List[float]) -> Optional[float]:
    return round(sum(values), 1) if values else None


def _at(values: List[Any], index: int) -> List[Any]:
    return [values[index]] if index < len(values) else []


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February
        return day.replace(year=day.year - years, day=28)


def summarize_climate(daily: Dict[str, List[Any]]) -> Dict[str, Any]:
    """Overall and per-year temperature / precipitation aggregates."""
    temps_max = daily.get("temperature_2m_max") or []
    temps_min = daily.get("temperature_2m_min") or []
    precip = daily.get("precipitation_sum") or []

    years: Dict[int, Dict[str, List[float]]] = defaultdict(lambda: {"temps": [], "precip": []})
    for index, day in enumerate(daily.get("time") or []):
        try:
            year = int(str(day)[:4])
        except ValueError:
            continue
        years[year]["temps"].extend(_finite(_at(temps_max, index) + _at(temps_min, index)))
        years[year]["precip"].extend(_finite(_at(precip, index)))

    by_year = [
        {"year": year, "avgTemp": _avg(values["temps"]), "totalPrecip": _total(values["precip"])}
        for year, values in sorted(years.items())
    ]
    return {
        "avgTemp": _avg(_finite(temps_max) + _finite(temps_min)),
        "totalPrecip": _total(_finite(precip)),
        "days": max(len(temps_max), len(temps_min), len(precip)),
        "byYear": by_year,
    }


def _trend(by_year: List[Dict[str, Any]], key: str) -> Optional[float]:
    if not by_year:
        return None
    first, last = by_year[0][key], by_year[-1][key]
    if first is None or last is None:
        return None
    return round(last - first, 1)


def _signed(value: float) -> str:
    return f"+{value}" if value > 0 else f"{value}"


def climate_summary(metrics: Optional[Dict[str, Any]]) -> str:
    if metrics is None:
        return "Climate history is not available for this location."
    by_year = metrics["byYear"]
    avg_temp = metrics["avgTemp"] if metrics["avgTemp"] is not None else "N/A"
    total_precip = metrics["totalPrecip"] if metrics["totalPrecip"] is not None else "N/A"
    parts = [
        f"Summary of the last {len(by_year)} years: average temperature of about {avg_temp} °C "
        f"and accumulated precipitation of {total_precip} mm."
    ]
    temp_trend = _trend(by_year, "avgTemp")
    if temp_trend is not None:
        parts.append(f"Temperature trend: {_signed(temp_trend)} °C.")
    precip_trend = _trend(by_year, "totalPrecip")
    if precip_trend is not None:
        parts.append(f"Precipitation change: {_signed(precip_trend)} mm.")
    return " ".join(parts)


def _event_date(event_time: Any) -> Optional[str]:
    """UTC date of an epoch-milliseconds timestamp; None when absent or out of range."""
    if not isinstance(event_time, (int, float)) or isinstance(event_time, bool):
        return None
    try:
        return datetime.fromtimestamp(event_time / 1000, tz=timezone.utc).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def parse_quakes(payload: Dict[str, Any], latitude: float, longitude: float) -> List[Dict[str, Any]]:
    items = []
    for feature in payload.get("features") or []:
        properties = feature.get("properties") or {}
        coordinates = (feature.get("geometry") or {}).get("coordinates") or []
        if len(coordinates) < 2:
            continue
        try:
            lon, lat = float(coordinates[0]), float(coordinates[1])
        except (TypeError, ValueError):
            continue
        if not coordinates_valid(lat, lon):
            continue
        magnitude = properties.get("mag")
        items.append({
            "place": str(properties.get("place") or "Unknown location"),
            "magnitude": float(magnitude) if isinstance(magnitude, (int, float)) else None,
            "date": _event_date(properties.get("time")),
            "distanceKm": round(haversine_km(latitude, longitude, lat, lon)),
        })
    return items


class ClimateHistoryService:
    """Climate archive plus nearby earthquakes for the last fifty years."""

    def __init__(
        self,
        http: ProviderHttpClient,
        archive_url: str,
        events_url: str,
        timeout: float,
        today: Callable[[], date] = date.today,
    ):
        self.http = http
        self.archive_url = archive_url
        self.events_url = events_url
        self.timeout = timeout
        self._today = today

    def _window(self):
        end = self._today()
        return _years_before(end, HISTORY_YEARS), end

    async def climate(self, latitude: float, longitude: float, token: Optional[CancellationToken] = None):
        start, end = self._window()
        try:
            payload = await self.http.get_json(
                self.archive_url,
                "open_meteo",
                self.timeout,
                params={
                    "latitude": str(latitude),
                    "longitude": str(longitude),
                    "start_date": start.isoformat(),
                    "end_date": end.isoformat(),
                    "daily": "temperature_2m_max,temperature_2m_min,precipitation_sum",
                    "timezone": "auto",
                },
                token=token,
            )
            return summarize_climate(payload.get("daily") or {})
        except (UpstreamUnavailableError, AttributeError) as e:
            logger.warning(f"⚠️ Climate archive unavailable: {e}")
            return None

    async def earthquakes(self, latitude: float, longitude: float, token: Optional[CancellationToken] = None):
        start, end = self._window()
        try:
            payload = await self.http.get_json(
                self.events_url,
                "usgs",
                self.timeout,
                params={
                    "format": "geojson",
                    "starttime": start.isoformat(),
                    "endtime": end.isoformat(),
                    "latitude": str(latitude),
                    "longitude": str(longitude),
                    "maxradiuskm": str(QUAKE_RADIUS_KM),
                    "minmagnitude": str(QUAKE_MIN_MAGNITUDE),
                    "orderby": "time",
                    "limit": str(QUAKE_LIMIT),
                },
                token=token,
            )
            items = parse_quakes(payload, latitude, longitude)
        except (UpstreamUnavailableError, AttributeError) as e:
            logger.warning(f"⚠️ Earthquake catalogue unavailable: {e}")
            return {"summary": EVENTS_UNAVAILABLE, "items": []}

        window = f"within {QUAKE_RADIUS_KM} km (last {HISTORY_YEARS} years)"
        if not items:
            return {"summary": f"No earthquakes >= {QUAKE_MIN_MAGNITUDE} {window}.", "items": []}
        return {"summary": f"{len(items)} earthquakes >= {QUAKE_MIN_MAGNITUDE} {window}.", "items": items}

    async def summarize(
        self, latitude: float, longitude: float, token: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        if not coordinates_valid(latitude, longitude):
            raise InvalidInputError("lat", f"Invalid coordinates: ({latitude}, {longitude})")

        metrics, events = await asyncio.gather(
            self.climate(latitude, longitude, token),
            self.earthquakes(latitude, longitude, token),
        )
        return {"summary": climate_summary(metrics), "metrics": metrics, "events": events}
