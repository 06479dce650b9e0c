# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Point lookups for the environmental side of a fact record.

- ``FloodRiskProvider``  -> GloFAS ``FloodHazard100y`` WMS GetFeatureInfo
- ``FireRiskProvider``   -> GWIS fire weather index (FWI) WMS GetFeatureInfo
- ``UrbanContextProvider`` -> IGN base WMS, falling back to an Overpass summary
- ``AirQualityProvider`` -> WAQI geo feed (skipped without a token)
- ``ShelterService``     -> shelters and bunkers in a bounding box, via Overpass

Every ``lookup`` either returns a parsed value (possibly None for "no data")
or raises ``UpstreamUnavailableError``; the aggregator decides what a failure
means for the record.
"""

import json
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .cancellation import CancellationToken
from .errors import InvalidInputError, UpstreamUnavailableError
from .http_client import ProviderHttpClient
from .location_cache import LocationCache
from .models import UrbanContext, coordinates_valid

logger = logging.getLogger(__name__)

WMS_BBOX_DELTA = 0.02
WMS_PIXELS = 101
_NUMBER_RE = re.compile(r"-?\d+(\.\d+)?")


def wms_feature_info_params(latitude: float, longitude: float, layer: str) -> Dict[str, str]:
    """GetFeatureInfo at the centre pixel of a small box around the point (WMS 1.3.0, lat/lon axis order)."""
    bbox = ",".join(str(v) for v in (
        latitude - WMS_BBOX_DELTA,
        longitude - WMS_BBOX_DELTA,
        latitude + WMS_BBOX_DELTA,
        longitude + WMS_BBOX_DELTA,
    ))
    return {
        "SERVICE": "WMS",
        "REQUEST": "GetFeatureInfo",
        "VERSION": "1.3.0",
        "CRS": "EPSG:4326",
        "BBOX": bbox,
        "WIDTH": str(WMS_PIXELS),
        "HEIGHT": str(WMS_PIXELS),
        "I": str(WMS_PIXELS // 2),
        "J": str(WMS_PIXELS // 2),
        "LAYERS": layer,
        "QUERY_LAYERS": layer,
        "INFO_FORMAT": "application/json",
    }


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _features(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("features"), list):
        return payload["features"]
    return []


# ============================================================================
# FLOOD RISK
# ============================================================================

FLOOD_RISK_LEVELS = ("Very low", "Low", "Medium", "High", "Very high")
FLOOD_RISK_UNKNOWN = "Unknown"


def classify_flood_risk(value: Optional[float]) -> str:
    if value is None:
        return FLOOD_RISK_UNKNOWN
    if value <= 0:
        return "Very low"
    if value <= 0.2:
        return "Low"
    if value <= 0.5:
        return "Medium"
    if value <= 0.8:
        return "High"
    return "Very high"


def flood_risk_rank(level: Optional[str]) -> Optional[int]:
    """Ordinal of a known risk level (0 = very low); None for unknown."""
    try:
        return FLOOD_RISK_LEVELS.index(level)
    except ValueError:
        return None


def extract_numeric(payload: Any, raw_text: str) -> Optional[float]:
    """First numeric property of the first feature, else the first number in the raw body."""
    features = _features(payload)
    if features:
        properties = features[0].get("properties") or {}
        for value in properties.values():
            if isinstance(value, bool):
                continue
            if isinstance(value, (int, float)) and math.isfinite(value):
                return float(value)
            if isinstance(value, str):
                try:
                    parsed = float(value)
                except ValueError:
                    continue
                if math.isfinite(parsed):
                    return parsed

    match = _NUMBER_RE.search(raw_text or "")
    return float(match.group(0)) if match else None


@dataclass(frozen=True)
class FloodRisk:
    value: Optional[float]
    level: str
    source: str = "Copernicus GloFAS WMS"
    layer: str = "FloodHazard100y"

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "layer": self.layer, "value": self.value, "risk_level": self.level}


class FloodRiskProvider:
    name = "glofas"
    layer = "FloodHazard100y"

    def __init__(self, http: ProviderHttpClient, wms_url: str, timeout: float):
        self.http = http
        self.wms_url = wms_url
        self.timeout = timeout

    async def lookup(self, latitude: float, longitude: float, token: Optional[CancellationToken] = None) -> FloodRisk:
        status, text = await self.http.get_text(
            self.wms_url,
            self.name,
            self.timeout,
            params=wms_feature_info_params(latitude, longitude, self.layer),
            token=token,
        )
        if not 200 <= status < 300:
            raise UpstreamUnavailableError(self.name, f"HTTP {status}")

        value = extract_numeric(_loads(text), text)
        if value is not None and value < 0:
            value = None
        risk = FloodRisk(value=value, level=classify_flood_risk(value), layer=self.layer)
        logger.debug(f"Flood risk at ({latitude:.4f}, {longitude:.4f}): {risk.level} ({value})")
        return risk


# ============================================================================
# FIRE RISK
# ============================================================================

GWIS_SOURCE = "Copernicus GWIS WMS"
GWIS_LAYER = "mf025.fwi"
GWIS_QUERY_LAYER = "mf025.query"
FWI_LABEL = "Fire Weather Index (FWI)"
FWI_COMPONENTS = {
    "isi": "Initial Spread Index (ISI)",
    "bui": "Build Up Index (BUI)",
    "ffmc": "Fine Fuel Moisture Code (FFMC)",
    "dmc": "Duff Moisture Code (DMC)",
    "dc": "Drought Code (DC)",
}
FIRE_RISK_UNKNOWN = "Unknown"
FIRE_DANGER_THRESHOLD = 12
FIRE_SCALE_NOTE = (
    "FWI (Fire Weather Index). Approximate bands: <5 low, 5-12 moderate, "
    "12-30 high, 30-50 very high, >=50 extreme."
)
_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FWI_ROW_RE = re.compile(r"<tr><td>([^<]+)</td><td>([^<]+)</td></tr>", re.IGNORECASE)


def classify_fwi(fwi: Optional[float]) -> str:
    if fwi is None:
        return FIRE_RISK_UNKNOWN
    if fwi < 5:
        return "Low"
    if fwi < 12:
        return "Moderate"
    if fwi < 30:
        return "High"
    if fwi < 50:
        return "Very high"
    return "Extreme"


def gwis_feature_info_params(latitude: float, longitude: float, day: str) -> Dict[str, str]:
    """GetFeatureInfo for one day of the FWI layer (WMS 1.1.1, lon/lat axis order)."""
    bbox = ",".join(str(v) for v in (
        longitude - WMS_BBOX_DELTA,
        latitude - WMS_BBOX_DELTA,
        longitude + WMS_BBOX_DELTA,
        latitude + WMS_BBOX_DELTA,
    ))
    return {
        "SERVICE": "WMS",
        "REQUEST": "GetFeatureInfo",
        "VERSION": "1.1.1",
        "SRS": "EPSG:4326",
        "BBOX": bbox,
        "WIDTH": str(WMS_PIXELS),
        "HEIGHT": str(WMS_PIXELS),
        "X": str(WMS_PIXELS // 2),
        "Y": str(WMS_PIXELS // 2),
        "LAYERS": GWIS_LAYER,
        "QUERY_LAYERS": GWIS_QUERY_LAYER,
        "INFO_FORMAT": "text/html",
        "STYLES": "default",
        "TIME": day,
    }


def parse_fwi_metrics(html: str) -> Tuple[Optional[Dict[str, float]], Optional[str]]:
    """
    Label/value rows of a GWIS feature-info table.

    Returns ``(metrics, warning)``; metrics is None when the service had
    nothing for the point (empty body, WMS exception or an explicit
    no-result page). The first occurrence of a label wins.
    """
    if not (html or "").strip():
        return None, "Empty response"
    if "ServiceException" in html:
        return None, "WMS error"
    if "search returned no results" in html.lower():
        return None, "No data"

    metrics: Dict[str, float] = {}
    for label, raw in _FWI_ROW_RE.findall(html):
        label = label.strip()
        try:
            value = float(raw)
        except ValueError:
            continue
        if label and math.isfinite(value) and label not in metrics:
            metrics[label] = value
    return (metrics or None), None


@dataclass(frozen=True)
class FireRisk:
    value: Optional[float]
    level: str
    danger: Optional[bool] = None
    day: Optional[str] = None
    details: Optional[Dict[str, Optional[float]]] = None
    warning: Optional[str] = None

    @classmethod
    def from_metrics(
        cls, metrics: Optional[Dict[str, float]], day: Optional[str], warning: Optional[str] = None
    ) -> "FireRisk":
        fwi = metrics.get(FWI_LABEL) if metrics else None
        details = None
        if metrics:
            details = {"fwi": fwi}
            details.update({key: metrics.get(label) for key, label in FWI_COMPONENTS.items()})
        return cls(
            value=fwi,
            level=classify_fwi(fwi),
            danger=None if fwi is None else fwi >= FIRE_DANGER_THRESHOLD,
            day=day,
            details=details,
            warning=warning,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": GWIS_SOURCE,
            "method": "GetFeatureInfo",
            "layer": GWIS_LAYER,
            "query_layer": GWIS_QUERY_LAYER,
            "date": self.day,
            "value": self.value,
            "risk_level": self.level,
            "danger": self.danger,
            "scale_note": FIRE_SCALE_NOTE,
            "details": self.details,
            "warning": self.warning,
        }


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class FireRiskProvider:
    """Daily fire weather index at a point; today's map falls back to yesterday's."""

    name = "gwis"

    def __init__(
        self,
        http: ProviderHttpClient,
        wms_url: str,
        timeout: float,
        today: Callable[[], date] = _utc_today,
    ):
        self.http = http
        self.wms_url = wms_url
        self.timeout = timeout
        self._today = today

    async def _metrics(
        self, latitude: float, longitude: float, day: str, token: Optional[CancellationToken]
    ) -> Tuple[Optional[Dict[str, float]], Optional[str]]:
        status, text = await self.http.get_text(
            self.wms_url,
            self.name,
            self.timeout,
            params=gwis_feature_info_params(latitude, longitude, day),
            headers={"Accept": "text/html"},
            token=token,
        )
        if not 200 <= status < 300:
            raise UpstreamUnavailableError(self.name, f"HTTP {status}")
        return parse_fwi_metrics(text)

    async def lookup(
        self,
        latitude: float,
        longitude: float,
        day: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> FireRisk:
        """
        FWI for ``day`` (YYYY-MM-DD). Without an explicit day, today's map is
        tried first and yesterday's is used when today has no data yet.
        """
        requested = day
        day = day or self._today().isoformat()
        metrics, warning = await self._metrics(latitude, longitude, day, token)

        if metrics is None and requested is None:
            previous = (date.fromisoformat(day) - timedelta(days=1)).isoformat()
            try:
                fallback, _ = await self._metrics(latitude, longitude, previous, token)
            except UpstreamUnavailableError as e:
                logger.info(f"GWIS fallback to {previous} unavailable: {e.reason}")
                fallback = None
            if fallback is not None:
                metrics, day = fallback, previous
                warning = "No data today; used the previous day."

        risk = FireRisk.from_metrics(metrics, day, warning)
        logger.debug(f"Fire risk at ({latitude:.4f}, {longitude:.4f}) on {day}: {risk.level} ({risk.value})")
        return risk

    async def assess(
        self,
        latitude: Optional[float],
        longitude: Optional[float],
        day: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Validated lookup for the HTTP surface; an outage is reported, not raised."""
        if latitude is None:
            raise InvalidInputError("lat", "Latitude is required")
        if longitude is None:
            raise InvalidInputError("lon", "Longitude is required")
        if not coordinates_valid(latitude, longitude):
            raise InvalidInputError("lat", f"Invalid coordinates: ({latitude}, {longitude})")
        if day is not None and not _DAY_RE.match(day):
            raise InvalidInputError("date", "Date must be YYYY-MM-DD")

        try:
            risk = await self.lookup(latitude, longitude, day=day, token=token)
        except UpstreamUnavailableError as e:
            logger.warning(f"⚠️ Fire risk unavailable: {e}")
            risk = FireRisk(value=None, level=FIRE_RISK_UNKNOWN, day=day, warning=e.reason)
        return risk.to_dict()


# ============================================================================
# URBAN CONTEXT
# ============================================================================

OVERPASS_RADIUS_M = 600
OVERPASS_TOP_N = 5
IGN_SOURCE = "IGN WMS"
OVERPASS_SOURCE = "OpenStreetMap (Overpass)"


def build_overpass_query(latitude: float, longitude: float, radius: int = OVERPASS_RADIUS_M) -> str:
    around = f"(around:{radius},{latitude},{longitude})"
    return f"""
[out:json][timeout:25];
(
  way{around}["landuse"];
  relation{around}["landuse"];
  node{around}["amenity"];
  way{around}["amenity"];
  relation{around}["amenity"];
  way{around}["building"];
  relation{around}["building"];
);
out tags;
"""


def _top(counts: Counter, limit: int = OVERPASS_TOP_N) -> List[Dict[str, Any]]:
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [{"type": key, "count": count} for key, count in ranked[:limit]]


def summarize_overpass(payload: Dict[str, Any], radius: int = OVERPASS_RADIUS_M) -> UrbanContext:
    landuse: Counter = Counter()
    amenities: Counter = Counter()
    building_count = 0
    for element in payload.get("elements") or []:
        tags = element.get("tags") or {}
        if tags.get("landuse"):
            landuse[tags["landuse"]] += 1
        if tags.get("amenity"):
            amenities[tags["amenity"]] += 1
        if tags.get("building"):
            building_count += 1

    return UrbanContext(
        source=OVERPASS_SOURCE,
        summary="Summary of nearby land uses and amenities.",
        details={
            "radius_m": radius,
            "landuse": _top(landuse),
            "amenities": _top(amenities),
            "building_count": building_count,
        },
    )


class UrbanContextProvider:
    name = "urban"
    ign_layer = "IGNBaseTodo"

    def __init__(self, http: ProviderHttpClient, ign_wms_url: str, overpass_url: str, timeout: float):
        self.http = http
        self.ign_wms_url = ign_wms_url
        self.overpass_url = overpass_url
        self.timeout = timeout

    async def _ign(self, latitude: float, longitude: float, token: Optional[CancellationToken]) -> Optional[UrbanContext]:
        try:
            status, text = await self.http.get_text(
                self.ign_wms_url,
                "ign",
                self.timeout,
                params=wms_feature_info_params(latitude, longitude, self.ign_layer),
                token=token,
            )
        except UpstreamUnavailableError as e:
            logger.info(f"IGN WMS unavailable ({e.reason}), trying Overpass")
            return None
        if not 200 <= status < 300:
            logger.info(f"IGN WMS returned HTTP {status}, trying Overpass")
            return None

        features = _features(_loads(text))
        if not features:
            return None
        return UrbanContext(
            source=IGN_SOURCE,
            summary="Result obtained from IGN Base.",
            details=features[0].get("properties") or {},
        )

    async def lookup(
        self, latitude: float, longitude: float, token: Optional[CancellationToken] = None
    ) -> UrbanContext:
        context = await self._ign(latitude, longitude, token)
        if context is not None:
            return context

        payload = await self.http.post_json(
            self.overpass_url,
            "overpass",
            self.timeout,
            data=build_overpass_query(latitude, longitude),
            headers={"Content-Type": "text/plain"},
            token=token,
        )
        return summarize_overpass(payload)


# ============================================================================
# AIR QUALITY
# ============================================================================

AQI_LABELS = (
    "Good",
    "Reasonably good",
    "Fair",
    "Unfavourable",
    "Very unfavourable",
    "Extremely unfavourable",
)
AQI_THRESHOLDS = (25, 50, 75, 100, 150)


def classify_aqi(value: Optional[float]) -> Optional[str]:
    """Six ordered bands (<=25, <=50, <=75, <=100, <=150, above); None stays None."""
    if value is None:
        return None
    for threshold, label in zip(AQI_THRESHOLDS, AQI_LABELS):
        if value <= threshold:
            return label
    return AQI_LABELS[-1]


class AirQualityProvider:
    name = "waqi"

    def __init__(self, http: ProviderHttpClient, base_url: str, api_token: Optional[str], timeout: float):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_token)

    async def lookup(
        self, latitude: float, longitude: float, token: Optional[CancellationToken] = None
    ) -> Optional[float]:
        """AQI at the point, or None when unconfigured or the station reports nothing usable."""
        if not self.available:
            return None
        payload = await self.http.get_json(
            f"{self.base_url}/feed/geo:{latitude};{longitude}/",
            self.name,
            self.timeout,
            params={"token": self.api_token},
            token=token,
        )
        if not isinstance(payload, dict) or payload.get("status") != "ok":
            return None
        data = payload.get("data")
        raw = data.get("aqi") if isinstance(data, dict) else None
        try:
            aqi = float(raw)
        except (TypeError, ValueError):
            return None
        return aqi if math.isfinite(aqi) else None


# ============================================================================
# SHELTERS
# ============================================================================

SHELTER_LIMIT = 1200
SHELTER_CATEGORIES = ("emergency", "amenity", "bunker")
SHELTER_LABELS = {"emergency": "Emergency shelter", "amenity": "Shelter", "bunker": "Bunker"}


def parse_bbox(value: Optional[str]) -> Tuple[float, float, float, float]:
    """``south,west,north,east`` with four finite numbers and a non-empty extent."""
    parts = (value or "").split(",")
    if len(parts) != 4:
        raise InvalidInputError("bbox", "bbox must be south,west,north,east")
    try:
        south, west, north, east = (float(part.strip()) for part in parts)
    except ValueError:
        raise InvalidInputError("bbox", "bbox values must be numbers")
    if not all(math.isfinite(v) for v in (south, west, north, east)):
        raise InvalidInputError("bbox", "bbox values must be finite")
    if south >= north or west >= east:
        raise InvalidInputError("bbox", "bbox must have south < north and west < east")
    return south, west, north, east


def bbox_key(bbox: Tuple[float, float, float, float]) -> str:
    return ",".join(f"{v:.3f}" for v in bbox)


def build_shelter_query(bbox: Tuple[float, float, float, float]) -> str:
    box = ",".join(str(v) for v in bbox)
    selectors = ('["emergency"="shelter"]', '["amenity"="shelter"]', '["military"="bunker"]')
    clauses = "\n".join(
        f"  {kind}{selector}({box});" for selector in selectors for kind in ("node", "way", "relation")
    )
    return f"""
[out:json][timeout:25];
(
{clauses}
);
out center tags;
"""


def shelter_category(tags: Dict[str, str]) -> str:
    if tags.get("emergency") == "shelter":
        return "emergency"
    if tags.get("military") == "bunker":
        return "bunker"
    return "amenity"


def _type_label(tags: Dict[str, str]) -> Optional[str]:
    if tags.get("emergency") == "shelter":
        return SHELTER_LABELS["emergency"]
    if tags.get("amenity") == "shelter":
        return SHELTER_LABELS["amenity"]
    if tags.get("military") == "bunker":
        return SHELTER_LABELS["bunker"]
    return None


def _coordinate(element: Dict[str, Any], axis: str) -> Optional[float]:
    value = element.get(axis)
    if value is None:
        value = (element.get("center") or {}).get(axis)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return float(value)


def shelter_items(payload: Any) -> List[Dict[str, Any]]:
    """Located shelters, emergency first, then amenity shelters, then bunkers."""
    elements = payload.get("elements") if isinstance(payload, dict) else None
    items = []
    for element in elements or []:
        tags = element.get("tags") or {}
        lat, lon = _coordinate(element, "lat"), _coordinate(element, "lon")
        if lat is None or lon is None:
            continue
        items.append({
            "id": f"{element.get('type')}-{element.get('id')}",
            "lat": lat,
            "lon": lon,
            "category": shelter_category(tags),
            "name": tags.get("name") or tags.get("name:es"),
            "typeLabel": _type_label(tags),
            "tags": tags,
        })
    items.sort(key=lambda item: SHELTER_CATEGORIES.index(item["category"]))
    return items


class ShelterService:
    """Cached shelter lookups over the Overpass interpreter."""

    name = "overpass"

    def __init__(self, http: ProviderHttpClient, overpass_url: str, timeout: float, cache: LocationCache):
        self.http = http
        self.overpass_url = overpass_url
        self.timeout = timeout
        self.cache = cache

    async def _fetch(self, bbox: Tuple[float, float, float, float], token: Optional[CancellationToken]):
        payload = await self.http.post_json(
            self.overpass_url,
            self.name,
            self.timeout,
            data=build_shelter_query(bbox),
            headers={"Content-Type": "text/plain"},
            token=token,
        )
        items = shelter_items(payload)
        logger.info(f"🏠 {len(items)} shelters in bbox {bbox_key(bbox)}")
        return {"source": OVERPASS_SOURCE, "count": len(items), "items": items[:SHELTER_LIMIT]}

    async def lookup(self, bbox: Optional[str], token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """Shelters inside ``bbox``; ``count`` is the total before truncation."""
        box = parse_bbox(bbox)
        return await self.cache.get_or_fetch(bbox_key(box), lambda: self._fetch(box, token))
