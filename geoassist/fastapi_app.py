# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

# FastAPI Geo Assistant API
# Location resolution, fact aggregation and place comparison over HTTP

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.app_logging import setup_logging
from core.config import settings
from core.env_loader import validate_environment

from .cancellation import CancellationToken, OperationCancelledError, SupersedingRegistry
from .engine import GeoAssistEngine, build_engine
from .errors import InvalidInputError, LocationNotFoundError, UpstreamUnavailableError
from .models import PlaceQuery

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Geo Assistant API", version=settings.app_version)

if settings.allow_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Global components, created on startup
http_session: Optional[aiohttp.ClientSession] = None
engine: Optional[GeoAssistEngine] = None
registry = SupersedingRegistry()


# ============================================================================
# REQUEST MODELS
# ============================================================================

class Coordinates(BaseModel):
    lat: Optional[float] = None
    lon: Optional[float] = None


class LookupRequest(BaseModel):
    """Inbound request from the map UI"""
    queryText: Optional[str] = Field(None, description="Free-text place name")
    coordinates: Optional[Coordinates] = Field(None, description="Clicked map point")
    mapZoom: Optional[float] = Field(None, description="Current web-map zoom level")
    compareMode: bool = False
    compareQueryText: Optional[str] = Field(None, description="Second place when compareMode is set")
    sessionId: Optional[str] = None

    def to_query(self) -> PlaceQuery:
        return PlaceQuery(
            text=self.queryText,
            latitude=self.coordinates.lat if self.coordinates else None,
            longitude=self.coordinates.lon if self.coordinates else None,
            zoom=self.mapZoom,
        )


class CompareRequest(BaseModel):
    cityA: Optional[str] = None
    cityB: Optional[str] = None
    sessionId: Optional[str] = None


# ============================================================================
# LIFECYCLE
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Create the shared HTTP session and the engine components"""
    global http_session, engine

    logger.info("🚀 GEO ASSISTANT STARTING UP")
    logger.info("=" * 60)

    env_status = validate_environment()
    if env_status["missing"]:
        logger.warning(f"⚠️ Optional credentials not configured: {', '.join(env_status['missing'])}")

    http_session = aiohttp.ClientSession()
    engine = build_engine(http_session, settings)

    logger.info("🎯 Registered routes:")
    for route in app.routes:
        if hasattr(route, "methods") and hasattr(route, "path"):
            logger.info(f"   {','.join(sorted(route.methods)):8s} {route.path}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    global http_session, engine
    registry.cancel_all()
    if http_session is not None:
        await http_session.close()
    http_session = None
    engine = None
    logger.info("👋 Geo Assistant stopped")


# ============================================================================
# HELPERS
# ============================================================================

def _engine() -> GeoAssistEngine:
    if engine is None:
        raise RuntimeError("Engine not initialized")
    return engine


@asynccontextmanager
async def session_token(session_id: Optional[str], channel: str):
    """Token that a newer request with the same session and channel cancels."""
    if not session_id:
        yield None
        return
    key = f"{session_id}:{channel}"
    token = registry.issue(key)
    try:
        yield token
    finally:
        registry.release(key, token)


async def respond(
    operation: str,
    work: Callable[[Optional[CancellationToken]], Awaitable[Any]],
    session_id: Optional[str] = None,
) -> JSONResponse:
    """Run one request and map engine errors onto HTTP statuses."""
    try:
        async with session_token(session_id, operation) as token:
            content = await work(token)
        return JSONResponse(content=content)
    except InvalidInputError as e:
        logger.info(f"❌ {operation}: invalid {e.field}: {e.message}")
        return JSONResponse(status_code=400, content={"error": e.message, "field": e.field})
    except LocationNotFoundError as e:
        return JSONResponse(status_code=404, content={"error": str(e), "query": e.query})
    except UpstreamUnavailableError as e:
        logger.warning(f"⚠️ {operation}: {e}")
        return JSONResponse(status_code=502, content={"error": f"{e.provider} unavailable", "provider": e.provider})
    except OperationCancelledError:
        logger.info(f"🔄 {operation} superseded for session {session_id}")
        return JSONResponse(status_code=409, content={"error": "Superseded by a newer request", "cancelled": True})
    except Exception as e:
        logger.error(f"❌ {operation} failed: {e}")
        logger.exception("Full exception details:")
        return JSONResponse(status_code=500, content={"error": f"{operation} failed"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = first.get("loc") or ()
    field = str(location[-1]) if location else None
    return JSONResponse(
        status_code=400,
        content={"error": first.get("msg", "Invalid request"), "field": field},
    )


# ============================================================================
# ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    return {"message": f"{settings.app_name} API is running", "status": "ok", "version": settings.app_version}


@app.get("/api/health")
async def health_check():
    """Provider availability, circuit breakers, metrics and cache statistics"""
    if engine is None:
        return JSONResponse(status_code=503, content={"status": "starting", "service": settings.app_name})
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": settings.app_name,
        "version": settings.app_version,
        **engine.health(),
    }


@app.get("/api/suggestions")
async def suggestions(query: Optional[str] = None, cityOnly: Optional[str] = None, sessionId: Optional[str] = None):
    async def work(token):
        text = (query or "").strip()
        if not text:
            raise InvalidInputError("query", "A search text is required")
        city_only = (cityOnly or "").lower() in ("1", "true", "yes")
        results = await _engine().suggestions.suggest(text, city_only=city_only, token=token)
        return {"results": [candidate.to_dict() for candidate in results]}

    return await respond("suggestions", work, sessionId)


@app.get("/api/geocode")
async def geocode(query: Optional[str] = None):
    async def work(token):
        text = (query or "").strip()
        if not text:
            raise InvalidInputError("query", "A place name is required")
        candidate = await _engine().resolver.forward(text, token)
        if candidate is None:
            raise LocationNotFoundError(text)
        return candidate.to_dict()

    return await respond("geocode", work)


@app.get("/api/reverse")
async def reverse(
    lat: Optional[float] = None,
    lon: Optional[float] = None,
    zoom: Optional[float] = None,
    sessionId: Optional[str] = None,
):
    async def work(token):
        if lat is None:
            raise InvalidInputError("lat", "Latitude is required")
        if lon is None:
            raise InvalidInputError("lon", "Longitude is required")
        place = await _engine().resolver.resolve(PlaceQuery(latitude=lat, longitude=lon, zoom=zoom), token)
        return place.to_dict()

    return await respond("reverse", work, sessionId)


@app.post("/api/resolve")
async def resolve(request: LookupRequest):
    async def work(token):
        place = await _engine().resolver.resolve(request.to_query(), token)
        return place.to_dict()

    return await respond("resolve", work, request.sessionId)


async def _single_place(request: LookupRequest, token: Optional[CancellationToken]) -> dict:
    components = _engine()
    place = await components.resolver.resolve(request.to_query(), token)
    record = await components.aggregator.aggregate(place, token=token)
    return {"place": place.to_dict(), "facts": record.to_dict()}


@app.post("/api/facts")
async def facts(request: LookupRequest):
    return await respond("facts", lambda token: _single_place(request, token), request.sessionId)


@app.post("/api/compare")
async def compare(request: CompareRequest):
    async def work(token):
        result = await _engine().compare.compare(request.cityA, request.cityB, token=token)
        return result.to_dict()

    return await respond("compare", work, request.sessionId)


@app.post("/api/lookup")
async def lookup(request: LookupRequest):
    """Unified inbound request: single-point facts or a two-place comparison"""
    async def work(token):
        if not request.compareMode:
            return await _single_place(request, token)
        if request.coordinates is not None:
            raise InvalidInputError("coordinates", "Comparison mode takes two place names, not coordinates")
        if not (request.queryText or "").strip():
            raise InvalidInputError("queryText", "Comparison mode needs a first place name")
        if not (request.compareQueryText or "").strip():
            raise InvalidInputError("compareQueryText", "Comparison mode needs a second place name")
        result = await _engine().compare.compare(request.queryText, request.compareQueryText, token=token)
        return result.to_dict()

    return await respond("lookup", work, request.sessionId)


@app.get("/api/history")
async def history(lat: Optional[float] = None, lon: Optional[float] = None):
    async def work(token):
        if lat is None:
            raise InvalidInputError("lat", "Latitude is required")
        if lon is None:
            raise InvalidInputError("lon", "Longitude is required")
        return await _engine().history.summarize(lat, lon, token=token)

    return await respond("history", work)


@app.get("/api/fire-risk")
async def fire_risk(lat: Optional[float] = None, lon: Optional[float] = None, date: Optional[str] = None):
    """GWIS fire weather index at a point; today falls back to yesterday when no date is given"""
    return await respond("fire-risk", lambda token: _engine().fire.assess(lat, lon, day=date, token=token))


@app.get("/api/shelters")
async def shelters(bbox: Optional[str] = None):
    """Emergency shelters, shelters and bunkers inside south,west,north,east"""
    return await respond("shelters", lambda token: _engine().shelters.lookup(bbox, token=token))


def main():
    """Console entry point: serve the API with uvicorn on the configured host and port"""
    logger.info(f"Starting {settings.app_name} on {settings.host}:{settings.port}")
    uvicorn.run(
        "geoassist.fastapi_app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
