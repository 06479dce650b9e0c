# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Core configuration for the Geo Assistant application.
"""
import os

from .env_loader import load_root_env, get_float_env, get_int_env

# Ensure environment is loaded
load_root_env()


class Settings:
    """Application settings using simple environment variable access."""

    def __init__(self):
        # App Configuration
        self.app_name = "Geo Assistant"
        self.app_version = "1.0.0"
        self.debug = os.getenv("DEBUG", "false").lower() in ("1", "true", "yes")
        self.log_level = os.getenv("LOG_LEVEL", "DEBUG" if self.debug else "INFO")
        self.port = get_int_env("PORT", 8080)
        self.host = os.getenv("HOST", "0.0.0.0")

        # Outbound identity
        self.user_agent = os.getenv("USER_AGENT", "GeoAIAssistant/1.0")
        self.preferred_language = os.getenv("PREFERRED_LANGUAGE", "es")

        # Azure Maps Configuration (commercial geocoder, optional)
        self.azure_maps_subscription_key = os.getenv("AZURE_MAPS_SUBSCRIPTION_KEY")
        self.azure_maps_base_url = os.getenv("AZURE_MAPS_BASE_URL", "https://atlas.microsoft.com")

        # Open geocoder
        self.nominatim_base_url = os.getenv("NOMINATIM_BASE_URL", "https://nominatim.openstreetmap.org")

        # Knowledge graph
        self.wikidata_sparql_url = os.getenv("WIKIDATA_SPARQL_URL", "https://query.wikidata.org/sparql")

        # Environmental layers
        self.glofas_wms_url = os.getenv("GLOFAS_WMS_URL", "https://ows.globalfloods.eu/glofas-ows/ows.py")
        self.gwis_wms_url = os.getenv("GWIS_WMS_URL", "https://maps.effis.emergency.copernicus.eu/gwis")
        self.ign_wms_url = os.getenv("IGN_WMS_URL", "https://www.ign.es/wms-inspire/ign-base")
        self.overpass_url = os.getenv("OVERPASS_URL", "https://overpass-api.de/api/interpreter")
        self.aqicn_base_url = os.getenv("AQICN_BASE_URL", "https://api.waqi.info")
        self.aqicn_token = os.getenv("AQICN_TOKEN") or os.getenv("NEXT_PUBLIC_AQICN_TOKEN")

        # Historical context
        self.open_meteo_archive_url = os.getenv(
            "OPEN_METEO_ARCHIVE_URL", "https://archive-api.open-meteo.com/v1/archive"
        )
        self.usgs_events_url = os.getenv(
            "USGS_EVENTS_URL", "https://earthquake.usgs.gov/fdsnws/event/1/query"
        )

        # Timeouts (seconds)
        self.geocoder_timeout = get_float_env("GEOCODER_TIMEOUT_SECONDS", 6.0)
        self.suggest_timeout = get_float_env("SUGGEST_TIMEOUT_SECONDS", 6.0)
        self.knowledge_timeout = get_float_env("KNOWLEDGE_TIMEOUT_SECONDS", 12.0)
        self.environment_timeout = get_float_env("ENVIRONMENT_TIMEOUT_SECONDS", 8.0)
        self.history_timeout = get_float_env("HISTORY_TIMEOUT_SECONDS", 12.0)

        # Caches
        self.reverse_cache_ttl = get_float_env("REVERSE_CACHE_TTL_SECONDS", 600.0)
        self.suggest_cache_ttl = get_float_env("SUGGEST_CACHE_TTL_SECONDS", 300.0)
        self.facts_cache_ttl = get_float_env("FACTS_CACHE_TTL_SECONDS", 86400.0)
        self.shelters_cache_ttl = get_float_env("SHELTERS_CACHE_TTL_SECONDS", 300.0)
        self.cache_max_entries = get_int_env("CACHE_MAX_ENTRIES", 1000)

        # CORS Settings
        self.allow_cors = os.getenv("ALLOW_CORS", "1").lower() in ("1", "true", "yes")

    @property
    def cors_origins_list(self) -> list:
        """Get CORS origins as a list."""
        cors_env = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")
        return [origin.strip() for origin in cors_env.split(",") if origin.strip()]


# Global settings instance
settings = Settings()
