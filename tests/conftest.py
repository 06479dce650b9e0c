"""
Test Configuration and Fixtures

Shared configuration and fixtures for the Geo Assistant test suite.
"""
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from geoassist.models import (
    AddressComponents,
    PlaceCandidate,
    PlaceClassification,
    ProviderResponse,
)

# Test environment configuration
TEST_ENV = {
    "AZURE_MAPS_SUBSCRIPTION_KEY": "",
    "AQICN_TOKEN": "",
    "LOG_LEVEL": "DEBUG",
}


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Automatically configure test environment for all tests"""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)


def make_candidate(
    name: str = "Madrid",
    lat: float = 40.4168,
    lon: float = -3.7038,
    label: Optional[str] = "Madrid, Comunidad de Madrid, España",
    place_class: str = "place",
    place_type: str = "city",
    source: str = "nominatim",
    importance: float = 0.5,
    **address,
) -> PlaceCandidate:
    """Build a candidate with sensible Madrid defaults"""
    address.setdefault("city", name if place_type in ("city", "town", "village", "municipality") else None)
    address.setdefault("region", "Comunidad de Madrid")
    address.setdefault("country", "España")
    return PlaceCandidate(
        latitude=lat,
        longitude=lon,
        display_label=label,
        address=AddressComponents(**address),
        source_provider=source,
        classification=PlaceClassification(place_class, place_type),
        name=name,
        importance=importance,
    )


def make_adapter(
    name: str,
    forward: Optional[ProviderResponse] = None,
    reverse: Optional[ProviderResponse] = None,
    suggest: Optional[ProviderResponse] = None,
) -> MagicMock:
    """Geocoding adapter double answering with fixed provider responses"""
    adapter = MagicMock()
    adapter.name = name
    adapter.forward_search = AsyncMock(return_value=forward or ProviderResponse.empty(name))
    adapter.reverse_search = AsyncMock(return_value=reverse or ProviderResponse.empty(name))
    adapter.suggest = AsyncMock(return_value=suggest or ProviderResponse.empty(name))
    return adapter


@pytest.fixture
def madrid_candidate():
    return make_candidate()


@pytest.fixture
def sample_point():
    """Puerta del Sol, Madrid"""
    return 40.4169, -3.7035
