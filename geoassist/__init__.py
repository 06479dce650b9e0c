# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Location resolution and multi-source aggregation engine.

Resolves free text or map clicks to one place, gathers population, area,
air-quality, flood-risk and urban context for it from independent providers,
and compares two places.
"""

from .errors import GeoAssistError, InvalidInputError, LocationNotFoundError, UpstreamUnavailableError
from .models import ComparisonResult, FactRecord, PlaceQuery, ResolvedPlace, SelectionScope

__all__ = [
    "GeoAssistError",
    "InvalidInputError",
    "LocationNotFoundError",
    "UpstreamUnavailableError",
    "ComparisonResult",
    "FactRecord",
    "PlaceQuery",
    "ResolvedPlace",
    "SelectionScope",
]
