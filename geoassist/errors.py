# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Error taxonomy for the resolution and aggregation engine.

``InvalidInputError`` and ``LocationNotFoundError`` are the errors callers
see. ``UpstreamUnavailableError`` is raised inside provider adapters and
converted to an unavailable ``ProviderResponse`` at the adapter boundary;
only the shelter lookup, which has no degraded answer, lets it through.
"""


class GeoAssistError(Exception):
    """Base class for engine errors."""


class InvalidInputError(GeoAssistError):
    """Malformed coordinates or a missing/empty required field."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class LocationNotFoundError(GeoAssistError):
    """No geocoding adapter produced a candidate for a text query."""

    def __init__(self, query: str):
        super().__init__(f"Could not resolve location: {query}")
        self.query = query


class UpstreamUnavailableError(GeoAssistError):
    """Timeout, non-2xx status or malformed payload from a provider."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider} unavailable: {reason}")
        self.provider = provider
        self.reason = reason
