# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Shared aiohttp access for every outbound provider call.

Each call carries an explicit ``aiohttp.ClientTimeout`` (the request task is
cancelled when it elapses) and an optional ``CancellationToken``. Transport
errors, non-2xx statuses, undecodable bodies and malformed JSON are all
reported as ``UpstreamUnavailableError`` so adapters have one failure type
to convert.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .cancellation import CancellationToken, guarded
from .errors import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class ProviderHttpClient:
    """Thin wrapper over one process-wide ``aiohttp.ClientSession``."""

    def __init__(self, session: aiohttp.ClientSession, user_agent: str, language: Optional[str] = None):
        self.session = session
        self.user_agent = user_agent
        self.language = language

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        if self.language:
            headers["Accept-Language"] = self.language
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        provider: str,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[str] = None,
    ) -> Tuple[int, str]:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with self.session.request(
                method,
                url,
                params=params,
                data=data,
                headers=self._headers(headers),
                timeout=client_timeout,
            ) as response:
                text = await response.text()
                return response.status, text
        except asyncio.TimeoutError:
            raise UpstreamUnavailableError(provider, f"timeout after {timeout}s")
        except aiohttp.ClientError as e:
            raise UpstreamUnavailableError(provider, f"{type(e).__name__}: {e}")
        except UnicodeDecodeError:
            raise UpstreamUnavailableError(provider, "undecodable payload")

    async def get_text(
        self,
        url: str,
        provider: str,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> Tuple[int, str]:
        """GET returning ``(status, body)`` without judging the status."""
        return await guarded(
            self._request("GET", url, provider, timeout, params=params, headers=headers), token
        )

    async def get_json(
        self,
        url: str,
        provider: str,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """GET a JSON document; anything but a 2xx JSON body is unavailable."""
        status, text = await self.get_text(url, provider, timeout, params=params, headers=headers, token=token)
        return _decode(provider, status, text)

    async def post_json(
        self,
        url: str,
        provider: str,
        timeout: float,
        data: str,
        headers: Optional[Dict[str, str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> Any:
        """POST a text body and decode the JSON answer."""
        status, text = await guarded(
            self._request("POST", url, provider, timeout, data=data, headers=headers), token
        )
        return _decode(provider, status, text)


def _decode(provider: str, status: int, text: str) -> Any:
    if not 200 <= status < 300:
        logger.warning(f"{provider} returned HTTP {status}: {text[:200]}")
        raise UpstreamUnavailableError(provider, f"HTTP {status}")
    try:
        return json.loads(text)
    except ValueError:
        raise UpstreamUnavailableError(provider, "malformed JSON payload")
