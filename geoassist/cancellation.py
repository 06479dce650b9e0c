# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Cooperative cancellation for lookups tied to a user action.

A new search, a new map click or a closed panel supersedes the previous
action: its token is cancelled and every network call guarded by that token
is abandoned instead of writing a stale result.
"""

import asyncio
import logging
from typing import Awaitable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelledError(asyncio.CancelledError):
    """Raised when a ``CancellationToken`` fires while work is in flight."""


class CancellationToken:
    """Cancellation signal shared by every call issued for one user action."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        When the token wins, the pending work is cancelled (closing any open
        connection) and ``OperationCancelledError`` is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError(self.reason)
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        if work in done:
            waiter.cancel()
            return work.result()

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise OperationCancelledError(self.reason)


async def guarded(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """Await through ``token`` when one is given."""
    if token is None:
        return await awaitable
    return await token.guard(awaitable)


class SupersedingRegistry:
    """
    One live token per key (for example ``"<session>:suggest"``).

    Issuing a token for a key cancels the token previously issued for it.
    """

    def __init__(self):
        self._tokens: Dict[str, CancellationToken] = {}

    def issue(self, key: str) -> CancellationToken:
        previous = self._tokens.get(key)
        if previous is not None:
            logger.debug(f"Superseding in-flight work for {key}")
            previous.cancel("superseded")
        token = CancellationToken()
        self._tokens[key] = token
        return token

    def release(self, key: str, token: CancellationToken) -> None:
        if self._tokens.get(key) is token:
            del self._tokens[key]

    def cancel_all(self) -> None:
        for token in self._tokens.values():
            token.cancel("shutdown")
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)
