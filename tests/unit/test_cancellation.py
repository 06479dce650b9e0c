"""
Tests for cooperative cancellation tokens and the superseding registry.
"""

import asyncio

import pytest

from geoassist.cancellation import (
    CancellationToken,
    OperationCancelledError,
    SupersedingRegistry,
    guarded,
)


class TestCancellationToken:

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        token = CancellationToken()

        async def work():
            return "done"

        assert await token.guard(work()) == "done"

    @pytest.mark.asyncio
    async def test_guard_cancels_in_flight_work(self):
        token = CancellationToken()
        started = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                finished.append("cancelled")
                raise

        task = asyncio.ensure_future(token.guard(slow()))
        await started.wait()
        token.cancel("superseded")

        with pytest.raises(OperationCancelledError):
            await task
        assert finished == ["cancelled"]
        assert token.reason == "superseded"

    @pytest.mark.asyncio
    async def test_already_cancelled_token_never_starts_work(self):
        token = CancellationToken()
        token.cancel()
        calls = []

        async def work():
            calls.append(1)

        with pytest.raises(OperationCancelledError):
            await token.guard(work())
        assert calls == []

    @pytest.mark.asyncio
    async def test_operation_cancelled_is_a_cancelled_error(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(asyncio.CancelledError):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_guarded_without_token(self):
        async def work():
            return 7

        assert await guarded(work(), None) == 7


class TestSupersedingRegistry:

    @pytest.mark.asyncio
    async def test_issue_cancels_previous(self):
        registry = SupersedingRegistry()
        first = registry.issue("session-1:suggestions")
        second = registry.issue("session-1:suggestions")

        assert first.cancelled is True
        assert first.reason == "superseded"
        assert second.cancelled is False

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        registry = SupersedingRegistry()
        suggest = registry.issue("session-1:suggestions")
        registry.issue("session-1:reverse")
        registry.issue("session-2:suggestions")
        assert suggest.cancelled is False
        assert len(registry) == 3

    @pytest.mark.asyncio
    async def test_release_only_forgets_current_token(self):
        registry = SupersedingRegistry()
        old = registry.issue("s:facts")
        new = registry.issue("s:facts")
        registry.release("s:facts", old)
        assert len(registry) == 1
        registry.release("s:facts", new)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        registry = SupersedingRegistry()
        tokens = [registry.issue(f"s:{n}") for n in range(3)]
        registry.cancel_all()
        assert all(t.cancelled for t in tokens)
        assert len(registry) == 0
