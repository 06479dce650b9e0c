# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Fallback chains, circuit breakers and resolution telemetry.

``try_in_order`` is the single "first successful wins" combinator used by the
resolver, the entity disambiguator and the comparison label completion, so
every fallback chain has the same shape: strictly sequential, later
strategies only run once earlier ones are confirmed empty or failed.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Strategy = Tuple[str, Callable[[], Awaitable[T]]]


def _is_present(value: Any) -> bool:
    return value is not None


@dataclass(frozen=True)
class StrategyOutcome(Generic[T]):
    """Winning strategy name and its value."""
    strategy: str
    value: T


async def try_in_order(
    strategies: Sequence[Strategy],
    accept: Callable[[Any], bool] = _is_present,
) -> Optional[StrategyOutcome]:
    """
    Evaluate ``strategies`` one after another and return the first accepted value.

    A strategy raising an ordinary exception counts as a failure and the
    chain moves on; cancellation is never absorbed.
    """
    for name, factory in strategies:
        try:
            value = await factory()
        except Exception as e:
            logger.warning(f"Strategy {name} failed: {e}")
            continue
        if accept(value):
            logger.debug(f"Strategy {name} accepted")
            return StrategyOutcome(name, value)
        logger.debug(f"Strategy {name} produced nothing, trying next")
    return None


# ============================================================================
# CIRCUIT BREAKER PATTERN
# ============================================================================

class APICircuitBreaker:
    """
    Circuit Breaker Pattern for API Resilience

    Prevents repeated calls to failing providers by temporarily disabling them:
    1. Track failures per provider
    2. After N failures (default: 5), "open" the circuit
    3. Skip the provider for T seconds (default: 60)
    4. After the timeout, allow a test call ("half-open")
    5. If the test succeeds, close the circuit; if it fails, open it again
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.failure_counts: Dict[str, int] = {}
        self.disabled_until: Dict[str, float] = {}
        self.half_open: Dict[str, bool] = {}
        self.logger = logging.getLogger(__name__)

    def is_available(self, service: str) -> bool:
        """Check if service can be called"""
        now = self._clock()

        if service in self.disabled_until:
            if now < self.disabled_until[service]:
                remaining = int(self.disabled_until[service] - now)
                self.logger.debug(f"⚠️ Circuit OPEN for {service} ({remaining}s remaining)")
                return False
            self.logger.info(f"🔄 Circuit entering HALF-OPEN for {service}")
            del self.disabled_until[service]
            self.half_open[service] = True
            # One more failure while half-open reopens the circuit
            self.failure_counts[service] = self.failure_threshold - 1

        return True

    def record_success(self, service: str) -> None:
        """Record successful API call"""
        old_count = self.failure_counts.pop(service, 0)
        if self.half_open.pop(service, False):
            self.logger.info(f"✅ Circuit CLOSED for {service} (recovered after {old_count} failures)")

    def record_failure(self, service: str, error: str = "Unknown") -> None:
        """Record failed API call"""
        self.failure_counts[service] = self.failure_counts.get(service, 0) + 1
        current_failures = self.failure_counts[service]

        self.logger.debug(f"❌ {service} failure #{current_failures}: {error}")

        if current_failures >= self.failure_threshold:
            self.disabled_until[service] = self._clock() + self.timeout_seconds
            self.half_open.pop(service, None)
            self.logger.warning(
                f"🚨 Circuit OPENED for {service} "
                f"({current_failures} failures, disabled {self.timeout_seconds}s)"
            )

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Get circuit breaker status for monitoring"""
        status = {}
        now = self._clock()

        for service in set(self.failure_counts) | set(self.disabled_until):
            if service in self.disabled_until and now < self.disabled_until[service]:
                state = "open"
                remaining = int(self.disabled_until[service] - now)
            elif self.half_open.get(service):
                state = "half-open"
                remaining = 0
            else:
                state = "closed"
                remaining = 0

            status[service] = {
                "state": state,
                "failures": self.failure_counts.get(service, 0),
                "disabled_remaining_seconds": remaining,
            }

        return status


# ============================================================================
# TELEMETRY & METRICS
# ============================================================================

@dataclass
class ResolverMetrics:
    """Production telemetry for provider calls"""
    total_calls: int = 0
    successes: Dict[str, int] = field(default_factory=dict)
    empties: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, int] = field(default_factory=dict)
    latencies_ms: List[float] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    max_samples: int = 1000

    def record_success(self, provider: str, latency_ms: float) -> None:
        self.total_calls += 1
        self.successes[provider] = self.successes.get(provider, 0) + 1
        self._sample(latency_ms)

    def record_empty(self, provider: str, latency_ms: float) -> None:
        self.total_calls += 1
        self.empties[provider] = self.empties.get(provider, 0) + 1
        self._sample(latency_ms)

    def record_failure(self, provider: str) -> None:
        self.total_calls += 1
        self.failures[provider] = self.failures.get(provider, 0) + 1

    def _sample(self, latency_ms: float) -> None:
        self.latencies_ms.append(latency_ms)
        if len(self.latencies_ms) > self.max_samples:
            del self.latencies_ms[: len(self.latencies_ms) - self.max_samples]

    def get_summary(self) -> Dict[str, Any]:
        """Generate metrics summary for monitoring"""
        latencies = sorted(self.latencies_ms)
        successful = sum(self.successes.values()) + sum(self.empties.values())
        return {
            "total_calls": self.total_calls,
            "success_rate": successful / self.total_calls if self.total_calls else 1.0,
            "successes": dict(self.successes),
            "empty_results": dict(self.empties),
            "failures": dict(self.failures),
            "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0,
            "p95_latency_ms": latencies[int(len(latencies) * 0.95)] if latencies else 0,
            "uptime_hours": (time.time() - self.start_time) / 3600,
        }
