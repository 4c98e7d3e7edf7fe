"""Breaker + retry + degradation bookkeeping around one dependency call."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from rag_core.resilience.circuit_breaker import CircuitBreakerRegistry
from rag_core.resilience.degradation import SERVICE_CIRCUITS, DegradationTracker, ServiceType
from rag_core.resilience.retry import RetryExecutor

T = TypeVar("T")


class ResilienceGuard:
    """Wraps calls so every attempt passes the service's breaker.

    The retry executor sits outside the breaker, so an open circuit stops
    further attempts immediately. The final outcome updates the degradation
    tracker: success clears the service, failure records it and re-raises.
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry | None = None,
        retry: RetryExecutor | None = None,
        degradation: DegradationTracker | None = None,
    ) -> None:
        self.breakers = breakers or CircuitBreakerRegistry()
        self.retry = retry or RetryExecutor()
        self.degradation = degradation or DegradationTracker(self.breakers)

    async def call(self, service: ServiceType, fn: Callable[[], Awaitable[T]]) -> T:
        breaker = self.breakers.get_breaker(SERVICE_CIRCUITS[service])
        try:
            outcome = await self.retry.execute(lambda: breaker.execute(fn))
        except Exception as exc:
            self.degradation.record_failure(service, exc)
            raise
        self.degradation.mark_healthy(service)
        return outcome.result
