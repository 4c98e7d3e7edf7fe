import asyncio

import pytest

from rag_core.config import CircuitBreakerConfig, RetryConfig
from rag_core.errors import CircuitOpenError, DependencyError
from rag_core.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from rag_core.resilience.degradation import DegradationLevel, ServiceType
from rag_core.resilience.guard import ResilienceGuard
from rag_core.resilience.retry import RetryExecutor


async def _no_sleep(_: float) -> None:
    return None


def _guard(failure_threshold: int = 5, max_retries: int = 3) -> ResilienceGuard:
    breakers = CircuitBreakerRegistry(
        CircuitBreakerConfig(failure_threshold=failure_threshold, reset_timeout=60.0, call_timeout=None)
    )
    retry = RetryExecutor(RetryConfig(max_retries=max_retries, jitter=False), sleep=_no_sleep)
    return ResilienceGuard(breakers, retry)


def test_success_returns_result_and_clears_degradation() -> None:
    guard = _guard()
    guard.degradation.record_failure(ServiceType.EMBEDDING, RuntimeError("earlier"))

    async def embed() -> list[float]:
        return [0.1, 0.2]

    assert asyncio.run(guard.call(ServiceType.EMBEDDING, embed)) == [0.1, 0.2]
    assert guard.degradation.level(ServiceType.EMBEDDING) is DegradationLevel.NONE


def test_every_retry_attempt_passes_the_breaker() -> None:
    guard = _guard(failure_threshold=10)
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise DependencyError("503 from provider")
        return "ok"

    assert asyncio.run(guard.call(ServiceType.VECTOR, flaky)) == "ok"
    assert guard.breakers.stats("vector-store")["total_calls"] == 3
    assert guard.breakers.stats("vector-store")["total_failures"] == 2


def test_open_breaker_stops_retries_and_records_degradation() -> None:
    guard = _guard(failure_threshold=2)
    calls = 0

    async def down() -> str:
        nonlocal calls
        calls += 1
        raise DependencyError("503 from provider")

    with pytest.raises(CircuitOpenError):
        asyncio.run(guard.call(ServiceType.WEB_SEARCH, down))

    assert calls == 2
    assert guard.breakers.state("web-search") is CircuitState.OPEN
    assert guard.degradation.level(ServiceType.WEB_SEARCH) is DegradationLevel.SEVERE
