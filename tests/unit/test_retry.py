import asyncio

import pytest

from rag_core.config import RetryConfig
from rag_core.errors import CircuitOpenError, DependencyError, RagCoreError, ValidationError
from rag_core.resilience.retry import RetryExecutor, error_key


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(failures: int, error: Exception):
    calls = 0

    async def fn() -> str:
        nonlocal calls
        calls += 1
        if calls <= failures:
            raise error
        return f"ok after {calls}"

    return fn


def test_backoff_without_jitter_is_exponential_and_capped() -> None:
    executor = RetryExecutor(RetryConfig(jitter=False, max_delay=3.0))

    assert [executor.delay_for(i) for i in range(4)] == [1.0, 2.0, 3.0, 3.0]


def test_jitter_stays_within_ratio_and_cap() -> None:
    high = RetryExecutor(RetryConfig(), rand=lambda: 1.0)
    low = RetryExecutor(RetryConfig(), rand=lambda: 0.0)

    assert high.delay_for(0) == pytest.approx(1.1)
    assert low.delay_for(0) == pytest.approx(0.9)
    assert high.delay_for(10) == 30.0


def test_transient_failures_are_retried() -> None:
    sleep = RecordingSleep()
    executor = RetryExecutor(RetryConfig(jitter=False), sleep=sleep)
    seen: list[int] = []

    outcome = asyncio.run(
        executor.execute(
            _flaky(2, DependencyError("upstream 503")),
            on_retry=lambda exc, attempt, delay: seen.append(attempt),
        )
    )

    assert outcome.result == "ok after 3"
    assert outcome.attempts == 3
    assert sleep.delays == [1.0, 2.0]
    assert seen == [1, 2]
    stats = executor.stats()
    assert stats["successful_retries"] == 1
    assert stats["total_retries"] == 2


def test_non_retryable_errors_fail_immediately() -> None:
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep)

    with pytest.raises(ValidationError):
        asyncio.run(executor.execute(_flaky(5, ValidationError("bad input"))))

    assert sleep.delays == []
    assert executor.stats()["failures"] == 1


def test_open_circuit_is_never_retried() -> None:
    sleep = RecordingSleep()
    executor = RetryExecutor(sleep=sleep)

    with pytest.raises(CircuitOpenError):
        asyncio.run(executor.execute(_flaky(5, CircuitOpenError("vector_db"))))

    assert sleep.delays == []


def test_attempts_are_bounded_by_max_retries() -> None:
    sleep = RecordingSleep()
    executor = RetryExecutor(RetryConfig(max_retries=2, jitter=False), sleep=sleep)

    with pytest.raises(DependencyError):
        asyncio.run(executor.execute(_flaky(10, DependencyError("still down"))))

    stats = executor.stats()
    assert stats["total_attempts"] == 3
    assert stats["failed_retries"] == 1
    assert stats["retries_by_error"] == {"DEPENDENCY_ERROR": 1}
    assert len(sleep.delays) == 2


def test_is_retryable_classification() -> None:
    executor = RetryExecutor()

    assert executor.is_retryable(ConnectionError("reset by peer"))
    assert executor.is_retryable(asyncio.TimeoutError())
    assert executor.is_retryable(RagCoreError("gateway", status_code=502))
    assert executor.is_retryable(RagCoreError("socket", status_code=400, code="ECONNRESET"))
    assert executor.is_retryable(RuntimeError("Request timeout while reading"))
    assert not executor.is_retryable(ValueError("nope"))


def test_error_key() -> None:
    assert error_key(ValidationError("x")) == "VALIDATION_ERROR"
    assert error_key(KeyError("x")) == "KeyError"
