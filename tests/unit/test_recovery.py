import asyncio

import pytest

from rag_core.errors import (
    AuthenticationError,
    CircuitOpenError,
    DependencyError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from rag_core.resilience.circuit_breaker import CircuitBreakerRegistry
from rag_core.resilience.degradation import DegradationLevel, DegradationTracker, ServiceType
from rag_core.resilience.recovery import ErrorCategory, ErrorRecovery, RecoveryStrategy, categorize


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def _primary() -> str:
    return "primary"


async def _fallback() -> str:
    return "fallback"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (asyncio.TimeoutError(), ErrorCategory.TIMEOUT),
        (ConnectionError("reset"), ErrorCategory.NETWORK),
        (RateLimitError(), ErrorCategory.RATE_LIMIT),
        (DependencyError("upstream failed"), ErrorCategory.SERVER_ERROR),
        (AuthenticationError("bad key"), ErrorCategory.AUTHENTICATION),
        (ValidationError("bad input"), ErrorCategory.VALIDATION),
        (NotFoundError("missing"), ErrorCategory.NOT_FOUND),
        (RuntimeError("read timeout"), ErrorCategory.TIMEOUT),
        (RuntimeError("weird"), ErrorCategory.UNKNOWN),
    ],
)
def test_categorize(error: BaseException, expected: ErrorCategory) -> None:
    assert categorize(error) is expected


def test_strategy_selection() -> None:
    recovery = ErrorRecovery()

    assert recovery.determine_strategy(CircuitOpenError("x"), ServiceType.VECTOR) is RecoveryStrategy.CIRCUIT_BREAK
    assert recovery.determine_strategy(RateLimitError(), ServiceType.EMBEDDING) is RecoveryStrategy.WAIT
    assert recovery.determine_strategy(ConnectionError(), ServiceType.VECTOR) is RecoveryStrategy.RETRY
    assert recovery.determine_strategy(ValidationError("x"), ServiceType.VECTOR) is RecoveryStrategy.SKIP
    assert (
        recovery.determine_strategy(RuntimeError("weird"), ServiceType.VECTOR, has_fallback=True)
        is RecoveryStrategy.FALLBACK
    )
    assert recovery.determine_strategy(RuntimeError("weird"), ServiceType.VECTOR) is RecoveryStrategy.DEGRADE
    assert recovery.determine_strategy(DependencyError("503"), ServiceType.VECTOR) is RecoveryStrategy.DEGRADE


def test_open_breaker_short_circuits_strategy() -> None:
    breakers = CircuitBreakerRegistry()
    breakers.get_breaker("vector-store")
    breakers.force_open("vector-store")
    recovery = ErrorRecovery(degradation=DegradationTracker(breakers))

    assert recovery.determine_strategy(ConnectionError(), ServiceType.VECTOR) is RecoveryStrategy.CIRCUIT_BREAK


def test_wait_honors_retry_after() -> None:
    sleep = RecordingSleep()
    recovery = ErrorRecovery(sleep=sleep)

    outcome = asyncio.run(
        recovery.attempt_recovery(ServiceType.EMBEDDING, RateLimitError(retry_after=2.0), _primary)
    )

    assert outcome.recovered
    assert outcome.result == "primary"
    assert outcome.strategy is RecoveryStrategy.WAIT
    assert sleep.delays == [2.0]


def test_retry_recovers_on_second_attempt() -> None:
    sleep = RecordingSleep()
    recovery = ErrorRecovery(sleep=sleep)
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise ConnectionError("still resetting")
        return "ok"

    outcome = asyncio.run(recovery.attempt_recovery(ServiceType.VECTOR, ConnectionError("reset"), flaky))

    assert outcome.recovered
    assert outcome.attempts == 2
    assert sleep.delays == [1.0]


def test_degrade_records_and_runs_fallback() -> None:
    tracker = DegradationTracker()
    recovery = ErrorRecovery(degradation=tracker)

    outcome = asyncio.run(
        recovery.attempt_recovery(ServiceType.VECTOR, DependencyError("503"), _primary, _fallback)
    )

    assert outcome.result == "fallback"
    assert outcome.strategy is RecoveryStrategy.DEGRADE
    assert tracker.level(ServiceType.VECTOR) is DegradationLevel.SEVERE


def test_skip_gives_up_and_is_counted() -> None:
    recovery = ErrorRecovery()
    error = ValidationError("bad query")

    outcome = asyncio.run(recovery.attempt_recovery(ServiceType.LEXICAL, error, _primary))

    assert not outcome.recovered
    assert outcome.error is error
    stats = recovery.stats()
    assert stats["failed_recoveries"] == 1
    assert stats["recoveries_by_strategy"] == {"skip": 1}
    assert recovery.history()[0].category is ErrorCategory.VALIDATION


def test_degrade_without_fallback_fails() -> None:
    outcome = asyncio.run(ErrorRecovery().attempt_recovery(ServiceType.VECTOR, DependencyError("503"), _primary))

    assert not outcome.recovered
    assert outcome.error is not None
