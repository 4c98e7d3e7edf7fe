"""Recovery policy applied after a dependency call has failed."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from rag_core.config import RecoveryConfig
from rag_core.errors import (
    AuthenticationError,
    CircuitOpenError,
    NotFoundError,
    RateLimitError,
    RagCoreError,
    ValidationError,
)
from rag_core.resilience.circuit_breaker import CircuitState
from rag_core.resilience.degradation import SERVICE_CIRCUITS, DegradationTracker, ServiceType

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]

_NETWORK_CODES = {"ETIMEDOUT", "ECONNREFUSED", "ECONNRESET", "ENOTFOUND", "EAI_AGAIN"}


class ErrorCategory(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    CIRCUIT_BREAK = "circuit_break"
    DEGRADE = "degrade"
    SKIP = "skip"
    WAIT = "wait"


@dataclass(slots=True)
class RecoveryResult(Generic[T]):
    result: T | None
    recovered: bool
    strategy: RecoveryStrategy
    attempts: int
    duration_ms: float
    error: BaseException | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RecoveryAttempt:
    timestamp: float
    service: ServiceType
    category: ErrorCategory
    strategy: RecoveryStrategy
    success: bool
    duration_ms: float
    message: str


def categorize(error: BaseException) -> ErrorCategory:
    if isinstance(error, asyncio.TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCategory.NETWORK
    status = getattr(error, "status_code", None)
    code = getattr(error, "code", None)
    message = str(error).lower()

    if code in _NETWORK_CODES or "connection" in message:
        return ErrorCategory.NETWORK
    if isinstance(error, RateLimitError) or status == 429 or code == "rate_limit_exceeded":
        return ErrorCategory.RATE_LIMIT
    if "rate limit" in message:
        return ErrorCategory.RATE_LIMIT
    if isinstance(status, int) and 500 <= status < 600 and not isinstance(error, ValidationError):
        return ErrorCategory.SERVER_ERROR
    if isinstance(error, AuthenticationError) or status in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if isinstance(error, ValidationError) or status == 400:
        return ErrorCategory.VALIDATION
    if isinstance(error, NotFoundError) or status == 404:
        return ErrorCategory.NOT_FOUND
    if "timeout" in message:
        return ErrorCategory.TIMEOUT
    return ErrorCategory.UNKNOWN


class ErrorRecovery:
    """Maps a failure onto a recovery strategy and carries it out.

    WAIT sleeps then calls the primary once more, RETRY re-runs it with
    doubling delays, DEGRADE records the degradation and runs the fallback,
    FALLBACK runs the fallback, and SKIP or CIRCUIT_BREAK give up at once.
    """

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        *,
        degradation: DegradationTracker | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config or RecoveryConfig()
        self.degradation = degradation or DegradationTracker()
        self._sleep = sleep
        self._lock = threading.Lock()
        self._history: deque[RecoveryAttempt] = deque(maxlen=self.config.history_limit)
        self._by_category: Counter[str] = Counter()
        self._by_strategy: Counter[str] = Counter()
        self._successes = 0
        self._failures = 0

    def determine_strategy(
        self, error: BaseException, service: ServiceType, *, has_fallback: bool = False
    ) -> RecoveryStrategy:
        if isinstance(error, CircuitOpenError) or self._circuit_open(service):
            return RecoveryStrategy.CIRCUIT_BREAK
        category = categorize(error)
        if category is ErrorCategory.RATE_LIMIT:
            return RecoveryStrategy.WAIT
        if category in (ErrorCategory.NETWORK, ErrorCategory.TIMEOUT):
            return RecoveryStrategy.RETRY
        if category in (ErrorCategory.AUTHENTICATION, ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND):
            return RecoveryStrategy.SKIP
        if category is ErrorCategory.UNKNOWN and has_fallback and self.config.enable_fallback:
            return RecoveryStrategy.FALLBACK
        if self.config.enable_degradation:
            return RecoveryStrategy.DEGRADE
        return RecoveryStrategy.RETRY

    async def attempt_recovery(
        self,
        service: ServiceType,
        error: BaseException,
        primary: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> RecoveryResult[T]:
        started = time.perf_counter()
        category = categorize(error)
        strategy = self.determine_strategy(error, service, has_fallback=fallback is not None)
        logger.info(
            "Attempting error recovery",
            extra={"service": service.value, "category": category.value, "strategy": strategy.value},
        )

        attempts = 0
        try:
            if strategy is RecoveryStrategy.RETRY:
                result, attempts = await self._retry(primary)
            elif strategy is RecoveryStrategy.WAIT:
                delay = self.config.retry_delay * 2
                if isinstance(error, RateLimitError) and error.retry_after is not None:
                    delay = error.retry_after
                await self._sleep(delay)
                attempts = 1
                result = await primary()
            elif strategy in (RecoveryStrategy.DEGRADE, RecoveryStrategy.FALLBACK):
                if strategy is RecoveryStrategy.DEGRADE:
                    self.degradation.record_failure(service, error)
                if fallback is None:
                    raise RagCoreError(f"{strategy.value} requires a fallback", code="NO_FALLBACK")
                attempts = 1
                result = await fallback()
            elif strategy is RecoveryStrategy.CIRCUIT_BREAK:
                self.degradation.record_failure(service, error)
                raise error
            else:
                raise error
        except Exception as exc:
            duration = (time.perf_counter() - started) * 1000.0
            self._record(service, category, strategy, False, duration, str(error))
            logger.error(
                "Error recovery failed",
                extra={"service": service.value, "strategy": strategy.value, "error": str(exc)},
            )
            return RecoveryResult(
                result=None,
                recovered=False,
                strategy=strategy,
                attempts=attempts,
                duration_ms=duration,
                error=exc,
                metadata={"category": category.value, "service": service.value, "original_error": str(error)},
            )

        duration = (time.perf_counter() - started) * 1000.0
        self._record(service, category, strategy, True, duration, str(error))
        return RecoveryResult(
            result=result,
            recovered=True,
            strategy=strategy,
            attempts=attempts,
            duration_ms=duration,
            metadata={"category": category.value, "service": service.value},
        )

    def history(self, limit: int | None = None) -> list[RecoveryAttempt]:
        with self._lock:
            items = list(self._history)
        return items[-limit:] if limit else items

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._successes + self._failures
            recent = [a.duration_ms for a in self._history if a.success][-100:]
            return {
                "total_attempts": total,
                "successful_recoveries": self._successes,
                "failed_recoveries": self._failures,
                "recoveries_by_category": dict(self._by_category),
                "recoveries_by_strategy": dict(self._by_strategy),
                "average_recovery_ms": sum(recent) / len(recent) if recent else 0.0,
                "success_rate": self._successes / total * 100 if total else 0.0,
                "history_size": len(self._history),
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._history.clear()
            self._by_category.clear()
            self._by_strategy.clear()
            self._successes = 0
            self._failures = 0

    async def _retry(self, primary: Callable[[], Awaitable[T]]) -> tuple[T, int]:
        attempt = 1
        while True:
            try:
                return await primary(), attempt
            except Exception:
                if attempt >= self.config.max_attempts:
                    raise
            await self._sleep(self.config.retry_delay * 2 ** (attempt - 1))
            attempt += 1

    def _circuit_open(self, service: ServiceType) -> bool:
        breakers = self.degradation.breakers
        if breakers is None:
            return False
        return breakers.state(SERVICE_CIRCUITS[service]) is CircuitState.OPEN

    def _record(
        self,
        service: ServiceType,
        category: ErrorCategory,
        strategy: RecoveryStrategy,
        success: bool,
        duration_ms: float,
        message: str,
    ) -> None:
        with self._lock:
            self._history.append(
                RecoveryAttempt(
                    timestamp=time.time(),
                    service=service,
                    category=category,
                    strategy=strategy,
                    success=success,
                    duration_ms=duration_ms,
                    message=message,
                )
            )
            self._by_category[category.value] += 1
            self._by_strategy[strategy.value] += 1
            if success:
                self._successes += 1
            else:
                self._failures += 1
