"""Per-dependency circuit breakers."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from rag_core.config import CircuitBreakerConfig
from rag_core.errors import CircuitOpenError, DependencyError, NotFoundError, RagCoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")
ErrorFilter = Callable[[BaseException], bool]
Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


def counts_as_failure(error: BaseException) -> bool:
    """Caller mistakes (4xx other than 408/429) say nothing about dependency health."""

    if isinstance(error, RagCoreError):
        status = error.status_code
        return not (400 <= status < 500 and status not in (408, 429))
    return True


class CircuitBreaker:
    """CLOSED -> OPEN -> HALF_OPEN -> CLOSED state machine for one dependency.

    Failures are timestamped and pruned to `monitoring_window` before the
    threshold is evaluated. Once `reset_timeout` has passed, the next call
    moves the breaker to HALF_OPEN and up to `half_open_max_calls` probes run.
    The first probe success closes it; any probe failure reopens it.

    State changes happen under a per-breaker lock. The wrapped call itself
    runs outside the lock.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        error_filter: ErrorFilter | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.error_filter = error_filter or counts_as_failure
        self._clock = clock
        self._lock = threading.Lock()

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time: float | None = None
        self.last_success_time: float | None = None
        self.opened_at: float | None = None
        self.half_opened_at: float | None = None
        self.total_calls = 0
        self.total_failures = 0
        self.total_successes = 0
        self.rejected_calls = 0
        self._failure_times: deque[float] = deque()

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._admit()
        try:
            if self.config.call_timeout is not None:
                result = await asyncio.wait_for(fn(), timeout=self.config.call_timeout)
            else:
                result = await fn()
        except asyncio.TimeoutError as exc:
            self._record_failure()
            raise DependencyError(
                f"Circuit breaker timeout for {self.name}",
                service=self.name,
                status_code=504,
                code="ETIMEDOUT",
            ) from exc
        except asyncio.CancelledError:
            # a cancelled probe frees its slot so a later call can probe again
            self._release_probe()
            raise
        except Exception as exc:
            if self.error_filter(exc):
                self._record_failure()
            else:
                self._release_probe()
                logger.debug("Error filtered out from circuit breaker", extra={"circuit": self.name})
            raise
        self._record_success()
        return result

    def current_state(self) -> CircuitState:
        with self._lock:
            return self.state

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._prune(self._clock())
            total = self.total_calls
            return {
                "name": self.name,
                "state": self.state.value,
                "failures": self.failure_count,
                "successes": self.success_count,
                "total_calls": total,
                "total_failures": self.total_failures,
                "total_successes": self.total_successes,
                "rejected_calls": self.rejected_calls,
                "last_failure_time": self.last_failure_time,
                "last_success_time": self.last_success_time,
                "opened_at": self.opened_at,
                "half_opened_at": self.half_opened_at,
                "failure_rate": self.total_failures / total * 100 if total else 0.0,
                "success_rate": self.total_successes / total * 100 if total else 0.0,
            }

    def reset(self) -> None:
        with self._lock:
            self._close()
            self.total_calls = 0
            self.total_failures = 0
            self.total_successes = 0
            self.rejected_calls = 0
            self.last_failure_time = None
            self.last_success_time = None
        logger.info("Circuit breaker manually reset", extra={"circuit": self.name})

    def force_open(self) -> None:
        with self._lock:
            self._open(self._clock())

    def force_close(self) -> None:
        with self._lock:
            self._close()
        logger.info("Circuit breaker manually closed", extra={"circuit": self.name})

    def _admit(self) -> None:
        with self._lock:
            now = self._clock()
            if self.state is CircuitState.OPEN:
                if self.opened_at is not None and now - self.opened_at >= self.config.reset_timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.half_opened_at = now
                    self.half_open_calls = 0
                    logger.info("Circuit breaker transitioning to HALF-OPEN", extra={"circuit": self.name})
                else:
                    self.rejected_calls += 1
                    logger.warning("Circuit breaker is OPEN, request rejected", extra={"circuit": self.name})
                    raise CircuitOpenError(self.name)
            if self.state is CircuitState.HALF_OPEN:
                if self.half_open_calls >= self.config.half_open_max_calls:
                    self.rejected_calls += 1
                    logger.warning("Circuit breaker HALF-OPEN limit reached", extra={"circuit": self.name})
                    raise CircuitOpenError(self.name)
                self.half_open_calls += 1
            self.total_calls += 1

    def _record_success(self) -> None:
        with self._lock:
            self.total_successes += 1
            self.success_count += 1
            self.last_success_time = self._clock()
            if self.state is CircuitState.HALF_OPEN:
                self._close()
                logger.info("Circuit breaker closed after successful probe", extra={"circuit": self.name})

    def _record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self.total_failures += 1
            self.last_failure_time = now
            self._failure_times.append(now)
            self._prune(now)
            if self.state is CircuitState.HALF_OPEN:
                self._open(now)
            elif self.state is CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
                self._open(now)

    def _release_probe(self) -> None:
        with self._lock:
            if self.state is CircuitState.HALF_OPEN and self.half_open_calls > 0:
                self.half_open_calls -= 1

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_window
        while self._failure_times and self._failure_times[0] <= cutoff:
            self._failure_times.popleft()
        self.failure_count = len(self._failure_times)

    def _open(self, now: float) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = now
        self.half_open_calls = 0
        self.half_opened_at = None
        logger.error(
            "Circuit breaker opened",
            extra={
                "circuit": self.name,
                "failures": self.failure_count,
                "threshold": self.config.failure_threshold,
            },
        )

    def _close(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.opened_at = None
        self.half_opened_at = None
        self._failure_times.clear()


class CircuitBreakerRegistry:
    """One breaker per dependency name, created lazily and shared across requests."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        error_filter: ErrorFilter | None = None,
    ) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name, config or self.config, error_filter=error_filter, clock=self._clock
                )
                self._breakers[name] = breaker
                logger.info(
                    "Circuit breaker created",
                    extra={"circuit": name, "failure_threshold": breaker.config.failure_threshold},
                )
            return breaker

    async def execute(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        config: CircuitBreakerConfig | None = None,
    ) -> T:
        return await self.get_breaker(name, config).execute(fn)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._breakers)

    def stats(self, name: str | None = None) -> dict[str, Any]:
        if name is not None:
            return self._existing(name).stats()
        return {breaker_name: self._existing(breaker_name).stats() for breaker_name in self.names()}

    def state(self, name: str) -> CircuitState | None:
        with self._lock:
            breaker = self._breakers.get(name)
        return breaker.current_state() if breaker is not None else None

    def reset(self, name: str) -> None:
        self._existing(name).reset()

    def reset_all(self) -> None:
        for name in self.names():
            self._existing(name).reset()

    def force_open(self, name: str) -> None:
        self._existing(name).force_open()

    def force_close(self, name: str) -> None:
        self._existing(name).force_close()

    def health_check(self) -> dict[str, Any]:
        circuits: dict[str, dict[str, Any]] = {}
        for name in self.names():
            state = self._existing(name).current_state()
            circuits[name] = {"state": state.value, "healthy": state is not CircuitState.OPEN}
        return {"healthy": all(c["healthy"] for c in circuits.values()), "circuits": circuits}

    def _existing(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
        if breaker is None:
            raise NotFoundError(f"Circuit breaker not found: {name}")
        return breaker
