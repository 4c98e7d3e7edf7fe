"""Exponential-backoff retries for transient dependency failures."""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from rag_core.config import RetryConfig
from rag_core.errors import CircuitOpenError, RagCoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")
OnRetry = Callable[[BaseException, int, float], None]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class RetryResult(Generic[T]):
    result: T
    attempts: int
    total_time: float = 0.0


def error_key(error: BaseException) -> str:
    if isinstance(error, RagCoreError):
        return error.code
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status is not None:
        return str(status)
    return type(error).__name__


class RetryExecutor:
    """Runs an async callable, retrying only errors that look transient.

    An error is retryable when its status is in `retryable_status_codes`, its
    code is in `retryable_error_codes`, its message contains one of
    `retryable_messages`, or it is a timeout or connection error. An open
    circuit is never retried.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rand = rand
        self._lock = threading.Lock()
        self._stats = self._empty_stats()

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        config: RetryConfig | None = None,
        on_retry: OnRetry | None = None,
    ) -> RetryResult[T]:
        cfg = config or self.config
        started = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await fn()
            except Exception as exc:
                retryable = self.is_retryable(exc, cfg)
                if not retryable or attempt > cfg.max_retries:
                    self._record_failure(exc, attempt, exhausted=retryable)
                    if retryable:
                        logger.error(
                            "Retry exhausted",
                            extra={"attempts": attempt, "max_retries": cfg.max_retries, "error": str(exc)},
                        )
                    else:
                        logger.debug("Error not retryable", extra={"attempt": attempt, "error": str(exc)})
                    raise
                delay = self.delay_for(attempt - 1, cfg)
                if on_retry is not None:
                    on_retry(exc, attempt, delay)
                logger.warning(
                    "Retrying operation",
                    extra={"attempt": attempt + 1, "delay": delay, "error": str(exc)},
                )
                await self._sleep(delay)
                continue

            self._record_success(attempt)
            if attempt > 1:
                logger.info("Retry successful", extra={"attempts": attempt})
            return RetryResult(result=result, attempts=attempt, total_time=time.perf_counter() - started)

    def delay_for(self, attempt: int, config: RetryConfig | None = None) -> float:
        """Seconds to wait before retry number `attempt + 1`, never above `max_delay`."""

        cfg = config or self.config
        delay = min(cfg.initial_delay * cfg.multiplier**attempt, cfg.max_delay)
        if cfg.jitter and delay > 0:
            delay += delay * cfg.jitter_ratio * (self._rand() * 2 - 1)
        return max(0.0, min(delay, cfg.max_delay))

    def is_retryable(self, error: BaseException, config: RetryConfig | None = None) -> bool:
        cfg = config or self.config
        if isinstance(error, CircuitOpenError):
            return False
        if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
            return True
        status = getattr(error, "status_code", None)
        if status is None:
            status = getattr(error, "status", None)
        if isinstance(status, int) and status in cfg.retryable_status_codes:
            return True
        code = getattr(error, "code", None)
        if isinstance(code, str) and code in cfg.retryable_error_codes:
            return True
        message = str(error).lower()
        return any(fragment.lower() in message for fragment in cfg.retryable_messages)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            stats["retries_by_error"] = dict(self._stats["retries_by_error"])
        calls = stats["successes"] + stats["failures"]
        stats["average_retries"] = stats["total_retries"] / calls if calls else 0.0
        return stats

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = self._empty_stats()

    def _record_success(self, attempts: int) -> None:
        with self._lock:
            self._stats["total_attempts"] += attempts
            self._stats["successes"] += 1
            if attempts > 1:
                self._stats["successful_retries"] += 1
                self._stats["total_retries"] += attempts - 1

    def _record_failure(self, error: BaseException, attempts: int, *, exhausted: bool) -> None:
        with self._lock:
            self._stats["total_attempts"] += attempts
            self._stats["failures"] += 1
            self._stats["total_retries"] += attempts - 1
            if exhausted:
                self._stats["failed_retries"] += 1
            self._stats["retries_by_error"][error_key(error)] += 1

    @staticmethod
    def _empty_stats() -> dict[str, Any]:
        return {
            "total_attempts": 0,
            "successes": 0,
            "failures": 0,
            "successful_retries": 0,
            "failed_retries": 0,
            "total_retries": 0,
            "retries_by_error": Counter(),
        }
