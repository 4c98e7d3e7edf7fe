"""Per-service degradation levels and the overall health they add up to."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rag_core.errors import CircuitOpenError, RateLimitError, RagCoreError
from rag_core.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState

logger = logging.getLogger(__name__)


class DegradationLevel(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    SEVERE = "severe"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER[self]


_LEVEL_ORDER = {
    DegradationLevel.NONE: 0,
    DegradationLevel.PARTIAL: 1,
    DegradationLevel.SEVERE: 2,
    DegradationLevel.CRITICAL: 3,
}


class ServiceType(str, Enum):
    EMBEDDING = "embedding"
    VECTOR = "vector"
    LEXICAL = "lexical"
    WEB_SEARCH = "web_search"
    RERANKING = "reranking"


# Breaker name guarding each service.
SERVICE_CIRCUITS: dict[ServiceType, str] = {
    ServiceType.EMBEDDING: "embedding",
    ServiceType.VECTOR: "vector-store",
    ServiceType.LEXICAL: "lexical-index",
    ServiceType.WEB_SEARCH: "web-search",
    ServiceType.RERANKING: "reranking",
}

# Services whose loss still leaves another route to an answer.
_FALLBACKS: dict[ServiceType, ServiceType | None] = {
    ServiceType.EMBEDDING: ServiceType.LEXICAL,
    ServiceType.VECTOR: ServiceType.LEXICAL,
    ServiceType.LEXICAL: ServiceType.VECTOR,
    ServiceType.WEB_SEARCH: None,
    ServiceType.RERANKING: None,
}

_DOCUMENT_ROUTES = (ServiceType.LEXICAL, ServiceType.VECTOR)
_SEVERE_CODES = {"ETIMEDOUT", "ECONNREFUSED", "ECONNRESET"}


@dataclass(slots=True)
class DegradationStatus:
    level: DegradationLevel
    affected_services: list[ServiceType] = field(default_factory=list)
    message: str = "All services operational"
    can_provide_partial_results: bool = True
    fallback_available: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "affected_services": [service.value for service in self.affected_services],
            "message": self.message,
            "can_provide_partial_results": self.can_provide_partial_results,
            "fallback_available": self.fallback_available,
        }


def classify_failure(error: BaseException, circuit_state: CircuitState | None = None) -> DegradationLevel:
    if isinstance(error, CircuitOpenError) or circuit_state is CircuitState.OPEN:
        return DegradationLevel.SEVERE
    status = error.status_code if isinstance(error, RagCoreError) else getattr(error, "status_code", None)
    code = getattr(error, "code", None)
    if isinstance(error, RateLimitError) or status == 429 or code == "rate_limit_exceeded":
        return DegradationLevel.PARTIAL
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return DegradationLevel.SEVERE
    if (isinstance(status, int) and status >= 500) or code in _SEVERE_CODES:
        return DegradationLevel.SEVERE
    return DegradationLevel.PARTIAL


class DegradationTracker:
    """Tracks how impaired each logical service is.

    Levels are set by `record_failure` and cleared by `mark_healthy`. An open
    breaker for a service counts as SEVERE even when no failure was recorded
    here. The overall level is the worst per-service level, raised to CRITICAL
    when both document routes (lexical and vector) are down.
    """

    def __init__(self, breakers: CircuitBreakerRegistry | None = None) -> None:
        self.breakers = breakers
        self._lock = threading.Lock()
        self._levels: dict[ServiceType, DegradationLevel] = {}
        self._reasons: dict[ServiceType, str] = {}

    def record_failure(self, service: ServiceType, error: BaseException) -> DegradationLevel:
        level = classify_failure(error, self._circuit_state(service))
        with self._lock:
            self._levels[service] = level
            self._reasons[service] = str(error) or type(error).__name__
        logger.warning(
            "Service degraded",
            extra={"service": service.value, "level": level.value, "error": str(error)},
        )
        return level

    def mark_healthy(self, service: ServiceType) -> None:
        with self._lock:
            previous = self._levels.pop(service, None)
            self._reasons.pop(service, None)
        if previous is not None:
            logger.info("Service degradation cleared", extra={"service": service.value})

    def level(self, service: ServiceType) -> DegradationLevel:
        with self._lock:
            recorded = self._levels.get(service, DegradationLevel.NONE)
        if self._circuit_state(service) is CircuitState.OPEN and recorded.rank < DegradationLevel.SEVERE.rank:
            return DegradationLevel.SEVERE
        return recorded

    def is_degraded(self, service: ServiceType) -> bool:
        return self.level(service) is not DegradationLevel.NONE

    def overall_status(self) -> DegradationStatus:
        levels = {service: self.level(service) for service in ServiceType}
        affected = [service for service, level in levels.items() if level is not DegradationLevel.NONE]
        overall = max(levels.values(), key=lambda level: level.rank)
        documents_down = all(service in affected for service in _DOCUMENT_ROUTES)
        if documents_down:
            overall = DegradationLevel.CRITICAL

        fallback_available = any(
            _FALLBACKS[service] is None or _FALLBACKS[service] not in affected for service in affected
        )
        return DegradationStatus(
            level=overall,
            affected_services=affected,
            message=_message(overall, affected),
            can_provide_partial_results=not documents_down,
            fallback_available=fallback_available,
        )

    def reasons(self) -> dict[str, str]:
        with self._lock:
            return {service.value: reason for service, reason in self._reasons.items()}

    def reset(self, service: ServiceType | None = None) -> None:
        with self._lock:
            if service is None:
                self._levels.clear()
                self._reasons.clear()
            else:
                self._levels.pop(service, None)
                self._reasons.pop(service, None)
        logger.info("Degradation status reset", extra={"service": service.value if service else "all"})

    def stats(self) -> dict[str, Any]:
        levels = {service.value: self.level(service).value for service in ServiceType}
        return {
            "total_services": len(levels),
            "degraded_services": sum(1 for level in levels.values() if level != DegradationLevel.NONE.value),
            "services": levels,
            "overall_status": self.overall_status().to_dict(),
        }

    def _circuit_state(self, service: ServiceType) -> CircuitState | None:
        if self.breakers is None:
            return None
        return self.breakers.state(SERVICE_CIRCUITS[service])


def _message(level: DegradationLevel, affected: list[ServiceType]) -> str:
    if level is DegradationLevel.NONE:
        return "All services operational"
    names = ", ".join(service.value.upper() for service in affected)
    if level is DegradationLevel.PARTIAL:
        return f"Some services are experiencing issues ({names}). Partial functionality available."
    if level is DegradationLevel.SEVERE:
        return f"Services are unavailable ({names}). Limited functionality available."
    return f"Critical services are unavailable ({names}). Minimal functionality available."
