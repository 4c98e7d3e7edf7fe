"""Error taxonomy shared by retrieval, ingestion and the resilience layer."""

from __future__ import annotations

from typing import Any


class RagCoreError(Exception):
    """Base error carrying an HTTP-style status and a machine-readable code.

    The retry classifier and the recovery categorizer both inspect
    `status_code` and `code`, so upstream failures should be wrapped into one
    of the subclasses below rather than raised as bare exceptions.
    """

    default_status = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code if status_code is not None else self.default_status
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
        }


class ValidationError(RagCoreError):
    """Bad caller input. Never retried."""

    default_status = 400
    default_code = "VALIDATION_ERROR"


class AuthenticationError(RagCoreError):
    """Credentials rejected by a dependency (401, or 403 when forbidden)."""

    default_status = 401
    default_code = "AUTHENTICATION_ERROR"


class NotFoundError(RagCoreError):
    default_status = 404
    default_code = "NOT_FOUND"


class RateLimitError(RagCoreError):
    """Upstream throttling. Recovered by waiting, then retrying."""

    default_status = 429
    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class DependencyError(RagCoreError):
    """Network, timeout or 5xx failure from an external provider."""

    default_status = 503
    default_code = "DEPENDENCY_ERROR"

    def __init__(self, message: str, *, service: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.service = service


class CircuitOpenError(DependencyError):
    default_code = "CIRCUIT_OPEN"

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker is OPEN for {name}", service=name)
        self.circuit_name = name


class IndexStateError(RagCoreError):
    """Lexical index inconsistency; callers rebuild the shard and continue."""

    default_status = 500
    default_code = "INDEX_STATE_ERROR"

    def __init__(self, message: str, *, shard: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.shard = shard


class ChunkingError(RagCoreError):
    default_status = 500
    default_code = "EMBEDDING_GENERATION_FAILED"


class TokenBudgetExceededError(ValidationError):
    default_code = "TOKEN_BUDGET_EXCEEDED"
