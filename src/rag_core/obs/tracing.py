"""Retrieval tracing and latency/degradation summaries."""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from rag_core.errors import NotFoundError


@dataclass(slots=True)
class RetrievalTrace:
    trace_id: str
    timestamp_utc: str
    query: str
    user_id: str
    lexical_results: int
    vector_results: int
    web_results: int
    context_results: int
    degraded_services: list[str]
    degradation_level: str
    threshold: float | None
    document_tokens: int
    web_tokens: int
    latency_ms: float
    stage_timings_ms: dict[str, float] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_services)


class TraceStore:
    """In-memory trace storage for API-level observability.

    Keeps the newest `max_records` traces; older ones are evicted first.
    """

    def __init__(self, *, max_records: int = 1000) -> None:
        self.max_records = max_records
        self._records: OrderedDict[str, RetrievalTrace] = OrderedDict()

    def create_record(
        self,
        *,
        query: str,
        user_id: str,
        lexical_results: int,
        vector_results: int,
        web_results: int,
        context_results: int,
        degraded_services: list[str],
        degradation_level: str,
        threshold: float | None,
        document_tokens: int,
        web_tokens: int,
        latency_ms: float,
        stage_timings_ms: dict[str, float] | None = None,
    ) -> RetrievalTrace:
        record = RetrievalTrace(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            query=query,
            user_id=user_id,
            lexical_results=lexical_results,
            vector_results=vector_results,
            web_results=web_results,
            context_results=context_results,
            degraded_services=list(degraded_services),
            degradation_level=degradation_level,
            threshold=threshold,
            document_tokens=document_tokens,
            web_tokens=web_tokens,
            latency_ms=latency_ms,
            stage_timings_ms=dict(stage_timings_ms or {}),
        )
        self._records[record.trace_id] = record
        while len(self._records) > self.max_records:
            self._records.popitem(last=False)
        return record

    def get(self, trace_id: str) -> RetrievalTrace:
        record = self._records.get(trace_id)
        if record is None:
            raise NotFoundError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[RetrievalTrace]:
        return list(self._records.values())[-limit:]

    def __len__(self) -> int:
        return len(self._records)

    def summary(self) -> dict[str, float | int]:
        """Aggregate request metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "degraded_rate": 0.0,
                "avg_context_results": 0.0,
                "total_document_tokens": 0,
                "total_web_tokens": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        degraded = sum(1 for record in records if record.degraded)

        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "degraded_rate": degraded / total,
            "avg_context_results": sum(record.context_results for record in records) / total,
            "total_document_tokens": sum(record.document_tokens for record in records),
            "total_web_tokens": sum(record.web_tokens for record in records),
        }


class Timer:
    """Simple context timer used by the retrieval stages."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
