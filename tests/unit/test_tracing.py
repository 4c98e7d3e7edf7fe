import pytest

from rag_core.errors import NotFoundError
from rag_core.obs.tracing import TraceStore


def _record(store: TraceStore, latency_ms: float, degraded: list[str] | None = None):
    return store.create_record(
        query="retention policy",
        user_id="u1",
        lexical_results=3,
        vector_results=2,
        web_results=0,
        context_results=4,
        degraded_services=degraded or [],
        degradation_level="partial" if degraded else "none",
        threshold=0.7,
        document_tokens=120,
        web_tokens=0,
        latency_ms=latency_ms,
        stage_timings_ms={"fusion": 1.5},
    )


def test_trace_summary_metrics() -> None:
    store = TraceStore()
    _record(store, 100.0)
    _record(store, 300.0, degraded=["vector"])

    summary = store.summary()

    assert summary["total_requests"] == 2
    assert summary["avg_latency_ms"] == 200.0
    assert summary["degraded_rate"] == 0.5
    assert summary["total_document_tokens"] == 240


def test_empty_summary() -> None:
    assert TraceStore().summary()["total_requests"] == 0


def test_lookup_and_eviction() -> None:
    store = TraceStore(max_records=2)
    first = _record(store, 1.0)
    second = _record(store, 2.0)
    third = _record(store, 3.0)

    assert len(store) == 2
    assert store.get(third.trace_id).latency_ms == 3.0
    assert [r.trace_id for r in store.list_recent()] == [second.trace_id, third.trace_id]
    with pytest.raises(NotFoundError):
        store.get(first.trace_id)
