import os

from fastapi.testclient import TestClient

# Word tokenization keeps the service offline; set before the app module is imported.
os.environ.setdefault("RAG_CORE_ENCODING", "word")


def test_api_ingest_retrieve_trace_metrics() -> None:
    from rag_core.api.main import app

    client = TestClient(app)

    ingest_resp = client.post(
        "/ingest",
        json={
            "document_id": "policy-doc",
            "text": "Company policy states employees must encrypt customer data at rest.\n\n" * 40,
            "user_id": "tenant-a",
            "filename": "policy.txt",
            "metadata": {"title": "Security policy"},
        },
    )
    assert ingest_resp.status_code == 200
    ingest_payload = ingest_resp.json()
    assert ingest_payload["chunks_created"] >= 1
    assert ingest_payload["vectors_pending"] is False

    retrieve_resp = client.post(
        "/retrieve",
        json={"query": "What does policy require for customer data?", "user_id": "tenant-a", "top_k": 3},
    )
    assert retrieve_resp.status_code == 200
    payload = retrieve_resp.json()
    assert payload["context"]
    assert payload["context"][0]["document_id"] == "policy-doc"
    assert payload["degraded"] is False
    assert payload["budget"]["allocations"]["document_context"] > 0

    trace_id = payload["diagnostics"]["trace_id"]
    trace_resp = client.get(f"/traces/{trace_id}")
    assert trace_resp.status_code == 200
    assert trace_resp.json()["user_id"] == "tenant-a"
    assert client.get("/traces").json()["items"]

    metrics_resp = client.get("/metrics")
    assert metrics_resp.status_code == 200
    assert metrics_resp.json()["total_requests"] >= 1

    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert "vector-store" in health["circuits"]

    stats = client.get("/index/stats").json()
    assert stats["chunks"] == ingest_payload["chunks_created"]
    assert stats["vectors"] == ingest_payload["chunks_created"]


def test_api_tenant_scoping_and_deletion() -> None:
    from rag_core.api.main import app

    client = TestClient(app)
    client.post(
        "/ingest",
        json={"document_id": "tenant-b-doc", "text": "Falcon launch codes are kept offline.", "user_id": "tenant-b"},
    )

    other = client.post("/retrieve", json={"query": "falcon launch codes", "user_id": "tenant-c"}).json()
    assert all(item["document_id"] != "tenant-b-doc" for item in other["context"])

    assert client.delete("/documents/tenant-b-doc", params={"user_id": "tenant-c"}).status_code == 404
    deleted = client.delete("/documents/tenant-b-doc", params={"user_id": "tenant-b"})
    assert deleted.status_code == 200
    assert deleted.json()["chunks_removed"] == 1


def test_api_errors_and_circuit_controls() -> None:
    from rag_core.api.main import app

    client = TestClient(app)

    assert client.post("/retrieve", json={"query": "", "user_id": "tenant-a"}).status_code == 422
    missing = client.get("/traces/does-not-exist")
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"] == "NOT_FOUND"
    assert client.post("/circuits/unknown/reset").status_code == 404

    circuits = client.get("/circuits").json()
    assert "retry" in circuits
    for name in circuits["items"]:
        reset = client.post(f"/circuits/{name}/reset")
        assert reset.status_code == 200
        assert reset.json()["state"] == "closed"
