from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import maintenance as maintenance_api


class _FakeWorker:
    def __init__(self, *, running: bool = True, enqueue_result: Optional[Dict[str, Any]] = None) -> None:
        self.running = running
        self.enqueue_result = enqueue_result or {"queued": True, "dropped": False, "job_id": "emb-1"}
        self.enqueued = []

    async def enqueue(self, artifact_id: str, *, reason: str = "write") -> Dict[str, Any]:
        self.enqueued.append((artifact_id, reason))
        return dict(self.enqueue_result)

    async def status(self) -> Dict[str, Any]:
        return {"running": self.running, "queue_size": len(self.enqueued)}

    async def get_job(self, *, job_id: str) -> Dict[str, Any]:
        if job_id == "emb-1":
            return {"ok": True, "job": {"job_id": job_id, "status": "succeeded"}}
        return {"ok": False, "error": f"job not found: {job_id}"}


class _FakeArtifactClient:
    def __init__(self) -> None:
        self.statuses = []

    async def get_artifact(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        if artifact_id == "art-1":
            return {"id": artifact_id, "user_id": "user-1", "status": "active"}
        return None

    async def set_embedding_status(self, artifact_id: str, status: str, error: Optional[str] = None) -> None:
        self.statuses.append((artifact_id, status))


def _build_client(monkeypatch, *, client=("testclient", 50000), worker: Optional[_FakeWorker] = None) -> TestClient:
    async def _ensure_started(*_factories) -> None:
        return None

    async def _run_cleanup(*, client_factory, force: bool, reason: str):
        return {"degraded": False, "deleted": 2, "reason": reason, "force": force}

    monkeypatch.setattr(maintenance_api.runtime_state, "ensure_started", _ensure_started)
    monkeypatch.setattr(maintenance_api.runtime_state.signal_cleanup, "run_cleanup", _run_cleanup)
    monkeypatch.setattr(maintenance_api.runtime_state, "embedding_worker", worker or _FakeWorker())

    app = FastAPI()
    app.include_router(maintenance_api.router)
    return TestClient(app, client=client)


def _detail(response) -> Dict[str, Any]:
    return response.json().get("detail") or {}


def test_maintenance_auth_rejects_when_api_key_not_configured_by_default(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.delenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_client(monkeypatch) as client:
        response = client.post("/maintenance/signals/cleanup")
    assert response.status_code == 401
    assert _detail(response).get("error") == "maintenance_auth_failed"
    assert _detail(response).get("reason") == "api_key_not_configured"


def test_maintenance_auth_allows_insecure_local_override_on_loopback(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(monkeypatch, client=("127.0.0.1", 50000)) as client:
        response = client.post("/maintenance/signals/cleanup?force=true&reason=manual")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["status"] == "ok"
    assert body["result"]["force"] is True
    assert body["result"]["reason"] == "manual"


def test_maintenance_auth_rejects_insecure_local_override_for_remote_client(monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(monkeypatch, client=("203.0.113.10", 50000)) as client:
        response = client.post("/maintenance/signals/cleanup")
    assert response.status_code == 401
    assert _detail(response).get("reason") == "insecure_local_override_requires_loopback"


def test_maintenance_auth_rejects_wrong_or_missing_key(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "cleanup-secret")
    with _build_client(monkeypatch) as client:
        missing = client.get("/maintenance/embeddings/worker")
        wrong = client.get("/maintenance/embeddings/worker", headers={"X-MCP-API-Key": "nope"})
        basic = client.get("/maintenance/embeddings/worker", headers={"Authorization": "Basic cleanup-secret"})
    for response in (missing, wrong, basic):
        assert response.status_code == 401
        assert _detail(response).get("reason") == "invalid_or_missing_api_key"
        assert response.headers.get("www-authenticate") == "Bearer"


def test_maintenance_auth_accepts_header_or_bearer(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "cleanup-secret")
    with _build_client(monkeypatch) as client:
        by_header = client.get("/maintenance/embeddings/worker", headers={"X-MCP-API-Key": "cleanup-secret"})
        by_bearer = client.get(
            "/maintenance/embeddings/worker", headers={"Authorization": "Bearer cleanup-secret"}
        )
    assert by_header.status_code == 200
    assert by_bearer.status_code == 200
    assert by_header.json() == {"running": True, "queue_size": 0}


def test_embedding_job_lookup(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "cleanup-secret")
    headers = {"X-MCP-API-Key": "cleanup-secret"}
    with _build_client(monkeypatch) as client:
        found = client.get("/maintenance/embeddings/job/emb-1", headers=headers)
        missing = client.get("/maintenance/embeddings/job/emb-404", headers=headers)
    assert found.status_code == 200
    assert found.json()["job"]["status"] == "succeeded"
    assert found.json()["runtime_worker"]["running"] is True
    assert missing.status_code == 404


def test_reembed_enqueues_and_marks_pending(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "cleanup-secret")
    fake_client = _FakeArtifactClient()
    worker = _FakeWorker()
    monkeypatch.setattr(maintenance_api, "get_sqlite_client", lambda: fake_client)
    with _build_client(monkeypatch, worker=worker) as client:
        response = client.post(
            "/maintenance/embeddings/reembed/art-1?reason=model_change",
            headers={"X-MCP-API-Key": "cleanup-secret"},
        )
        unknown = client.post(
            "/maintenance/embeddings/reembed/art-404",
            headers={"X-MCP-API-Key": "cleanup-secret"},
        )
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["job_id"] == "emb-1"
    assert body["reason"] == "model_change"
    assert fake_client.statuses == [("art-1", "pending")]
    assert worker.enqueued == [("art-1", "model_change")]
    assert unknown.status_code == 404


def test_reembed_reports_full_queue(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "cleanup-secret")
    monkeypatch.setattr(maintenance_api, "get_sqlite_client", lambda: _FakeArtifactClient())
    worker = _FakeWorker(enqueue_result={"queued": False, "dropped": True, "reason": "queue_full"})
    with _build_client(monkeypatch, worker=worker) as client:
        response = client.post(
            "/maintenance/embeddings/reembed/art-1",
            headers={"X-MCP-API-Key": "cleanup-secret"},
        )
    assert response.status_code == 503
    assert _detail(response) == {
        "error": "embedding_job_enqueue_failed",
        "reason": "queue_full",
        "operation": "reembed_artifact",
    }


class _FakeSignalClient:
    def __init__(self) -> None:
        self.signals = {
            "sig-1": {"id": "sig-1", "user_id": "user-1", "signal_type": "faith_stage_signal", "count": 2},
            "sig-2": {"id": "sig-2", "user_id": "user-1", "signal_type": "prayer_signal", "count": 1},
        }
        self.promoted = []

    async def get_signal_by_id(self, signal_id: str) -> Optional[Dict[str, Any]]:
        return self.signals.get(signal_id)

    async def promote_signal_by_id(
        self, signal_id: str, *, memory_type: str, source: str
    ) -> Optional[Dict[str, Any]]:
        signal = self.signals.pop(signal_id, None)
        if signal is None:
            return None
        self.promoted.append((signal_id, memory_type, source))
        return {"id": "mem-1", "memory_type": memory_type, "occurrences": signal["count"], "source": source}


def test_signal_promotion_route(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", "cleanup-secret")
    headers = {"X-MCP-API-Key": "cleanup-secret"}
    fake_client = _FakeSignalClient()
    monkeypatch.setattr(maintenance_api, "get_sqlite_client", lambda: fake_client)
    with _build_client(monkeypatch) as client:
        unauthenticated = client.post("/maintenance/signals/sig-1/promote")
        promoted = client.post("/maintenance/signals/sig-1/promote", headers=headers)
        repeated = client.post("/maintenance/signals/sig-1/promote", headers=headers)
        unmappable = client.post("/maintenance/signals/sig-2/promote", headers=headers)
    assert unauthenticated.status_code == 401
    assert promoted.status_code == 200
    body = promoted.json()
    assert body["deleted_signal_id"] == "sig-1"
    assert body["memory"]["occurrences"] == 2
    assert fake_client.promoted == [("sig-1", "faith_stage", "admin_promotion")]
    assert repeated.status_code == 404
    assert unmappable.status_code == 400
    assert _detail(unmappable)["error"] == "unmappable_signal_type"
