import asyncio
from typing import Any, List, Optional

import pytest

from memory_engine.providers import ProviderResult
from runtime_state import (
    ConversationLaneCoordinator,
    EmbeddingRefreshError,
    EmbeddingRefreshWorker,
    SignalCleanupCoordinator,
)


class _FakeStatusClient:
    def __init__(self) -> None:
        self.statuses: List[Any] = []

    async def set_embedding_status(self, artifact_id: str, status: str, error: Optional[str] = None) -> None:
        self.statuses.append((artifact_id, status, error))


class _FakeEmbeddingService:
    def __init__(self, results: List[ProviderResult]) -> None:
        self.results = list(results)
        self.calls: List[str] = []
        self.client = _FakeStatusClient()

    async def embed_artifact(self, artifact_id: str) -> ProviderResult:
        self.calls.append(artifact_id)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


@pytest.mark.asyncio
async def test_same_lane_runs_serially_and_other_lanes_do_not_wait() -> None:
    lanes = ConversationLaneCoordinator()
    events: List[str] = []
    release = asyncio.Event()

    async def _capture() -> str:
        events.append("capture:start")
        await release.wait()
        events.append("capture:end")
        return "captured"

    async def _consolidate() -> str:
        events.append("consolidate")
        return "consolidated"

    async def _other_conversation() -> str:
        events.append("other")
        return "other"

    first = asyncio.create_task(
        lanes.run(user_id="u1", conversation_id="c1", operation="note_capture", task=_capture)
    )
    for _ in range(3):
        await asyncio.sleep(0)
    second = asyncio.create_task(
        lanes.run(user_id="u1", conversation_id="c1", operation="consolidate", task=_consolidate)
    )
    for _ in range(3):
        await asyncio.sleep(0)
    other = await lanes.run(
        user_id="u1", conversation_id="c2", operation="consolidate", task=_other_conversation
    )
    busy = await lanes.status()
    release.set()
    results = await asyncio.gather(first, second)

    assert other == "other"
    assert results == ["captured", "consolidated"]
    assert events == ["capture:start", "other", "capture:end", "consolidate"]
    assert busy["lanes"] == 1
    assert busy["active"] == 1
    assert busy["waiting"] == 1
    assert busy["busy_lanes"] == 1

    idle = await lanes.status()
    assert idle["lanes"] == 0
    assert idle["active"] == 0
    assert idle["waiting"] == 0


@pytest.mark.asyncio
async def test_lane_releases_after_task_error() -> None:
    lanes = ConversationLaneCoordinator()

    async def _boom() -> None:
        raise RuntimeError("write failed")

    async def _ok() -> str:
        return "ok"

    with pytest.raises(RuntimeError):
        await lanes.run(user_id="u1", conversation_id="c1", operation="note_capture", task=_boom)
    assert await lanes.run(user_id="u1", conversation_id="c1", operation="consolidate", task=_ok) == "ok"
    assert (await lanes.status())["lanes"] == 0


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leave_a_lane_behind() -> None:
    lanes = ConversationLaneCoordinator()
    release = asyncio.Event()

    async def _hold() -> None:
        await release.wait()

    async def _queued() -> str:
        return "unreachable"

    holder = asyncio.create_task(
        lanes.run(user_id="u1", conversation_id="c1", operation="note_capture", task=_hold)
    )
    for _ in range(3):
        await asyncio.sleep(0)
    waiter = asyncio.create_task(
        lanes.run(user_id="u1", conversation_id="c1", operation="consolidate", task=_queued)
    )
    for _ in range(3):
        await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    release.set()
    await holder

    assert await lanes.status() == {"lanes": 0, "active": 0, "waiting": 0, "busy_lanes": 0}


@pytest.mark.asyncio
async def test_enqueue_dedups_per_artifact_and_drops_when_full(monkeypatch) -> None:
    monkeypatch.setenv("RUNTIME_EMBEDDING_QUEUE_MAXSIZE", "8")
    worker = EmbeddingRefreshWorker()

    first = await worker.enqueue("art-0", reason="create")
    again = await worker.enqueue("art-0", reason="update")
    assert first["queued"] is True
    assert again == {"queued": False, "deduped": True, "job_id": first["job_id"], "artifact_id": "art-0"}

    for index in range(1, 8):
        assert (await worker.enqueue(f"art-{index}"))["queued"] is True
    dropped = await worker.enqueue("art-overflow")
    status = await worker.status()
    job = await worker.get_job(job_id=dropped["job_id"])

    assert dropped["dropped"] is True
    assert dropped["reason"] == "queue_full"
    assert job["job"]["status"] == "dropped"
    assert status["queue_depth"] == 8
    assert status["stats"]["enqueued"] == 8
    assert status["stats"]["dropped"] == 1
    assert status["pending_artifact_jobs"] == 8
    with pytest.raises(ValueError):
        await worker.enqueue("")


@pytest.mark.asyncio
async def test_disabled_worker_and_missing_service(monkeypatch) -> None:
    monkeypatch.setenv("RUNTIME_EMBEDDING_WORKER_ENABLED", "false")
    worker = EmbeddingRefreshWorker()
    assert await worker.enqueue("art-1") == {"queued": False, "reason": "embedding_worker_disabled"}
    assert await worker.submit("art-1") == {"queued": False, "reason": "embedding_service_unavailable"}
    assert (await worker.get_job(job_id="emb-missing"))["ok"] is False


@pytest.mark.asyncio
async def test_refresh_retries_then_marks_artifact_failed(monkeypatch) -> None:
    monkeypatch.setenv("RUNTIME_EMBEDDING_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("RUNTIME_EMBEDDING_BACKOFF_MS", "0")
    worker = EmbeddingRefreshWorker()
    service = _FakeEmbeddingService([ProviderResult.failure("timeout", "provider slow")])

    with pytest.raises(EmbeddingRefreshError):
        await worker.refresh_with_retry(service, "art-1")
    assert service.calls == ["art-1", "art-1"]
    assert service.client.statuses == [("art-1", "failed", "timeout: provider slow")]


@pytest.mark.asyncio
async def test_refresh_succeeds_on_retry(monkeypatch) -> None:
    monkeypatch.setenv("RUNTIME_EMBEDDING_BACKOFF_MS", "0")
    worker = EmbeddingRefreshWorker()
    service = _FakeEmbeddingService(
        [ProviderResult.failure("http_status", "503"), ProviderResult.success({"embedded": True})]
    )
    result = await worker.refresh_with_retry(service, "art-1")
    assert result == {"artifact_id": "art-1", "outcome": {"embedded": True}, "attempts": 2}
    assert service.client.statuses == []


@pytest.mark.asyncio
async def test_worker_loop_processes_queued_jobs(monkeypatch) -> None:
    monkeypatch.setenv("RUNTIME_EMBEDDING_BACKOFF_MS", "0")
    worker = EmbeddingRefreshWorker()
    service = _FakeEmbeddingService([ProviderResult.success({"embedded": True})])
    await worker.ensure_started(lambda: service)
    try:
        submitted = await worker.submit("art-9", reason="create")
        done = await worker.wait_for_job(job_id=submitted["job_id"], timeout_seconds=5)
        status = await worker.status()
    finally:
        await worker.shutdown()

    assert submitted["queued"] is True
    assert done["job"]["status"] == "succeeded"
    assert done["job"]["result"]["attempts"] == 1
    assert service.calls == ["art-9"]
    assert status["stats"]["succeeded"] == 1
    assert status["recent_jobs"][0]["artifact_id"] == "art-9"
    assert worker.running is False


@pytest.mark.asyncio
async def test_detached_refresh_when_worker_not_started(monkeypatch) -> None:
    monkeypatch.setenv("RUNTIME_EMBEDDING_BACKOFF_MS", "0")
    monkeypatch.setenv("RUNTIME_EMBEDDING_MAX_ATTEMPTS", "1")
    worker = EmbeddingRefreshWorker()
    service = _FakeEmbeddingService([ProviderResult.failure("transport", "connection reset")])

    submitted = await worker.submit("art-3", service=service)
    for _ in range(20):
        if service.client.statuses:
            break
        await asyncio.sleep(0.01)
    status = await worker.status()

    assert submitted == {"queued": False, "detached": True, "artifact_id": "art-3"}
    assert service.client.statuses == [("art-3", "failed", "transport: connection reset")]
    assert status["stats"]["detached"] == 1


@pytest.mark.asyncio
async def test_signal_cleanup_respects_interval_unless_forced() -> None:
    class _Client:
        def __init__(self) -> None:
            self.calls = 0

        async def delete_expired_signals(self) -> int:
            self.calls += 1
            return 3

    fake = _Client()
    coordinator = SignalCleanupCoordinator()
    first = await coordinator.run_cleanup(client_factory=lambda: fake, reason="test")
    cached = await coordinator.run_cleanup(client_factory=lambda: fake)
    forced = await coordinator.run_cleanup(client_factory=lambda: fake, force=True)
    status = await coordinator.status()

    assert first["applied"] is True
    assert first["deleted"] == 3
    assert first["reason"] == "test"
    assert cached == first
    assert forced["applied"] is True
    assert fake.calls == 2
    assert status["interval_seconds"] == 3600
    assert status["running"] is False


@pytest.mark.asyncio
async def test_signal_cleanup_failure_is_degraded() -> None:
    class _BrokenClient:
        async def delete_expired_signals(self) -> int:
            raise RuntimeError("database is locked")

    coordinator = SignalCleanupCoordinator()
    result = await coordinator.run_cleanup(client_factory=lambda: _BrokenClient(), force=True)
    assert result == {"applied": False, "degraded": True, "reason": "database is locked"}
