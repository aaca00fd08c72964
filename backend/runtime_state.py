"""
Process-wide runtime pieces shared by the API and the MCP server.

- ConversationLaneCoordinator: one serial lane per (user, conversation);
  note capture and consolidation for a conversation never interleave.
- SignalCleanupCoordinator: interval-limited sweep of expired signals,
  plus an optional background loop.
- EmbeddingRefreshWorker: queued embedding refreshes with per-artifact
  dedup and retry; falls back to a detached task when no loop is running.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(os.environ[name])
    except (KeyError, ValueError):
        return default
    return max(minimum, value)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EmbeddingRefreshError(RuntimeError):
    pass


# =============================================================================
# Conversation lanes
# =============================================================================


@dataclass
class _Lane:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiting: int = 0


class ConversationLaneCoordinator:
    """
    Serial execution per (user, conversation) lane.

    Different lanes run concurrently; work queued on the same lane runs in
    arrival order, one task at a time. A lane is dropped once nothing holds
    or waits on it.
    """

    SLOW_WAIT_SECONDS = 1.0

    def __init__(self) -> None:
        self._lanes: Dict[Tuple[str, str], _Lane] = {}
        self._active = 0

    @staticmethod
    def lane_key(user_id: Optional[str], conversation_id: Optional[str]) -> Tuple[str, str]:
        user = (user_id or "").strip() or "anonymous"
        conversation = (conversation_id or "").strip() or "default"
        return user, conversation

    def _lane(self, key: Tuple[str, str]) -> _Lane:
        lane = self._lanes.get(key)
        if lane is None:
            lane = _Lane()
            self._lanes[key] = lane
        return lane

    def _discard_if_idle(self, key: Tuple[str, str], lane: _Lane) -> None:
        if lane.waiting == 0 and not lane.lock.locked() and self._lanes.get(key) is lane:
            del self._lanes[key]

    async def run(
        self,
        *,
        user_id: Optional[str],
        conversation_id: Optional[str],
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        key = self.lane_key(user_id, conversation_id)
        lane = self._lane(key)

        queued_at = time.monotonic()
        lane.waiting += 1
        try:
            await lane.lock.acquire()
        finally:
            lane.waiting -= 1
            self._discard_if_idle(key, lane)

        waited = time.monotonic() - queued_at
        if waited > self.SLOW_WAIT_SECONDS:
            logger.info("%s on lane %s/%s waited %.2fs", operation, key[0], key[1], waited)

        self._active += 1
        try:
            return await task()
        finally:
            self._active -= 1
            lane.lock.release()
            self._discard_if_idle(key, lane)

    async def status(self) -> Dict[str, Any]:
        queued = [lane.waiting for lane in self._lanes.values() if lane.waiting > 0]
        return {
            "lanes": len(self._lanes),
            "active": self._active,
            "waiting": sum(queued),
            "busy_lanes": len(queued),
        }


# =============================================================================
# Signal cleanup
# =============================================================================


class SignalCleanupCoordinator:
    """Deletes expired signals at most once per interval unless forced."""

    def __init__(self) -> None:
        self.interval_seconds = _env_int(
            "RUNTIME_SIGNAL_CLEANUP_INTERVAL_SECONDS", 3600, minimum=10
        )
        self._lock = asyncio.Lock()
        self._next_due = 0.0
        self._last: Dict[str, Any] = {"applied": False, "reason": "not_started"}
        self._client_factory: Optional[Callable[[], Any]] = None
        self._sweeper: Optional[asyncio.Task] = None

    async def run_cleanup(
        self,
        *,
        client_factory: Callable[[], Any],
        force: bool = False,
        reason: str = "runtime",
    ) -> Dict[str, Any]:
        async with self._lock:
            now = time.monotonic()
            if not force and now < self._next_due:
                return dict(self._last)
            self._next_due = now + self.interval_seconds

            if not callable(client_factory):
                self._last = {
                    "applied": False,
                    "degraded": True,
                    "reason": "client_factory_unavailable",
                }
                return dict(self._last)

            try:
                deleted = client_factory().delete_expired_signals()
                if inspect.isawaitable(deleted):
                    deleted = await deleted
            except Exception as exc:
                logger.warning("expired signal cleanup failed: %s", exc)
                self._last = {"applied": False, "degraded": True, "reason": str(exc)}
            else:
                self._last = {
                    "applied": True,
                    "degraded": False,
                    "deleted": int(deleted or 0),
                    "reason": reason or "runtime",
                    "ran_at": _now_iso(),
                }
            return dict(self._last)

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def ensure_started(self, client_factory: Callable[[], Any]) -> None:
        self._client_factory = client_factory
        if not self.sweeping:
            self._sweeper = asyncio.create_task(self._sweep(), name="signal-cleanup-sweep")

    async def shutdown(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

    async def _sweep(self) -> None:
        while True:
            if self._client_factory is not None:
                await self.run_cleanup(client_factory=self._client_factory, reason="runtime.sweep")
            await asyncio.sleep(self.interval_seconds)

    async def status(self) -> Dict[str, Any]:
        return {
            **self._last,
            "interval_seconds": self.interval_seconds,
            "running": self.sweeping,
        }


# =============================================================================
# Embedding refresh worker
# =============================================================================


@dataclass
class EmbeddingJob:
    job_id: str
    artifact_id: str
    reason: str
    requested_at: str
    status: str = "queued"
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def finish(self, status: str, *, result: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
        self.status = status
        self.finished_at = _now_iso()
        self.result = result
        self.error = error
        self.done.set()

    def snapshot(self) -> Dict[str, Any]:
        view: Dict[str, Any] = {
            "job_id": self.job_id,
            "artifact_id": self.artifact_id,
            "reason": self.reason,
            "requested_at": self.requested_at,
            "status": self.status,
        }
        for key in ("started_at", "finished_at", "result", "error"):
            value = getattr(self, key)
            if value is not None:
                view[key] = value
        return view


class _JobBook:
    """Open jobs, the pending job per artifact, and a bounded newest-first history."""

    def __init__(self, keep: int) -> None:
        self.keep = keep
        self.open: Dict[str, EmbeddingJob] = {}
        self.pending: Dict[str, str] = {}
        self.history: "OrderedDict[str, EmbeddingJob]" = OrderedDict()

    def find(self, job_id: str) -> Optional[EmbeddingJob]:
        return self.open.get(job_id) or self.history.get(job_id)

    def add(self, job: EmbeddingJob) -> None:
        self.open[job.job_id] = job
        self.pending[job.artifact_id] = job.job_id

    def release_artifact(self, job: EmbeddingJob) -> None:
        if self.pending.get(job.artifact_id) == job.job_id:
            del self.pending[job.artifact_id]

    def close(self, job: EmbeddingJob) -> None:
        self.release_artifact(job)
        self.open.pop(job.job_id, None)
        self.history[job.job_id] = job
        self.history.move_to_end(job.job_id, last=False)
        while len(self.history) > self.keep:
            self.history.popitem(last=True)

    def recent(self) -> List[Dict[str, Any]]:
        return [job.snapshot() for job in self.history.values()]


class EmbeddingRefreshWorker:
    """
    Serial embedding refresh queue.

    A job is deduplicated while it waits: a second write to the same
    artifact before the refresh starts reuses the queued job. Once a job
    starts, later writes queue a fresh one.
    """

    def __init__(self) -> None:
        self.enabled = _env_flag("RUNTIME_EMBEDDING_WORKER_ENABLED", True)
        self.queue_maxsize = _env_int("RUNTIME_EMBEDDING_QUEUE_MAXSIZE", 256, minimum=8)
        self.max_attempts = _env_int("RUNTIME_EMBEDDING_MAX_ATTEMPTS", 3, minimum=1)
        self.backoff_ms = _env_int("RUNTIME_EMBEDDING_BACKOFF_MS", 500, minimum=0)

        self._queue: "asyncio.Queue[EmbeddingJob]" = asyncio.Queue(maxsize=self.queue_maxsize)
        self._book = _JobBook(keep=_env_int("RUNTIME_EMBEDDING_RECENT_JOBS", 30, minimum=5))
        self._totals: Counter = Counter()
        self._service_factory: Optional[Callable[[], Any]] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._detached: Set[asyncio.Task] = set()
        self._active_job_id: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_finished_at: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def ensure_started(self, service_factory: Callable[[], Any]) -> None:
        self._service_factory = service_factory
        if self.enabled and not self.running:
            self._loop_task = asyncio.create_task(self._drain(), name="embedding-refresh-worker")

    async def shutdown(self) -> None:
        loop_task, self._loop_task = self._loop_task, None
        pending = [task for task in [loop_task, *self._detached] if task is not None]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning("embedding task raised during shutdown: %s", exc)

    async def submit(
        self,
        artifact_id: str,
        *,
        reason: str = "write",
        service: Any = None,
    ) -> Dict[str, Any]:
        """
        Schedule a refresh without waiting for it: queued when the worker
        loop is running, otherwise a detached task with the same retry policy.
        """
        if self.enabled and self.running:
            return await self.enqueue(artifact_id, reason=reason)

        target = service
        if target is None and callable(self._service_factory):
            target = self._service_factory()
        if target is None:
            return {"queued": False, "reason": "embedding_service_unavailable"}

        task = asyncio.create_task(
            self._refresh_detached(target, artifact_id),
            name=f"embedding-refresh-{artifact_id}",
        )
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        self._totals["detached"] += 1
        return {"queued": False, "detached": True, "artifact_id": artifact_id}

    async def enqueue(self, artifact_id: str, *, reason: str = "write") -> Dict[str, Any]:
        if not artifact_id:
            raise ValueError("artifact_id is required.")
        if not self.enabled:
            return {"queued": False, "reason": "embedding_worker_disabled"}

        waiting_job = self._book.pending.get(artifact_id)
        if waiting_job:
            return {
                "queued": False,
                "deduped": True,
                "job_id": waiting_job,
                "artifact_id": artifact_id,
            }

        job = EmbeddingJob(
            job_id=f"emb-{uuid.uuid4().hex[:10]}",
            artifact_id=artifact_id,
            reason=reason or "write",
            requested_at=_now_iso(),
        )
        self._book.add(job)
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            job.finish("dropped", error="queue_full")
            self._book.close(job)
            self._totals["dropped"] += 1
            return {
                "queued": False,
                "dropped": True,
                "job_id": job.job_id,
                "artifact_id": artifact_id,
                "reason": "queue_full",
            }

        self._totals["enqueued"] += 1
        return {"queued": True, "job_id": job.job_id, "artifact_id": artifact_id}

    async def wait_for_job(self, *, job_id: str, timeout_seconds: float = 10.0) -> Dict[str, Any]:
        if not job_id:
            return {"ok": False, "error": "job_id is required."}
        job = self._book.find(job_id)
        if job is None:
            return {"ok": False, "error": f"job '{job_id}' not found."}
        try:
            await asyncio.wait_for(job.done.wait(), timeout=max(0.1, float(timeout_seconds)))
        except asyncio.TimeoutError:
            pass
        return {"ok": True, "job": job.snapshot()}

    async def get_job(self, *, job_id: str) -> Dict[str, Any]:
        job = self._book.find(job_id)
        if job is None:
            return {"ok": False, "error": f"job '{job_id}' not found."}
        return {"ok": True, "job": job.snapshot()}

    async def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.running,
            "queue_depth": self._queue.qsize(),
            "queue_maxsize": self.queue_maxsize,
            "active_job_id": self._active_job_id,
            "pending_artifact_jobs": len(self._book.pending),
            "detached_in_flight": len(self._detached),
            "retry_policy": {"max_attempts": self.max_attempts, "backoff_ms": self.backoff_ms},
            "stats": {
                key: self._totals[key]
                for key in ("enqueued", "succeeded", "failed", "dropped", "detached")
            },
            "last_error": self._last_error,
            "last_finished_at": self._last_finished_at,
            "recent_jobs": self._book.recent(),
        }

    async def refresh_with_retry(self, service: Any, artifact_id: str) -> Dict[str, Any]:
        """
        Run ``service.embed_artifact`` with exponential backoff.

        On final failure the artifact is marked ``embedding_status=failed``
        and EmbeddingRefreshError is raised.
        """
        last_error = "unknown"
        for attempt in range(1, self.max_attempts + 1):
            result = await service.embed_artifact(artifact_id)
            if result.ok:
                return {"artifact_id": artifact_id, "outcome": result.value, "attempts": attempt}
            last_error = f"{result.error_kind}: {result.detail}".strip()
            if attempt < self.max_attempts and self.backoff_ms > 0:
                await asyncio.sleep((self.backoff_ms / 1000.0) * (2 ** (attempt - 1)))

        await service.client.set_embedding_status(artifact_id, "failed", last_error)
        raise EmbeddingRefreshError(f"embedding refresh failed for {artifact_id}: {last_error}")

    async def _refresh_detached(self, service: Any, artifact_id: str) -> None:
        try:
            await self.refresh_with_retry(service, artifact_id)
        except EmbeddingRefreshError as exc:
            self._last_error = str(exc)
            logger.warning("%s", exc)
        except Exception as exc:
            self._last_error = str(exc)
            logger.exception("detached embedding refresh crashed for %s", artifact_id)

    async def _drain(self) -> None:
        while True:
            job = await self._queue.get()
            self._book.release_artifact(job)
            job.status = "running"
            job.started_at = _now_iso()
            self._active_job_id = job.job_id
            try:
                outcome = await self.refresh_with_retry(self._resolve_service(), job.artifact_id)
            except asyncio.CancelledError:
                self._settle(job, "failed", error="worker_cancelled")
                raise
            except Exception as exc:
                self._settle(job, "failed", error=str(exc))
            else:
                self._settle(job, "succeeded", result=outcome)
            finally:
                self._queue.task_done()

    def _resolve_service(self) -> Any:
        if not callable(self._service_factory):
            raise RuntimeError("embedding worker has no service factory.")
        return self._service_factory()

    def _settle(
        self,
        job: EmbeddingJob,
        status: str,
        *,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        job.finish(status, result=result, error=error)
        self._book.close(job)
        self._totals[status] += 1
        self._last_finished_at = job.finished_at
        if error:
            self._last_error = error
        if self._active_job_id == job.job_id:
            self._active_job_id = None


class RuntimeState:
    def __init__(self) -> None:
        self.conversation_lanes = ConversationLaneCoordinator()
        self.signal_cleanup = SignalCleanupCoordinator()
        self.embedding_worker = EmbeddingRefreshWorker()

    async def ensure_started(
        self,
        client_factory: Callable[[], Any],
        embedding_service_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        if embedding_service_factory is not None:
            await self.embedding_worker.ensure_started(embedding_service_factory)
        await self.signal_cleanup.ensure_started(client_factory)

    async def shutdown(self) -> None:
        await self.embedding_worker.shutdown()
        await self.signal_cleanup.shutdown()


runtime_state = RuntimeState()
