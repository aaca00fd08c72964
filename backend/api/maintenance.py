import hmac
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from artifacts.service import get_artifact_service, get_embedding_service
from db import get_sqlite_client
from memory_engine.signal_evaluator import SignalEvaluator
from runtime_state import runtime_state

_API_KEY_ENV = "MCP_API_KEY"
_API_KEY_HEADER = "X-MCP-API-Key"
_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _configured_api_key() -> str:
    return str(os.getenv(_API_KEY_ENV) or "").strip()


def _insecure_local_allowed() -> bool:
    return str(os.getenv(_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower() in _TRUTHY_ENV_VALUES


def _is_loopback(request: Request) -> bool:
    host = str(getattr(request.client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    scheme, _, token = str(authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def _auth_failure(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "maintenance_auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_maintenance_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _configured_api_key()
    if not configured:
        if _insecure_local_allowed():
            if _is_loopback(request):
                return
            raise _auth_failure("insecure_local_override_requires_loopback")
        raise _auth_failure("api_key_not_configured")

    provided = str(x_mcp_api_key or "").strip() or _bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise _auth_failure("invalid_or_missing_api_key")


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


async def _ensure_runtime() -> None:
    await runtime_state.ensure_started(get_sqlite_client, get_embedding_service)


def _raise_on_enqueue_drop(enqueue_result: Dict[str, Any], *, operation: str) -> None:
    if not enqueue_result.get("dropped"):
        return
    reason = str(enqueue_result.get("reason") or "queue_full")
    detail: Dict[str, Any] = {
        "error": "embedding_job_enqueue_failed",
        "reason": reason,
        "operation": operation,
    }
    if enqueue_result.get("job_id"):
        detail["job_id"] = enqueue_result["job_id"]
    raise HTTPException(
        status_code=(
            status.HTTP_503_SERVICE_UNAVAILABLE if reason == "queue_full" else status.HTTP_409_CONFLICT
        ),
        detail=detail,
    )


@router.post("/signals/cleanup")
async def trigger_signal_cleanup(force: bool = False, reason: str = "api"):
    await _ensure_runtime()
    result = await runtime_state.signal_cleanup.run_cleanup(
        client_factory=get_sqlite_client,
        force=force,
        reason=reason or "api",
    )
    degraded = bool(result.get("degraded"))
    return {
        "ok": not degraded,
        "status": "degraded" if degraded else "ok",
        "result": result,
    }


@router.get("/signals/cleanup")
async def get_signal_cleanup_status():
    await _ensure_runtime()
    return await runtime_state.signal_cleanup.status()


@router.post("/signals/{signal_id}/promote")
async def promote_signal(signal_id: str):
    result = await SignalEvaluator(get_sqlite_client()).promote_signal(signal_id)
    if result.get("ok"):
        return result
    if result.get("error") == "not_found":
        raise HTTPException(status_code=404, detail=f"Signal '{signal_id}' not found")
    raise HTTPException(
        status_code=400,
        detail={"error": result.get("error"), "reason": result.get("reason")},
    )


@router.get("/embeddings/worker")
async def get_embedding_worker_status():
    await _ensure_runtime()
    return await runtime_state.embedding_worker.status()


@router.get("/embeddings/job/{job_id}")
async def get_embedding_job(job_id: str):
    await _ensure_runtime()
    result = await runtime_state.embedding_worker.get_job(job_id=job_id)
    if not result.get("ok"):
        raise HTTPException(status_code=404, detail=str(result.get("error") or "job not found"))
    result["runtime_worker"] = await runtime_state.embedding_worker.status()
    return result


@router.get("/embeddings/stats")
async def get_embedding_stats(user_id: Optional[str] = None):
    return await get_embedding_service().get_embedding_stats(user_id)


@router.post("/embeddings/reembed/{artifact_id}")
async def reembed_artifact(
    artifact_id: str,
    reason: str = "api",
    wait: bool = False,
    timeout_seconds: int = 30,
):
    client = get_sqlite_client()
    artifact = await client.get_artifact(artifact_id)
    if artifact is None or artifact.get("status") != "active":
        raise HTTPException(status_code=404, detail=f"Artifact '{artifact_id}' not found")

    await _ensure_runtime()
    worker = runtime_state.embedding_worker
    if not worker.running:
        try:
            await worker.refresh_with_retry(get_embedding_service(), artifact_id)
        except Exception as exc:
            raise HTTPException(
                status_code=502,
                detail={"error": "embedding_refresh_failed", "reason": str(exc)},
            )
        return {
            "ok": True,
            "queued": False,
            "executed_sync": True,
            "artifact": await get_artifact_service().get_artifact(
                artifact_id, artifact["user_id"]
            ),
        }

    await client.set_embedding_status(artifact_id, "pending")
    enqueue_result = await worker.enqueue(artifact_id, reason=reason or "api")
    _raise_on_enqueue_drop(enqueue_result, operation="reembed_artifact")
    payload: Dict[str, Any] = {"ok": True, "reason": reason or "api", **enqueue_result}
    job_id = enqueue_result.get("job_id")
    if wait and isinstance(job_id, str) and job_id:
        payload["wait_result"] = await worker.wait_for_job(
            job_id=job_id,
            timeout_seconds=max(1.0, float(timeout_seconds)),
        )
    payload["runtime_worker"] = await worker.status()
    return payload
