import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import artifacts_router, maintenance_router, memory_router
from artifacts.service import get_embedding_service, reset_artifact_services
from db import close_sqlite_client, get_sqlite_client
from runtime_state import runtime_state

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _extract_sqlite_file_path(database_url: Optional[str]) -> Optional[Path]:
    """Extract local file path from sqlite+aiosqlite URL."""
    prefix = "sqlite+aiosqlite:///"
    if not database_url or not database_url.startswith(prefix):
        return None
    raw_path = database_url[len(prefix):]
    return Path(raw_path) if raw_path and raw_path != ":memory:" else None


def _ensure_sqlite_parent_dir(database_url: Optional[str]) -> None:
    target_path = _extract_sqlite_file_path(database_url)
    if target_path is not None:
        target_path.parent.mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    print("Scripture memory API starting...")

    try:
        _ensure_sqlite_parent_dir(os.getenv("DATABASE_URL"))
        sqlite_client = get_sqlite_client()
        await sqlite_client.init_db()
        await runtime_state.ensure_started(get_sqlite_client, get_embedding_service)
        print("SQLite database initialized.")
    except Exception as e:
        print(f"Failed to initialize SQLite: {e}")
        raise RuntimeError("Failed to initialize SQLite during startup") from e

    yield

    print("Closing database connections...")
    await runtime_state.shutdown()
    reset_artifact_services()
    await close_sqlite_client()


app = FastAPI(
    title="Scripture Memory API",
    description="Personalization memory engine for a Bible study and prayer assistant",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memory_router)
app.include_router(artifacts_router)
app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Scripture Memory API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    try:
        embedding_stats = await get_embedding_service().get_embedding_stats()
        payload["embeddings"] = embedding_stats
        payload["runtime"] = {
            "conversation_lanes": await runtime_state.conversation_lanes.status(),
            "embedding_worker": await runtime_state.embedding_worker.status(),
            "signal_cleanup": await runtime_state.signal_cleanup.status(),
        }
        if payload["runtime"]["signal_cleanup"].get("degraded"):
            payload["status"] = "degraded"
    except Exception as e:
        payload["status"] = "degraded"
        payload["reason"] = str(e)
        payload["runtime"] = {
            "conversation_lanes": {"degraded": True, "reason": str(e)},
            "embedding_worker": {"degraded": True, "reason": str(e)},
            "signal_cleanup": {"degraded": True, "reason": str(e)},
        }

    return payload


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
