from pathlib import Path
from typing import Any, Dict

import httpx
import pytest
from fastapi import FastAPI

from api import artifacts as artifacts_api
from api import memory as memory_api
from artifacts.embedding import EmbeddingService
from artifacts.service import ArtifactService
from db.sqlite_client import SQLiteClient
from memory_engine.providers import EmbeddingProvider


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _InlineEmbeddingWorker:
    async def submit(self, artifact_id: str, *, reason: str = "write", service: Any = None) -> Dict[str, Any]:
        await service.embed_artifact(artifact_id)
        return {"queued": False, "detached": True, "artifact_id": artifact_id}


async def _app(tmp_path: Path, monkeypatch, name: str):
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = SQLiteClient(_sqlite_url(tmp_path / name))
    await client.init_db()
    embeddings = EmbeddingService(client, EmbeddingProvider(backend="hash", model="", dim=64))
    artifacts = ArtifactService(client, embeddings, embedding_worker=_InlineEmbeddingWorker())

    monkeypatch.setattr(memory_api, "get_sqlite_client", lambda: client)
    monkeypatch.setattr(memory_api, "get_embedding_service", lambda: embeddings)
    monkeypatch.setattr(artifacts_api, "get_sqlite_client", lambda: client)
    monkeypatch.setattr(artifacts_api, "get_artifact_service", lambda: artifacts)

    app = FastAPI()
    app.include_router(memory_api.router)
    app.include_router(artifacts_api.router)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    return client, http


@pytest.mark.asyncio
async def test_signal_to_memory_flow_over_http(tmp_path: Path, monkeypatch) -> None:
    client, http = await _app(tmp_path, monkeypatch, "flow.db")
    candidate = {"type": "struggle_theme", "value": "loneliness", "confidence": 0.8}
    async with http:
        first = await http.post(
            "/memory/evaluate",
            json={"user_id": "user-1", "conversation_id": "conv-1", "candidates": [candidate]},
        )
        second = await http.post(
            "/memory/evaluate",
            json={"user_id": "user-1", "conversation_id": "conv-2", "candidates": [candidate]},
        )
        state = await http.get("/memory/state/user-1")
        context = await http.get("/memory/context/user-1")
        memory_id = state.json()["memories"][0]["id"]
        removed = await http.delete(f"/memory/state/user-1/memories/{memory_id}")
        removed_again = await http.delete(f"/memory/state/user-1/memories/{memory_id}")
        bad_confidence = await http.post(
            "/memory/evaluate",
            json={
                "user_id": "user-1",
                "conversation_id": "conv-3",
                "candidates": [{**candidate, "confidence": 1.5}],
            },
        )
    await client.close()

    assert first.json()["signals_created"] == 1
    assert second.json()["memories_promoted"] == 1
    assert state.json()["globalNotes"] == []
    assert context.json()["text"] == (
        "WHAT YOU KNOW ABOUT THIS USER:\n- Has shared an ongoing struggle with loneliness (light)"
    )
    assert removed.json() == {"ok": True, "memory_id": memory_id}
    assert removed_again.status_code == 404
    assert bad_confidence.status_code == 422


@pytest.mark.asyncio
async def test_explicit_memory_capture_over_http(tmp_path: Path, monkeypatch) -> None:
    client, http = await _app(tmp_path, monkeypatch, "explicit.db")
    async with http:
        recorded = await http.post(
            "/memory/state/user-1/memories",
            json={"memory_type": "faith_stage", "value": "rebuilding"},
        )
        invalid = await http.post(
            "/memory/state/user-1/memories",
            json={"memory_type": "faith_stage", "value": "work_anxiety"},
        )
        state = await http.get("/memory/state/user-1")
    await client.close()

    assert recorded.status_code == 200
    memory = recorded.json()["memory"]
    assert memory["value"] == {"stage": "rebuilding"}
    assert memory["source"] == "user_explicit"
    assert invalid.status_code == 422
    assert invalid.json()["detail"]["error"] == "invalid_value"
    assert [m["id"] for m in state.json()["memories"]] == [memory["id"]]


@pytest.mark.asyncio
async def test_tool_calls_and_consolidation_over_http(tmp_path: Path, monkeypatch) -> None:
    client, http = await _app(tmp_path, monkeypatch, "tools.db")
    args = {
        "text": "Wants to memorize Psalm 119 this year",
        "category": "goal",
        "confidence": "explicit",
        "source": "user_message",
    }
    async with http:
        tools = await http.get("/memory/tools")
        saved = await http.post(
            "/memory/tools/save_memory_candidate",
            json={"user_id": "user-1", "conversation_id": "conv-1", "arguments": args},
        )
        unknown = await http.post(
            "/memory/tools/drop_tables",
            json={"user_id": "user-1", "conversation_id": "conv-1", "arguments": {}},
        )
        consolidated = await http.post(
            "/memory/consolidate", json={"user_id": "user-1", "conversation_id": "conv-1"}
        )
        state = await http.get("/memory/state/user-1")
    await client.close()

    assert len(tools.json()["tools"]) == 8
    assert saved.json()["saved"] is True
    assert unknown.status_code == 404
    body = consolidated.json()
    assert body["ok"] is True
    assert body["stats"]["used_fallback"] is True
    assert body["degrade_reasons"] == ["consolidation_config_missing"]
    assert [n["text"] for n in state.json()["globalNotes"]] == ["Wants to memorize Psalm 119 this year"]


@pytest.mark.asyncio
async def test_classify_and_retrieve_validation(tmp_path: Path, monkeypatch) -> None:
    client, http = await _app(tmp_path, monkeypatch, "classify.db")
    async with http:
        classified = await http.post(
            "/memory/classify",
            json={"message": "I've been struggling with anxiety at work and can't sleep"},
        )
        bad_direction = await http.post(
            "/memory/retrieve",
            json={"query": "anxiety", "user_id": "user-1", "direction": "sideways"},
        )
        empty = await http.post("/memory/retrieve", json={"query": "anxiety", "user_id": "user-1"})
    await client.close()

    body = classified.json()
    assert classified.status_code == 200
    assert 0.0 <= body["confidence"] <= 1.0
    assert "task_spec" in body
    assert bad_direction.status_code == 422
    assert bad_direction.json()["detail"]["error"] == "invalid_direction"
    assert empty.json()["artifacts"] == []


@pytest.mark.asyncio
async def test_artifact_routes_enforce_ownership(tmp_path: Path, monkeypatch) -> None:
    client, http = await _app(tmp_path, monkeypatch, "artifacts.db")
    async with http:
        created = await http.post(
            "/artifacts",
            json={
                "user_id": "user-1",
                "type": "journal_entry",
                "content": "Grateful for a quiet morning in Psalm 46",
                "scripture_refs": ["Psalm 46:10"],
            },
        )
        artifact_id = created.json()["id"]
        invalid = await http.post(
            "/artifacts", json={"user_id": "user-1", "type": "diary", "content": "x"}
        )
        own = await http.get(f"/artifacts/{artifact_id}", params={"requester_id": "user-1"})
        foreign = await http.get(f"/artifacts/{artifact_id}", params={"requester_id": "user-2"})
        forbidden = await http.patch(
            f"/artifacts/{artifact_id}", json={"requester_id": "user-2", "content": "hijacked"}
        )
        listed = await http.get("/artifacts", params={"user_id": "user-1", "types": ["journal_entry"]})
        deleted = await http.delete(f"/artifacts/{artifact_id}", params={"requester_id": "user-1"})
        after = await http.get(f"/artifacts/{artifact_id}", params={"requester_id": "user-1"})
    await client.close()

    assert created.status_code == 200
    assert created.json()["embedding_status"] in {"pending", "ready"}
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["error"] == "invalid_artifact"
    assert own.json()["content"] == "Grateful for a quiet morning in Psalm 46"
    assert foreign.status_code == 404
    assert forbidden.status_code == 403
    assert listed.json()["total"] == 1
    assert deleted.json() == {"ok": True, "artifact_id": artifact_id}
    assert after.status_code == 404
