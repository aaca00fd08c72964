import json
from pathlib import Path

import pytest

import mcp_server
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _BrokenMemoryClient:
    async def list_memories(self, *_args, **_kwargs):
        raise RuntimeError("no such table: user_memories")


@pytest.mark.asyncio
async def test_save_memory_candidate_rejection_returns_json(tmp_path: Path, monkeypatch) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "mcp-save.db"))
    await client.init_db()
    monkeypatch.setattr(mcp_server, "get_sqlite_client", lambda: client)
    monkeypatch.setattr(mcp_server, "get_embedding_service", lambda: None)

    rejected = json.loads(
        await mcp_server.save_memory_candidate(
            user_id="user-1",
            conversation_id="conv-1",
            text="My bank account number is 1234",
            category="bio",
            confidence="explicit",
            source="user_message",
        )
    )
    saved = json.loads(
        await mcp_server.save_temporary_memory(
            user_id="user-1",
            conversation_id="conv-1",
            text="Hosting a prayer night on Friday",
            category="event",
            ttlHours=0.25,
            confidence="strong",
            source="user_message",
        )
    )
    await client.close()

    assert rejected == {"saved": False, "reason": "sensitive"}
    assert saved["saved"] is True
    assert "expiresAtISO" in saved["note"]


@pytest.mark.asyncio
async def test_read_tool_without_embeddings_returns_empty_json(tmp_path: Path, monkeypatch) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "mcp-read.db"))
    await client.init_db()
    monkeypatch.setattr(mcp_server, "get_sqlite_client", lambda: client)
    monkeypatch.setattr(mcp_server, "get_embedding_service", lambda: None)

    notes = json.loads(await mcp_server.search_verse_notes(user_id="user-1", query="mercy"))
    sessions = json.loads(await mcp_server.get_bible_reading_sessions(user_id="user-1", limit=-4))
    await client.close()

    assert notes == {"notes": []}
    assert sessions == {"sessions": []}


@pytest.mark.asyncio
async def test_memory_context_storage_error_returns_json(monkeypatch) -> None:
    monkeypatch.setattr(mcp_server, "get_sqlite_client", lambda: _BrokenMemoryClient())

    payload = json.loads(await mcp_server.get_memory_context("user-1"))

    assert payload["ok"] is False
    assert "no such table" in payload["error"]


@pytest.mark.asyncio
async def test_classify_message_returns_task_spec(monkeypatch) -> None:
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    payload = json.loads(
        await mcp_server.classify_message(
            "What does grace mean in this verse?", is_first_message=True, verse_reference="Ephesians 2:8"
        )
    )

    assert payload["task_spec"]["needs_clarifying_question"] is False
    assert isinstance(payload["task_spec"]["retrieval_knobs"], dict)
    assert 0.0 <= payload["confidence"] <= 1.0
