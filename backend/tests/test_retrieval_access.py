from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict

import pytest

from artifacts.embedding import EmbeddingService
from artifacts.retrieval import (
    RetrievalService,
    filter_by_access,
    format_context_for_prompt,
    format_snippet,
)
from artifacts.service import ArtifactService
from db.sqlite_client import SQLiteClient
from memory_engine.providers import EmbeddingProvider


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _InlineEmbeddingWorker:
    async def submit(self, artifact_id: str, *, reason: str = "write", service: Any = None) -> Dict[str, Any]:
        await service.embed_artifact(artifact_id)
        return {"queued": False, "detached": True, "artifact_id": artifact_id}


async def _seeded(tmp_path: Path, name: str):
    client = SQLiteClient(_sqlite_url(tmp_path / name))
    await client.init_db()
    embeddings = EmbeddingService(client, EmbeddingProvider(backend="hash", model="", dim=128))
    service = ArtifactService(client, embeddings, embedding_worker=_InlineEmbeddingWorker())

    now = datetime.now(timezone.utc)
    await service.create_artifact(
        user_id="alice",
        type="journal_entry",
        scope="private",
        content="Anxiety about work deadlines and trusting God",
        created_at=now - timedelta(days=40),
    )
    await service.create_artifact(
        user_id="alice",
        type="prayer_request",
        scope="private",
        content="Peace over my anxiety about work",
        scripture_refs=["Philippians 4:6"],
        created_at=now - timedelta(days=2),
    )
    await service.create_artifact(
        user_id="bob",
        type="journal_entry",
        scope="private",
        content="Anxiety about work is crushing me",
    )
    await service.create_artifact(
        user_id="bob",
        type="prayer_request",
        scope="group",
        group_id="g-men",
        content="Prayer for anxiety about work at the plant",
    )
    await service.create_artifact(
        user_id="carol",
        type="testimony",
        scope="global",
        content="How God met my anxiety about work",
    )
    return client, RetrievalService(client, embeddings)


@pytest.mark.asyncio
async def test_private_artifacts_of_others_never_surface(tmp_path: Path) -> None:
    client, retrieval = await _seeded(tmp_path, "private.db")
    result = await retrieval.retrieve_for_context("anxiety about work", "alice", limit=10)
    await client.close()

    owners = {a["user_id"] for a in result["artifacts"]}
    assert owners == {"alice", "carol"}
    assert len(result["artifacts"]) == 3
    assert result["formatted_context"].startswith("PAST CONTEXT:\n")
    assert result["degrade_reasons"] == []


@pytest.mark.asyncio
async def test_group_artifacts_need_membership(tmp_path: Path) -> None:
    client, retrieval = await _seeded(tmp_path, "group.db")
    member = await retrieval.retrieve_for_context(
        "anxiety about work", "alice", group_ids=["g-men"], limit=10
    )
    opted_out = await retrieval.retrieve_for_context(
        "anxiety about work",
        "alice",
        group_ids=["g-men"],
        include_group_artifacts=False,
        limit=10,
    )
    outsider = await retrieval.retrieve_for_context(
        "anxiety about work", "alice", group_ids=["g-women"], limit=10
    )
    await client.close()

    assert any(a["scope"] == "group" for a in member["artifacts"])
    assert not any(a["scope"] == "group" for a in opted_out["artifacts"])
    assert not any(a["scope"] == "group" for a in outsider["artifacts"])
    assert not any(a["user_id"] == "bob" and a["scope"] == "private" for a in member["artifacts"])


@pytest.mark.asyncio
async def test_time_window_and_direction(tmp_path: Path) -> None:
    client, retrieval = await _seeded(tmp_path, "window.db")
    recent = await retrieval.retrieve_for_context(
        "anxiety about work",
        "alice",
        types=["journal_entry", "prayer_request"],
        created_after=datetime.now(timezone.utc) - timedelta(days=7),
        limit=10,
    )
    oldest_first = await retrieval.retrieve_for_context(
        "anxiety about work",
        "alice",
        types=["journal_entry", "prayer_request"],
        direction="oldest",
        limit=10,
    )
    await client.close()

    assert [a["type"] for a in recent["artifacts"]] == ["prayer_request"]
    assert [a["type"] for a in oldest_first["artifacts"]] == ["journal_entry", "prayer_request"]


@pytest.mark.asyncio
async def test_limit_and_recency_helpers(tmp_path: Path) -> None:
    client, retrieval = await _seeded(tmp_path, "helpers.db")
    limited = await retrieval.retrieve_for_context("anxiety about work", "alice", limit=1)
    by_ref = await retrieval.retrieve_by_scripture("Philippians 4:6", "alice")
    recent = await retrieval.retrieve_recent("alice", types=["journal_entry"])
    now = datetime.now(timezone.utc)
    window = await retrieval.retrieve_by_time_range("alice", now - timedelta(days=60), now - timedelta(days=30))
    await client.close()

    assert len(limited["artifacts"]) == 1
    assert len(limited["snippets"]) == 1
    assert [a["type"] for a in by_ref] == ["prayer_request"]
    assert [a["type"] for a in recent] == ["journal_entry"]
    assert [a["type"] for a in window] == ["journal_entry"]


@pytest.mark.asyncio
async def test_search_failure_returns_empty_bundle() -> None:
    class _BrokenEmbeddings:
        async def search_similar(self, *_: Any, **__: Any) -> Dict[str, Any]:
            raise RuntimeError("database is locked")

    retrieval = RetrievalService(client=None, embedding_service=_BrokenEmbeddings())
    result = await retrieval.retrieve_for_context("grace", "alice")
    assert result["artifacts"] == []
    assert result["formatted_context"] == ""
    assert result["degrade_reasons"] == ["retrieval_failed"]


def test_access_filter_drops_foreign_private_and_deleted() -> None:
    results = [
        {"artifact": {"user_id": "bob", "scope": "private", "status": "active"}, "score": 0.9},
        {"artifact": {"user_id": "alice", "scope": "private", "status": "deleted"}, "score": 0.8},
        {"artifact": {"user_id": "bob", "scope": "group", "group_id": "g1", "status": "active"}, "score": 0.7},
        {"artifact": {"user_id": "alice", "scope": "private", "status": "active"}, "score": 0.6},
    ]
    kept = filter_by_access(results, "alice", ["g1"])
    assert [item["score"] for item in kept] == [0.7, 0.6]


def test_snippet_formatting() -> None:
    snippet = format_snippet(
        {
            "type": "journal_entry",
            "content": "x" * 150,
            "created_at": "2025-12-20T08:00:00Z",
            "scripture_refs": ["Romans 8:1-11"],
        }
    )
    assert snippet["date"] == "Dec 20"
    assert snippet["preview"] == "x" * 100 + "..."
    text = format_context_for_prompt([snippet])
    assert text.startswith('PAST CONTEXT:\n[Journal - Dec 20] "')
    assert text.endswith("(Romans 8:1-11)")
    assert format_context_for_prompt([]) == ""
