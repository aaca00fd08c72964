import math
from pathlib import Path
from typing import Any, Dict, List

import pytest

from artifacts.edges import EdgeService
from artifacts.embedding import (
    EmbeddingService,
    build_embedding_text,
    cosine_similarity,
    deserialize_vector,
    serialize_vector,
)
from artifacts.service import ArtifactService, can_access
from artifacts.types import ArtifactFilters, format_verse_reference, verse_reference
from db.sqlite_client import SQLiteClient
from memory_engine.providers import EmbeddingProvider, ProviderResult, hash_embedding


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _InlineEmbeddingWorker:
    """Runs the refresh immediately instead of scheduling it."""

    def __init__(self) -> None:
        self.submitted: List[Dict[str, Any]] = []

    async def submit(self, artifact_id: str, *, reason: str = "write", service: Any = None) -> Dict[str, Any]:
        self.submitted.append({"artifact_id": artifact_id, "reason": reason})
        result = await service.embed_artifact(artifact_id)
        if not result.ok:
            await service.client.set_embedding_status(artifact_id, "failed", result.detail)
        return {"queued": False, "detached": True, "artifact_id": artifact_id}


class _DroppingEmbeddingWorker:
    async def submit(self, artifact_id: str, **_: Any) -> Dict[str, Any]:
        return {"queued": False, "dropped": True, "artifact_id": artifact_id, "reason": "queue_full"}


class _FailingEmbeddingProvider:
    model = "broken-v1"

    async def embed(self, text: str) -> ProviderResult:
        return ProviderResult.failure("http_status", "503: unavailable")


async def _services(tmp_path: Path, name: str, worker: Any = None):
    client = SQLiteClient(_sqlite_url(tmp_path / name))
    await client.init_db()
    embeddings = EmbeddingService(client, EmbeddingProvider(backend="hash", model="", dim=64))
    worker = worker or _InlineEmbeddingWorker()
    return client, embeddings, ArtifactService(client, embeddings, embedding_worker=worker), worker


def test_vector_wire_format_is_little_endian_float32() -> None:
    data = serialize_vector([1.0, -2.5, 0.25])
    assert len(data) == 12
    assert data[:4] == b"\x00\x00\x80\x3f"
    assert deserialize_vector(data) == [1.0, -2.5, 0.25]


def test_cosine_similarity_edge_cases() -> None:
    vector = hash_embedding("grace upon grace", 64)
    assert math.isclose(cosine_similarity(vector, vector), 1.0, rel_tol=1e-9)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0
    assert math.isclose(cosine_similarity([1.0, 0.0], [-1.0, 0.0]), -1.0)


def test_hash_embedding_is_deterministic_and_normalized() -> None:
    first = hash_embedding("Romans 8 no condemnation", 32)
    second = hash_embedding("romans 8   no condemnation", 32)
    assert first == second
    assert math.isclose(math.sqrt(sum(v * v for v in first)), 1.0, rel_tol=1e-9)


def test_embedding_text_joins_title_content_and_refs() -> None:
    text = build_embedding_text(
        {"title": "Freedom", "content": "No condemnation", "scripture_refs": ["Romans 8:1"]}
    )
    assert text == "Freedom\nNo condemnation\nScripture: Romans 8:1"


def test_verse_reference_formatting() -> None:
    metadata = {"reference": {"book": "John", "chapter": "3", "verseStart": 16, "verseEnd": 17}}
    assert format_verse_reference(verse_reference(metadata)) == "John 3:16-17"
    single = {"reference": {"book": "Psalms", "chapter": 23, "verseStart": 1}}
    assert format_verse_reference(verse_reference(single)) == "Psalms 23:1"
    assert verse_reference({"reference": {"book": "", "chapter": 1, "verseStart": 1}}) is None
    assert format_verse_reference(None) == "Unknown reference"


def test_access_rules_by_scope() -> None:
    private = {"user_id": "owner", "scope": "private"}
    group = {"user_id": "owner", "scope": "group", "group_id": "g1"}
    shared = {"user_id": "owner", "scope": "global"}

    assert can_access(private, "owner") is True
    assert can_access(private, "other") is False
    assert can_access(group, "other", ["g1"]) is True
    assert can_access(group, "other", ["g2"]) is False
    assert can_access(shared, "other") is True


@pytest.mark.asyncio
async def test_create_embeds_prose_but_not_highlights(tmp_path: Path) -> None:
    client, embeddings, service, worker = await _services(tmp_path, "create.db")

    note = await service.create_artifact(
        user_id="user-1",
        type="verse_note",
        scope="private",
        content="Love is patient",
        scripture_refs=["1 Corinthians 13:4"],
    )
    highlight = await service.create_artifact(
        user_id="user-1",
        type="verse_highlight",
        scope="private",
        content="",
        metadata={"reference": {"book": "1CO", "chapter": 13, "verseStart": 4}, "color": "blue"},
    )

    stored_note = await client.get_artifact(note["id"])
    stored_highlight = await client.get_artifact(highlight["id"])
    has_note_vector = await embeddings.has_embedding(note["id"])
    stats = await embeddings.get_embedding_stats("user-1")
    await client.close()

    assert note["embedding_status"] == "pending"
    assert stored_note["embedding_status"] == "ready"
    assert has_note_vector is True
    assert stored_highlight["embedding_status"] == "none"
    assert [item["artifact_id"] for item in worker.submitted] == [note["id"]]
    assert stats["total"] == 2
    assert stats["embedded"] == 1
    assert stats["model"] == "hash-v1"


@pytest.mark.asyncio
async def test_create_rejects_invalid_input(tmp_path: Path) -> None:
    client, _embeddings, service, _worker = await _services(tmp_path, "invalid.db")

    with pytest.raises(ValueError):
        await service.create_artifact(user_id="user-1", type="sermon", scope="private", content="x")
    with pytest.raises(ValueError):
        await service.create_artifact(user_id="user-1", type="journal_entry", scope="public", content="x")
    with pytest.raises(ValueError):
        await service.create_artifact(user_id="", type="journal_entry", scope="private", content="x")
    with pytest.raises(ValueError):
        await service.create_artifact(user_id="user-1", type="prayer_request", scope="group", content="x")
    total = await client.count_artifacts()
    await client.close()
    assert total == 0


@pytest.mark.asyncio
async def test_dropped_schedule_marks_embedding_failed(tmp_path: Path) -> None:
    client, _embeddings, service, _worker = await _services(
        tmp_path, "dropped.db", worker=_DroppingEmbeddingWorker()
    )
    artifact = await service.create_artifact(
        user_id="user-1", type="journal_entry", scope="private", content="Grateful today"
    )
    stored = await client.get_artifact(artifact["id"])
    await client.close()

    assert stored["embedding_status"] == "failed"
    assert stored["embedding_error"] == "queue_full"


@pytest.mark.asyncio
async def test_provider_failure_is_reported_not_raised(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "provider-failure.db"))
    await client.init_db()
    embeddings = EmbeddingService(client, _FailingEmbeddingProvider())
    service = ArtifactService(client, embeddings, embedding_worker=_InlineEmbeddingWorker())

    artifact = await service.create_artifact(
        user_id="user-1", type="testimony", scope="private", content="God provided"
    )
    stored = await client.get_artifact(artifact["id"])
    search = await embeddings.search_similar("provided", ArtifactFilters(user_id="user-1"))
    await client.close()

    assert stored["embedding_status"] == "failed"
    assert search["results"] == []
    assert search["degrade_reasons"] == ["query_embedding_http_status"]


@pytest.mark.asyncio
async def test_update_permissions_and_reembed(tmp_path: Path) -> None:
    client, _embeddings, service, worker = await _services(tmp_path, "update.db")
    artifact = await service.create_artifact(
        user_id="user-1", type="journal_entry", scope="private", content="First draft"
    )

    with pytest.raises(PermissionError):
        await service.update_artifact(artifact["id"], "user-2", {"content": "hijack"})

    tagged = await service.update_artifact(artifact["id"], "user-1", {"tags": ["hope"]})
    rewritten = await service.update_artifact(artifact["id"], "user-1", {"content": "Second draft"})
    missing = await service.update_artifact("does-not-exist", "user-1", {"content": "x"})
    await client.close()

    assert tagged["tags"] == ["hope"]
    assert rewritten["content"] == "Second draft"
    assert [item["reason"] for item in worker.submitted] == ["create", "update"]
    assert missing is None


@pytest.mark.asyncio
async def test_soft_delete_hides_artifact_and_drops_vectors(tmp_path: Path) -> None:
    client, embeddings, service, _worker = await _services(tmp_path, "delete.db")
    artifact = await service.create_artifact(
        user_id="user-1", type="prayer_request", scope="private", content="Pray for my sister"
    )

    with pytest.raises(PermissionError):
        await service.delete_artifact(artifact["id"], "user-2")
    with pytest.raises(ValueError):
        await service.delete_artifact("missing-id", "user-1")

    assert await service.delete_artifact(artifact["id"], "user-1") is True
    visible = await service.get_artifact(artifact["id"], "user-1")
    raw = await client.get_artifact(artifact["id"])
    has_vector = await embeddings.has_embedding(artifact["id"])
    listed = await service.list_artifacts(ArtifactFilters(user_id="user-1"))
    await client.close()

    assert visible is None
    assert raw["status"] == "deleted"
    assert raw["deleted_at"] is not None
    assert has_vector is False
    assert listed == []


@pytest.mark.asyncio
async def test_listing_filters_and_session_view(tmp_path: Path) -> None:
    client, _embeddings, service, _worker = await _services(tmp_path, "listing.db")
    await service.create_artifact(
        user_id="user-1",
        type="journal_entry",
        scope="private",
        content="Morning pages",
        session_id="s-1",
        tags=["morning"],
    )
    await service.create_artifact(
        user_id="user-1",
        type="prayer_request",
        scope="private",
        content="Healing for Mom",
        session_id="s-1",
        scripture_refs=["James 5:14"],
    )
    await service.create_artifact(
        user_id="user-2", type="testimony", scope="global", content="Answered prayer", session_id="s-1"
    )
    await service.create_artifact(
        user_id="user-2", type="journal_entry", scope="private", content="Not yours", session_id="s-1"
    )

    prayers = await service.list_artifacts(ArtifactFilters(user_id="user-1", types=["prayer_request"]))
    by_ref = await service.list_artifacts(ArtifactFilters(scripture_ref="James 5:14"))
    by_tag = await service.list_artifacts(ArtifactFilters(tag="morning"))
    total = await service.count_artifacts(ArtifactFilters(user_id="user-1"))
    session_view = await service.get_artifacts_by_session("s-1", "user-1")
    await client.close()

    assert [a["content"] for a in prayers] == ["Healing for Mom"]
    assert [a["content"] for a in by_ref] == ["Healing for Mom"]
    assert [a["content"] for a in by_tag] == ["Morning pages"]
    assert total == 2
    assert [a["content"] for a in session_view] == [
        "Morning pages",
        "Healing for Mom",
        "Answered prayer",
    ]


@pytest.mark.asyncio
async def test_edges_and_thread_walk(tmp_path: Path) -> None:
    client, _embeddings, service, _worker = await _services(tmp_path, "edges.db")
    request = await service.create_artifact(
        user_id="user-1", type="prayer_request", scope="private", content="New job"
    )
    update = await service.create_artifact(
        user_id="user-1", type="prayer_update", scope="private", content="Interview went well"
    )
    testimony = await service.create_artifact(
        user_id="user-1", type="testimony", scope="private", content="Got the job"
    )
    edges = EdgeService(client)
    await edges.create_edge(update["id"], request["id"], "follows_up")
    await edges.create_edge(testimony["id"], update["id"], "follows_up")

    with pytest.raises(ValueError):
        await edges.create_edge(update["id"], request["id"], "likes")
    with pytest.raises(ValueError):
        await edges.create_edge(update["id"], "missing-id", "references")

    thread = await edges.get_thread(request["id"])
    chain = await edges.get_follow_up_chain(testimony["id"])
    await service.delete_artifact(update["id"], "user-1")
    thread_after_delete = await edges.get_thread(request["id"])
    await client.close()

    assert {a["id"] for a in thread["artifacts"]} == {request["id"], update["id"], testimony["id"]}
    assert len(thread["edges"]) == 2
    assert [a["id"] for a in chain] == [testimony["id"], update["id"], request["id"]]
    assert {a["id"] for a in thread_after_delete["artifacts"]} == {request["id"], testimony["id"]}
