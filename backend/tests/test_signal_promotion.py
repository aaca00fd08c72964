import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import update

from db.sqlite_client import SQLiteClient, UserSignal
from memory_engine.candidate_extractor import MemoryCandidate
from memory_engine.signal_evaluator import SignalEvaluator


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _candidate(value: str = "work_anxiety", memory_type: str = "struggle_theme") -> MemoryCandidate:
    return MemoryCandidate(type=memory_type, value=value, confidence=0.85, evidence="")


@pytest.mark.asyncio
async def test_second_conversation_promotes_signal_to_light_memory(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "promote.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    first = await evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate()])
    assert first["signals_created"] == 1
    assert first["details"][0] == {
        "candidate_type": "struggle_theme",
        "candidate_value": "work_anxiety",
        "action": "created_signal",
        "count": 1,
    }

    second = await evaluator.evaluate_and_promote("user-1", "conv-2", [_candidate()])
    assert second["memories_promoted"] == 1
    assert second["details"][0]["count"] == 2

    state = await evaluator.list_user_state("user-1")
    await client.close()

    assert state["signals"] == []
    assert len(state["memories"]) == 1
    memory = state["memories"][0]
    assert memory["memory_type"] == "struggle_theme"
    assert memory["value"] == {"theme": "work_anxiety"}
    assert memory["occurrences"] == 2
    assert memory["strength"] == "light"
    assert memory["strength_score"] == 0.4
    assert memory["source"] == "signal_promotion"
    assert memory["is_active"] is True


@pytest.mark.asyncio
async def test_same_conversation_counts_once(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "double-count.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    await evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate()])
    repeat = await evaluator.evaluate_and_promote(
        "user-1", "conv-1", [_candidate(), _candidate()]
    )
    signals = await client.list_signals("user-1")
    memories = await client.list_memories("user-1")
    await client.close()

    assert repeat["skipped_double_counts"] == 2
    assert [item["action"] for item in repeat["details"]] == [
        "skipped_double_count",
        "skipped_double_count",
    ]
    assert len(signals) == 1
    assert signals[0]["count"] == 1
    assert memories == []


@pytest.mark.asyncio
async def test_reinforcement_raises_strength(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "reinforce.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    for index in range(1, 5):
        await evaluator.evaluate_and_promote("user-1", f"conv-{index}", [_candidate("loneliness")])
    memories = await client.list_memories("user-1")
    await client.close()

    assert len(memories) == 1
    assert memories[0]["occurrences"] == 4
    assert memories[0]["strength"] == "moderate"
    assert memories[0]["strength_score"] == 0.7


@pytest.mark.asyncio
async def test_dry_run_reports_without_writing(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "dry-run.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    await evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate()])
    preview = await evaluator.evaluate_and_promote(
        "user-1", "conv-2", [_candidate()], dry_run=True
    )
    same_conv = await evaluator.evaluate_and_promote(
        "user-1", "conv-1", [_candidate()], dry_run=True
    )
    signals = await client.list_signals("user-1")
    memories = await client.list_memories("user-1")
    await client.close()

    assert preview["dry_run"] is True
    assert preview["details"][0]["action"] == "promoted_to_memory"
    assert preview["details"][0]["count"] == 2
    assert same_conv["details"][0]["action"] == "skipped_double_count"
    assert signals[0]["count"] == 1
    assert memories == []


@pytest.mark.asyncio
async def test_expired_signal_restarts_count(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "expired.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    await evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate()])
    stale = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=1)
    async with client.session() as session:
        await session.execute(update(UserSignal).values(expires_at=stale))

    result = await evaluator.evaluate_and_promote("user-1", "conv-2", [_candidate()])
    signals = await client.list_signals("user-1")
    memories = await client.list_memories("user-1")
    await client.close()

    assert result["details"][0]["action"] == "created_signal"
    assert result["details"][0]["count"] == 1
    assert signals[0]["count"] == 1
    assert signals[0]["last_counted_conversation_id"] == "conv-2"
    assert memories == []


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_signals(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "cleanup.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    await evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate("loneliness")])
    await evaluator.evaluate_and_promote("user-2", "conv-9", [_candidate("discipline")])
    stale = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=1)
    async with client.session() as session:
        await session.execute(
            update(UserSignal).where(UserSignal.user_id == "user-1").values(expires_at=stale)
        )

    deleted = await evaluator.cleanup_expired_signals()
    remaining_1 = await client.list_signals("user-1")
    remaining_2 = await client.list_signals("user-2")
    await client.close()

    assert deleted == 1
    assert remaining_1 == []
    assert len(remaining_2) == 1


@pytest.mark.asyncio
async def test_bad_candidate_does_not_block_others(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "bad-candidate.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    result = await evaluator.evaluate_and_promote(
        "user-1",
        "conv-1",
        [_candidate("gentle", memory_type="tone_preference"), _candidate("seeking", "faith_stage")],
    )
    await client.close()

    assert result["details"][0]["action"] == "failed"
    assert "error" in result["details"][0]
    assert result["details"][1]["action"] == "created_signal"
    assert result["signals_created"] == 1


@pytest.mark.asyncio
async def test_deactivated_memory_is_restarted_by_new_sightings(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "deactivate.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    await evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate()])
    await evaluator.evaluate_and_promote("user-1", "conv-2", [_candidate()])
    memory_id = (await client.list_memories("user-1"))[0]["id"]
    assert await client.deactivate_memory("user-1", memory_id) is True
    assert await client.deactivate_memory("user-1", memory_id) is False
    assert await client.deactivate_memory("user-2", memory_id) is False

    after = await evaluator.evaluate_and_promote("user-1", "conv-3", [_candidate()])
    active = await client.list_memories("user-1")
    await client.close()

    assert after["details"][0]["action"] == "created_signal"
    assert active == []


@pytest.mark.asyncio
async def test_concurrent_sightings_promote_exactly_once(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "concurrent.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    first, second = await asyncio.gather(
        evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate("loneliness")]),
        evaluator.evaluate_and_promote("user-1", "conv-2", [_candidate("loneliness")]),
    )
    memories = await client.list_memories("user-1")
    signals = await client.list_signals("user-1")
    await client.close()

    actions = sorted([first["details"][0]["action"], second["details"][0]["action"]])
    assert actions == ["created_signal", "promoted_to_memory"]
    assert len(memories) == 1
    assert memories[0]["occurrences"] == 2
    assert memories[0]["strength"] == "light"
    assert signals == []


@pytest.mark.asyncio
async def test_explicit_memory_skips_the_signal_stage(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "explicit.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    await evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate("loneliness")])
    recorded = await evaluator.record_explicit_memory("user-1", "struggle_theme", "loneliness")
    signals = await client.list_signals("user-1")
    later = await evaluator.evaluate_and_promote("user-1", "conv-2", [_candidate("loneliness")])
    memories = await client.list_memories("user-1")
    bad_value = await evaluator.record_explicit_memory("user-1", "struggle_theme", "money")
    bad_source = await evaluator.record_explicit_memory(
        "user-1", "faith_stage", "seeking", source="import"
    )
    await client.close()

    assert recorded["ok"] is True
    assert recorded["memory"]["source"] == "user_explicit"
    assert recorded["memory"]["value"] == {"theme": "loneliness"}
    assert recorded["memory"]["occurrences"] == 1
    assert signals == []
    assert later["details"][0]["action"] == "reinforced_memory"
    assert [m["occurrences"] for m in memories] == [2]
    assert bad_value["ok"] is False and bad_value["error"] == "invalid_value"
    assert bad_source["ok"] is False and bad_source["error"] == "invalid_source"


@pytest.mark.asyncio
async def test_manual_promotion_carries_signal_count(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "manual.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client, threshold=5)

    for index in range(1, 4):
        await evaluator.evaluate_and_promote("user-1", f"conv-{index}", [_candidate("grief")])
    signal_id = (await client.list_signals("user-1"))[0]["id"]

    promoted = await evaluator.promote_signal(signal_id)
    again = await evaluator.promote_signal(signal_id)
    signals = await client.list_signals("user-1")
    await client.close()

    assert promoted["ok"] is True
    assert promoted["deleted_signal_id"] == signal_id
    memory = promoted["memory"]
    assert memory["memory_type"] == "struggle_theme"
    assert memory["value"] == {"theme": "grief"}
    assert memory["occurrences"] == 3
    assert memory["strength"] == "light"
    assert memory["source"] == "admin_promotion"
    assert again == {"ok": False, "error": "not_found"}
    assert signals == []


@pytest.mark.asyncio
async def test_manual_promotion_rejects_unknown_signal_type(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "unmappable.db"))
    await client.init_db()
    evaluator = SignalEvaluator(client)

    await evaluator.evaluate_and_promote("user-1", "conv-1", [_candidate("grief")])
    signal_id = (await client.list_signals("user-1"))[0]["id"]
    async with client.session() as session:
        await session.execute(
            update(UserSignal).where(UserSignal.id == signal_id).values(signal_type="group_role_signal")
        )

    result = await evaluator.promote_signal(signal_id)
    memories = await client.list_memories("user-1")
    await client.close()

    assert result["ok"] is False
    assert result["error"] == "unmappable_signal_type"
    assert memories == []
