"""Prompt-ready personalization context: durable memories plus global notes."""

import logging
from typing import Any, Dict, List, Optional

from db.sqlite_client import SQLiteClient

from .cache_keys import memory_context_key
from .memory_state import MemoryStateStore, is_unexpired
from .safety import (
    contains_sensitive_content,
    derive_retrieval_policy,
    filter_safe_memories,
    is_memory_allowed_by_policy,
    log_safety_event,
)
from .vocabularies import (
    MAX_MEMORIES_FOR_CONTEXT,
    MEMORY_CATEGORY_BY_TYPE,
    MIN_STRENGTH_FOR_CONTEXT,
    memory_value_from_json,
)

logger = logging.getLogger(__name__)


def _humanize(value: str) -> str:
    return value.replace("_", " ")


def describe_memory(memory: Dict[str, Any]) -> Optional[str]:
    memory_type = memory.get("memory_type")
    value = memory_value_from_json(memory_type, memory.get("value"))
    if value is None:
        return None
    if value.kind == "struggle_theme":
        return f"Has shared an ongoing struggle with {_humanize(value.raw)}"
    if value.kind == "faith_stage":
        return f"Describes their faith journey as {_humanize(value.raw)}"
    return None


def render_memory_context(memories: List[Dict[str, Any]], notes: List[Dict[str, Any]]) -> str:
    lines: List[str] = []
    if memories:
        lines.append("WHAT YOU KNOW ABOUT THIS USER:")
        lines.extend(f"- {item['insight']} ({item['strength']})" for item in memories)
    if notes:
        if lines:
            lines.append("")
        lines.append("USER NOTES:")
        lines.extend(f"- {note['text']}" for note in notes)
    return "\n".join(lines)


async def build_memory_context(
    client: SQLiteClient, user_id: str, memory_mode: Optional[str] = "standard"
) -> Dict[str, Any]:
    """
    Collect what may be said about a user in the next prompt.

    Memories: active, strength score >= MIN_STRENGTH_FOR_CONTEXT, strongest
    first, allowed by the consent mode, passed through the sensitivity filter.
    Notes: unexpired global notes that pass the same filter.
    """
    policy = derive_retrieval_policy(memory_mode)
    payload: Dict[str, Any] = {
        "memories": [],
        "notes": [],
        "text": "",
        "policy": policy.to_dict(),
        "cache_key": memory_context_key(user_id, memory_mode or "standard"),
    }
    if not policy.enabled:
        return payload

    rows = await client.list_memories(
        user_id, min_strength=MIN_STRENGTH_FOR_CONTEXT, limit=MAX_MEMORIES_FOR_CONTEXT
    )
    memories: List[Dict[str, Any]] = []
    for row in rows:
        category = MEMORY_CATEGORY_BY_TYPE.get(row.get("memory_type"), "study")
        if not is_memory_allowed_by_policy(policy, category):
            continue
        insight = describe_memory(row)
        if not insight:
            continue
        memories.append(
            {
                "id": row["id"],
                "memory_type": row["memory_type"],
                "insight": insight,
                "strength": row["strength"],
                "category": category,
            }
        )
    memories = list(filter_safe_memories(memories))[: policy.max_memories or MAX_MEMORIES_FOR_CONTEXT]

    state = await MemoryStateStore(client).get_state(user_id)
    notes = []
    for note in state["globalNotes"]:
        if not is_unexpired(note):
            continue
        if contains_sensitive_content(note["text"]):
            log_safety_event("blocked", f"global_note:{user_id}", "sensitive_content")
            continue
        notes.append(note)

    payload["memories"] = memories
    payload["notes"] = notes
    payload["text"] = render_memory_context(memories, notes)
    return payload
