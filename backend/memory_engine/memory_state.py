"""
Per-user memory state: ``{schemaVersion, globalNotes: MemoryNote[]}``.

MemoryNote = ``{text, keywords[], createdAtISO, expiresAtISO?}``.
Stored payloads are coerced on read and bounded on write.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from db.sqlite_client import SQLiteClient

from .vocabularies import (
    MAX_GLOBAL_NOTES,
    MAX_KEYWORD_CHARS,
    MAX_NOTE_CHARS,
    MAX_NOTE_KEYWORDS,
    MEMORY_STATE_SCHEMA_VERSION,
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def normalize_keyword(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    raw = value.strip().lower()
    if not raw:
        return None
    snake = _NON_ALNUM.sub("_", raw).strip("_")
    if not snake:
        return None
    return snake[:MAX_KEYWORD_CHARS]


def coerce_keywords(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for item in value:
        keyword = normalize_keyword(item)
        if not keyword or keyword in out:
            continue
        out.append(keyword)
        if len(out) >= MAX_NOTE_KEYWORDS:
            break
    return out


def coerce_note(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    text = value.get("text").strip() if isinstance(value.get("text"), str) else ""
    if not text:
        return None
    created = value.get("createdAtISO")
    note: Dict[str, Any] = {
        "text": text,
        "keywords": coerce_keywords(value.get("keywords")),
        "createdAtISO": created if isinstance(created, str) and created else utc_now_iso(),
    }
    expires = value.get("expiresAtISO")
    if isinstance(expires, str) and expires:
        note["expiresAtISO"] = expires
    return note


def is_unexpired(note: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    expires = parse_iso(note.get("expiresAtISO"))
    if expires is None:
        return True
    return expires > (now or datetime.now(timezone.utc))


def dedupe_notes_keep_latest(notes: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Collapse notes with equal normalized text, keeping the newest createdAtISO."""
    by_key: Dict[str, Dict[str, Any]] = {}
    for note in notes:
        key = normalize_text(note["text"])
        existing = by_key.get(key)
        if existing is None:
            by_key[key] = note
            continue
        existing_ts = parse_iso(existing.get("createdAtISO"))
        next_ts = parse_iso(note.get("createdAtISO"))
        if next_ts is not None and (existing_ts is None or next_ts > existing_ts):
            by_key[key] = note
    return list(by_key.values())


def bound_notes(notes: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Normalize a note list for storage: drop empty or over-long text, drop
    duplicates (first wins), coerce keywords and cap the list length.
    """
    now = utc_now_iso()
    out: List[Dict[str, Any]] = []
    seen = set()
    for note in notes:
        text = note.get("text").strip() if isinstance(note.get("text"), str) else ""
        if not text or len(text) > MAX_NOTE_CHARS:
            continue
        key = normalize_text(text)
        if key in seen:
            continue
        seen.add(key)
        created = note.get("createdAtISO")
        bounded: Dict[str, Any] = {
            "text": text,
            "keywords": coerce_keywords(note.get("keywords")),
            "createdAtISO": created if isinstance(created, str) and created else now,
        }
        expires = note.get("expiresAtISO")
        if isinstance(expires, str) and expires:
            bounded["expiresAtISO"] = expires
        out.append(bounded)
        if len(out) >= MAX_GLOBAL_NOTES:
            break
    return out


class MemoryStateStore:
    def __init__(self, client: SQLiteClient):
        self.client = client

    async def get_state(self, user_id: str) -> Dict[str, Any]:
        row = await self.client.get_memory_state(user_id)
        raw_notes = row.get("global_notes") if row else None
        if not isinstance(raw_notes, list):
            raw_notes = []
        notes = [n for n in (coerce_note(item) for item in raw_notes) if n]
        return {
            "schemaVersion": MEMORY_STATE_SCHEMA_VERSION,
            "globalNotes": dedupe_notes_keep_latest(notes)[:MAX_GLOBAL_NOTES],
        }

    async def upsert_state(self, user_id: str, global_notes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        notes = bound_notes(global_notes)
        await self.client.put_memory_state(user_id, MEMORY_STATE_SCHEMA_VERSION, notes)
        return notes
