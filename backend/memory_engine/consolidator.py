"""
End-of-session consolidation of session notes into global memory notes.

Flow for one (user, conversation):
1. read session notes and global notes; split each into expired, durable
   and TTL notes
2. ask the model to merge the durable notes of both lists, with every
   output note citing the input indices it came from
3. on any provider or validation failure, fall back to a deterministic,
   non-inventive merge (append + dedupe)
4. carry unexpired TTL notes (session first, then global) with their
   ``expiresAtISO``; expired global notes are dropped
5. write the state and delete the consumed session notes in one transaction

Runs inside the conversation lane so it never overlaps note capture.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from db.sqlite_client import SQLiteClient
from runtime_state import runtime_state

from .memory_state import (
    MemoryStateStore,
    bound_notes,
    coerce_keywords,
    is_unexpired,
    normalize_text,
    parse_iso,
    utc_now_iso,
)
from .providers import CompletionProvider, build_completion_provider, model_for
from .safety import log_safety_event, looks_instructional, looks_sensitive
from .vocabularies import MAX_GLOBAL_NOTES, MAX_NOTE_CHARS, MEMORY_STATE_SCHEMA_VERSION

logger = logging.getLogger(__name__)

MAX_MODEL_NOTES = 60
TTL_MERGE_WINDOW = 240


def _note_is_storable(text: str) -> bool:
    if not text or len(text) > MAX_NOTE_CHARS:
        return False
    return not (looks_sensitive(text) or looks_instructional(text))


def _valid_indices(value: Any, upper: int) -> List[int]:
    if not isinstance(value, list):
        return []
    return [
        item
        for item in value
        if isinstance(item, int) and not isinstance(item, bool) and 0 <= item < upper
    ]


def build_consolidation_prompt(
    global_notes: List[Dict[str, Any]], session_notes: List[Dict[str, Any]], now_iso: str
) -> str:
    def _view(notes: List[Dict[str, Any]]) -> str:
        return json.dumps(
            [
                {"text": n["text"], "keywords": n.get("keywords", []), "createdAtISO": n.get("createdAtISO")}
                for n in notes
            ],
            indent=2,
            ensure_ascii=False,
        )

    example = {
        "globalNotes": [
            {"text": "string", "keywords": ["string"], "sources": {"globalIdx": [0], "sessionIdx": [0]}}
        ]
    }
    return "\n".join(
        [
            "You are consolidating user memory notes for a Bible study assistant.",
            "",
            "Rules (hard):",
            "- Output valid JSON only.",
            "- Do NOT invent facts. Every output note must be grounded in at least one input note.",
            "- For each output note include sources.globalIdx and/or sources.sessionIdx.",
            "- Prefer durable preferences and facts useful for future Bible study conversations.",
            "- Discard temporary or one-off notes.",
            "- Deduplicate near-duplicates; session notes override global notes on conflict.",
            "- Keep each note to 1-2 factual sentences. No instructions or policies.",
            "",
            f"Now: {now_iso}",
            "",
            "Input global notes (durable):",
            _view(global_notes),
            "",
            "Input session notes (candidates from this chat session):",
            _view(session_notes),
            "",
            "Output format:",
            json.dumps(example, indent=2),
        ]
    )


def validate_consolidation_output(
    payload: Any, global_count: int, session_count: int
) -> Optional[List[Dict[str, Any]]]:
    """Keep grounded, storable, unique notes; None when the payload shape is wrong."""
    if not isinstance(payload, dict) or not isinstance(payload.get("globalNotes"), list):
        return None

    now_iso = utc_now_iso()
    out: List[Dict[str, Any]] = []
    seen = set()
    for item in payload["globalNotes"][:MAX_MODEL_NOTES]:
        if not isinstance(item, dict):
            continue
        text = item.get("text").strip() if isinstance(item.get("text"), str) else ""
        if not _note_is_storable(text):
            continue
        sources = item.get("sources") if isinstance(item.get("sources"), dict) else {}
        global_idx = _valid_indices(sources.get("globalIdx"), global_count)
        session_idx = _valid_indices(sources.get("sessionIdx"), session_count)
        if not global_idx and not session_idx:
            continue
        key = normalize_text(text)
        if key in seen:
            continue
        seen.add(key)
        out.append(
            {
                "text": text,
                "keywords": coerce_keywords(item.get("keywords")),
                "createdAtISO": now_iso,
            }
        )
    return out


def fallback_consolidation(
    global_notes: List[Dict[str, Any]], session_notes: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Append session notes to global notes and dedupe by normalized text."""
    now_iso = utc_now_iso()
    merged: Dict[str, Dict[str, Any]] = {}
    for note in (global_notes + session_notes)[-MAX_GLOBAL_NOTES:]:
        text = (note.get("text") or "").strip()
        if not _note_is_storable(text):
            continue
        key = normalize_text(text)
        if key in merged:
            continue
        created = note.get("createdAtISO")
        merged[key] = {
            "text": text,
            "keywords": coerce_keywords(note.get("keywords")),
            "createdAtISO": created if parse_iso(created) else now_iso,
        }
    return list(merged.values())[:MAX_GLOBAL_NOTES]


def merge_ttl_notes(
    notes: List[Dict[str, Any]], ttl_notes: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Add unexpired TTL notes, keeping their expiresAtISO; first occurrence wins."""
    merged: Dict[str, Dict[str, Any]] = {}
    for note in (notes + ttl_notes)[-TTL_MERGE_WINDOW:]:
        text = (note.get("text") or "").strip()
        if not _note_is_storable(text):
            continue
        key = normalize_text(text)
        if key in merged:
            continue
        kept = {
            "text": text,
            "keywords": coerce_keywords(note.get("keywords")),
            "createdAtISO": note.get("createdAtISO") or utc_now_iso(),
        }
        if note.get("expiresAtISO"):
            kept["expiresAtISO"] = note["expiresAtISO"]
        merged[key] = kept
    return list(merged.values())[:MAX_GLOBAL_NOTES]


def _session_row_to_note(row: Dict[str, Any]) -> Dict[str, Any]:
    note: Dict[str, Any] = {
        "text": (row.get("text") or "").strip(),
        "keywords": coerce_keywords(row.get("keywords")),
        "createdAtISO": row.get("created_at") or utc_now_iso(),
    }
    if row.get("expires_at"):
        note["expiresAtISO"] = row["expires_at"]
    return note


class SessionMemoryConsolidator:
    def __init__(
        self,
        client: SQLiteClient,
        provider: Optional[CompletionProvider] = None,
        model: Optional[str] = None,
        lanes: Any = None,
    ):
        self.client = client
        self.state_store = MemoryStateStore(client)
        self.provider = provider or build_completion_provider()
        self.model = model or model_for("MEMORY_CONSOLIDATION_MODEL", "gpt-4o-mini")
        self.lanes = lanes or runtime_state.conversation_lanes

    async def consolidate(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        """
        Consolidate one conversation's session notes.

        Returns ``{"ok", "stats", "global_notes_after", "degrade_reasons"}``;
        storage failures produce ``ok = False`` and leave session notes in place.
        """
        try:
            return await self.lanes.run(
                user_id=user_id,
                conversation_id=conversation_id,
                operation="consolidate",
                task=lambda: self._consolidate_locked(user_id, conversation_id),
            )
        except Exception as exc:
            logger.warning("consolidation failed for %s/%s: %s", user_id, conversation_id, exc)
            return {
                "ok": False,
                "error": str(exc),
                "stats": None,
                "global_notes_after": [],
                "degrade_reasons": ["consolidation_failed"],
            }

    async def _consolidate_locked(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        rows = await self.client.list_session_notes(user_id, conversation_id, limit=MAX_GLOBAL_NOTES)
        consumed_ids = [row["id"] for row in rows]

        session_notes = [n for n in (_session_row_to_note(row) for row in rows) if n["text"]]
        unexpired = [n for n in session_notes if is_unexpired(n, now)]
        durable = [n for n in unexpired if not n.get("expiresAtISO")]
        ttl_notes = [n for n in unexpired if n.get("expiresAtISO")]

        state = await self.state_store.get_state(user_id)
        global_in = state["globalNotes"]
        global_live = [n for n in global_in if is_unexpired(n, now)]
        global_durable = [n for n in global_live if not n.get("expiresAtISO")]
        global_ttl = [n for n in global_live if n.get("expiresAtISO")]

        degrade_reasons: List[str] = []
        used_fallback = False
        next_notes: Optional[List[Dict[str, Any]]] = None

        result = await self.provider.complete_json(
            model=self.model,
            messages=[
                {"role": "system", "content": "Return JSON only. Follow the output format exactly."},
                {
                    "role": "user",
                    "content": build_consolidation_prompt(global_durable, durable, utc_now_iso()),
                },
            ],
            max_tokens=800,
            temperature=0.2,
        )
        if result.ok:
            next_notes = validate_consolidation_output(
                result.value, len(global_durable), len(durable)
            )
            if next_notes is None:
                degrade_reasons.append("consolidation_invalid_payload")
        else:
            degrade_reasons.append(f"consolidation_{result.error_kind}")

        if next_notes is None:
            used_fallback = True
            next_notes = fallback_consolidation(global_durable, durable)

        if ttl_notes or global_ttl:
            next_notes = merge_ttl_notes(next_notes, ttl_notes + global_ttl)

        dropped = [n for n in session_notes if n["text"] and not _note_is_storable(n["text"])]
        for note in dropped:
            log_safety_event("blocked", f"session_note:{conversation_id}", "unsafe_note_text")

        stored = bound_notes(next_notes)
        deleted = await self.client.commit_consolidation(
            user_id=user_id,
            schema_version=MEMORY_STATE_SCHEMA_VERSION,
            notes=stored,
            consumed_note_ids=consumed_ids,
        )
        return {
            "ok": True,
            "stats": {
                "session_notes_in": len(session_notes),
                "session_notes_in_unexpired": len(unexpired),
                "global_notes_in": len(global_in),
                "global_notes_expired": len(global_in) - len(global_live),
                "global_notes_out": len(stored),
                "session_notes_deleted": deleted,
                "used_fallback": used_fallback,
            },
            "global_notes_after": stored,
            "degrade_reasons": degrade_reasons,
        }
