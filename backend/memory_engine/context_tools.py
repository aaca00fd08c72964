"""
Context tools offered to the chat orchestrator.

Each tool is ``{name, description, parameters}`` with a JSON schema; the
orchestrator calls ``execute_context_tool_call`` with the raw arguments JSON
and gets back a JSON string. Argument problems never raise: read tools clamp
or ignore bad values, save tools answer ``{"saved": false, "reason": ...}``.

Read tools are served from the artifact store:
- bible_reading_session      -> get_bible_reading_sessions
- verse_note                 -> get_verse_notes / search_verse_notes
- verse_highlight            -> get_verse_highlights
- conversation_session_summary -> get_conversation_session_summaries /
                                  search_conversation_session_summaries

Save tools append session notes, later merged by the consolidator.
"""

import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from artifacts.embedding import EmbeddingService
from artifacts.types import ArtifactFilters, format_verse_reference, verse_reference
from db.sqlite_client import SQLiteClient
from runtime_state import runtime_state

from .memory_state import coerce_keywords, normalize_text, parse_iso
from .safety import log_safety_event, looks_instructional, looks_sensitive
from .vocabularies import MAX_NOTE_CHARS

logger = logging.getLogger(__name__)

NOTE_PREVIEW_CHARS = 280
SUMMARY_PREVIEW_CHARS = 500
MAX_READ_RANGES = 5
DUPLICATE_WINDOW = 50
# Metadata filters (book/chapter/verse) run after the query, so read a wider page.
METADATA_SCAN_LIMIT = 200
MIN_TTL_HOURS = 1
MAX_TTL_HOURS = 720

_SINCE = {"type": "string", "description": "ISO timestamp lower bound (optional)"}
_BOOK_ID = {"type": "string", "description": "Optional book code filter (e.g., JHN)"}
_CHAPTER = {"type": "integer", "description": "Optional chapter filter"}
_VERSE = {
    "type": "integer",
    "description": "Optional verse filter (matches ranges containing this verse)",
}
_MIN_SCORE = {
    "type": "number",
    "description": "Optional similarity threshold (0-1). Lower = broader.",
}
_KEYWORDS = {
    "type": "array",
    "maxItems": 8,
    "description": "Optional retrieval tags (lowercase, snake_case, <= 24 chars).",
    "items": {"type": "string", "maxLength": 24, "pattern": "^[a-z0-9_]{1,24}$"},
}
_SOURCE = {"type": "string", "enum": ["user_message", "user_profile_form", "other"]}


def _limit(description: str) -> Dict[str, Any]:
    return {"type": "integer", "description": description}


def _tool(name: str, description: str, properties: Dict[str, Any], required=None) -> Dict[str, Any]:
    parameters: Dict[str, Any] = {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
    }
    if required:
        parameters["required"] = list(required)
    return {"type": "function", "name": name, "description": description, "parameters": parameters}


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _tool(
        "get_bible_reading_sessions",
        "Get the user's recent Bible reading sessions (what they read and for how long).",
        {
            "sinceISO": _SINCE,
            "limit": _limit("Max items to return (default 10, max 25)"),
            "bookId": _BOOK_ID,
            "chapter": _CHAPTER,
        },
    ),
    _tool(
        "get_verse_notes",
        "Get the user's verse notes for a passage/verse and timeframe.",
        {
            "sinceISO": _SINCE,
            "limit": _limit("Max items to return (default 10, max 25)"),
            "bookId": _BOOK_ID,
            "chapter": _CHAPTER,
            "verse": _VERSE,
        },
    ),
    _tool(
        "search_verse_notes",
        "Search the user's verse notes by topic (optionally scoped to a passage).",
        {
            "query": {"type": "string", "description": "What the note is about."},
            "sinceISO": _SINCE,
            "limit": _limit("Max items to return (default 6, max 15)"),
            "minScore": _MIN_SCORE,
            "book": {"type": "string", "description": "Optional book name scope (e.g., 'John')."},
            "chapter": _CHAPTER,
            "verse": _VERSE,
        },
        required=["query"],
    ),
    _tool(
        "get_verse_highlights",
        "Get the user's verse highlights for a passage/verse and timeframe.",
        {
            "sinceISO": _SINCE,
            "limit": _limit("Max items to return (default 10, max 25)"),
            "bookId": _BOOK_ID,
            "chapter": _CHAPTER,
            "verse": _VERSE,
        },
    ),
    _tool(
        "get_conversation_session_summaries",
        "Get summaries of prior conversations for continuity.",
        {
            "sinceISO": _SINCE,
            "limit": _limit("Max items to return (default 6, max 15)"),
        },
    ),
    _tool(
        "search_conversation_session_summaries",
        "Search prior conversation session summaries by topic.",
        {
            "query": {"type": "string", "description": "What the prior conversation was about."},
            "sinceISO": _SINCE,
            "limit": _limit("Max items to return (default 5, max 10)"),
            "minScore": _MIN_SCORE,
        },
        required=["query"],
    ),
    _tool(
        "save_memory_candidate",
        "Capture a candidate LONG-TERM memory (stable preference, routine, goal, "
        "ongoing struggle the user shared, faith journey context) for later "
        "consolidation. Do NOT store secrets, credentials, contact or financial "
        "details, diagnoses or medications.",
        {
            "text": {
                "type": "string",
                "description": "1-2 factual sentences in user-centric wording. No speculation.",
            },
            "category": {
                "type": "string",
                "enum": ["preference", "routine", "goal", "bio", "struggle", "other"],
            },
            "confidence": {
                "type": "string",
                "enum": ["explicit", "strong", "weak"],
                "description": "Only call this tool when confidence is 'explicit'.",
            },
            "source": _SOURCE,
            "keywords": _KEYWORDS,
        },
        required=["text", "category", "confidence", "source"],
    ),
    _tool(
        "save_temporary_memory",
        "Save a TEMPORARY note that expires after a TTL: travel, events, visits, "
        "temporary schedule changes. Do NOT store secrets or sensitive personal data.",
        {
            "text": {"type": "string", "description": "1-2 factual sentences."},
            "category": {
                "type": "string",
                "enum": ["travel", "event", "constraint", "plan", "preference", "other"],
            },
            "ttlHours": {
                "type": "number",
                "description": "How long to keep this note (e.g., 72, 168).",
                "minimum": MIN_TTL_HOURS,
                "maximum": MAX_TTL_HOURS,
            },
            "confidence": {
                "type": "string",
                "enum": ["explicit", "strong", "weak"],
                "description": "Allow 'explicit' or 'strong' for temporary notes.",
            },
            "source": _SOURCE,
            "keywords": _KEYWORDS,
        },
        required=["text", "category", "ttlHours", "confidence", "source"],
    ),
]

TOOL_NAMES = tuple(tool["name"] for tool in TOOL_DEFINITIONS)


# =============================================================================
# Argument coercion
# =============================================================================


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _limit_arg(params: Dict[str, Any], default: int, maximum: int) -> int:
    number = _finite_number(params.get("limit", default))
    if not number:
        number = default
    return int(_clamp(number, 1, maximum))


def _int_arg(params: Dict[str, Any], key: str) -> Optional[int]:
    number = _finite_number(params.get(key))
    if not number:
        return None
    return int(number)


def _str_arg(params: Dict[str, Any], key: str) -> str:
    value = params.get(key)
    return value.strip() if isinstance(value, str) else ""


def _since_arg(params: Dict[str, Any]) -> Optional[datetime]:
    return parse_iso(params.get("sinceISO"))


def _min_score_arg(params: Dict[str, Any]) -> Optional[float]:
    number = _finite_number(params.get("minScore"))
    return None if number is None else _clamp(number, 0.0, 1.0)


def truncate(text: str, max_len: int) -> str:
    text = text or ""
    if len(text) <= max_len:
        return text
    return text[: max(0, max_len - 1)] + "…"


def _parse_arguments(arguments_json: Any) -> Dict[str, Any]:
    if isinstance(arguments_json, dict):
        return arguments_json
    if not isinstance(arguments_json, str) or not arguments_json.strip():
        return {}
    try:
        parsed = json.loads(arguments_json)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _iso_z(value: Optional[str]) -> Optional[str]:
    parsed = parse_iso(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _matches_passage(
    metadata: Any,
    *,
    book: str = "",
    chapter: Optional[int] = None,
    verse: Optional[int] = None,
) -> bool:
    if not book and chapter is None and verse is None:
        return True
    reference = verse_reference(metadata)
    if reference is None:
        return False
    if book and reference["book"].lower() != book.lower():
        return False
    if chapter is not None and reference["chapter"] != chapter:
        return False
    if verse is not None and not (reference["verse_start"] <= verse <= reference["verse_end"]):
        return False
    return True


# =============================================================================
# Tool executor
# =============================================================================


class ContextToolExecutor:
    def __init__(
        self,
        client: SQLiteClient,
        embedding_service: Optional[EmbeddingService] = None,
        lanes: Any = None,
    ):
        self.client = client
        self.embedding_service = embedding_service
        self.lanes = lanes or runtime_state.conversation_lanes
        self._handlers: Dict[str, Callable[..., Awaitable[Dict[str, Any]]]] = {
            "get_bible_reading_sessions": self.get_bible_reading_sessions,
            "get_verse_notes": self.get_verse_notes,
            "search_verse_notes": self.search_verse_notes,
            "get_verse_highlights": self.get_verse_highlights,
            "get_conversation_session_summaries": self.get_conversation_session_summaries,
            "search_conversation_session_summaries": self.search_conversation_session_summaries,
            "save_memory_candidate": self.save_memory_candidate,
            "save_temporary_memory": self.save_temporary_memory,
        }

    async def execute(
        self, user_id: str, conversation_id: str, name: str, arguments_json: Any
    ) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            return json.dumps({"error": "unknown_tool"})
        params = _parse_arguments(arguments_json)
        try:
            payload = await handler(user_id, conversation_id, params)
        except Exception as exc:
            logger.warning("context tool %s failed for user %s: %s", name, user_id, exc)
            payload = {"error": "tool_failed", "tool": name}
        return json.dumps(payload, ensure_ascii=False)

    # -------------------------------------------------------------------------
    # Read tools
    # -------------------------------------------------------------------------

    async def _list_user_artifacts(
        self, user_id: str, artifact_type: str, since: Optional[datetime], limit: int
    ) -> List[Dict[str, Any]]:
        filters = ArtifactFilters(user_id=user_id, types=[artifact_type], created_after=since)
        return await self.client.list_artifacts(limit=limit, **filters.to_query_kwargs())

    async def get_bible_reading_sessions(
        self, user_id: str, _conversation_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        limit = _limit_arg(params, 10, 25)
        book_id = _str_arg(params, "bookId")
        chapter = _int_arg(params, "chapter")

        rows = await self._list_user_artifacts(
            user_id, "bible_reading_session", _since_arg(params), METADATA_SCAN_LIMIT
        )
        sessions = []
        for row in rows:
            meta = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
            if book_id and str(meta.get("bookId") or "").lower() != book_id.lower():
                continue
            if chapter is not None and _int_arg(meta, "chapter") != chapter:
                continue
            read_ranges = meta.get("readRanges") if isinstance(meta.get("readRanges"), list) else []
            sessions.append(
                {
                    "endedAtISO": _iso_z(meta.get("endedAtISO")) or row.get("created_at"),
                    "durationSeconds": int(_finite_number(meta.get("durationSeconds")) or 0),
                    "bookId": meta.get("bookId"),
                    "chapter": _int_arg(meta, "chapter"),
                    "readRanges": [str(item) for item in read_ranges[:MAX_READ_RANGES]],
                }
            )
            if len(sessions) >= limit:
                break
        return {"sessions": sessions}

    async def get_verse_notes(
        self, user_id: str, _conversation_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        limit = _limit_arg(params, 10, 25)
        book = _str_arg(params, "bookId")
        chapter = _int_arg(params, "chapter")
        verse = _int_arg(params, "verse")

        rows = await self._list_user_artifacts(
            user_id, "verse_note", _since_arg(params), METADATA_SCAN_LIMIT
        )
        notes = []
        for row in rows:
            if not _matches_passage(row.get("metadata"), book=book, chapter=chapter, verse=verse):
                continue
            notes.append(
                {
                    "reference": format_verse_reference(verse_reference(row.get("metadata"))),
                    "contentPreview": truncate(row.get("content") or "", NOTE_PREVIEW_CHARS),
                    "createdAtISO": row.get("created_at"),
                    "updatedAtISO": row.get("updated_at"),
                }
            )
            if len(notes) >= limit:
                break
        return {"notes": notes}

    async def search_verse_notes(
        self, user_id: str, _conversation_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        query = _str_arg(params, "query")
        if not query or self.embedding_service is None:
            return {"notes": []}
        limit = _limit_arg(params, 6, 15)
        book = _str_arg(params, "book")
        chapter = _int_arg(params, "chapter")
        verse = _int_arg(params, "verse")

        search = await self.embedding_service.search_similar(
            query,
            ArtifactFilters(
                user_id=user_id,
                types=["verse_note"],
                scopes=["private"],
                created_after=_since_arg(params),
            ),
            top_k=max(30, limit * 5),
            min_score=_min_score_arg(params),
        )
        notes = []
        for item in search["results"]:
            artifact = item["artifact"]
            metadata = artifact.get("metadata")
            if not _matches_passage(metadata, book=book, chapter=chapter, verse=verse):
                continue
            notes.append(
                {
                    "reference": format_verse_reference(verse_reference(metadata)),
                    "contentPreview": truncate(artifact.get("content") or "", NOTE_PREVIEW_CHARS),
                    "createdAtISO": artifact.get("created_at"),
                }
            )
            if len(notes) >= limit:
                break
        return {"notes": notes}

    async def get_verse_highlights(
        self, user_id: str, _conversation_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        limit = _limit_arg(params, 10, 25)
        book = _str_arg(params, "bookId")
        chapter = _int_arg(params, "chapter")
        verse = _int_arg(params, "verse")

        rows = await self._list_user_artifacts(
            user_id, "verse_highlight", _since_arg(params), METADATA_SCAN_LIMIT
        )
        highlights = []
        for row in rows:
            metadata = row.get("metadata")
            if not _matches_passage(metadata, book=book, chapter=chapter, verse=verse):
                continue
            color = metadata.get("color") if isinstance(metadata, dict) else None
            highlights.append(
                {
                    "reference": format_verse_reference(verse_reference(metadata)),
                    "color": color or "yellow",
                    "createdAtISO": row.get("created_at"),
                }
            )
            if len(highlights) >= limit:
                break
        return {"highlights": highlights}

    @staticmethod
    def _summary_view(artifact: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": artifact.get("title"),
            "summary": truncate(artifact.get("content") or "", SUMMARY_PREVIEW_CHARS),
            "createdAtISO": artifact.get("created_at"),
        }

    async def get_conversation_session_summaries(
        self, user_id: str, _conversation_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        limit = _limit_arg(params, 6, 15)
        rows = await self._list_user_artifacts(
            user_id, "conversation_session_summary", _since_arg(params), limit
        )
        return {"conversations": [self._summary_view(row) for row in rows]}

    async def search_conversation_session_summaries(
        self, user_id: str, _conversation_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        query = _str_arg(params, "query")
        if not query or self.embedding_service is None:
            return {"conversations": []}
        limit = _limit_arg(params, 5, 10)
        search = await self.embedding_service.search_similar(
            query,
            ArtifactFilters(
                user_id=user_id,
                types=["conversation_session_summary"],
                scopes=["private"],
                created_after=_since_arg(params),
            ),
            top_k=max(20, limit),
            min_score=_min_score_arg(params),
        )
        top = search["results"][:limit]
        return {"conversations": [self._summary_view(item["artifact"]) for item in top]}

    # -------------------------------------------------------------------------
    # Save tools
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_text(params: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(text, None)`` or ``(None, reason)``."""
        text = _str_arg(params, "text")
        if not text:
            return None, "empty"
        if len(text) > MAX_NOTE_CHARS:
            return None, "too_long"
        if looks_sensitive(text):
            log_safety_event("blocked", "memory_tool", "sensitive")
            return None, "sensitive"
        if looks_instructional(text):
            log_safety_event("blocked", "memory_tool", "instruction_like")
            return None, "instruction_like"
        return text, None

    async def save_memory_candidate(
        self, user_id: str, conversation_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        text, reason = self._check_text(params)
        if reason:
            return {"saved": False, "reason": reason}
        category = _str_arg(params, "category")
        if not category:
            return {"saved": False, "reason": "missing_category"}
        confidence = _str_arg(params, "confidence")
        if not confidence:
            return {"saved": False, "reason": "missing_confidence"}
        if confidence != "explicit":
            return {"saved": False, "reason": "confidence_not_explicit"}
        source = _str_arg(params, "source")
        if not source:
            return {"saved": False, "reason": "missing_source"}

        return await self._store_note(
            user_id,
            conversation_id,
            text=text,
            keywords=coerce_keywords(params.get("keywords")),
            category=category,
            confidence=confidence,
            source=source,
            expires_at=None,
        )

    async def save_temporary_memory(
        self, user_id: str, conversation_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        text, reason = self._check_text(params)
        if reason:
            return {"saved": False, "reason": reason}
        category = _str_arg(params, "category")
        if not category:
            return {"saved": False, "reason": "missing_category"}
        confidence = _str_arg(params, "confidence")
        if not confidence:
            return {"saved": False, "reason": "missing_confidence"}
        if confidence not in ("explicit", "strong"):
            return {"saved": False, "reason": "confidence_too_weak"}
        source = _str_arg(params, "source")
        if not source:
            return {"saved": False, "reason": "missing_source"}
        ttl_hours = _finite_number(params.get("ttlHours"))
        if ttl_hours is None:
            return {"saved": False, "reason": "invalid_ttlHours"}
        ttl_hours = _clamp(ttl_hours, MIN_TTL_HOURS, MAX_TTL_HOURS)

        return await self._store_note(
            user_id,
            conversation_id,
            text=text,
            keywords=coerce_keywords(params.get("keywords")),
            category=category,
            confidence=confidence,
            source=source,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=ttl_hours),
        )

    async def _store_note(
        self,
        user_id: str,
        conversation_id: str,
        *,
        text: str,
        keywords: List[str],
        category: str,
        confidence: str,
        source: str,
        expires_at: Optional[datetime],
    ) -> Dict[str, Any]:
        async def _write() -> Dict[str, Any]:
            if not await self.client.claim_conversation(conversation_id, user_id):
                return {"saved": False, "reason": "wrong_user"}

            key = normalize_text(text)
            recent = await self.client.list_session_notes(
                user_id, conversation_id, limit=DUPLICATE_WINDOW, newest_first=True
            )
            if any(normalize_text(row.get("text") or "") == key for row in recent):
                count = await self.client.count_session_notes(user_id, conversation_id)
                return {"saved": False, "reason": "duplicate", "noteCount": count}

            stored = await self.client.add_session_note(
                user_id=user_id,
                conversation_id=conversation_id,
                text=text,
                keywords=keywords,
                category=category,
                confidence=confidence,
                source=source,
                expires_at=expires_at.astimezone(timezone.utc).replace(tzinfo=None)
                if expires_at
                else None,
            )
            note: Dict[str, Any] = {
                "text": text,
                "keywords": keywords,
                "createdAtISO": stored["created_at"],
                "category": category,
                "confidence": confidence,
                "source": source,
            }
            if stored.get("expires_at"):
                note["expiresAtISO"] = stored["expires_at"]
            count = await self.client.count_session_notes(user_id, conversation_id)
            return {"saved": True, "note": note, "noteCount": count}

        return await self.lanes.run(
            user_id=user_id,
            conversation_id=conversation_id,
            operation="note_capture",
            task=_write,
        )


async def execute_context_tool_call(
    user_id: str,
    conversation_id: str,
    name: str,
    arguments_json: Any,
    *,
    client: Optional[SQLiteClient] = None,
    embedding_service: Optional[EmbeddingService] = None,
) -> str:
    """Run one tool call with the process singletons unless overrides are given."""
    if client is None:
        from db.sqlite_client import get_sqlite_client

        client = get_sqlite_client()
    if embedding_service is None:
        from artifacts.service import get_embedding_service

        embedding_service = get_embedding_service()
    executor = ContextToolExecutor(client, embedding_service)
    return await executor.execute(user_id, conversation_id, name, arguments_json)
