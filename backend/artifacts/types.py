"""Artifact vocabularies, filters and type-specific metadata helpers."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

ARTIFACT_TYPES: Tuple[str, ...] = (
    "conversation_session_summary",
    "journal_entry",
    "prayer_request",
    "prayer_update",
    "testimony",
    "verse_highlight",
    "verse_note",
    "bible_reading_session",
)

ARTIFACT_SCOPES: Tuple[str, ...] = ("private", "group", "global")

ARTIFACT_RELATIONS: Tuple[str, ...] = (
    "follows_up",
    "summarizes",
    "references",
    "part_of_thread",
)

ARTIFACT_STATUSES: Tuple[str, ...] = ("active", "deleted")

EMBEDDING_STATUSES: Tuple[str, ...] = ("none", "pending", "ready", "failed")

# Highlights carry no prose worth embedding.
EMBEDDABLE_ARTIFACT_TYPES: Tuple[str, ...] = tuple(
    item for item in ARTIFACT_TYPES if item != "verse_highlight"
)

# Fields whose change invalidates the stored embedding.
EMBEDDING_SOURCE_FIELDS: Tuple[str, ...] = ("title", "content", "scripture_refs")

MIN_MESSAGES_FOR_SUMMARY = 2
MAX_SUMMARY_CHARS = 800
SEARCH_CANDIDATE_CAP = 500

TYPE_LABELS: Dict[str, str] = {
    "conversation_session_summary": "Session",
    "journal_entry": "Journal",
    "prayer_request": "Prayer",
    "prayer_update": "Update",
    "testimony": "Testimony",
    "verse_highlight": "Highlight",
    "verse_note": "Note",
    "bible_reading_session": "Reading",
}


def is_valid_artifact_type(value: Any) -> bool:
    return isinstance(value, str) and value in ARTIFACT_TYPES


def is_valid_artifact_scope(value: Any) -> bool:
    return isinstance(value, str) and value in ARTIFACT_SCOPES


def is_valid_artifact_relation(value: Any) -> bool:
    return isinstance(value, str) and value in ARTIFACT_RELATIONS


def is_valid_artifact_status(value: Any) -> bool:
    return isinstance(value, str) and value in ARTIFACT_STATUSES


def should_embed_artifact_type(value: str) -> bool:
    return value in EMBEDDABLE_ARTIFACT_TYPES


@dataclass
class ArtifactFilters:
    """Query filters shared by listing and similarity search."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    types: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    status: Optional[str] = "active"
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    scripture_ref: Optional[str] = None
    tag: Optional[str] = None
    limit: int = 50
    offset: int = 0

    def to_query_kwargs(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "conversation_id": self.conversation_id,
            "types": list(self.types) or None,
            "scopes": list(self.scopes) or None,
            "status": self.status,
            "created_after": self.created_after,
            "created_before": self.created_before,
            "scripture_ref": self.scripture_ref,
            "tag": self.tag,
        }


def verse_reference(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Read ``metadata.reference`` of a verse note/highlight.

    Returns ``{"book", "chapter", "verse_start", "verse_end"}`` or None when
    the reference is missing or malformed.
    """
    if not isinstance(metadata, dict):
        return None
    reference = metadata.get("reference")
    if not isinstance(reference, dict):
        return None
    book = reference.get("book")
    if not isinstance(book, str) or not book.strip():
        return None
    try:
        chapter = int(reference.get("chapter"))
        verse_start = int(reference.get("verseStart"))
        verse_end = int(reference.get("verseEnd", verse_start))
    except (TypeError, ValueError):
        return None
    return {
        "book": book.strip(),
        "chapter": chapter,
        "verse_start": verse_start,
        "verse_end": verse_end,
    }


def format_verse_reference(reference: Optional[Dict[str, Any]]) -> str:
    if not reference:
        return "Unknown reference"
    base = f"{reference['book']} {reference['chapter']}:{reference['verse_start']}"
    if reference["verse_end"] != reference["verse_start"]:
        return f"{base}-{reference['verse_end']}"
    return base
