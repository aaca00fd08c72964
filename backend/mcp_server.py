"""
MCP Server for the scripture memory engine (SQLite backend)

Exposes the context tool contract to an MCP-speaking orchestrator. Every
tool returns a JSON string; argument problems come back as
``{"saved": false, "reason": ...}`` or an empty result list, never as an
exception.

Tools (caller identity is always explicit):
- get_bible_reading_sessions / get_verse_notes / search_verse_notes
- get_verse_highlights
- get_conversation_session_summaries / search_conversation_session_summaries
- save_memory_candidate / save_temporary_memory
- classify_message, get_memory_context, consolidate_session_memory
"""

import json
import os
import sys
from typing import Any, Dict, List, Optional

from dotenv import find_dotenv, load_dotenv

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from artifacts.service import get_embedding_service
from db.sqlite_client import get_sqlite_client
from memory_engine.consolidator import SessionMemoryConsolidator
from memory_engine.context_tools import ContextToolExecutor
from memory_engine.intent_classifier import ClassificationContext, classify_intent
from memory_engine.memory_context import build_memory_context
from runtime_state import runtime_state

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

mcp = FastMCP("Scripture Memory Interface")


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _drop_none(**arguments: Any) -> Dict[str, Any]:
    return {key: value for key, value in arguments.items() if value is not None}


async def _call_context_tool(
    user_id: str, conversation_id: str, name: str, arguments: Dict[str, Any]
) -> str:
    executor = ContextToolExecutor(get_sqlite_client(), get_embedding_service())
    return await executor.execute(user_id, conversation_id, name, arguments)


# =============================================================================
# Read tools
# =============================================================================


@mcp.tool()
async def get_bible_reading_sessions(
    user_id: str,
    sinceISO: Optional[str] = None,
    limit: Optional[int] = None,
    bookId: Optional[str] = None,
    chapter: Optional[int] = None,
) -> str:
    """
    Recent Bible reading sessions: what the user read and for how long.

    Args:
        user_id: The user whose sessions to read.
        sinceISO: ISO timestamp lower bound.
        limit: Max items (default 10, max 25).
        bookId: Book code filter (e.g. JHN).
        chapter: Chapter filter.
    """
    return await _call_context_tool(
        user_id,
        "",
        "get_bible_reading_sessions",
        _drop_none(sinceISO=sinceISO, limit=limit, bookId=bookId, chapter=chapter),
    )


@mcp.tool()
async def get_verse_notes(
    user_id: str,
    sinceISO: Optional[str] = None,
    limit: Optional[int] = None,
    bookId: Optional[str] = None,
    chapter: Optional[int] = None,
    verse: Optional[int] = None,
) -> str:
    """
    The user's verse notes for a passage and timeframe.

    ``verse`` matches notes whose range contains that verse. Previews are
    truncated to 280 characters.
    """
    return await _call_context_tool(
        user_id,
        "",
        "get_verse_notes",
        _drop_none(sinceISO=sinceISO, limit=limit, bookId=bookId, chapter=chapter, verse=verse),
    )


@mcp.tool()
async def search_verse_notes(
    user_id: str,
    query: str,
    sinceISO: Optional[str] = None,
    limit: Optional[int] = None,
    minScore: Optional[float] = None,
    book: Optional[str] = None,
    chapter: Optional[int] = None,
    verse: Optional[int] = None,
) -> str:
    """Semantic search over the user's verse notes, optionally scoped to a passage."""
    return await _call_context_tool(
        user_id,
        "",
        "search_verse_notes",
        _drop_none(
            query=query,
            sinceISO=sinceISO,
            limit=limit,
            minScore=minScore,
            book=book,
            chapter=chapter,
            verse=verse,
        ),
    )


@mcp.tool()
async def get_verse_highlights(
    user_id: str,
    sinceISO: Optional[str] = None,
    limit: Optional[int] = None,
    bookId: Optional[str] = None,
    chapter: Optional[int] = None,
    verse: Optional[int] = None,
) -> str:
    """The user's verse highlights (reference + color) for a passage and timeframe."""
    return await _call_context_tool(
        user_id,
        "",
        "get_verse_highlights",
        _drop_none(sinceISO=sinceISO, limit=limit, bookId=bookId, chapter=chapter, verse=verse),
    )


@mcp.tool()
async def get_conversation_session_summaries(
    user_id: str,
    sinceISO: Optional[str] = None,
    limit: Optional[int] = None,
) -> str:
    """Summaries of prior conversations, newest first (default 6, max 15)."""
    return await _call_context_tool(
        user_id,
        "",
        "get_conversation_session_summaries",
        _drop_none(sinceISO=sinceISO, limit=limit),
    )


@mcp.tool()
async def search_conversation_session_summaries(
    user_id: str,
    query: str,
    sinceISO: Optional[str] = None,
    limit: Optional[int] = None,
    minScore: Optional[float] = None,
) -> str:
    """Semantic search over prior conversation summaries (default 5, max 10)."""
    return await _call_context_tool(
        user_id,
        "",
        "search_conversation_session_summaries",
        _drop_none(query=query, sinceISO=sinceISO, limit=limit, minScore=minScore),
    )


# =============================================================================
# Save tools
# =============================================================================


@mcp.tool()
async def save_memory_candidate(
    user_id: str,
    conversation_id: str,
    text: str,
    category: str,
    confidence: str,
    source: str,
    keywords: Optional[List[str]] = None,
) -> str:
    """
    Capture a candidate LONG-TERM memory for end-of-session consolidation.

    Only explicit statements are accepted (``confidence == "explicit"``).
    Secrets, credentials, contact or financial details, diagnoses and
    medications are refused.

    Args:
        user_id: Owner of the conversation.
        conversation_id: The conversation the note belongs to.
        text: 1-2 factual sentences in user-centric wording.
        category: preference | routine | goal | bio | struggle | other
        confidence: explicit | strong | weak
        source: user_message | user_profile_form | other
        keywords: Optional snake_case retrieval tags.

    Returns:
        ``{"saved": true, "note", "noteCount"}`` or ``{"saved": false, "reason"}``.
    """
    return await _call_context_tool(
        user_id,
        conversation_id,
        "save_memory_candidate",
        _drop_none(
            text=text,
            category=category,
            confidence=confidence,
            source=source,
            keywords=keywords,
        ),
    )


@mcp.tool()
async def save_temporary_memory(
    user_id: str,
    conversation_id: str,
    text: str,
    category: str,
    ttlHours: float,
    confidence: str,
    source: str,
    keywords: Optional[List[str]] = None,
) -> str:
    """
    Save a note that expires after ``ttlHours`` (clamped to 1..720).

    For travel, events, visits and temporary schedule changes. Accepts
    ``explicit`` or ``strong`` confidence.
    """
    return await _call_context_tool(
        user_id,
        conversation_id,
        "save_temporary_memory",
        _drop_none(
            text=text,
            category=category,
            ttlHours=ttlHours,
            confidence=confidence,
            source=source,
            keywords=keywords,
        ),
    )


# =============================================================================
# Engine tools
# =============================================================================


@mcp.tool()
async def classify_message(
    message: str,
    is_first_message: bool = True,
    verse_reference: Optional[str] = None,
) -> str:
    """Classify a user message into an intent, response mode and TaskSpec."""
    context = ClassificationContext(
        is_first_message=is_first_message,
        verse_reference=verse_reference,
    )
    result = await classify_intent(message, context)
    return _to_json(result.to_dict())


@mcp.tool()
async def get_memory_context(user_id: str, memory_mode: str = "standard") -> str:
    """Durable memories and global notes allowed into the next prompt."""
    try:
        payload = await build_memory_context(get_sqlite_client(), user_id, memory_mode)
    except Exception as e:
        return _to_json({"ok": False, "error": str(e)})
    return _to_json({"ok": True, **payload})


@mcp.tool()
async def consolidate_session_memory(user_id: str, conversation_id: str) -> str:
    """Merge this conversation's session notes into the user's global notes."""
    consolidator = SessionMemoryConsolidator(get_sqlite_client())
    return _to_json(await consolidator.consolidate(user_id, conversation_id))


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Initialize the database on startup."""
    client = get_sqlite_client()
    await client.init_db()
    await runtime_state.ensure_started(get_sqlite_client, get_embedding_service)


if __name__ == "__main__":
    import asyncio

    asyncio.run(startup())
    mcp.run()
