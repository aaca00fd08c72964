"""
Hybrid artifact retrieval: filters plus embedding similarity, followed by a
separate access-control pass and compact snippet formatting for prompts.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from db.sqlite_client import SQLiteClient

from .embedding import EmbeddingService
from .service import can_access
from .types import TYPE_LABELS, ArtifactFilters

logger = logging.getLogger(__name__)

SEARCH_TOP_K = 20
DEFAULT_CONTEXT_LIMIT = 5
PREVIEW_CHARS = 100


def filter_by_access(
    results: List[Dict[str, Any]],
    user_id: str,
    group_ids: Optional[Sequence[str]] = None,
) -> List[Dict[str, Any]]:
    """Drop search hits the caller may not see; order is preserved."""
    accessible: List[Dict[str, Any]] = []
    for result in results:
        artifact = result["artifact"]
        if artifact.get("status") != "active":
            continue
        if artifact.get("scope") == "private" and artifact.get("user_id") != user_id:
            continue
        if can_access(artifact, user_id, group_ids):
            accessible.append(result)
    return accessible


def _parse_created_at(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_type_label(artifact_type: str) -> str:
    return TYPE_LABELS.get(artifact_type, artifact_type)


def format_snippet(artifact: Dict[str, Any]) -> Dict[str, Any]:
    created = _parse_created_at(artifact.get("created_at"))
    date = f"{created.strftime('%b')} {created.day}" if created else ""
    content = artifact.get("content") or ""
    preview = content[:PREVIEW_CHARS] + "..." if len(content) > PREVIEW_CHARS else content
    refs = artifact.get("scripture_refs") or []
    return {
        "type": artifact.get("type"),
        "date": date,
        "preview": preview,
        "scripture_ref": refs[0] if refs else None,
    }


def format_context_for_prompt(snippets: List[Dict[str, Any]]) -> str:
    """
    Produce the prompt block, e.g.::

        PAST CONTEXT:
        [Journal - Dec 20] "Reflecting on Romans 8..." (Romans 8:1-11)
    """
    if not snippets:
        return ""
    lines = []
    for snippet in snippets:
        line = f'[{format_type_label(snippet["type"])} - {snippet["date"]}] "{snippet["preview"]}"'
        if snippet.get("scripture_ref"):
            line = f"{line} ({snippet['scripture_ref']})"
        lines.append(line)
    return "PAST CONTEXT:\n" + "\n".join(lines)


class RetrievalService:
    def __init__(self, client: SQLiteClient, embedding_service: EmbeddingService):
        self.client = client
        self.embedding_service = embedding_service

    async def retrieve_for_context(
        self,
        query: str,
        user_id: str,
        *,
        group_ids: Optional[Sequence[str]] = None,
        types: Optional[Sequence[str]] = None,
        limit: int = DEFAULT_CONTEXT_LIMIT,
        include_group_artifacts: bool = True,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        direction: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Rank in-scope artifacts for ``query`` and format the top ``limit``.

        Returns ``{"artifacts", "snippets", "formatted_context", "truncated",
        "degrade_reasons"}``. Failures yield an empty bundle with a degrade
        reason instead of raising.
        """
        scopes = ["private", "global"]
        if include_group_artifacts and group_ids:
            scopes.append("group")
        visible_groups = list(group_ids or []) if "group" in scopes else []

        filters = ArtifactFilters(
            types=list(types or []),
            scopes=scopes,
            status="active",
            created_after=created_after,
            created_before=created_before,
        )
        payload: Dict[str, Any] = {
            "artifacts": [],
            "snippets": [],
            "formatted_context": "",
            "truncated": False,
            "degrade_reasons": [],
        }
        try:
            search = await self.embedding_service.search_similar(
                query,
                filters,
                top_k=SEARCH_TOP_K,
                group_ids=visible_groups,
                visible_to_user_id=user_id,
            )
        except Exception as exc:
            logger.warning("artifact retrieval failed for %s: %s", user_id, exc)
            payload["degrade_reasons"].append("retrieval_failed")
            return payload

        payload["truncated"] = bool(search.get("truncated"))
        payload["degrade_reasons"].extend(search.get("degrade_reasons") or [])

        accessible = filter_by_access(search.get("results") or [], user_id, visible_groups)
        top = accessible[: max(0, int(limit))]
        artifacts = [item["artifact"] for item in top]
        if direction in {"oldest", "newest"}:
            artifacts.sort(key=lambda a: a.get("created_at") or "", reverse=direction == "newest")

        snippets = [format_snippet(artifact) for artifact in artifacts]
        payload["artifacts"] = artifacts
        payload["snippets"] = snippets
        payload["formatted_context"] = format_context_for_prompt(snippets)
        return payload

    async def retrieve_by_scripture(
        self, scripture_ref: str, user_id: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        return await self.client.list_artifacts(
            user_id=user_id, scripture_ref=scripture_ref, limit=limit
        )

    async def retrieve_recent(
        self,
        user_id: str,
        types: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        return await self.client.list_artifacts(
            user_id=user_id, types=list(types or []) or None, limit=limit
        )

    async def retrieve_by_time_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        types: Optional[Sequence[str]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        return await self.client.list_artifacts(
            user_id=user_id,
            types=list(types or []) or None,
            created_after=start,
            created_before=end,
            limit=limit,
        )
