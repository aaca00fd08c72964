"""
Artifact CRUD with owner/scope access control.

Writes never wait on embeddings: embeddable artifacts are stored with
``embedding_status = "pending"`` and handed to the runtime embedding worker.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from db.sqlite_client import SQLiteClient, get_sqlite_client
from memory_engine.providers import build_embedding_provider
from runtime_state import runtime_state

from .embedding import EmbeddingService
from .types import (
    EMBEDDING_SOURCE_FIELDS,
    ArtifactFilters,
    is_valid_artifact_scope,
    is_valid_artifact_type,
    should_embed_artifact_type,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("title", "content", "scripture_refs", "tags", "metadata")


def can_access(
    artifact: Dict[str, Any],
    requester_id: Optional[str],
    group_ids: Optional[Sequence[str]] = None,
) -> bool:
    """Owner always; otherwise by scope (group membership for ``group``)."""
    if requester_id and artifact.get("user_id") == requester_id:
        return True
    scope = artifact.get("scope")
    if scope == "global":
        return True
    if scope == "group":
        group_id = artifact.get("group_id")
        return bool(group_id) and group_id in set(group_ids or ())
    return False


class ArtifactService:
    def __init__(
        self,
        client: SQLiteClient,
        embedding_service: Optional[EmbeddingService] = None,
        embedding_worker: Any = None,
    ):
        self.client = client
        self.embedding_service = embedding_service
        self.embedding_worker = embedding_worker or runtime_state.embedding_worker

    async def create_artifact(
        self,
        *,
        user_id: str,
        type: str,
        scope: str,
        content: str,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        group_id: Optional[str] = None,
        title: Optional[str] = None,
        scripture_refs: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Any = None,
    ) -> Dict[str, Any]:
        if not is_valid_artifact_type(type):
            raise ValueError(f"Invalid artifact type: {type}")
        if not is_valid_artifact_scope(scope):
            raise ValueError(f"Invalid artifact scope: {scope}")
        if not user_id:
            raise ValueError("Artifact must have a user_id")
        if scope == "group" and not group_id:
            raise ValueError("Group artifacts require a group_id")
        if not isinstance(content, str):
            raise ValueError("Artifact content must be a string")

        embeddable = self.embedding_service is not None and should_embed_artifact_type(type)
        artifact = await self.client.create_artifact(
            type=type,
            scope=scope,
            content=content,
            user_id=user_id,
            conversation_id=conversation_id,
            session_id=session_id,
            group_id=group_id if scope == "group" else None,
            title=title,
            scripture_refs=scripture_refs or None,
            tags=tags or None,
            metadata=metadata or None,
            embedding_status="pending" if embeddable else "none",
            created_at=created_at,
        )
        if embeddable:
            await self._schedule_embedding(artifact["id"], reason="create")
        return artifact

    async def get_artifact(
        self,
        artifact_id: str,
        requester_id: str,
        group_ids: Optional[Sequence[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the artifact, or None when it is missing, deleted or not visible."""
        artifact = await self.client.get_artifact(artifact_id)
        if artifact is None or artifact.get("status") != "active":
            return None
        if not can_access(artifact, requester_id, group_ids):
            return None
        return artifact

    async def list_artifacts(self, filters: ArtifactFilters) -> List[Dict[str, Any]]:
        return await self.client.list_artifacts(
            limit=filters.limit,
            offset=filters.offset,
            **filters.to_query_kwargs(),
        )

    async def count_artifacts(self, filters: ArtifactFilters) -> int:
        return await self.client.count_artifacts(**filters.to_query_kwargs())

    async def get_artifacts_by_session(
        self, session_id: str, requester_id: str
    ) -> List[Dict[str, Any]]:
        """Active artifacts of a session the requester owns or that are global, oldest first."""
        rows = await self.client.list_artifacts(
            session_id=session_id, ascending=True, limit=500
        )
        return [
            row
            for row in rows
            if row.get("user_id") == requester_id or row.get("scope") == "global"
        ]

    async def update_artifact(
        self, artifact_id: str, requester_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        existing = await self.client.get_artifact(artifact_id)
        if existing is None or existing.get("status") != "active":
            return None
        if existing.get("user_id") != requester_id:
            raise PermissionError("Only artifact owner can update")

        patch = {
            key: value
            for key, value in (changes or {}).items()
            if key in _UPDATABLE_FIELDS and value is not None
        }
        if not patch:
            return existing

        reembed = (
            self.embedding_service is not None
            and should_embed_artifact_type(existing["type"])
            and any(field in patch for field in EMBEDDING_SOURCE_FIELDS)
        )
        if reembed:
            patch["embedding_status"] = "pending"

        artifact = await self.client.update_artifact(artifact_id, patch)
        if artifact is not None and reembed:
            await self._schedule_embedding(artifact_id, reason="update")
        return artifact

    async def delete_artifact(self, artifact_id: str, requester_id: str) -> bool:
        existing = await self.client.get_artifact(artifact_id)
        if existing is None:
            raise ValueError("Artifact not found")
        if existing.get("user_id") != requester_id:
            raise PermissionError("Only artifact owner can delete")
        return await self.client.soft_delete_artifact(artifact_id)

    async def _schedule_embedding(self, artifact_id: str, *, reason: str) -> None:
        try:
            outcome = await self.embedding_worker.submit(
                artifact_id, reason=reason, service=self.embedding_service
            )
        except Exception as exc:
            logger.warning("could not schedule embedding for %s: %s", artifact_id, exc)
            await self.client.set_embedding_status(artifact_id, "failed", str(exc))
            return
        if outcome.get("dropped") or outcome.get("reason") == "embedding_service_unavailable":
            logger.warning(
                "embedding refresh not scheduled for %s: %s", artifact_id, outcome.get("reason")
            )
            await self.client.set_embedding_status(
                artifact_id, "failed", str(outcome.get("reason") or "not_scheduled")
            )


_embedding_service: Optional[EmbeddingService] = None
_artifact_service: Optional[ArtifactService] = None


def get_embedding_service() -> EmbeddingService:
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService(get_sqlite_client(), build_embedding_provider())
    return _embedding_service


def get_artifact_service() -> ArtifactService:
    global _artifact_service
    if _artifact_service is None:
        _artifact_service = ArtifactService(get_sqlite_client(), get_embedding_service())
    return _artifact_service


def reset_artifact_services() -> None:
    global _embedding_service, _artifact_service
    _embedding_service = None
    _artifact_service = None
