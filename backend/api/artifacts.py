from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from artifacts.edges import EdgeService
from artifacts.service import can_access, get_artifact_service
from artifacts.session_summary import SessionSummaryService
from artifacts.types import ArtifactFilters
from db import get_sqlite_client
from memory_engine.providers import build_completion_provider

router = APIRouter(prefix="/artifacts", tags=["artifacts"])


class ArtifactCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    type: str
    scope: str = "private"
    content: str
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    group_id: Optional[str] = None
    title: Optional[str] = None
    scripture_refs: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ArtifactUpdateRequest(BaseModel):
    requester_id: str = Field(min_length=1)
    title: Optional[str] = None
    content: Optional[str] = None
    scripture_refs: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class EdgeCreateRequest(BaseModel):
    requester_id: str = Field(min_length=1)
    from_id: str = Field(min_length=1)
    to_id: str = Field(min_length=1)
    relation: str


class SessionSummaryRequest(BaseModel):
    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    conversation_id: Optional[str] = None
    turns: List[Dict[str, Any]] = Field(default_factory=list)


@router.post("")
async def create_artifact(payload: ArtifactCreateRequest):
    try:
        return await get_artifact_service().create_artifact(
            user_id=payload.user_id,
            type=payload.type,
            scope=payload.scope,
            content=payload.content,
            conversation_id=payload.conversation_id,
            session_id=payload.session_id,
            group_id=payload.group_id,
            title=payload.title,
            scripture_refs=payload.scripture_refs,
            tags=payload.tags,
            metadata=payload.metadata,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_artifact", "reason": str(e)})


@router.get("")
async def list_artifacts(
    user_id: str,
    session_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    types: Optional[List[str]] = Query(default=None),
    scopes: Optional[List[str]] = Query(default=None),
    created_after: Optional[datetime] = None,
    created_before: Optional[datetime] = None,
    scripture_ref: Optional[str] = None,
    tag: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    filters = ArtifactFilters(
        user_id=user_id,
        session_id=session_id,
        conversation_id=conversation_id,
        types=types or [],
        scopes=scopes or [],
        created_after=created_after,
        created_before=created_before,
        scripture_ref=scripture_ref,
        tag=tag,
        limit=limit,
        offset=offset,
    )
    service = get_artifact_service()
    return {
        "artifacts": await service.list_artifacts(filters),
        "total": await service.count_artifacts(filters),
    }


@router.get("/sessions/{session_id}")
async def get_session_artifacts(session_id: str, requester_id: str):
    artifacts = await get_artifact_service().get_artifacts_by_session(session_id, requester_id)
    return {"session_id": session_id, "artifacts": artifacts}


@router.post("/session-summaries")
async def create_session_summary(payload: SessionSummaryRequest):
    summaries = SessionSummaryService(build_completion_provider(), get_artifact_service())
    result = await summaries.generate_and_create_session_summary_artifact(
        payload.user_id,
        payload.session_id,
        payload.turns,
        conversation_id=payload.conversation_id,
    )
    if not result.ok:
        raise HTTPException(
            status_code=503 if result.error_kind != "invalid_payload" else 422,
            detail={
                "error": "session_summary_failed",
                "error_kind": result.error_kind,
                "reason": result.detail,
            },
        )
    return result.value


@router.post("/edges")
async def create_edge(payload: EdgeCreateRequest):
    service = get_artifact_service()
    for artifact_id in (payload.from_id, payload.to_id):
        if await service.get_artifact(artifact_id, payload.requester_id) is None:
            raise HTTPException(status_code=404, detail=f"Artifact '{artifact_id}' not found")
    try:
        return await EdgeService(get_sqlite_client()).create_edge(
            payload.from_id, payload.to_id, payload.relation
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_edge", "reason": str(e)})


@router.get("/{artifact_id}")
async def get_artifact(
    artifact_id: str,
    requester_id: str,
    group_ids: Optional[List[str]] = Query(default=None),
):
    artifact = await get_artifact_service().get_artifact(artifact_id, requester_id, group_ids)
    if artifact is None:
        raise HTTPException(status_code=404, detail=f"Artifact '{artifact_id}' not found")
    return artifact


@router.patch("/{artifact_id}")
async def update_artifact(artifact_id: str, payload: ArtifactUpdateRequest):
    changes = payload.model_dump(exclude={"requester_id"}, exclude_none=True)
    try:
        artifact = await get_artifact_service().update_artifact(
            artifact_id, payload.requester_id, changes
        )
    except PermissionError as e:
        raise HTTPException(status_code=403, detail={"error": "forbidden", "reason": str(e)})
    if artifact is None:
        raise HTTPException(status_code=404, detail=f"Artifact '{artifact_id}' not found")
    return artifact


@router.delete("/{artifact_id}")
async def delete_artifact(artifact_id: str, requester_id: str):
    try:
        await get_artifact_service().delete_artifact(artifact_id, requester_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail={"error": "forbidden", "reason": str(e)})
    return {"ok": True, "artifact_id": artifact_id}


@router.get("/{artifact_id}/thread")
async def get_thread(artifact_id: str, requester_id: str):
    if await get_artifact_service().get_artifact(artifact_id, requester_id) is None:
        raise HTTPException(status_code=404, detail=f"Artifact '{artifact_id}' not found")
    thread = await EdgeService(get_sqlite_client()).get_thread(artifact_id)
    visible = [item for item in thread["artifacts"] if can_access(item, requester_id)]
    visible_ids = {item["id"] for item in visible}
    return {
        "artifacts": visible,
        "edges": [
            edge
            for edge in thread["edges"]
            if edge["from_id"] in visible_ids and edge["to_id"] in visible_ids
        ],
    }
