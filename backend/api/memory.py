import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from artifacts.retrieval import DEFAULT_CONTEXT_LIMIT, RetrievalService
from artifacts.service import get_embedding_service
from db import get_sqlite_client
from memory_engine.candidate_extractor import (
    CandidateExtractor,
    ExtractionContext,
    MemoryCandidate,
)
from memory_engine.consolidator import SessionMemoryConsolidator
from memory_engine.context_tools import TOOL_DEFINITIONS, TOOL_NAMES, ContextToolExecutor
from memory_engine.intent_classifier import (
    ClassificationContext,
    classify_intent,
    compute_date_bounds,
)
from memory_engine.memory_context import build_memory_context
from memory_engine.memory_state import MemoryStateStore
from memory_engine.signal_evaluator import SignalEvaluator

router = APIRouter(prefix="/memory", tags=["memory"])


class ClassifyRequest(BaseModel):
    message: str
    conversation_history: List[Dict[str, str]] = Field(default_factory=list)
    is_first_message: bool = True
    verse_reference: Optional[str] = None


class ExtractRequest(BaseModel):
    message: str
    assistant_response: str = ""
    conversation_summary: Optional[str] = None
    intent: Optional[str] = None


class CandidateItem(BaseModel):
    type: str
    value: str
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: str = ""


class EvaluateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    candidates: List[CandidateItem] = Field(default_factory=list)
    dry_run: bool = False


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    group_ids: List[str] = Field(default_factory=list)
    types: List[str] = Field(default_factory=list)
    limit: int = Field(default=DEFAULT_CONTEXT_LIMIT, ge=1, le=50)
    include_group_artifacts: bool = True
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    temporal_range: Optional[str] = None
    direction: Optional[str] = None


class ConsolidateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)


class ExplicitMemoryRequest(BaseModel):
    memory_type: str = Field(min_length=1)
    value: str = Field(min_length=1)
    source: str = "user_explicit"


class ToolCallRequest(BaseModel):
    user_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    arguments: Any = None


@router.post("/classify")
async def classify(payload: ClassifyRequest):
    context = ClassificationContext(
        conversation_history=payload.conversation_history,
        is_first_message=payload.is_first_message,
        verse_reference=payload.verse_reference,
    )
    result = await classify_intent(payload.message, context)
    return result.to_dict()


@router.post("/extract")
async def extract(payload: ExtractRequest):
    candidates = await CandidateExtractor().extract(
        ExtractionContext(
            message=payload.message,
            assistant_response=payload.assistant_response,
            conversation_summary=payload.conversation_summary,
            intent=payload.intent,
        )
    )
    return {"candidates": [candidate.to_dict() for candidate in candidates]}


@router.post("/evaluate")
async def evaluate(payload: EvaluateRequest):
    candidates = [
        MemoryCandidate(
            type=item.type,
            value=item.value,
            confidence=item.confidence,
            evidence=item.evidence,
        )
        for item in payload.candidates
    ]
    evaluator = SignalEvaluator(get_sqlite_client())
    return await evaluator.evaluate_and_promote(
        payload.user_id,
        payload.conversation_id,
        candidates,
        dry_run=payload.dry_run,
    )


@router.post("/retrieve")
async def retrieve(payload: RetrieveRequest):
    if payload.direction is not None and payload.direction not in {"oldest", "newest"}:
        raise HTTPException(
            status_code=422,
            detail={"error": "invalid_direction", "direction": payload.direction},
        )
    created_after = payload.created_after
    if created_after is None and payload.temporal_range:
        created_after = compute_date_bounds(payload.temporal_range).get("after")

    service = RetrievalService(get_sqlite_client(), get_embedding_service())
    result = await service.retrieve_for_context(
        payload.query,
        payload.user_id,
        group_ids=payload.group_ids,
        types=payload.types,
        limit=payload.limit,
        include_group_artifacts=payload.include_group_artifacts,
        created_after=created_after,
        created_before=payload.created_before,
        direction=payload.direction,
    )
    return result


@router.post("/consolidate")
async def consolidate(payload: ConsolidateRequest):
    consolidator = SessionMemoryConsolidator(get_sqlite_client())
    result = await consolidator.consolidate(payload.user_id, payload.conversation_id)
    if not result.get("ok"):
        raise HTTPException(
            status_code=503,
            detail={"error": "consolidation_failed", "reason": result.get("error")},
        )
    return result


@router.get("/state/{user_id}")
async def get_state(user_id: str):
    client = get_sqlite_client()
    state = await MemoryStateStore(client).get_state(user_id)
    durable = await SignalEvaluator(client).list_user_state(user_id)
    return {"user_id": user_id, **state, **durable}


@router.post("/state/{user_id}/memories")
async def record_explicit_memory(user_id: str, payload: ExplicitMemoryRequest):
    result = await SignalEvaluator(get_sqlite_client()).record_explicit_memory(
        user_id, payload.memory_type, payload.value, source=payload.source
    )
    if not result.get("ok"):
        raise HTTPException(
            status_code=422,
            detail={"error": result.get("error"), "reason": result.get("reason")},
        )
    return result


@router.delete("/state/{user_id}/memories/{memory_id}")
async def deactivate_memory(user_id: str, memory_id: str):
    deactivated = await get_sqlite_client().deactivate_memory(user_id, memory_id)
    if not deactivated:
        raise HTTPException(status_code=404, detail=f"Memory '{memory_id}' not found")
    return {"ok": True, "memory_id": memory_id}


@router.get("/context/{user_id}")
async def get_context(user_id: str, memory_mode: str = "standard"):
    return await build_memory_context(get_sqlite_client(), user_id, memory_mode)


@router.get("/tools")
async def list_tools():
    return {"tools": TOOL_DEFINITIONS}


@router.post("/tools/{name}")
async def call_tool(name: str, payload: ToolCallRequest):
    if name not in TOOL_NAMES:
        raise HTTPException(status_code=404, detail={"error": "unknown_tool", "tool": name})
    executor = ContextToolExecutor(get_sqlite_client(), get_embedding_service())
    raw = await executor.execute(
        payload.user_id, payload.conversation_id, name, payload.arguments
    )
    return json.loads(raw)

