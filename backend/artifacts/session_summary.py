"""
Conversation session summaries.

A summary is a resumable record of one session, stored as a private
``conversation_session_summary`` artifact so it is searchable later.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from memory_engine.providers import (
    ERROR_INVALID_PAYLOAD,
    CompletionProvider,
    ProviderResult,
    model_for,
)

from .service import ArtifactService
from .types import MAX_SUMMARY_CHARS, MIN_MESSAGES_FOR_SUMMARY

logger = logging.getLogger(__name__)

MAX_SUMMARY_TURNS = 30
SHORT_ACK_CHARS = 10

SESSION_SUMMARY_SYSTEM_PROMPT = """
You write a "conversation session summary" for a Bible-study and prayer assistant.
It is stored, listed under recent conversations, retrieved by search and
injected into a later prompt so the conversation can resume.

Summarize THIS session: what the user asked, what was explained, what remains open.
Do not label the user or infer diagnoses or stable struggles.
Do not invent scripture references; only include references present in the turns.
Prefer empty arrays to guesses.

Return ONLY a JSON object with exactly these keys:
{"oneSentenceSummary": string, "summary": string, "topics": string[],
 "scriptureRefs": string[], "openQuestions": string[],
 "userExpressedConcerns": string[], "suggestedResumePrompt": string}
""".strip()

_LIST_FIELDS = ("topics", "scriptureRefs", "openQuestions", "userExpressedConcerns")


def prepare_turns(turns: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Keep the last turns and drop short user acknowledgements."""
    prepared: List[Dict[str, str]] = []
    for turn in list(turns)[-MAX_SUMMARY_TURNS:]:
        role = str(turn.get("role") or "").strip().lower()
        content = str(turn.get("content") or "").strip()
        if role not in {"user", "assistant"} or not content:
            continue
        if role == "user" and len(content) <= SHORT_ACK_CHARS:
            continue
        prepared.append({"role": role, "content": content})
    return prepared


def _build_user_prompt(session_id: str, turns: List[Dict[str, str]]) -> str:
    lines = [f"SESSION: {session_id}", "", "CONVERSATION TURNS (chronological):"]
    for index, turn in enumerate(turns, start=1):
        lines.append(f"Turn {index} - {turn['role'].upper()}: {turn['content']}")
    lines.append("")
    lines.append("Produce the JSON object now.")
    return "\n".join(lines)


def _string_list(value: Any, limit: int = 7) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [str(item).strip() for item in value if isinstance(item, (str, int, float))]
    return [item for item in items if item][:limit]


def normalize_summary(payload: Dict[str, Any]) -> Dict[str, Any]:
    summary = str(payload.get("summary") or "").strip()[:MAX_SUMMARY_CHARS]
    output: Dict[str, Any] = {
        "oneSentenceSummary": str(payload.get("oneSentenceSummary") or "").strip(),
        "summary": summary,
        "suggestedResumePrompt": str(payload.get("suggestedResumePrompt") or "").strip(),
    }
    for key in _LIST_FIELDS:
        output[key] = _string_list(payload.get(key), limit=3 if key == "userExpressedConcerns" else 7)
    return output


class SessionSummaryService:
    def __init__(
        self,
        provider: CompletionProvider,
        artifact_service: ArtifactService,
        model: Optional[str] = None,
    ):
        self.provider = provider
        self.artifact_service = artifact_service
        self.model = model or model_for("SESSION_SUMMARY_MODEL", "gpt-4o-mini")

    async def generate_session_summary(
        self, user_id: str, session_id: str, turns: Sequence[Dict[str, Any]]
    ) -> ProviderResult:
        prepared = prepare_turns(turns)
        if len(prepared) < MIN_MESSAGES_FOR_SUMMARY:
            return ProviderResult.failure(ERROR_INVALID_PAYLOAD, "not enough turns to summarize")

        result = await self.provider.complete_json(
            model=self.model,
            messages=[
                {"role": "system", "content": SESSION_SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": _build_user_prompt(session_id, prepared)},
            ],
            max_tokens=500,
            temperature=0.2,
        )
        if not result.ok:
            return result

        summary = normalize_summary(result.value)
        if not summary["summary"]:
            logger.warning("session summary for %s/%s came back empty", user_id, session_id)
            return ProviderResult.failure(ERROR_INVALID_PAYLOAD, "summary text missing")
        summary["turnCount"] = len(prepared)
        return ProviderResult.success(summary)

    async def generate_and_create_session_summary_artifact(
        self,
        user_id: str,
        session_id: str,
        turns: Sequence[Dict[str, Any]],
        *,
        conversation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderResult:
        """Summarize and store; the result value is the created artifact."""
        result = await self.generate_session_summary(user_id, session_id, turns)
        if not result.ok:
            return result
        summary = result.value

        artifact = await self.artifact_service.create_artifact(
            user_id=user_id,
            type="conversation_session_summary",
            scope="private",
            content=summary["summary"],
            conversation_id=conversation_id,
            session_id=session_id,
            title=summary["oneSentenceSummary"] or None,
            scripture_refs=summary["scriptureRefs"] or None,
            tags=summary["topics"] or None,
            metadata={
                **(metadata or {}),
                "turnCount": summary["turnCount"],
                "openQuestions": summary["openQuestions"],
                "userExpressedConcerns": summary["userExpressedConcerns"],
                "suggestedResumePrompt": summary["suggestedResumePrompt"],
                "generatedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            },
        )
        return ProviderResult.success(artifact)
