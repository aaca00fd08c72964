"""
Memory candidate extraction.

A small completion model proposes at most two closed-vocabulary facts about
the user per turn. Every proposal is re-validated here; anything outside the
vocabularies or below the confidence floor is dropped, never corrected.
Extraction is best-effort: provider or parse failures yield ``[]``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .providers import CompletionProvider, build_completion_provider, model_for
from .vocabularies import (
    FAITH_STAGES,
    MAX_CANDIDATES_PER_TURN,
    MIN_EXTRACTION_CONFIDENCE,
    STRUGGLE_THEMES,
    MemoryValue,
    is_extraction_eligible,
    is_valid_candidate_value,
    memory_value_for,
)

logger = logging.getLogger(__name__)


@dataclass
class ExtractionContext:
    message: str
    assistant_response: str = ""
    conversation_summary: Optional[str] = None
    intent: Optional[str] = None


@dataclass
class MemoryCandidate:
    type: str
    value: str
    confidence: float
    evidence: str = ""

    @property
    def memory_value(self) -> MemoryValue:
        return memory_value_for(self.type, self.value)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


EXTRACTION_SYSTEM_PROMPT = "\n".join(
    [
        "You analyze a Bible study conversation to identify stable or recurring",
        "characteristics of the USER (not the assistant, not the passage).",
        "",
        "Rules:",
        "1. Only output values from the closed lists below. Never invent values.",
        "2. Only extract with clear evidence in what the user said about themselves.",
        "3. At most 2 candidates. If nothing qualifies, return an empty list.",
        "",
        "Confidence:",
        "- 0.8-1.0: explicit statement (\"I struggle with fear of failure\")",
        "- 0.7-0.8: strong implication with recurring language (\"again\", \"always\")",
        "- below 0.7: omit",
        "",
        "STRUGGLE THEMES:",
        *[f"- {theme}" for theme in STRUGGLE_THEMES],
        "",
        "FAITH STAGES:",
        *[f"- {stage}" for stage in FAITH_STAGES],
        "",
        'Return JSON only: {"candidates": [{"type": "struggle_theme" | "faith_stage",',
        '"value": "<closed value>", "confidence": 0.7, "evidence": "<quote from user>"}]}',
    ]
)


def build_extraction_prompt(context: ExtractionContext) -> str:
    parts = [f'## User Message\n"{context.message}"']
    if context.conversation_summary:
        parts.append(f"\n## Conversation Context\n{context.conversation_summary}")
    parts.append("\n## Task\nExtract memory candidates from the user message:")
    return "\n".join(parts)


def _normalize_for_match(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().strip("\"'").lower())


def evidence_is_grounded(evidence: str, message: str) -> bool:
    """True when ``evidence`` appears verbatim (case/space-insensitive) in ``message``."""
    needle = _normalize_for_match(evidence)
    return bool(needle) and needle in _normalize_for_match(message)


def validate_and_filter_candidates(
    raw_candidates: Any,
    *,
    message: str = "",
    require_grounded_evidence: bool = False,
) -> List[MemoryCandidate]:
    if not isinstance(raw_candidates, list):
        return []

    validated: List[MemoryCandidate] = []
    for item in raw_candidates:
        if not isinstance(item, dict):
            continue
        confidence = item.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            continue
        if confidence < MIN_EXTRACTION_CONFIDENCE:
            continue

        candidate_type = item.get("type")
        value = item.get("value")
        if candidate_type not in ("struggle_theme", "faith_stage"):
            logger.warning("dropping candidate with unknown type: %r", candidate_type)
            continue
        if not is_valid_candidate_value(candidate_type, value):
            logger.warning("dropping invalid %s value: %r", candidate_type, value)
            continue

        evidence = str(item.get("evidence") or "")
        if require_grounded_evidence and not evidence_is_grounded(evidence, message):
            logger.warning("dropping %s:%s with ungrounded evidence", candidate_type, value)
            continue

        validated.append(
            MemoryCandidate(
                type=candidate_type,
                value=value,
                confidence=min(1.0, float(confidence)),
                evidence=evidence,
            )
        )

    return validated[:MAX_CANDIDATES_PER_TURN]


def _grounding_required_from_env() -> bool:
    raw = os.getenv("MEMORY_EXTRACTION_REQUIRE_GROUNDED_EVIDENCE", "")
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class CandidateExtractor:
    def __init__(
        self,
        provider: Optional[CompletionProvider] = None,
        model: Optional[str] = None,
        require_grounded_evidence: Optional[bool] = None,
    ):
        self.provider = provider or build_completion_provider()
        self.model = model or model_for("MEMORY_EXTRACTION_MODEL", "gpt-5-nano")
        self.require_grounded_evidence = (
            _grounding_required_from_env()
            if require_grounded_evidence is None
            else require_grounded_evidence
        )

    async def extract(self, context: ExtractionContext) -> List[MemoryCandidate]:
        if not (context.message or "").strip():
            return []
        if not is_extraction_eligible(context.intent):
            logger.debug("skipping extraction for intent %s", context.intent)
            return []
        try:
            result = await self.provider.complete_json(
                model=self.model,
                messages=[
                    {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                    {"role": "user", "content": build_extraction_prompt(context)},
                ],
                max_tokens=300,
                token_param="max_completion_tokens",
            )
        except Exception as exc:
            logger.warning("candidate extraction raised: %s", exc)
            return []

        if not result.ok:
            return []
        return validate_and_filter_candidates(
            result.value.get("candidates"),
            message=context.message,
            require_grounded_evidence=self.require_grounded_evidence,
        )
