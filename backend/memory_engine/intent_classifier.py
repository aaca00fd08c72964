"""
Intent classification.

Two tiers:
1. Rules: ordered pattern groups return a confident result or None.
2. Model fallback: a small completion model picks from the closed
   vocabularies; low-confidence answers are clamped to the default pair.

``classify_intent`` adds the TaskSpec (question type, required context,
retrieval knobs) that drives retrieval for the turn.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Pattern, Sequence

from .providers import CompletionProvider, build_completion_provider, model_for
from .vocabularies import (
    DEFAULT_INTENT,
    DEFAULT_RESPONSE_MODE,
    INTENT_RESPONSE_MAP,
    LOW_CONFIDENCE_CLAMP,
    is_valid_intent,
    is_valid_response_mode,
)

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 0.9
META_RULE_CONFIDENCE = 0.85
HEURISTIC_CONFIDENCE = 0.7
SHORT_MESSAGE_CONFIDENCE = 0.6
MODEL_DEFAULT_CONFIDENCE = 0.5
SHORT_CONTINUATION_CHARS = 50
MIN_MODEL_MESSAGE_CHARS = 3
MAX_MODEL_SIGNALS = 5


def _ci(*patterns: str) -> List[Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# =============================================================================
# Types
# =============================================================================


@dataclass
class ClassificationContext:
    conversation_history: List[Dict[str, str]] = field(default_factory=list)
    is_first_message: bool = True
    verse_reference: Optional[str] = None


@dataclass
class TemporalModifier:
    direction: Optional[str] = None  # oldest | newest
    range: Optional[str] = None


@dataclass
class IntentFlags:
    self_disclosure: bool = False
    situational: bool = False
    has_verse_ref: bool = False
    temporal: Optional[TemporalModifier] = None


@dataclass
class IntentResult:
    intent: str
    response_mode: str
    confidence: float
    signals: List[str]
    source: str  # rules | model
    flags: IntentFlags = field(default_factory=IntentFlags)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RetrievalKnobs:
    scripture_scope: str = "verse"
    max_cross_refs: int = 0
    include_user_memory: bool = False
    include_prior_notes: bool = False
    memory_recency: str = "all"
    include_artifacts: bool = False
    temporal_modifier: Optional[TemporalModifier] = None


@dataclass
class TaskSpec:
    question_type: str
    required_context: List[str]
    response_mode: str
    scripture_scope: str
    length_target: str
    needs_clarifying_question: bool
    retrieval_knobs: RetrievalKnobs
    clarifying_question: Optional[str] = None


@dataclass
class IntentClassification:
    intent: str
    response_mode: str
    confidence: float
    signals: List[str]
    source: str
    flags: IntentFlags
    task_spec: TaskSpec

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Lookup tables
# =============================================================================

QUESTION_TYPES = (
    "meaning",
    "context",
    "application",
    "word_study",
    "cross_reference",
    "objection",
    "comfort",
    "other",
)

INTENT_REQUIRED_CONTEXT: Dict[str, List[str]] = {
    "scripture_understanding": ["passage_text", "surrounding_context"],
    "reflection_wrestling": [
        "passage_text",
        "surrounding_context",
        "conversation_context",
        "user_memory",
    ],
    "prayer_support": ["conversation_context"],
    "group_guidance": ["conversation_context", "group_context"],
    "habit_progress": ["reading_plan_state", "conversation_context"],
    "conversation_recall": ["conversation_context"],
    "conversation_resume": ["conversation_context"],
}

QUESTION_TYPE_CONTEXT_ADDITIONS: Dict[str, List[str]] = {
    "meaning": ["conversation_context"],
    "context": ["conversation_context"],
    "word_study": ["definitions"],
    "cross_reference": ["cross_refs"],
}

INTENT_RETRIEVAL_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "reflection_wrestling": {"include_user_memory": True, "include_artifacts": True},
    "prayer_support": {"memory_recency": "recent", "include_artifacts": True},
    "conversation_recall": {"include_artifacts": True},
}

QUESTION_TYPE_RETRIEVAL_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "context": {"scripture_scope": "section"},
    "cross_reference": {"max_cross_refs": 2, "scripture_scope": "paragraph"},
    "application": {"include_user_memory": True, "include_artifacts": True},
    "comfort": {"include_user_memory": True, "include_artifacts": True},
}

QUESTION_TYPE_RESPONSE_MODE: Dict[str, str] = {
    "comfort": "pastoral",
    "application": "coach",
    "word_study": "study",
    "cross_reference": "study",
}

QUESTION_TYPE_SCRIPTURE_SCOPE: Dict[str, str] = {
    "context": "section",
    "cross_reference": "paragraph",
}

CLARIFYING_QUESTION = "Which verse or passage are you referring to?"


# =============================================================================
# Patterns
# =============================================================================

RECALL_PATTERNS = _ci(
    r"when did we (talk|discuss|chat) about",
    r"have we (discussed|talked about|covered)",
    r"last time we (discussed|talked|chatted)",
    r"did we (ever|already) (discuss|talk|cover)",
    r"remember when we",
    r"what did (you|we) say about",
)

RESUME_PATTERNS = _ci(
    r"^(and|but|so|also|what about)",
    r"you (said|mentioned|were saying)",
    r"going back to",
    r"following up on",
    r"^(yes|yeah|ok|okay|right|sure),? (and|but|so)",
    r"more (about|on) (that|this)",
    r"tell me more",
    r"continue (from|with|where)",
    r"pick up where",
    r"back to what you were saying",
)

# Checked in this order after recall/resume.
TOPICAL_INTENT_PATTERNS: Dict[str, List[Pattern[str]]] = {
    "scripture_understanding": _ci(
        r"what does (this|that|it) mean",
        r"explain (this|that|the)",
        r"help me understand",
        r"what is (the meaning|paul|jesus|god) (saying|teaching)",
        r"can you (explain|clarify|break down)",
        r"how (should|do) (i|we) interpret",
        r"who (was|were) (this|it|the letter|paul|the author) (written|speaking|writing) to",
        r"who (is|was|were) the (audience|recipients|readers)",
        r"what (was|were) (happening|going on|the circumstances)",
        r"what('s| is) the (historic(al)? |)?(context|background|setting)",
        r"when was (this|it) written",
        r"where was (this|it) written",
        r"why did (paul|jesus|the author|he|they) write",
        r"what (time|period|era) was this",
        r"tell me (about |)the (history|background|context)",
        r"who wrote (this|it)",
        r"(historic(al)?|cultural) (background|context|setting)",
    ),
    "reflection_wrestling": _ci(
        r"i('m| am) (struggling|wrestling|having trouble)",
        r"this is (hard|difficult|challenging) for me",
        r"i don't (understand|get) (why|how)",
        r"how (do|can) i (apply|live out|practice)",
        r"i (feel|felt) (like|that)",
        r"this (makes|made) me (think|feel|wonder)",
        r"what if i",
        r"i('ve| have) been (thinking|wondering|questioning)",
        r"i('ve| have|'ve got| got) (a |an )?[a-z]+ (issue|issues|problem|problems|struggle|struggles|difficulty|difficulties)",
        r"i deal with",
        r"i('m| am) (dealing|coping|living) with",
        r"i have .{1,20} issues?\b",
    ),
    "prayer_support": _ci(
        r"pray (for|with) me",
        r"can you (pray|write a prayer)",
        r"i need (prayer|a prayer)",
        r"help me pray",
        r"prayer for (my|this|the)",
        r"write (me )?a prayer",
    ),
    "group_guidance": _ci(
        r"my (small )?group",
        r"our (bible )?study group",
        r"(lead|leading) (a |my |our )?(group|discussion|study)",
        r"group (discussion|study|meeting)",
        r"small group (leader|leadership)",
        r"discussion (question|guide|point)",
        r"how (can|should) (i|we) discuss this (with|in) (my|our|the) group",
        r"group (member|participant)",
        r"(facilitate|facilitating) (a |the )?discussion",
    ),
    "habit_progress": _ci(
        r"how('s| is) my (reading|bible|plan)",
        r"my (reading|prayer) (streak|progress)",
        r"am i (on track|behind|ahead)",
        r"what('s| is) (next|my next)",
        r"show (me )?my (progress|stats|history)",
    ),
}

STARTS_WITH_PRONOUN = re.compile(r"^(it|this|that|they|he|she|the)\b", re.IGNORECASE)
PRAYER_TOPIC = re.compile(r"pray|prayer", re.IGNORECASE)
PASSAGE_CUE = re.compile(r"(verse|chapter|passage|bible|scripture)", re.IGNORECASE)
DISTRESS = re.compile(r"struggling|anxious|worried|afraid", re.IGNORECASE)

SELF_DISCLOSURE_PATTERNS = _ci(
    r"i('m| am) (struggling|wrestling|having trouble)",
    r"i (have|'ve got|got) (a|an)",
    r"i (feel|felt)",
    r"i (deal|dealing|coping|living) with",
    r"i (always|never|keep)",
    r"my (problem|issue|struggle)",
)

SITUATIONAL_PATTERNS = _ci(
    r"\b(this|next|last) (week|weekend|month|year)\b",
    r"\b(today|tomorrow|yesterday)\b",
    r"\bi('m| am) (going|traveling|visiting|leaving)\b",
    r"\b(trip|vacation|travel|conference|event)\b",
)

VERSE_REF_PATTERN = re.compile(r"\b([1-3]?\s?[a-z]+)\s+\d+:\d+\b", re.IGNORECASE)

OLDEST_PATTERNS = _ci(r"\b(oldest|earliest|first)\b", r"\bwhen did (i|we) first\b")
NEWEST_PATTERNS = _ci(r"\b(newest|latest|most recent)\b", r"\brecently\b")
# "last" alone means newest; "last week/month/year" is a range.
LAST_AS_NEWEST = re.compile(r"\b(the )?last (time|conversation|discussion|thing)\b", re.IGNORECASE)

RANGE_PATTERNS = [
    (re.compile(r"\b(today|yesterday)\b", re.IGNORECASE), "last_day"),
    (re.compile(r"\blast week\b", re.IGNORECASE), "last_week"),
    (re.compile(r"\b(this|last) month\b", re.IGNORECASE), "last_month"),
    (re.compile(r"\blast (3|three) months\b", re.IGNORECASE), "last_3_months"),
    (re.compile(r"\blast year\b", re.IGNORECASE), "last_year"),
    (re.compile(r"\bthis year\b", re.IGNORECASE), "this_year"),
]

RANGE_DAYS = {
    "last_day": 1,
    "last_week": 7,
    "last_month": 30,
    "last_3_months": 90,
    "last_year": 365,
}

QUESTION_TYPE_PATTERNS: Dict[str, List[Pattern[str]]] = {
    "context": _ci(
        r"context|background|who (is|was) (speaking|writing|the audience)",
        r"when (was|did)|what time|historical",
        r"why (was|did) (this|it|he|they)",
        r"who (wrote|is|are|were)",
    ),
    "application": _ci(
        r"apply|live out|practice|what should i do",
        r"how (do|can|should) (i|we) (respond|act|change)",
        r"what does this mean for (my|our)",
    ),
    "word_study": _ci(
        r"greek|hebrew|original (language|word|text)",
        r"(what|how) does? .* (mean|translate)",
        r"define|definition|word (study|meaning)",
    ),
    "cross_reference": _ci(
        r"where else|other (verses|passages)|cross.?reference",
        r"related (passages|verses|scripture)",
        r"does (the bible|scripture) (say|mention) .* elsewhere",
    ),
    "objection": _ci(
        r"but (what about|how can|doesn't)",
        r"seems? (unfair|wrong|contradictory)",
        r"how (can|do) (you|we) (reconcile|explain)",
        r"i (struggle|have trouble) (believing|accepting)",
    ),
    "comfort": _ci(
        r"struggling|anxious|worried|afraid|scared|guilty",
        r"hard (time|season|day)|going through",
        r"i (feel|am feeling) (lost|alone|hopeless)",
        r"comfort|encourage|hope",
    ),
    "meaning": _ci(
        r"what does (this|that|it) mean",
        r"explain|help me understand|clarify",
        r"what (is|are) .* (saying|teaching)",
    ),
}

INTENT_CLASSIFICATION_PROMPT = """Classify the user's message into exactly ONE intent and ONE response mode.

Allowed intents:
- scripture_understanding: what scripture means, historical context, interpretation
- reflection_wrestling: personal struggles, applying faith, emotional or spiritual challenges
- prayer_support: requests for prayer or help praying
- group_guidance: small group leadership, facilitating discussions
- habit_progress: reading plan progress, streaks, stats
- conversation_recall: asking when or where something was previously discussed
- conversation_resume: continuing or picking up a prior discussion

Allowed response modes: explanation, coaching, prayer, action_guidance, continuity

Also detect flags:
- selfDisclosure: the user reveals their own ongoing struggle, trait or faith journey
- situational: the user shares a time-bound fact (travel, events, schedule)
- hasVerseRef: a Bible verse reference is present

Return JSON only:
{"intent": "...", "responseMode": "...", "confidence": 0.0, "signals": ["..."],
 "flags": {"selfDisclosure": false, "situational": false, "hasVerseRef": false}}"""


# =============================================================================
# Detection helpers
# =============================================================================


def _any_match(patterns: Sequence[Pattern[str]], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def _pattern_signal(prefix: str, pattern: Pattern[str]) -> str:
    return f"{prefix}: {pattern.pattern[:30]}..."


def detect_temporal_modifier(message: str) -> Optional[TemporalModifier]:
    direction: Optional[str] = None
    if _any_match(OLDEST_PATTERNS, message):
        direction = "oldest"
    elif _any_match(NEWEST_PATTERNS, message) or LAST_AS_NEWEST.search(message):
        direction = "newest"

    range_name: Optional[str] = None
    for pattern, name in RANGE_PATTERNS:
        if pattern.search(message):
            range_name = name
            break

    if direction is None and range_name is None:
        return None
    return TemporalModifier(direction=direction, range=range_name)


def compute_date_bounds(
    range_name: Optional[str], now: Optional[datetime] = None
) -> Dict[str, datetime]:
    """Return ``{"after": datetime}`` for a temporal range; empty for all_time/unknown."""
    current = now or datetime.now(timezone.utc)
    if range_name in RANGE_DAYS:
        return {"after": current - timedelta(days=RANGE_DAYS[range_name])}
    if range_name == "this_year":
        return {"after": current.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)}
    return {}


def has_verse_reference(message: str, context: ClassificationContext) -> bool:
    return bool(VERSE_REF_PATTERN.search(message)) or bool(context.verse_reference)


def detect_flags(message: str, context: ClassificationContext) -> IntentFlags:
    return IntentFlags(
        self_disclosure=_any_match(SELF_DISCLOSURE_PATTERNS, message),
        situational=_any_match(SITUATIONAL_PATTERNS, message),
        has_verse_ref=has_verse_reference(message, context),
        temporal=detect_temporal_modifier(message),
    )


def infer_question_type(message: str) -> str:
    for question_type, patterns in QUESTION_TYPE_PATTERNS.items():
        if _any_match(patterns, message):
            return question_type
    return "meaning"


# =============================================================================
# Tier 1: rules
# =============================================================================


def classify_intent_rules(
    message: str, context: ClassificationContext
) -> Optional[IntentResult]:
    """Fast rule pass. Returns None when nothing matches confidently."""
    text = message or ""
    signals: List[str] = []
    flags = detect_flags(text, context)

    continuation_likely = False
    if not context.is_first_message and context.conversation_history:
        if len(text) < SHORT_CONTINUATION_CHARS:
            continuation_likely = True
            signals.append("Short message in ongoing conversation")
        elif STARTS_WITH_PRONOUN.search(text):
            continuation_likely = True
            signals.append("Starts with context-referencing pronoun")

    for pattern in RECALL_PATTERNS:
        if pattern.search(text):
            signals.append(_pattern_signal("Recall pattern", pattern))
            return IntentResult(
                "conversation_recall", "continuity", META_RULE_CONFIDENCE, signals, "rules", flags
            )

    for pattern in RESUME_PATTERNS:
        if pattern.search(text):
            signals.append(_pattern_signal("Resume pattern", pattern))
            return IntentResult(
                "conversation_resume", "continuity", META_RULE_CONFIDENCE, signals, "rules", flags
            )

    for intent, patterns in TOPICAL_INTENT_PATTERNS.items():
        for pattern in patterns:
            if pattern.search(text):
                signals.append(_pattern_signal("Pattern match", pattern))
                return IntentResult(
                    intent, INTENT_RESPONSE_MAP[intent], RULE_CONFIDENCE, signals, "rules", flags
                )

    if continuation_likely:
        last_turn = context.conversation_history[-1]
        if PRAYER_TOPIC.search(text) and not PRAYER_TOPIC.search(str(last_turn.get("content") or "")):
            signals.append("Short message but mentions new topic (prayer)")
            return IntentResult(
                "prayer_support", "prayer", HEURISTIC_CONFIDENCE, signals, "rules", flags
            )
        return IntentResult(
            "conversation_resume", "continuity", HEURISTIC_CONFIDENCE, signals, "rules", flags
        )

    return None


# =============================================================================
# Tier 2: model fallback
# =============================================================================


def _default_result(confidence: float, signal: str, source: str = "model") -> IntentResult:
    return IntentResult(DEFAULT_INTENT, DEFAULT_RESPONSE_MODE, confidence, [signal], source)


def validate_and_clamp(raw: Any) -> IntentResult:
    """Coerce a model payload onto the closed vocabularies."""
    payload = raw if isinstance(raw, dict) else {}
    intent = payload.get("intent") if is_valid_intent(payload.get("intent")) else DEFAULT_INTENT
    response_mode = (
        payload.get("responseMode")
        if is_valid_response_mode(payload.get("responseMode"))
        else DEFAULT_RESPONSE_MODE
    )

    confidence = payload.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = MODEL_DEFAULT_CONFIDENCE
    confidence = max(0.0, min(1.0, float(confidence)))

    raw_signals = payload.get("signals")
    if isinstance(raw_signals, list):
        signals = [str(item) for item in raw_signals[:MAX_MODEL_SIGNALS]]
    else:
        signals = ["llm_fallback"]

    raw_flags = payload.get("flags") if isinstance(payload.get("flags"), dict) else {}
    flags = IntentFlags(
        self_disclosure=bool(raw_flags.get("selfDisclosure")),
        situational=bool(raw_flags.get("situational")),
        has_verse_ref=bool(raw_flags.get("hasVerseRef")),
    )

    if confidence < LOW_CONFIDENCE_CLAMP:
        return IntentResult(
            DEFAULT_INTENT,
            DEFAULT_RESPONSE_MODE,
            confidence,
            signals + ["clamped_low_confidence"],
            "model",
            flags,
        )
    return IntentResult(intent, response_mode, confidence, signals, "model", flags)


async def classify_intent_model(
    message: str,
    provider: CompletionProvider,
    model: Optional[str] = None,
) -> IntentResult:
    try:
        result = await provider.complete_json(
            model=model or model_for("INTENT_CLASSIFIER_MODEL", "gpt-5-nano"),
            messages=[
                {"role": "system", "content": INTENT_CLASSIFICATION_PROMPT},
                {"role": "user", "content": message},
            ],
            max_tokens=300,
            token_param="max_completion_tokens",
        )
    except Exception as exc:
        logger.warning("intent model call raised: %s", exc)
        return _default_result(MODEL_DEFAULT_CONFIDENCE, "llm_exception")

    if not result.ok:
        return _default_result(MODEL_DEFAULT_CONFIDENCE, f"llm_{result.error_kind}")
    return validate_and_clamp(result.value)


async def classify_intent_async(
    message: str,
    context: ClassificationContext,
    *,
    provider: Optional[CompletionProvider] = None,
    model: Optional[str] = None,
) -> IntentResult:
    """Rules first; the model only when rules are inconclusive."""
    rule_result = classify_intent_rules(message, context)
    if rule_result is not None:
        return rule_result

    if len((message or "").strip()) < MIN_MODEL_MESSAGE_CHARS:
        return _default_result(SHORT_MESSAGE_CONFIDENCE, "short_message_default", source="rules")

    client = provider or build_completion_provider()
    model_result = await classify_intent_model(message, client, model)
    # Rule-detected temporal/verse cues still apply to model-sourced results.
    rule_flags = detect_flags(message, context)
    model_result.flags.temporal = rule_flags.temporal
    model_result.flags.has_verse_ref = model_result.flags.has_verse_ref or rule_flags.has_verse_ref
    return model_result


# =============================================================================
# TaskSpec
# =============================================================================


def derive_required_context(intent: str, question_type: str, verse_ref: bool) -> List[str]:
    base = list(INTENT_REQUIRED_CONTEXT.get(intent, []))
    if verse_ref and "passage_text" not in base:
        base.append("passage_text")
    merged = base + QUESTION_TYPE_CONTEXT_ADDITIONS.get(question_type, [])
    return list(dict.fromkeys(merged))


def detect_response_mode(question_type: str, message: str) -> str:
    if DISTRESS.search(message):
        return "pastoral"
    return QUESTION_TYPE_RESPONSE_MODE.get(question_type, "explain")


def derive_retrieval_knobs(
    intent: str,
    question_type: str,
    verse_ref: bool = False,
    temporal: Optional[TemporalModifier] = None,
) -> RetrievalKnobs:
    knobs = RetrievalKnobs()
    for overrides in (
        INTENT_RETRIEVAL_OVERRIDES.get(intent, {}),
        QUESTION_TYPE_RETRIEVAL_OVERRIDES.get(question_type, {}),
    ):
        for key, value in overrides.items():
            setattr(knobs, key, value)
    if intent == "conversation_resume" and verse_ref:
        knobs.include_artifacts = True
    if temporal is not None:
        knobs.temporal_modifier = temporal
    return knobs


def build_task_spec(
    intent: str,
    question_type: str,
    message: str,
    context: ClassificationContext,
    needs_clarification: bool = False,
) -> TaskSpec:
    verse_ref = has_verse_reference(message, context)
    temporal = detect_temporal_modifier(message)
    clarifying = (
        CLARIFYING_QUESTION
        if needs_clarification and intent == "scripture_understanding"
        else None
    )
    return TaskSpec(
        question_type=question_type,
        required_context=derive_required_context(intent, question_type, verse_ref),
        response_mode=detect_response_mode(question_type, message),
        scripture_scope=QUESTION_TYPE_SCRIPTURE_SCOPE.get(question_type, "verse"),
        length_target="medium" if question_type == "word_study" else "short",
        needs_clarifying_question=needs_clarification,
        clarifying_question=clarifying,
        retrieval_knobs=derive_retrieval_knobs(intent, question_type, verse_ref, temporal),
    )


async def classify_intent(
    message: str,
    context: Optional[ClassificationContext] = None,
    *,
    provider: Optional[CompletionProvider] = None,
    model: Optional[str] = None,
) -> IntentClassification:
    """
    Full classification with TaskSpec.

    Never raises for provider or payload problems: those degrade to
    ``conversation_resume``/``continuity`` with a diagnostic signal.
    """
    ctx = context or ClassificationContext()
    text = message or ""
    try:
        result = await classify_intent_async(text, ctx, provider=provider, model=model)
    except Exception as exc:
        logger.warning("intent classification failed: %s", exc)
        result = _default_result(MODEL_DEFAULT_CONFIDENCE, "classification_error")

    question_type = infer_question_type(text)
    needs_clarification = (
        not ctx.verse_reference
        and result.intent == "scripture_understanding"
        and not PASSAGE_CUE.search(text)
    )
    task_spec = build_task_spec(result.intent, question_type, text, ctx, needs_clarification)
    return IntentClassification(
        intent=result.intent,
        response_mode=result.response_mode,
        confidence=result.confidence,
        signals=result.signals,
        source=result.source,
        flags=result.flags,
        task_spec=task_spec,
    )
