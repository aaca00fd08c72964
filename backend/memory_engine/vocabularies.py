"""
Closed vocabularies for the personalization memory engine.

Every enum-valued field produced by classification, extraction or storage
is validated against the sets below. Nothing downstream may introduce a
value outside them.

Also holds:
- occurrence -> strength breakpoints
- intent -> response mode / context loader maps
- the contract constants (thresholds, TTLs, caps)
- tagged memory values (struggle theme vs. faith stage)
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union


# =============================================================================
# Intents / Response modes
# =============================================================================

INTENTS: Tuple[str, ...] = (
    "scripture_understanding",
    "reflection_wrestling",
    "prayer_support",
    "group_guidance",
    "habit_progress",
    "conversation_recall",
    "conversation_resume",
)

RESPONSE_MODES: Tuple[str, ...] = (
    "explanation",
    "coaching",
    "prayer",
    "action_guidance",
    "continuity",
)

DEFAULT_INTENT = "conversation_resume"
DEFAULT_RESPONSE_MODE = "continuity"

INTENT_RESPONSE_MAP: Dict[str, str] = {
    "scripture_understanding": "explanation",
    "reflection_wrestling": "coaching",
    "prayer_support": "prayer",
    "group_guidance": "action_guidance",
    "habit_progress": "action_guidance",
    "conversation_recall": "continuity",
    "conversation_resume": "continuity",
}

MEMORY_EXTRACTION_ELIGIBLE_INTENTS: Tuple[str, ...] = ("reflection_wrestling",)


# =============================================================================
# Memory / Signal vocabularies
# =============================================================================

MEMORY_TYPES: Tuple[str, ...] = (
    "struggle_theme",
    "faith_stage",
    "scripture_affinity",
    "tone_preference",
    "group_role",
)

SIGNAL_TYPES: Tuple[str, ...] = (
    "struggle_theme_signal",
    "faith_stage_signal",
    "tone_preference_signal",
)

# Memory types the extractor may propose.
CANDIDATE_TYPES: Tuple[str, ...] = ("struggle_theme", "faith_stage")

STRUGGLE_THEMES: Tuple[str, ...] = (
    "fear_of_failure",
    "work_anxiety",
    "loneliness",
    "identity_doubt",
    "discipline",
    "leadership_pressure",
    "shame_guilt",
    "relationship_conflict",
    "grief_loss",
    "anger_bitterness",
)

FAITH_STAGES: Tuple[str, ...] = ("seeking", "rebuilding", "grounded", "leading")

MEMORY_STRENGTHS: Tuple[str, ...] = ("light", "moderate", "strong")

MEMORY_STRENGTH_SCORES: Dict[str, float] = {
    "light": 0.4,
    "moderate": 0.7,
    "strong": 1.0,
}

MEMORY_SOURCES: Tuple[str, ...] = (
    "signal_promotion",
    "admin_promotion",
    "user_explicit",
    "onboarding",
)

# Policy categories used by consent filtering.
MEMORY_CATEGORY_BY_TYPE: Dict[str, str] = {
    "struggle_theme": "reflection",
    "faith_stage": "reflection",
    "scripture_affinity": "study",
    "tone_preference": "study",
    "group_role": "study",
}


# =============================================================================
# Contract constants
# =============================================================================

SIGNAL_TTL_DAYS = 7
PROMOTION_THRESHOLD = 2
MIN_EXTRACTION_CONFIDENCE = 0.7
MAX_CANDIDATES_PER_TURN = 2
LOW_CONFIDENCE_CLAMP = 0.55
STRENGTH_MODERATE_AT = 4
STRENGTH_STRONG_AT = 7
MIN_STRENGTH_FOR_CONTEXT = 0.3
MAX_MEMORIES_FOR_CONTEXT = 10

MEMORY_STATE_SCHEMA_VERSION = "forge.user_memory_state.v1"
MAX_NOTE_CHARS = 400
MAX_NOTE_KEYWORDS = 8
MAX_KEYWORD_CHARS = 24
MAX_GLOBAL_NOTES = 200


def compute_strength(occurrences: int) -> str:
    if occurrences >= STRENGTH_STRONG_AT:
        return "strong"
    if occurrences >= STRENGTH_MODERATE_AT:
        return "moderate"
    return "light"


def strength_score(occurrences: int) -> float:
    return MEMORY_STRENGTH_SCORES[compute_strength(occurrences)]


def is_valid_intent(value: Any) -> bool:
    return isinstance(value, str) and value in INTENTS


def is_extraction_eligible(intent: Optional[str]) -> bool:
    """An unknown intent (None) does not block extraction."""
    return intent is None or intent in MEMORY_EXTRACTION_ELIGIBLE_INTENTS


def is_valid_response_mode(value: Any) -> bool:
    return isinstance(value, str) and value in RESPONSE_MODES


def is_valid_memory_type(value: Any) -> bool:
    return isinstance(value, str) and value in MEMORY_TYPES


def is_valid_signal_type(value: Any) -> bool:
    return isinstance(value, str) and value in SIGNAL_TYPES


def is_valid_struggle_theme(value: Any) -> bool:
    return isinstance(value, str) and value in STRUGGLE_THEMES


def is_valid_faith_stage(value: Any) -> bool:
    return isinstance(value, str) and value in FAITH_STAGES


def is_valid_candidate_value(memory_type: Any, value: Any) -> bool:
    """Closed-vocabulary predicate for a (type, value) candidate pair."""
    if memory_type == "struggle_theme":
        return is_valid_struggle_theme(value)
    if memory_type == "faith_stage":
        return is_valid_faith_stage(value)
    return False


# =============================================================================
# Tagged memory values
# =============================================================================


def _canonical_json(payload: Mapping[str, Any]) -> str:
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class StruggleThemeValue:
    theme: str
    kind: str = "struggle_theme"

    def __post_init__(self) -> None:
        if not is_valid_struggle_theme(self.theme):
            raise ValueError(f"Unknown struggle theme: {self.theme!r}")

    @property
    def raw(self) -> str:
        return self.theme

    def to_json(self) -> Dict[str, str]:
        return {"theme": self.theme}

    @property
    def value_key(self) -> str:
        return _canonical_json(self.to_json())


@dataclass(frozen=True)
class FaithStageValue:
    stage: str
    kind: str = "faith_stage"

    def __post_init__(self) -> None:
        if not is_valid_faith_stage(self.stage):
            raise ValueError(f"Unknown faith stage: {self.stage!r}")

    @property
    def raw(self) -> str:
        return self.stage

    def to_json(self) -> Dict[str, str]:
        return {"stage": self.stage}

    @property
    def value_key(self) -> str:
        return _canonical_json(self.to_json())


MemoryValue = Union[StruggleThemeValue, FaithStageValue]


def memory_value_for(memory_type: str, raw: str) -> MemoryValue:
    """Build the tagged value for a candidate; raises ValueError on unknown kinds."""
    if memory_type == "struggle_theme":
        return StruggleThemeValue(theme=raw)
    if memory_type == "faith_stage":
        return FaithStageValue(stage=raw)
    raise ValueError(f"Unhandled memory candidate type: {memory_type!r}")


def memory_value_from_json(memory_type: str, payload: Any) -> Optional[MemoryValue]:
    """Rehydrate a stored JSON value. Unknown or malformed payloads return None."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except (TypeError, ValueError):
            return None
    if not isinstance(payload, dict):
        return None
    try:
        if memory_type == "struggle_theme":
            return StruggleThemeValue(theme=str(payload.get("theme", "")))
        if memory_type == "faith_stage":
            return FaithStageValue(stage=str(payload.get("stage", "")))
    except ValueError:
        return None
    return None


def signal_type_for(memory_type: str) -> str:
    signal_type = f"{memory_type}_signal"
    if signal_type not in SIGNAL_TYPES:
        raise ValueError(f"No signal type for memory type: {memory_type!r}")
    return signal_type


def memory_type_for_signal(signal_type: str) -> str:
    memory_type = signal_type[: -len("_signal")] if signal_type.endswith("_signal") else ""
    if signal_type not in SIGNAL_TYPES or memory_type not in MEMORY_TYPES:
        raise ValueError(f"No memory type for signal type: {signal_type!r}")
    return memory_type
