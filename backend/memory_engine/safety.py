"""
Safety filter for memory capture and prompt-time memory use.

Two disjoint pattern sets drive the decision:
- pastoral-allowed: named emotional/spiritual struggles worth remembering
- blocked-sensitive: medical, substance, trauma, crisis, legal, financial, PII

A blocked term only disqualifies text when first-person language appears
within a small word window around it, so theological or third-person
discussion of the same topic stays allowed.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Sequence

logger = logging.getLogger(__name__)

DISCLOSURE_WINDOW_WORDS = 5


def _ci(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


PASTORAL_ALLOWED_PATTERNS: List[Pattern[str]] = [
    _ci(r"\b(anger|angry|bitterness|bitter|resentment|resentful)\b"),
    _ci(r"\b(anxiety|anxious|worry|worried|fear|fearful|afraid)\b"),
    _ci(r"\b(depression|depressed|sadness|sad|hopeless|hopelessness)\b"),
    _ci(r"\b(doubt|doubting|unbelief|questioning faith)\b"),
    _ci(r"\b(temptation|tempted|lust|lustful|pornography)\b"),
    _ci(r"\b(pride|prideful|arrogance|arrogant)\b"),
    _ci(r"\b(jealousy|jealous|envy|envious)\b"),
    _ci(r"\b(loneliness|lonely|isolation|isolated)\b"),
    _ci(r"\b(grief|grieving|loss|mourning)\b"),
    _ci(r"\b(forgiveness|forgiving|unforgiveness|unforgiving)\b"),
    _ci(r"\b(patience|impatience|impatient)\b"),
    _ci(r"\b(therapy|therapist|counselor|counseling)\b"),
]

BLOCKED_SENSITIVE_PATTERNS: List[Pattern[str]] = [
    # medical
    _ci(r"\b(diagnosis|diagnosed|disorder|bipolar|schizophrenia|ptsd)\b"),
    _ci(r"\b(medication|medicated|prescription|pills|meds)\b"),
    _ci(r"\b(cancer|tumor|hospital|surgery|operation|treatment)\b"),
    _ci(r"\b(sick|illness|disease|chronic)\b"),
    # substances
    _ci(r"\b(addict|addiction|alcoholic|overdose|rehab|relapse)\b"),
    _ci(r"\b(drug|drugs|substance|narcotics|opioid)\b"),
    # trauma
    _ci(r"\b(abuse|abused|abusive|assault|assaulted)\b"),
    _ci(r"\b(trauma|traumatic|ptsd|flashback)\b"),
    _ci(r"\b(violence|violent|victim|rape|raped)\b"),
    # crisis
    _ci(r"\b(suicide|suicidal|self-harm|cutting|kill myself|end my life)\b"),
    # legal
    _ci(r"\b(arrest|arrested|jail|prison|court|lawsuit|legal trouble)\b"),
    _ci(r"\b(criminal|felony|probation|parole)\b"),
    # financial
    _ci(r"\b(salary|income|debt|bankrupt|bankruptcy|mortgage)\b"),
    _ci(r"\b(\$\d+|credit card|bank account|social security)\b"),
    # PII
    _ci(r"\b(ssn|address:|phone:|account number)\b"),
]

# "I" is case-sensitive; every other indicator ignores case.
FIRST_PERSON_INDICATORS: List[Pattern[str]] = [
    re.compile(r"\bI\b"),
    _ci(r"\bI'm\b"),
    _ci(r"\bI've\b"),
    _ci(r"\bI'd\b"),
    _ci(r"\bI'll\b"),
    _ci(r"\bmy\b"),
    _ci(r"\bmine\b"),
    _ci(r"\bme\b"),
    _ci(r"\bmyself\b"),
    _ci(r"\bwe\b"),
    _ci(r"\bwe're\b"),
    _ci(r"\bwe've\b"),
    _ci(r"\bour\b"),
    _ci(r"\bours\b"),
    _ci(r"\bus\b"),
    _ci(r"\bourselves\b"),
]

PROHIBITED_BELIEF_PHRASES: Sequence[str] = (
    "you believe",
    "your belief",
    "you think that",
    "you feel that",
    "you always",
    "you never",
    "your conviction",
    "you are convinced",
    "in your opinion",
    "you disagree with",
    "you agree with",
)

SAFE_PHRASE_ALTERNATIVES: Dict[str, str] = {
    "you believe": "previously you explored",
    "your belief": "the perspective you examined",
    "you think that": "you once reflected on",
    "you feel that": "you expressed wondering about",
    "you always": "you have explored",
    "you never": "you haven't yet explored",
    "your conviction": "the theme you studied",
    "in your opinion": "in your reflection",
}

_SENSITIVE_KEYWORDS: Sequence[str] = (
    "api key",
    "password",
    "secret",
    "token",
    "bearer ",
    "ssn",
    "social security",
    "credit card",
    "bank account",
    "address:",
    "phone:",
    "diagnosis",
    "medication",
)

_INSTRUCTION_KEYWORDS: Sequence[str] = (
    "system prompt",
    "ignore previous",
    "developer message",
)


def has_personal_disclosure(
    text: str,
    sensitive_pattern: Pattern[str],
    proximity_words: int = DISCLOSURE_WINDOW_WORDS,
) -> bool:
    """
    True when a first-person indicator sits within the word window of a match.

    Matches run over the whole text so multi-word phrases ("end my life",
    "credit card") are found; each match is mapped back to its word index.
    """
    source = text or ""
    words = source.split()
    for match in sensitive_pattern.finditer(source):
        index = len(source[: match.start()].split())
        span = max(1, len(match.group(0).split()))
        start = max(0, index - proximity_words)
        end = min(len(words), index + span + proximity_words)
        surrounding = " ".join(words[start:end])
        if any(indicator.search(surrounding) for indicator in FIRST_PERSON_INDICATORS):
            return True
    return False


def contains_pastoral_content(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in PASTORAL_ALLOWED_PATTERNS)


def _has_blocked_disclosure(text: str) -> bool:
    for pattern in BLOCKED_SENSITIVE_PATTERNS:
        if pattern.search(text) and has_personal_disclosure(text, pattern):
            return True
    return False


def contains_sensitive_content(text: str) -> bool:
    """
    Decide whether text is too sensitive to store or inject.

    Pastoral content is allowed on its own, but a blocked term with a
    nearby personal disclosure anywhere in the same text rejects the item.
    """
    return _has_blocked_disclosure(text or "")


def looks_sensitive(text: str) -> bool:
    """Keyword check for secrets, credentials and identifiers at capture time."""
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in _SENSITIVE_KEYWORDS)


def looks_instructional(text: str) -> bool:
    """Keyword check for prompt-injection attempts at capture time."""
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in _INSTRUCTION_KEYWORDS)


def log_safety_event(event_type: str, item_id: str, reason: Optional[str] = None) -> None:
    timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    line = f"{timestamp} | {event_type.upper()} | {item_id}"
    if reason:
        line = f"{line} | {reason}"
    logger.info(line)


def _memory_text(memory: Mapping[str, Any]) -> str:
    for key in ("insight", "preview", "text", "content"):
        value = memory.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def sanitize_memory_for_prompt(memory: Mapping[str, Any]) -> Optional[str]:
    """Return the memory text when safe, or None when it must be dropped."""
    content = _memory_text(memory)
    if contains_sensitive_content(content):
        log_safety_event("blocked", str(memory.get("id", "")), "sensitive_content")
        return None
    return content


def filter_safe_memories(memories: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    return [memory for memory in memories if sanitize_memory_for_prompt(memory) is not None]


def validate_prompt_safety(prompt: str) -> Dict[str, Any]:
    issues: List[str] = []
    lowered = (prompt or "").lower()
    for phrase in PROHIBITED_BELIEF_PHRASES:
        if phrase in lowered:
            issues.append(f'Contains prohibited phrase: "{phrase}"')
    for pattern in BLOCKED_SENSITIVE_PATTERNS:
        if pattern.search(prompt or ""):
            issues.append(f"Contains sensitive topic: {pattern.pattern[:30]}...")
    return {"safe": not issues, "issues": issues}


def sanitize_phrasings(text: str) -> str:
    sanitized = text or ""
    for prohibited, safe in SAFE_PHRASE_ALTERNATIVES.items():
        sanitized = re.sub(re.escape(prohibited), safe, sanitized, flags=re.IGNORECASE)
    return sanitized


# =============================================================================
# Consent / retrieval policy
# =============================================================================


@dataclass(frozen=True)
class RetrievalPolicy:
    enabled: bool
    allowed_types: List[str] = field(default_factory=list)
    max_memories: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "allowedTypes": list(self.allowed_types),
            "maxMemories": self.max_memories,
        }


def derive_retrieval_policy(memory_mode: Optional[str]) -> RetrievalPolicy:
    mode = (memory_mode or "standard").strip().lower()
    if mode == "off":
        return RetrievalPolicy(enabled=False, allowed_types=[], max_memories=0)
    if mode == "minimal":
        return RetrievalPolicy(enabled=True, allowed_types=["study"], max_memories=3)
    if mode == "full":
        return RetrievalPolicy(
            enabled=True, allowed_types=["study", "reflection", "prayer"], max_memories=5
        )
    return RetrievalPolicy(enabled=True, allowed_types=["study", "reflection"], max_memories=5)


def is_memory_allowed_by_consent(consent_mode: str, category: str) -> bool:
    if consent_mode == "off":
        return False
    if consent_mode == "minimal":
        return category == "study"
    if consent_mode == "standard":
        return category in {"study", "reflection"}
    return True


def is_memory_allowed_by_policy(policy: Optional[RetrievalPolicy], category: str) -> bool:
    if policy is None:
        return True
    if not policy.enabled:
        return False
    return category in policy.allowed_types
