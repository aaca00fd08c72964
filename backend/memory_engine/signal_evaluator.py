"""
Signal -> memory promotion.

Each candidate is one sighting of a (user, type, value) fact:

    absent -> signal(1) -> signal(2..threshold-1) -> memory -> memory(reinforced)

A second sighting from the same conversation is a no-op. The write path is
``SQLiteClient.apply_signal_sighting``, a single transaction; ``dry_run``
mirrors the same classification with reads only.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from db.sqlite_client import SQLiteClient

from .candidate_extractor import MemoryCandidate
from .vocabularies import (
    MEMORY_SOURCES,
    PROMOTION_THRESHOLD,
    SIGNAL_TTL_DAYS,
    MemoryValue,
    memory_type_for_signal,
    memory_value_for,
    signal_type_for,
)

logger = logging.getLogger(__name__)

ACTION_COUNTERS = {
    "created_signal": "signals_created",
    "incremented_signal": "signals_incremented",
    "promoted_to_memory": "memories_promoted",
    "reinforced_memory": "memories_reinforced",
    "skipped_double_count": "skipped_double_counts",
}


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SignalEvaluator:
    def __init__(
        self,
        client: SQLiteClient,
        *,
        threshold: int = PROMOTION_THRESHOLD,
        ttl_days: int = SIGNAL_TTL_DAYS,
    ):
        self.client = client
        self.threshold = threshold
        self.ttl = timedelta(days=ttl_days)

    async def evaluate_and_promote(
        self,
        user_id: str,
        conversation_id: str,
        candidates: Sequence[MemoryCandidate],
        *,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Apply each candidate and summarize the transitions.

        A candidate that fails (invalid value, storage error) is recorded with
        action ``failed`` and does not stop the others.
        """
        result: Dict[str, Any] = {
            "signals_created": 0,
            "signals_incremented": 0,
            "memories_promoted": 0,
            "memories_reinforced": 0,
            "skipped_double_counts": 0,
            "dry_run": dry_run,
            "details": [],
        }
        for candidate in candidates:
            detail = await self._process_candidate(user_id, conversation_id, candidate, dry_run)
            result["details"].append(detail)
            counter = ACTION_COUNTERS.get(detail["action"])
            if counter:
                result[counter] += 1
        return result

    async def _process_candidate(
        self,
        user_id: str,
        conversation_id: str,
        candidate: MemoryCandidate,
        dry_run: bool,
    ) -> Dict[str, Any]:
        detail: Dict[str, Any] = {
            "candidate_type": candidate.type,
            "candidate_value": str(candidate.value),
            "action": "failed",
            "count": None,
        }
        try:
            value = memory_value_for(candidate.type, candidate.value)
            signal_type = signal_type_for(candidate.type)
        except ValueError as exc:
            logger.warning("rejecting candidate %s:%s: %s", candidate.type, candidate.value, exc)
            detail["error"] = str(exc)
            return detail

        try:
            if dry_run:
                outcome = await self._classify_dry_run(user_id, conversation_id, value, signal_type)
            else:
                outcome = await self.client.apply_signal_sighting(
                    user_id=user_id,
                    conversation_id=conversation_id,
                    memory_type=candidate.type,
                    signal_type=signal_type,
                    value_key=value.value_key,
                    value_json=value.value_key,
                    ttl=self.ttl,
                    threshold=self.threshold,
                )
        except Exception as exc:
            logger.warning("signal evaluation failed for user %s: %s", user_id, exc)
            detail["error"] = str(exc)
            return detail

        detail["action"] = outcome["action"]
        detail["count"] = outcome.get("count")
        if outcome["action"] == "promoted_to_memory" and not dry_run:
            logger.info(
                "promoted %s:%s to memory for user %s", candidate.type, candidate.value, user_id
            )
        return detail

    async def _classify_dry_run(
        self,
        user_id: str,
        conversation_id: str,
        value: MemoryValue,
        signal_type: str,
    ) -> Dict[str, Any]:
        memory = await self.client.find_active_memory(user_id, value.kind, value.value_key)
        if memory is not None:
            return {"action": "reinforced_memory", "count": None}

        signal = await self.client.get_signal(user_id, signal_type, value.value_key)
        now = datetime.now(timezone.utc)
        expires_at = _parse_iso(signal.get("expires_at")) if signal else None
        expired = expires_at is not None and expires_at < now

        if signal is None or expired:
            new_count = 1
        elif signal.get("last_counted_conversation_id") == conversation_id:
            return {"action": "skipped_double_count", "count": None}
        else:
            new_count = int(signal.get("count") or 0) + 1

        if new_count >= self.threshold:
            return {"action": "promoted_to_memory", "count": new_count}
        action = "created_signal" if new_count == 1 else "incremented_signal"
        return {"action": action, "count": new_count}

    async def record_explicit_memory(
        self,
        user_id: str,
        memory_type: str,
        value: Any,
        *,
        source: str = "user_explicit",
    ) -> Dict[str, Any]:
        """
        Store a fact the user stated directly, skipping the signal stage.

        Any pending signal for the same value is cleared so a later sighting
        reinforces the memory instead of counting toward a duplicate.
        """
        if source not in MEMORY_SOURCES:
            return {"ok": False, "error": "invalid_source", "reason": f"Unknown source: {source!r}"}
        try:
            tagged = memory_value_for(memory_type, value)
            signal_type = signal_type_for(memory_type)
        except ValueError as exc:
            logger.warning("rejecting explicit memory %s:%s: %s", memory_type, value, exc)
            return {"ok": False, "error": "invalid_value", "reason": str(exc)}

        memory = await self.client.upsert_explicit_memory(
            user_id=user_id,
            memory_type=memory_type,
            value_key=tagged.value_key,
            value_json=tagged.value_key,
            source=source,
            signal_type=signal_type,
        )
        logger.info("recorded %s memory %s:%s for user %s", source, memory_type, value, user_id)
        return {"ok": True, "memory": memory}

    async def promote_signal(self, signal_id: str) -> Dict[str, Any]:
        """Promote one pending signal by hand, carrying its count into the memory."""
        signal = await self.client.get_signal_by_id(signal_id)
        if signal is None:
            return {"ok": False, "error": "not_found"}
        try:
            memory_type = memory_type_for_signal(signal["signal_type"])
        except ValueError as exc:
            return {"ok": False, "error": "unmappable_signal_type", "reason": str(exc)}

        memory = await self.client.promote_signal_by_id(
            signal_id, memory_type=memory_type, source="admin_promotion"
        )
        if memory is None:
            return {"ok": False, "error": "not_found"}
        logger.info("manually promoted signal %s for user %s", signal_id, signal["user_id"])
        return {"ok": True, "memory": memory, "deleted_signal_id": signal_id}

    async def cleanup_expired_signals(self) -> int:
        return await self.client.delete_expired_signals()

    async def list_user_state(self, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "signals": await self.client.list_signals(user_id),
            "memories": await self.client.list_memories(user_id, active_only=False, limit=200),
        }
