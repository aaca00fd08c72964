"""
Artifact embeddings: text assembly, float32 wire format, storage and
cosine-similarity search.

Byte format: ``len(vector) * 4`` bytes, little-endian IEEE-754 float32, no
header. The dimension is tracked on the owning ``artifact_embeddings`` row.

Search scans at most ``SQLiteClient.search_candidate_cap`` embedded
artifacts (newest first, default 500). When the cap cuts the candidate set
short the result reports ``truncated = True``.
"""

import logging
import math
import struct
from typing import Any, Dict, List, Optional, Sequence

from db.sqlite_client import SQLiteClient
from memory_engine.cache_keys import embedding_cache_key, normalize_text_for_hash, text_hash
from memory_engine.providers import (
    ERROR_INVALID_PAYLOAD,
    EmbeddingProvider,
    ProviderResult,
    append_degrade_reason,
)

from .types import ArtifactFilters, should_embed_artifact_type

logger = logging.getLogger(__name__)


def build_embedding_text(artifact: Dict[str, Any]) -> str:
    parts: List[str] = []
    if artifact.get("title"):
        parts.append(str(artifact["title"]))
    parts.append(str(artifact.get("content") or ""))
    refs = artifact.get("scripture_refs") or []
    if refs:
        parts.append(f"Scripture: {', '.join(str(ref) for ref in refs)}")
    return "\n".join(parts)


def serialize_vector(vector: Sequence[float]) -> bytes:
    return struct.pack(f"<{len(vector)}f", *vector)


def deserialize_vector(data: bytes) -> List[float]:
    count = len(data) // 4
    return list(struct.unpack(f"<{count}f", data[: count * 4]))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product over the product of norms; 0.0 for zero norms or mismatched dimensions."""
    if len(a) != len(b):
        logger.warning("cosine similarity dimension mismatch: %d != %d", len(a), len(b))
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude == 0:
        return 0.0
    return dot / magnitude


class EmbeddingService:
    def __init__(self, client: SQLiteClient, provider: EmbeddingProvider):
        self.client = client
        self.provider = provider

    @property
    def model(self) -> str:
        return self.provider.model

    async def embed_artifact(self, artifact_id: str) -> ProviderResult:
        """
        Compute and store the embedding for one artifact.

        Skips (ok result, value ``"skipped"``) when the artifact is missing,
        deleted, or of a non-embeddable type. A deletion that lands while
        the provider call is in flight is detected at write time and the
        vector is discarded.
        """
        artifact = await self.client.get_artifact(artifact_id)
        if artifact is None or artifact.get("status") != "active":
            return ProviderResult.success("skipped")
        if not should_embed_artifact_type(artifact["type"]):
            return ProviderResult.success("skipped")

        result = await self.provider.embed(build_embedding_text(artifact))
        if not result.ok:
            return result

        vector = result.value
        stored = await self.client.upsert_artifact_embedding(
            artifact_id, self.model, serialize_vector(vector), len(vector)
        )
        return ProviderResult.success("stored" if stored else "skipped")

    async def remove_embedding(self, artifact_id: str) -> int:
        return await self.client.delete_artifact_embeddings(artifact_id)

    async def has_embedding(self, artifact_id: str) -> bool:
        return await self.client.has_embedding(artifact_id, self.model)

    async def get_embedding_stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.client.get_embedding_stats(self.model, user_id=user_id)

    async def embed_query(self, query: str) -> ProviderResult:
        normalized = normalize_text_for_hash(query)
        if not normalized:
            return ProviderResult.failure(ERROR_INVALID_PAYLOAD, "empty query")
        cache_key = embedding_cache_key(self.model, normalized)
        cached = await self.client.get_cached_embedding(cache_key)
        if cached is not None:
            return ProviderResult.success(cached)

        result = await self.provider.embed(normalized)
        if result.ok:
            await self.client.put_cached_embedding(
                cache_key, text_hash(normalized), self.model, result.value
            )
        return result

    async def search_similar(
        self,
        query: str,
        filters: ArtifactFilters,
        *,
        top_k: int = 20,
        group_ids: Optional[Sequence[str]] = None,
        visible_to_user_id: Optional[str] = None,
        min_score: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Rank embedded artifacts by cosine similarity to ``query``.

        Returns ``{"results": [{"artifact", "score"}], "truncated",
        "candidate_cap", "degrade_reasons"}``. A failed query embedding
        yields an empty result list and a degrade reason.
        """
        degrade_reasons: List[str] = []
        payload: Dict[str, Any] = {
            "results": [],
            "truncated": False,
            "candidate_cap": self.client.search_candidate_cap,
            "degrade_reasons": degrade_reasons,
        }

        query_result = await self.embed_query(query)
        if not query_result.ok:
            append_degrade_reason(degrade_reasons, f"query_embedding_{query_result.error_kind}")
            return payload
        query_vector = query_result.value

        candidates, truncated = await self.client.get_search_candidates(
            model=self.model,
            visible_to_user_id=visible_to_user_id,
            group_ids=group_ids,
            **filters.to_query_kwargs(),
        )
        payload["truncated"] = truncated
        if truncated:
            append_degrade_reason(degrade_reasons, "search_candidate_cap_reached")

        scored: List[Dict[str, Any]] = []
        for artifact, raw_vector, _dimension in candidates:
            score = cosine_similarity(query_vector, deserialize_vector(raw_vector))
            if min_score is not None and score < min_score:
                continue
            scored.append({"artifact": artifact, "score": score})

        scored.sort(key=lambda item: item["score"], reverse=True)
        payload["results"] = scored[: max(0, int(top_k))]
        return payload
