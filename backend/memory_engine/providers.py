"""
Completion and embedding providers.

Both providers speak the OpenAI-compatible wire format over httpx and never
raise: every call returns a ProviderResult whose ``error_kind`` names the
failure class. Call sites branch on ``result.ok`` and apply their own
documented fallback.

Backends:
- completion: ``/chat/completions`` with ``response_format = json_object``
- embedding: ``/embeddings`` (openai/api) or the deterministic local
  ``hash`` backend (model ``hash-v1``)
"""

import hashlib
import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.openai.com/v1"
HASH_EMBEDDING_MODEL = "hash-v1"

ERROR_CONFIG_MISSING = "config_missing"
ERROR_HTTP_STATUS = "http_status"
ERROR_TIMEOUT = "timeout"
ERROR_TRANSPORT = "transport"
ERROR_EMPTY_RESPONSE = "empty_response"
ERROR_INVALID_JSON = "invalid_json"
ERROR_INVALID_PAYLOAD = "invalid_payload"


@dataclass
class ProviderResult:
    """Explicit success/failure outcome of a provider call."""

    ok: bool
    value: Any = None
    error_kind: Optional[str] = None
    detail: str = ""
    degrade_reasons: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, value: Any) -> "ProviderResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error_kind: str, detail: str = "") -> "ProviderResult":
        return cls(ok=False, error_kind=error_kind, detail=detail[:300])


# =============================================================================
# Env helpers
# =============================================================================


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _normalize_chat_api_base(base: str) -> str:
    normalized = (base or "").strip().rstrip("/")
    if not normalized:
        return ""
    lowered = normalized.lower()
    for suffix in ("/chat/completions", "/responses"):
        if lowered.endswith(suffix):
            return normalized[: -len(suffix)]
    return normalized


def _normalize_embedding_api_base(base: str) -> str:
    normalized = (base or "").strip().rstrip("/")
    if not normalized:
        return ""
    if normalized.lower().endswith("/embeddings"):
        return normalized[: -len("/embeddings")]
    return normalized


def append_degrade_reason(degrade_reasons: Optional[List[str]], reason: str) -> None:
    if degrade_reasons is None or not reason:
        return
    if reason not in degrade_reasons:
        degrade_reasons.append(reason)


# =============================================================================
# Response parsing
# =============================================================================


def extract_chat_message_text(payload: Dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first_choice = choices[0]
    if not isinstance(first_choice, dict):
        return ""
    message = first_choice.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            text_content = item.get("text")
            if isinstance(text_content, str) and text_content.strip():
                parts.append(text_content.strip())
        return "\n".join(parts).strip()
    return ""


def parse_chat_json_object(raw_text: str) -> Optional[Dict[str, Any]]:
    candidate = (raw_text or "").strip()
    if not candidate:
        return None

    parse_candidates = [candidate]
    if candidate.startswith("```"):
        stripped = re.sub(r"^```(?:json)?\s*", "", candidate, flags=re.IGNORECASE)
        stripped = re.sub(r"\s*```$", "", stripped)
        parse_candidates.append(stripped.strip())

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start >= 0 and end > start:
        parse_candidates.append(candidate[start : end + 1])

    for item in parse_candidates:
        try:
            parsed = json.loads(item)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def extract_embedding_from_response(payload: Any) -> Optional[List[float]]:
    candidates: List[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data:
            first_item = data[0]
            if isinstance(first_item, dict):
                candidates.append(first_item.get("embedding"))
            elif isinstance(first_item, list):
                candidates.append(first_item)
        candidates.append(payload.get("embedding"))

    for candidate in candidates:
        if not isinstance(candidate, list) or not candidate:
            continue
        try:
            return [float(v) for v in candidate]
        except (TypeError, ValueError):
            continue
    return None


def hash_embedding(content: str, dim: int) -> List[float]:
    """Deterministic token-hash embedding, L2-normalized."""
    vector = [0.0] * dim
    normalized = re.sub(r"\s+", " ", (content or "").strip().lower())
    tokens = re.findall(r"[a-z0-9_]+", normalized)
    if not tokens and normalized:
        tokens = list(normalized)

    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        for i in range(0, 8, 2):
            idx = digest[i] % dim
            sign = -1.0 if (digest[i + 1] & 1) else 1.0
            weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
            vector[idx] += sign * weight

    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return [0.0] * dim
    return [v / norm for v in vector]


# =============================================================================
# Transport
# =============================================================================


class _HttpProvider:
    def __init__(
        self,
        *,
        api_base: str,
        api_key: str,
        timeout_sec: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base
        self.api_key = api_key
        self.timeout_sec = max(1.0, float(timeout_sec))
        self._transport = transport

    async def _post_json(self, endpoint: str, payload: Dict[str, Any]) -> ProviderResult:
        if not self.api_base:
            return ProviderResult.failure(ERROR_CONFIG_MISSING, "api base is not configured")

        url = _join_api_url(self.api_base, endpoint)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["X-API-Key"] = self.api_key

        timeout = httpx.Timeout(self.timeout_sec)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            return ProviderResult.failure(ERROR_TIMEOUT, str(exc))
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return ProviderResult.failure(ERROR_TRANSPORT, str(exc))

        if response.status_code < 200 or response.status_code >= 300:
            return ProviderResult.failure(
                ERROR_HTTP_STATUS, f"{response.status_code}: {response.text[:200]}"
            )
        try:
            parsed = response.json()
        except (ValueError, TypeError) as exc:
            return ProviderResult.failure(ERROR_INVALID_JSON, str(exc))
        if not isinstance(parsed, dict):
            parsed = {"data": parsed}
        return ProviderResult.success(parsed)


class CompletionProvider(_HttpProvider):
    """JSON-object chat completion client."""

    async def complete_json(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        token_param: str = "max_tokens",
    ) -> ProviderResult:
        """Submit messages and return the parsed JSON object from the reply."""
        if not self.api_key or not model:
            return ProviderResult.failure(ERROR_CONFIG_MISSING, "completion api key or model missing")

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        if max_tokens is not None:
            payload[token_param] = int(max_tokens)
        if temperature is not None:
            payload["temperature"] = float(temperature)

        response = await self._post_json("/chat/completions", payload)
        if not response.ok:
            logger.warning(
                "completion call failed: %s %s", response.error_kind, response.detail
            )
            return response

        message_text = extract_chat_message_text(response.value)
        if not message_text:
            logger.warning("completion call returned empty content (model=%s)", model)
            return ProviderResult.failure(ERROR_EMPTY_RESPONSE, "no message content")

        parsed = parse_chat_json_object(message_text)
        if parsed is None:
            logger.warning("completion content is not a JSON object (model=%s)", model)
            return ProviderResult.failure(ERROR_INVALID_JSON, message_text[:200])
        return ProviderResult.success(parsed)


class EmbeddingProvider(_HttpProvider):
    """Fixed-dimension text embedding client."""

    def __init__(
        self,
        *,
        backend: str,
        model: str,
        dim: int,
        api_base: str = "",
        api_key: str = "",
        timeout_sec: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            api_base=api_base, api_key=api_key, timeout_sec=timeout_sec, transport=transport
        )
        self.backend = (backend or "hash").strip().lower()
        self.dim = max(16, int(dim))
        self.model = HASH_EMBEDDING_MODEL if self.backend == "hash" else model

    async def embed(self, text: str) -> ProviderResult:
        """Embed text; the value is a list of floats of length ``self.dim``."""
        content = (text or "").strip()
        if not content:
            return ProviderResult.failure(ERROR_INVALID_PAYLOAD, "empty embedding input")

        if self.backend == "hash":
            return ProviderResult.success(hash_embedding(content, self.dim))
        if self.backend not in {"openai", "api", "router"}:
            return ProviderResult.failure(
                ERROR_CONFIG_MISSING, f"unsupported embedding backend: {self.backend}"
            )
        if not self.model:
            return ProviderResult.failure(ERROR_CONFIG_MISSING, "embedding model missing")

        response = await self._post_json("/embeddings", {"model": self.model, "input": content})
        if not response.ok:
            logger.warning("embedding call failed: %s %s", response.error_kind, response.detail)
            return response

        embedding = extract_embedding_from_response(response.value)
        if embedding is None:
            return ProviderResult.failure(ERROR_INVALID_PAYLOAD, "no embedding in response")
        if len(embedding) != self.dim:
            return ProviderResult.failure(
                ERROR_INVALID_PAYLOAD,
                f"embedding dimension {len(embedding)} != configured {self.dim}",
            )
        return ProviderResult.success(embedding)


# =============================================================================
# Env-driven factories
# =============================================================================


def _completion_api_base() -> str:
    return _normalize_chat_api_base(
        _first_env(["LLM_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"], DEFAULT_API_BASE)
    )


def _completion_api_key() -> str:
    return _first_env(["LLM_API_KEY", "OPENAI_API_KEY"])


def provider_timeout_sec() -> float:
    return max(1.0, _env_float("PROVIDER_TIMEOUT_SEC", 20.0))


def model_for(env_name: str, default: str) -> str:
    return _first_env([env_name], default)


def build_completion_provider(
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> CompletionProvider:
    return CompletionProvider(
        api_base=_completion_api_base(),
        api_key=_completion_api_key(),
        timeout_sec=provider_timeout_sec(),
        transport=transport,
    )


def build_embedding_provider(
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmbeddingProvider:
    api_key = _first_env(["EMBEDDING_API_KEY", "LLM_API_KEY", "OPENAI_API_KEY"])
    default_backend = "openai" if api_key else "hash"
    backend = _first_env(["EMBEDDING_BACKEND"], default_backend).lower()
    api_base = _normalize_embedding_api_base(
        _first_env(
            ["EMBEDDING_API_BASE", "LLM_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"],
            DEFAULT_API_BASE,
        )
    )
    return EmbeddingProvider(
        backend=backend,
        model=_first_env(["EMBEDDING_MODEL"], "text-embedding-3-small"),
        dim=_env_int("EMBEDDING_DIM", 1536),
        api_base=api_base,
        api_key=api_key,
        timeout_sec=provider_timeout_sec(),
        transport=transport,
    )
