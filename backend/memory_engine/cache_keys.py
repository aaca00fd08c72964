"""Pure cache-key builders. Every key is derived only from its arguments."""

import hashlib
import re


def normalize_text_for_hash(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def text_hash(text: str) -> str:
    return hashlib.sha256(normalize_text_for_hash(text).encode("utf-8")).hexdigest()


def embedding_cache_key(model: str, text: str) -> str:
    """e.g. ``embedding:v1:text-embedding-3-small:<sha256>``"""
    return f"embedding:v1:{model}:{text_hash(text)}"


def memory_context_key(user_id: str, memory_mode: str) -> str:
    """e.g. ``memory:context:v1:user123:standard``"""
    return f"memory:context:v1:{user_id}:{(memory_mode or 'standard').strip().lower()}"
