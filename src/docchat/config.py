"""Environment driven settings for the context pipeline."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from docchat.llm_client import DEFAULT_BASE_URL, DEFAULT_MAX_TOKENS, DEFAULT_MODEL, DEFAULT_TIMEOUT
from docchat.message_builder import DEFAULT_RETRIEVAL_TIMEOUT, DEFAULT_TOP_K
from docchat.orchestrator import DEFAULT_HISTORY_LIMIT
from docchat.selection import DEFAULT_TOKEN_LIMIT, DIVERSITY_BONUS

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_MAX_AGE_DAYS = 7.0


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Invalid integer for %s: %s; using default %s", name, value, default)
        return default


def _float_from_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        LOGGER.warning("Invalid float for %s: %s; using default %s", name, value, default)
        return default


def _flag_from_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _str_from_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(slots=True)
class Settings:
    context_token_limit: int = DEFAULT_TOKEN_LIMIT
    retrieval_top_k: int = DEFAULT_TOP_K
    diversity_bonus: float = DIVERSITY_BONUS
    include_active_document: bool = True
    retrieval_timeout: float = DEFAULT_RETRIEVAL_TIMEOUT
    cache_dir: Optional[str] = None
    cache_max_age_days: float = DEFAULT_CACHE_MAX_AGE_DAYS
    history_limit: int = DEFAULT_HISTORY_LIMIT
    anthropic_api_key: Optional[str] = None
    anthropic_base_url: str = DEFAULT_BASE_URL
    llm_model: str = DEFAULT_MODEL
    llm_max_tokens: int = DEFAULT_MAX_TOKENS
    llm_timeout: float = DEFAULT_TIMEOUT
    llm_provider: str = "anthropic"
    embedding_backend: str = "hash"
    embedding_model_path: Optional[str] = None
    vector_store: str = "memory"
    chroma_persist_dir: str = "chroma_db"
    library_dir: Optional[str] = None

    @property
    def cache_max_age(self) -> timedelta:
        return timedelta(days=self.cache_max_age_days)

    @classmethod
    def from_env(cls) -> "Settings":
        """Read every setting from the process environment."""

        settings = cls(
            context_token_limit=_int_from_env("DOCCHAT_CONTEXT_TOKEN_LIMIT", DEFAULT_TOKEN_LIMIT),
            retrieval_top_k=_int_from_env("DOCCHAT_RETRIEVAL_TOP_K", DEFAULT_TOP_K),
            diversity_bonus=_float_from_env("DOCCHAT_DIVERSITY_BONUS", DIVERSITY_BONUS),
            include_active_document=_flag_from_env("DOCCHAT_INCLUDE_ACTIVE_DOCUMENT", True),
            retrieval_timeout=_float_from_env("DOCCHAT_RETRIEVAL_TIMEOUT", DEFAULT_RETRIEVAL_TIMEOUT),
            cache_dir=_str_from_env("DOCCHAT_CACHE_DIR"),
            cache_max_age_days=_float_from_env("DOCCHAT_CACHE_MAX_AGE_DAYS", DEFAULT_CACHE_MAX_AGE_DAYS),
            history_limit=_int_from_env("DOCCHAT_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT),
            anthropic_api_key=_str_from_env("ANTHROPIC_API_KEY"),
            anthropic_base_url=_str_from_env("ANTHROPIC_BASE_URL", DEFAULT_BASE_URL) or DEFAULT_BASE_URL,
            llm_model=_str_from_env("LLM_MODEL", DEFAULT_MODEL) or DEFAULT_MODEL,
            llm_max_tokens=_int_from_env("LLM_MAX_TOKENS", DEFAULT_MAX_TOKENS),
            llm_timeout=_float_from_env("LLM_TIMEOUT", DEFAULT_TIMEOUT),
            llm_provider=(_str_from_env("LLM_PROVIDER", "anthropic") or "anthropic").lower(),
            embedding_backend=(_str_from_env("EMBEDDING_BACKEND", "hash") or "hash").lower(),
            embedding_model_path=_str_from_env("EMBEDDING_MODEL_PATH"),
            vector_store=(_str_from_env("VECTOR_STORE", "memory") or "memory").lower(),
            chroma_persist_dir=_str_from_env("CHROMA_PERSIST_DIR", "chroma_db") or "chroma_db",
            library_dir=_str_from_env("DOCCHAT_LIBRARY_DIR"),
        )
        if settings.context_token_limit <= 0:
            LOGGER.warning(
                "DOCCHAT_CONTEXT_TOKEN_LIMIT must be positive; using default %s", DEFAULT_TOKEN_LIMIT
            )
            settings.context_token_limit = DEFAULT_TOKEN_LIMIT
        if settings.retrieval_top_k <= 0:
            LOGGER.warning("DOCCHAT_RETRIEVAL_TOP_K must be positive; using default %s", DEFAULT_TOP_K)
            settings.retrieval_top_k = DEFAULT_TOP_K
        return settings


__all__ = ["Settings"]
