"""Centralised observability helpers for structured pipeline logging."""

from __future__ import annotations

import logging
import os
import platform
import socket
import sys
import traceback
from pathlib import Path
from typing import Any, Iterable, Optional

LOGGER = logging.getLogger("docchat.telemetry")
AUDIT_LOGGER = logging.getLogger("docchat.turns.audit")

_ENV_KEYS_TO_LOG: tuple[str, ...] = (
    "LLM_PROVIDER",
    "LLM_MODEL",
    "LLM_MAX_TOKENS",
    "LLM_TIMEOUT",
    "ANTHROPIC_BASE_URL",
    "EMBEDDING_BACKEND",
    "EMBEDDING_MODEL_PATH",
    "VECTOR_STORE",
    "CHROMA_PERSIST_DIR",
    "DOCCHAT_CONTEXT_TOKEN_LIMIT",
    "DOCCHAT_RETRIEVAL_TOP_K",
    "DOCCHAT_CACHE_DIR",
)

_PREVIEW_CHARS = 120


def _format_exception(error: BaseException) -> str:
    return "".join(traceback.format_exception(error.__class__, error, error.__traceback__))


def log_event(
    logger: Optional[logging.Logger],
    step: str,
    *,
    level: str = "info",
    req_id: str | None = None,
    session_id: str | None = None,
    duration_ms: float | None = None,
    exc: BaseException | str | None = None,
    details: dict[str, Any] | None = None,
    extra: dict[str, Any] | None = None,
    **payload: Any,
) -> None:
    """Emit a structured log event with the agreed-upon schema."""

    logger = logger or LOGGER
    event: dict[str, Any] = {"step": step, "module": logger.name}
    if req_id:
        event["req_id"] = req_id
    if session_id:
        event["session_id"] = session_id
    if duration_ms is not None:
        event["duration_ms"] = round(duration_ms, 3)
    if details is not None:
        event["details"] = details
    if extra:
        event.update(extra)
    event.update(payload)

    exc_info = None
    if exc is not None:
        if isinstance(exc, BaseException):
            event["exc"] = _format_exception(exc)
            exc_info = (exc.__class__, exc, exc.__traceback__)
        else:
            event["exc"] = str(exc)

    log_method = getattr(logger, level.lower(), logger.info)
    log_method(event, exc_info=exc_info)


def emit_app_startup_event() -> None:
    env_values = {key: os.getenv(key) for key in _ENV_KEYS_TO_LOG if os.getenv(key) is not None}
    details = {
        "env": env_values,
        "python": sys.version.split()[0],
        "platform": platform.platform(),
    }
    payload = {
        "pid": os.getpid(),
        "hostname": socket.gethostname(),
        "cwd": str(Path.cwd()),
    }
    log_event(LOGGER, "app.startup", details=details, extra=payload)


def emit_embeddings_event(
    *, model: str, count: int, duration_ms: float, errors: list[str] | None = None
) -> None:
    details = {
        "model": model,
        "count": count,
        "errors": errors or [],
        "per_item_ms": round(duration_ms / count, 3) if count else None,
    }
    level = "warning" if errors else "debug"
    log_event(LOGGER, "embeddings.compute", level=level, duration_ms=duration_ms, details=details)


def emit_vectorstore_event(
    step: str,
    *,
    collection: str,
    count: int,
    document_id: str | None = None,
    error: BaseException | None = None,
) -> None:
    details = {"collection": collection, "count": count, "document_id": document_id}
    level = "error" if error else "info"
    log_event(LOGGER, step, level=level, details=details, exc=error)


def emit_retrieval_event(
    *,
    session_id: str | None,
    query: str,
    top_k: int,
    semantic_hits: int,
    keyword_hits: int,
    page_hints: Iterable[int],
    duration_ms: float,
) -> None:
    details = {
        "query_preview": query[:_PREVIEW_CHARS],
        "top_k": top_k,
        "semantic_hits": semantic_hits,
        "keyword_hits": keyword_hits,
        "page_hints": list(page_hints),
    }
    log_event(
        LOGGER, "retrieval.search", session_id=session_id, duration_ms=duration_ms, details=details
    )


def emit_selection_event(
    *,
    session_id: str | None,
    candidates: int,
    selected: int,
    dropped: int,
    used_tokens: int,
    token_limit: int,
    documents: Iterable[str],
) -> None:
    details = {
        "candidates": candidates,
        "selected": selected,
        "dropped": dropped,
        "used_tokens": used_tokens,
        "token_limit": token_limit,
        "documents": sorted(set(documents)),
    }
    log_event(LOGGER, "context.select", session_id=session_id, details=details)


def emit_prompt_event(
    *,
    session_id: str | None,
    prompt: str,
    sources: Iterable[str],
    context_tokens: int,
) -> None:
    details = {
        "prompt_preview": prompt[:_PREVIEW_CHARS],
        "prompt_len": len(prompt),
        "sources": list(sources),
        "context_tokens": context_tokens,
    }
    log_event(LOGGER, "prompt.compose", session_id=session_id, details=details)


def emit_cache_event(
    step: str,
    *,
    key: str,
    reason: str | None = None,
    error: BaseException | None = None,
) -> None:
    details: dict[str, Any] = {"key": key}
    if reason:
        details["reason"] = reason
    level = "warning" if error else "debug"
    log_event(LOGGER, step, level=level, details=details, exc=error)


def emit_llm_request(
    *,
    req_id: str,
    session_id: str | None,
    model: str,
    max_tokens: int,
    message_count: int,
    prompt_len: int,
) -> None:
    details = {
        "model": model,
        "max_tokens": max_tokens,
        "message_count": message_count,
        "prompt_len": prompt_len,
    }
    log_event(LOGGER, "llm.request", req_id=req_id, session_id=session_id, details=details)


def emit_llm_result(
    *,
    req_id: str,
    session_id: str | None,
    duration_ms: float,
    model: str,
    stop_reason: str | None,
    input_tokens: int,
    output_tokens: int,
    error: BaseException | None = None,
) -> None:
    details = {
        "model": model,
        "stop_reason": stop_reason,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
    }
    level = "error" if error else "info"
    log_event(
        LOGGER,
        "llm.result",
        level=level,
        req_id=req_id,
        session_id=session_id,
        duration_ms=duration_ms,
        details=details,
        exc=error,
    )


def emit_turn_event(
    *,
    session_id: str,
    turn_id: str,
    state: str,
    duration_ms: float,
    contexts: int,
    dropped: int,
    stop_reason: str | None = None,
    error: BaseException | None = None,
) -> None:
    """Write one audit line for a finished turn."""

    details = {
        "turn_id": turn_id,
        "state": state,
        "contexts": contexts,
        "dropped": dropped,
        "stop_reason": stop_reason,
    }
    if error is not None:
        details["error"] = f"{error.__class__.__name__}: {error}"
    log_event(LOGGER, "turn.finish", session_id=session_id, duration_ms=duration_ms, details=details)
    AUDIT_LOGGER.info(
        {
            "event": "turn",
            "session_id": session_id,
            "duration_ms": round(duration_ms, 3),
            **details,
        }
    )


def emit_exception(
    *,
    module: str,
    error: BaseException,
    req_id: str | None = None,
    session_id: str | None = None,
    suggestion: str | None = None,
) -> None:
    details = {"module": module}
    if suggestion:
        details["suggestion"] = suggestion
    log_event(
        LOGGER,
        "exception",
        level="error",
        req_id=req_id,
        session_id=session_id,
        details=details,
        exc=error,
    )


__all__ = [
    "AUDIT_LOGGER",
    "emit_app_startup_event",
    "emit_cache_event",
    "emit_embeddings_event",
    "emit_exception",
    "emit_llm_request",
    "emit_llm_result",
    "emit_prompt_event",
    "emit_retrieval_event",
    "emit_selection_event",
    "emit_turn_event",
    "emit_vectorstore_event",
    "log_event",
]
