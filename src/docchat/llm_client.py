"""Streaming client for the Anthropic Messages API over httpx."""
from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from docchat.errors import ApiError, ApiErrorKind, StreamingError
from docchat.models import TokenUsage
from docchat.providers.base import LLMClient, LLMMessage, LLMStreamEvent, StreamCompleted, TextDelta
from docchat.telemetry import emit_llm_request, emit_llm_result

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TIMEOUT = 60.0
API_VERSION = "2023-06-01"

STOP_REASONS = frozenset(
    {"end_turn", "max_tokens", "stop_sequence", "tool_use", "pause_turn", "refusal"}
)

SYSTEM_PROMPT = """\
You are an AI assistant integrated into a document reading and management application. Your role is to:

1. Help users understand and analyze their documents
2. Answer questions about document content when provided
3. Assist with research and provide insights
4. Be helpful, accurate, and concise in your responses

The user message may start with document content grouped into blocks marked "=== Document: <title> ===", followed by "User Query:" and the actual question. Prioritize information from those documents in your responses. References such as [REF:1a2b3c4d] point to documents whose content is included above.

Focus on the user's actual question while using the provided document content to give accurate, relevant answers. If asked about content not in the provided documents, clearly state that and offer general knowledge if helpful.

Keep responses conversational and helpful while being precise about document-specific information.

Always return your answer in neatly formatted markdown."""


def parse_error_body(status_code: int, body: bytes) -> ApiError:
    """Map a non-2xx response body onto :class:`ApiError`."""

    kind = ApiErrorKind.from_status(status_code)
    message = f"HTTP {status_code}"
    try:
        payload = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        parsed = ApiErrorKind.parse(error.get("type"))
        if parsed is not ApiErrorKind.UNKNOWN:
            kind = parsed
        message = str(error.get("message") or message)
    return ApiError(message, kind=kind, status_code=status_code)


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    """Yield the JSON payload of each server-sent event."""

    data: List[str] = []
    async for line in lines:
        if not line:
            if data:
                yield _decode_event("\n".join(data))
                data = []
            continue
        if line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        if field_name == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield _decode_event("\n".join(data))


def _decode_event(raw: str) -> Dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StreamingError("Malformed event in response stream", cause=exc) from exc
    if not isinstance(payload, dict):
        raise StreamingError("Unexpected event payload in response stream")
    return payload


class AnthropicStreamingClient(LLMClient):
    """Send a conversation to ``/v1/messages`` with ``stream: true``."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    @property
    def model_name(self) -> str:
        return self.model

    def build_request(self, messages: Sequence[LLMMessage], system: Optional[str]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": message.role, "content": message.content} for message in messages],
            "stream": True,
        }
        if system:
            body["system"] = system
        return body

    async def stream(
        self,
        messages: Sequence[LLMMessage],
        *,
        system: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[LLMStreamEvent]:
        if not self.api_key:
            raise ApiError("No API key configured", kind=ApiErrorKind.NO_API_KEY)

        req_id = uuid.uuid4().hex
        body = self.build_request(messages, system)
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }
        emit_llm_request(
            req_id=req_id,
            session_id=session_id,
            model=self.model,
            max_tokens=self.max_tokens,
            message_count=len(body["messages"]),
            prompt_len=len(messages[-1].content) if messages else 0,
        )

        started = time.perf_counter()
        message_id: Optional[str] = None
        stop_reason: Optional[str] = None
        input_tokens = 0
        output_tokens = 0
        error: Optional[BaseException] = None
        try:
            async with self._http.stream(
                "POST", f"{self.base_url}/v1/messages", json=body, headers=headers
            ) as response:
                if response.status_code >= 400:
                    raise parse_error_body(response.status_code, await response.aread())

                async for event in iter_sse_events(response.aiter_lines()):
                    event_type = event.get("type")
                    if event_type == "message_start":
                        message = event.get("message") or {}
                        message_id = message.get("id")
                        input_tokens = int((message.get("usage") or {}).get("input_tokens") or 0)
                    elif event_type == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield TextDelta(str(delta["text"]))
                    elif event_type == "message_delta":
                        delta = event.get("delta") or {}
                        if delta.get("stop_reason"):
                            stop_reason = str(delta["stop_reason"])
                            if stop_reason not in STOP_REASONS:
                                LOGGER.warning("Unknown stop_reason from model: %s", stop_reason)
                        usage = event.get("usage") or {}
                        output_tokens = int(usage.get("output_tokens") or output_tokens)
                    elif event_type == "message_stop":
                        yield StreamCompleted(
                            message_id=message_id,
                            stop_reason=stop_reason,
                            usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
                        )
                        return
                    elif event_type == "error":
                        details = event.get("error") or {}
                        raise ApiError(
                            str(details.get("message") or "Model stream reported an error"),
                            kind=ApiErrorKind.parse(details.get("type")),
                        )
                    # ping, content_block_start and content_block_stop carry nothing we use

            raise StreamingError("Response stream ended before message_stop")
        except StreamingError as exc:
            error = exc
            raise
        except httpx.TimeoutException as exc:
            error = exc
            LOGGER.error("Model request timed out")
            raise StreamingError("Model request timed out", cause=exc) from exc
        except httpx.HTTPError as exc:
            error = exc
            LOGGER.error("Model connection error: %s", exc)
            raise StreamingError("Could not connect to the model API", cause=exc) from exc
        finally:
            emit_llm_result(
                req_id=req_id,
                session_id=session_id,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                model=self.model,
                stop_reason=stop_reason,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                error=error,
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


__all__ = [
    "API_VERSION",
    "AnthropicStreamingClient",
    "DEFAULT_MODEL",
    "STOP_REASONS",
    "SYSTEM_PROMPT",
    "iter_sse_events",
    "parse_error_body",
]
