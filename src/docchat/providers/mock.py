"""Mock LLM client that streams canned text for deterministic testing."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Optional, Sequence

from docchat.models import TokenUsage
from docchat.providers.base import LLMClient, LLMMessage, LLMStreamEvent, StreamCompleted, TextDelta
from docchat.tokenizer import estimate_token_count


class MockLLMClient(LLMClient):
    """Stream a deterministic answer and record every call.

    Without ``chunks`` the answer echoes the start of the final prompt with a
    predictable prefix. ``error`` is raised after ``fail_after`` chunks.
    """

    def __init__(
        self,
        chunks: Optional[Sequence[str]] = None,
        *,
        stop_reason: str = "end_turn",
        delay: float = 0.0,
        error: Optional[Exception] = None,
        fail_after: int = 0,
    ) -> None:
        self.chunks = list(chunks) if chunks is not None else None
        self.stop_reason = stop_reason
        self.delay = delay
        self.error = error
        self.fail_after = fail_after
        self.calls: List[List[LLMMessage]] = []
        self.systems: List[Optional[str]] = []

    @property
    def model_name(self) -> str:
        return "mock"

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def stream(
        self,
        messages: Sequence[LLMMessage],
        *,
        system: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[LLMStreamEvent]:
        del session_id  # Unused in the mock implementation.
        self.calls.append(list(messages))
        self.systems.append(system)

        prompt = messages[-1].content if messages else ""
        chunks = self.chunks if self.chunks is not None else ["MOCK_ANSWER: ", prompt[:100]]
        for index, chunk in enumerate(chunks):
            if self.error is not None and index >= self.fail_after:
                raise self.error
            if self.delay:
                await asyncio.sleep(self.delay)
            yield TextDelta(chunk)
        if self.error is not None:
            raise self.error

        yield StreamCompleted(
            message_id=f"mock-{len(self.calls)}",
            stop_reason=self.stop_reason,
            usage=TokenUsage(
                input_tokens=sum(estimate_token_count(message.content) for message in messages),
                output_tokens=estimate_token_count("".join(chunks)),
            ),
        )


__all__ = ["MockLLMClient"]
