"""Base interface and stream events for language model providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Sequence, Union

from docchat.models import TokenUsage

__all__ = ["LLMClient", "LLMMessage", "LLMStreamEvent", "StreamCompleted", "TextDelta"]


@dataclass(slots=True, frozen=True)
class LLMMessage:
    """A message in a chat conversation."""

    role: str  # "user" or "assistant"
    content: str


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class StreamCompleted:
    message_id: Optional[str] = None
    stop_reason: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)


LLMStreamEvent = Union[TextDelta, StreamCompleted]


class LLMClient(ABC):
    """Abstract interface for streaming chat models."""

    @abstractmethod
    def stream(
        self,
        messages: Sequence[LLMMessage],
        *,
        system: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[LLMStreamEvent]:
        """Yield text deltas, then exactly one :class:`StreamCompleted`.

        Failures raise :class:`~docchat.errors.StreamingError` (or its
        :class:`~docchat.errors.ApiError` subclass).
        """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""

    async def aclose(self) -> None:
        """Release network resources held by the client."""
