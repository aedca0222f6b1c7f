"""Language model provider interfaces and the mock client."""
from __future__ import annotations

from .base import LLMClient, LLMMessage, LLMStreamEvent, StreamCompleted, TextDelta
from .mock import MockLLMClient

__all__ = [
    "LLMClient",
    "LLMMessage",
    "LLMStreamEvent",
    "MockLLMClient",
    "StreamCompleted",
    "TextDelta",
]
