"""Per-conversation state: context bundle, transcript and turn bookkeeping."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional

from docchat.errors import PipelineError
from docchat.models import (
    ChatContextBundle,
    ChatMessage,
    MessageKind,
    TokenUsage,
    TurnState,
    new_id,
    utcnow,
)

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from docchat.orchestrator import TurnStream

GROUPING_WINDOW = timedelta(minutes=5)
NEW_CHAT_TITLE = "New Chat"


@dataclass(slots=True)
class ChatSession:
    """Mutable state for one conversation.

    ``lock`` serialises every mutation of the bundle and the transcript;
    different sessions never share a lock.
    """

    id: str = field(default_factory=new_id)
    bundle: ChatContextBundle = field(init=False)
    messages: List[ChatMessage] = field(default_factory=list)
    state: TurnState = TurnState.IDLE
    last_error: Optional[PipelineError] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    title: str = NEW_CHAT_TITLE
    created_at: datetime = field(default_factory=utcnow)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    active_turn: Optional["TurnStream"] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.bundle = ChatContextBundle(session_id=self.id)

    @property
    def active_document_id(self) -> Optional[str]:
        return self.bundle.active_document_id

    def conversation_history(self, limit: int) -> List[ChatMessage]:
        """Return the last ``limit`` user/assistant messages, oldest first."""

        conversational = [message for message in self.messages if message.is_conversational]
        return conversational[-limit:] if limit > 0 else []

    def remove_message(self, message_id: str) -> None:
        self.messages = [message for message in self.messages if message.id != message_id]


def welcome_message(document_title: str) -> ChatMessage:
    return ChatMessage(
        text=(
            f"I'm ready to help you with '{document_title}'. "
            "Feel free to ask me any questions about this document!"
        ),
        is_user=False,
        kind=MessageKind.SYSTEM_NOTICE,
    )


def should_group_message(messages: List[ChatMessage], index: int) -> bool:
    """True when ``messages[index]`` continues the previous sender's run."""

    if index <= 0 or index >= len(messages):
        return False
    current, previous = messages[index], messages[index - 1]
    if current.is_user != previous.is_user:
        return False
    return current.timestamp - previous.timestamp < GROUPING_WINDOW


def message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "role": "user" if message.is_user else "assistant",
        "kind": message.kind.value,
        "text": message.text,
        "timestamp": message.timestamp.isoformat(),
        "is_streaming": message.is_streaming,
        "streaming_complete": message.streaming_complete,
        "stop_reason": message.stop_reason,
        "sources": [context.document_title for context in message.contexts],
    }


def export_messages(session: ChatSession) -> str:
    """Render the transcript as plain text, one block per message."""

    blocks = []
    for message in session.messages:
        sender = "User" if message.is_user else "Assistant"
        timestamp = message.timestamp.strftime("%Y-%m-%d %H:%M")
        blocks.append(f"[{timestamp}] {sender}: {message.text}")
    return "\n\n".join(blocks)


class SessionRegistry:
    """Index of live sessions by id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, ChatSession] = {}

    def create(self, session_id: Optional[str] = None) -> ChatSession:
        session = ChatSession(id=session_id) if session_id else ChatSession()
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = self.create(session_id)
        return session

    def remove(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.pop(session_id, None)

    def __iter__(self) -> Iterator[ChatSession]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = [
    "ChatSession",
    "GROUPING_WINDOW",
    "SessionRegistry",
    "export_messages",
    "message_to_dict",
    "should_group_message",
    "welcome_message",
]
