"""End-to-end turn driver: build context, stream the model, update the transcript."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, List, Optional, Sequence, Union

from docchat.errors import PipelineError, StreamingError, TurnCancelledError
from docchat.llm_client import SYSTEM_PROMPT
from docchat.message_builder import BuiltMessage, CancellationToken, MessageBuilder
from docchat.models import (
    Attachment,
    ChatMessage,
    PartialText,
    TurnDone,
    TurnError,
    TurnState,
    new_id,
)
from docchat.providers.base import LLMClient, LLMMessage, StreamCompleted, TextDelta
from docchat.session import ChatSession, SessionRegistry, export_messages, welcome_message
from docchat.telemetry import emit_exception, emit_turn_event

LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10

TurnEvent = Union[PartialText, TurnError, TurnDone]

_END = object()
_KEEP = object()


class TurnStream:
    """Async sequence of events for one turn.

    Iteration ends after a :class:`TurnDone` or a :class:`TurnError`.
    :meth:`cancel` stops the turn at the next stage boundary, or aborts the
    in-flight model request.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.turn_id = new_id()
        self.token = CancellationToken()
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._task: Optional["asyncio.Task[None]"] = None
        self._finished = False
        self._settled = False

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        return self

    async def __anext__(self) -> TurnEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        self.token.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait until the turn has fully settled."""

        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.done():
                raise

    async def collect(self) -> List[TurnEvent]:
        return [event async for event in self]

    def _attach(self, task: "asyncio.Task[None]") -> None:
        self._task = task
        task.add_done_callback(self._on_task_done)

    def _emit(self, item: object) -> None:
        if isinstance(item, (TurnDone, TurnError)):
            self._settled = True
        self._queue.put_nowait(item)

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        # a task cancelled before it started never reports its own outcome
        if not self._settled:
            self._emit(TurnDone(None, None, cancelled=True))
        self._queue.put_nowait(_END)


class ChatOrchestrator:
    """Own sessions and run each user turn through the pipeline."""

    def __init__(
        self,
        builder: MessageBuilder,
        llm: LLMClient,
        *,
        sessions: Optional[SessionRegistry] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        system_prompt: Optional[str] = SYSTEM_PROMPT,
    ) -> None:
        self.builder = builder
        self.llm = llm
        self.sessions = sessions or SessionRegistry()
        self.history_limit = history_limit
        self.system_prompt = system_prompt

    def start_session(
        self, session_id: Optional[str] = None, *, active_document_id: Optional[str] = None
    ) -> ChatSession:
        session = self.sessions.create(session_id)
        if active_document_id is not None:
            session.bundle.active_document_id = active_document_id
            document = self.builder.library.find_by_id(active_document_id)
            if document is not None:
                session.title = f"Chat with {document.title}"
                session.messages.append(welcome_message(document.title))
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return self.sessions.get(session_id)

    async def end_session(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        await self.cancel_turn(session_id)
        self.sessions.remove(session_id)
        return True

    def export_messages(self, session_id: str) -> str:
        session = self.sessions.get(session_id)
        return export_messages(session) if session is not None else ""

    async def aclose(self) -> None:
        """Cancel running turns, flush pending cache writes and close the model client."""

        for session in self.sessions:
            await self.cancel_turn(session.id)
        await self.builder.context_service.drain()
        await self.llm.aclose()

    async def cancel_turn(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.active_turn is None or session.active_turn.done:
            return False
        turn = session.active_turn
        turn.cancel()
        await turn.wait()
        return True

    async def submit_turn(
        self,
        session_id: str,
        user_text: str,
        attachments: Sequence[Attachment] = (),
        *,
        active_document_id: Union[str, None, object] = _KEEP,
    ) -> TurnStream:
        """Start a turn and return its event stream.

        Any turn still running for the session is cancelled first. Omitting
        ``active_document_id`` keeps the session's current active document.
        """

        session = self.sessions.get_or_create(session_id)
        # a concurrent submit may have started a turn while this one waited
        while session.active_turn is not None and not session.active_turn.done:
            await self.cancel_turn(session.id)

        stream = TurnStream(session.id)
        session.active_turn = stream
        stream._attach(
            asyncio.get_running_loop().create_task(
                self._run_turn(session, stream, user_text, tuple(attachments), active_document_id)
            )
        )
        return stream

    async def _run_turn(
        self,
        session: ChatSession,
        stream: TurnStream,
        user_text: str,
        attachments: Sequence[Attachment],
        active_document_id: Union[str, None, object],
    ) -> None:
        started = time.perf_counter()
        built: Optional[BuiltMessage] = None
        placeholder: Optional[ChatMessage] = None
        failure: Optional[BaseException] = None
        stop_reason: Optional[str] = None

        async with session.lock:
            try:
                stream.token.raise_if_cancelled()
                session.state = TurnState.BUILDING_CONTEXT
                active = session.bundle.active_document_id if active_document_id is _KEEP else active_document_id
                session.bundle.reset(active)  # type: ignore[arg-type]

                history = session.conversation_history(self.history_limit)
                session.messages.append(ChatMessage.user(user_text))
                placeholder = ChatMessage.assistant_placeholder()
                session.messages.append(placeholder)

                built = await self.builder.build(
                    user_text, session.bundle, attachments=attachments, cancel_token=stream.token
                )
                stream.token.raise_if_cancelled()

                session.state = TurnState.AWAITING_MODEL
                placeholder.contexts = list(built.contexts)
                completed = await self._stream_answer(session, stream, placeholder, history, built.prompt)

                stop_reason = completed.stop_reason
                placeholder.complete_streaming(stop_reason)
                session.token_usage = session.token_usage + completed.usage
                session.last_error = None
                session.state = TurnState.COMPLETE
                stream._emit(TurnDone(placeholder.id, stop_reason, completed.usage))
            except (asyncio.CancelledError, TurnCancelledError) as exc:
                failure = exc
                self._discard(session, placeholder)
                session.state = TurnState.CANCELLED
                stream._emit(TurnDone(None, None, cancelled=True))
                if isinstance(exc, asyncio.CancelledError):
                    raise
            except Exception as exc:
                error = exc if isinstance(exc, PipelineError) else StreamingError(str(exc), cause=exc)
                failure = error
                self._fail(session, stream, placeholder, error)
            finally:
                if session.active_turn is stream:
                    session.active_turn = None
                emit_turn_event(
                    session_id=session.id,
                    turn_id=stream.turn_id,
                    state=session.state.value,
                    duration_ms=(time.perf_counter() - started) * 1000.0,
                    contexts=len(built.contexts) if built is not None else 0,
                    dropped=len(built.dropped) if built is not None else 0,
                    stop_reason=stop_reason,
                    error=failure,
                )

    async def _stream_answer(
        self,
        session: ChatSession,
        stream: TurnStream,
        placeholder: ChatMessage,
        history: Sequence[ChatMessage],
        prompt: str,
    ) -> StreamCompleted:
        messages = build_llm_messages(history, prompt)
        completed: Optional[StreamCompleted] = None
        async for event in self.llm.stream(messages, system=self.system_prompt, session_id=session.id):
            stream.token.raise_if_cancelled()
            if isinstance(event, TextDelta):
                if session.state is TurnState.AWAITING_MODEL:
                    session.state = TurnState.STREAMING
                placeholder.append_streaming_text(event.text)
                stream._emit(PartialText(event.text, placeholder.text))
            elif isinstance(event, StreamCompleted):
                completed = event
        if completed is None:
            raise StreamingError("Model stream ended without a completion event")
        return completed

    def _discard(self, session: ChatSession, placeholder: Optional[ChatMessage]) -> None:
        if placeholder is not None:
            session.remove_message(placeholder.id)

    def _fail(
        self,
        session: ChatSession,
        stream: TurnStream,
        placeholder: Optional[ChatMessage],
        error: PipelineError,
    ) -> None:
        self._discard(session, placeholder)
        session.messages.append(ChatMessage.from_error(error))
        session.last_error = error
        session.state = TurnState.FAILED
        emit_exception(module=__name__, error=error, req_id=stream.turn_id, session_id=session.id)
        stream._emit(TurnError(error, error.user_message))


def build_llm_messages(history: Sequence[ChatMessage], prompt: str) -> List[LLMMessage]:
    """History followed by the prompt as the final user message.

    Leading assistant messages are dropped so the conversation opens with a
    user turn.
    """

    messages: List[LLMMessage] = []
    for message in history:
        role = "user" if message.is_user else "assistant"
        if not messages and role != "user":
            continue
        messages.append(LLMMessage(role, message.text))
    messages.append(LLMMessage("user", prompt))
    return messages


__all__ = [
    "ChatOrchestrator",
    "DEFAULT_HISTORY_LIMIT",
    "TurnEvent",
    "TurnStream",
    "build_llm_messages",
]
