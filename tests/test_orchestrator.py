"""Tests for the streaming turn orchestrator and session helpers."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import List, Optional, Sequence

import pytest

from docchat.documents import DocumentLibrary
from docchat.errors import ApiError, RetrievalError, StreamingError
from docchat.llm_client import AnthropicStreamingClient
from docchat.models import (
    Attachment,
    ChatMessage,
    MessageKind,
    PartialText,
    SearchResult,
    TurnDone,
    TurnError,
    TurnState,
)
from docchat.orchestrator import ChatOrchestrator, build_llm_messages
from docchat.providers import MockLLMClient
from docchat.retrieval import InMemoryRetrievalClient
from docchat.session import ChatSession, should_group_message


@pytest.fixture
def anyio_backend():
    return "asyncio"


class SlowRetrieval(InMemoryRetrievalClient):
    async def query(self, text: str, k: int, document_ids: Optional[Sequence[str]] = None) -> List[SearchResult]:
        await asyncio.sleep(5)
        return []


@pytest.fixture
def library(report_pages) -> DocumentLibrary:
    library = DocumentLibrary()
    library.add_text("Report.pdf", report_pages, document_id="report-1")
    return library


@pytest.mark.anyio
async def test_successful_turn_streams_and_records_answer(make_builder, library) -> None:
    llm = MockLLMClient(["The answer", " is here."])
    orchestrator = ChatOrchestrator(make_builder(library), llm)
    session = orchestrator.start_session("s1", active_document_id="report-1")

    stream = await orchestrator.submit_turn("s1", "summarize page 2")
    events = await stream.collect()

    assert [type(event) for event in events] == [PartialText, PartialText, TurnDone]
    assert events[1].accumulated == "The answer is here."
    done = events[-1]
    assert done.stop_reason == "end_turn"
    assert not done.cancelled

    kinds = [message.kind for message in session.messages]
    assert kinds == [MessageKind.SYSTEM_NOTICE, MessageKind.USER, MessageKind.ASSISTANT]
    answer = session.messages[-1]
    assert answer.id == done.message_id
    assert answer.text == "The answer is here."
    assert answer.streaming_complete and not answer.is_streaming
    assert [context.metadata.page_numbers for context in answer.contexts] == [[2]]
    assert session.state is TurnState.COMPLETE
    assert session.last_error is None
    assert session.token_usage.output_tokens > 0
    assert session.active_turn is None

    prompt = llm.calls[0][-1].content
    assert prompt.startswith("=== Document: Report.pdf ===\nPages 2:\n")
    assert prompt.endswith("User Query: summarize page 2")
    assert llm.systems[0]


@pytest.mark.anyio
async def test_start_session_adds_welcome_message(make_builder, library) -> None:
    orchestrator = ChatOrchestrator(make_builder(library), MockLLMClient())
    session = orchestrator.start_session(active_document_id="report-1")

    assert session.title == "Chat with Report.pdf"
    assert session.messages[0].text == (
        "I'm ready to help you with 'Report.pdf'. Feel free to ask me any questions about this document!"
    )
    assert not session.messages[0].is_conversational
    assert orchestrator.get_session(session.id) is session


@pytest.mark.anyio
async def test_retrieval_timeout_fails_before_model_call(make_builder, embedding_model, library) -> None:
    llm = MockLLMClient()
    builder = make_builder(library, retrieval=SlowRetrieval(embedding_model=embedding_model), retrieval_timeout=0.05)
    orchestrator = ChatOrchestrator(builder, llm)
    session = orchestrator.start_session("s1", active_document_id="report-1")

    events = await (await orchestrator.submit_turn("s1", "summarize page 2")).collect()

    assert len(events) == 1
    assert isinstance(events[0], TurnError)
    assert isinstance(events[0].error, RetrievalError)
    assert events[0].message == RetrievalError.user_message
    assert llm.call_count == 0
    assert session.bundle.contexts == []
    assert session.bundle.active_document_id == "report-1"
    assert session.state is TurnState.FAILED
    assert isinstance(session.last_error, RetrievalError)
    assert [message.kind for message in session.messages[1:]] == [MessageKind.USER, MessageKind.ERROR]


@pytest.mark.anyio
async def test_stream_failure_discards_partial_answer(make_builder, library) -> None:
    llm = MockLLMClient(["partial ", "never"], error=StreamingError("connection reset"), fail_after=1)
    orchestrator = ChatOrchestrator(make_builder(library), llm)
    session = orchestrator.start_session("s1")

    events = await (await orchestrator.submit_turn("s1", "hello")).collect()

    assert isinstance(events[0], PartialText)
    assert isinstance(events[-1], TurnError)
    assert [message.kind for message in session.messages] == [MessageKind.USER, MessageKind.ERROR]
    assert session.messages[-1].text == StreamingError.user_message
    assert all(message.text != "partial " for message in session.messages)


@pytest.mark.anyio
async def test_unexpected_model_errors_are_wrapped(make_builder, library) -> None:
    orchestrator = ChatOrchestrator(make_builder(library), MockLLMClient(error=ValueError("bad payload")))
    orchestrator.start_session("s1")

    events = await (await orchestrator.submit_turn("s1", "hello")).collect()

    assert isinstance(events[-1], TurnError)
    assert isinstance(events[-1].error, StreamingError)
    assert isinstance(events[-1].error.__cause__, ValueError)


@pytest.mark.anyio
async def test_missing_api_key_is_reported_to_the_user(make_builder, library) -> None:
    orchestrator = ChatOrchestrator(make_builder(library), AnthropicStreamingClient(None))
    session = orchestrator.start_session("s1")

    events = await (await orchestrator.submit_turn("s1", "hello")).collect()

    assert isinstance(events[-1].error, ApiError)
    assert session.messages[-1].text == "Please configure your API key to use the chat feature."
    await orchestrator.aclose()


@pytest.mark.anyio
async def test_cancel_during_streaming_removes_placeholder(make_builder, library) -> None:
    llm = MockLLMClient(["one ", "two ", "three"], delay=0.05)
    orchestrator = ChatOrchestrator(make_builder(library), llm)
    session = orchestrator.start_session("s1")

    stream = await orchestrator.submit_turn("s1", "tell me a story")
    events = []
    async for event in stream:
        events.append(event)
        if isinstance(event, PartialText):
            stream.cancel()
    await stream.wait()

    assert isinstance(events[0], PartialText)
    assert isinstance(events[-1], TurnDone) and events[-1].cancelled
    assert session.state is TurnState.CANCELLED
    assert [message.kind for message in session.messages] == [MessageKind.USER]
    assert session.last_error is None


@pytest.mark.anyio
async def test_cancel_before_turn_starts_still_terminates_stream(make_builder, library) -> None:
    orchestrator = ChatOrchestrator(make_builder(library), MockLLMClient())
    orchestrator.start_session("s1")

    stream = await orchestrator.submit_turn("s1", "hello")
    assert await orchestrator.cancel_turn("s1")
    events = await stream.collect()

    assert len(events) == 1
    assert isinstance(events[0], TurnDone) and events[0].cancelled
    assert not await orchestrator.cancel_turn("s1")


@pytest.mark.anyio
async def test_new_turn_cancels_the_running_one(make_builder, library) -> None:
    llm = MockLLMClient(["a", "b", "c"], delay=0.05)
    orchestrator = ChatOrchestrator(make_builder(library), llm)
    session = orchestrator.start_session("s1")

    first = await orchestrator.submit_turn("s1", "first question")
    first_event = await first.__anext__()
    assert isinstance(first_event, PartialText)

    second = await orchestrator.submit_turn("s1", "second question")
    first_rest = await first.collect()
    second_events = await second.collect()

    assert isinstance(first_rest[-1], TurnDone) and first_rest[-1].cancelled
    assert isinstance(second_events[-1], TurnDone) and not second_events[-1].cancelled
    assert [message.text for message in session.messages] == ["first question", "second question", "abc"]


@pytest.mark.anyio
async def test_concurrent_submits_leave_one_generation_running(make_builder, library) -> None:
    llm = MockLLMClient(["a", "b", "c"], delay=0.05)
    orchestrator = ChatOrchestrator(make_builder(library), llm)
    session = orchestrator.start_session("s1")

    first = await orchestrator.submit_turn("s1", "first question")
    assert isinstance(await first.__anext__(), PartialText)

    second, third = await asyncio.gather(
        orchestrator.submit_turn("s1", "second question"),
        orchestrator.submit_turn("s1", "third question"),
    )
    second_events = await second.collect()
    third_events = await third.collect()
    await first.collect()

    assert isinstance(second_events[-1], TurnDone) and second_events[-1].cancelled
    assert isinstance(third_events[-1], TurnDone) and not third_events[-1].cancelled
    assert session.active_turn is None
    assert [message.text for message in session.messages][-1] == "abc"
    assert [message.text for message in session.messages].count("abc") == 1


@pytest.mark.anyio
async def test_history_excludes_errors_and_notices(make_builder, library) -> None:
    llm = MockLLMClient(["first answer"])
    orchestrator = ChatOrchestrator(make_builder(library), llm, history_limit=10)
    session = orchestrator.start_session("s1", active_document_id="report-1")

    await (await orchestrator.submit_turn("s1", "what is this")).collect()
    session.messages.append(ChatMessage.from_error(RetrievalError("offline")))
    await (await orchestrator.submit_turn("s1", "and the outlook?")).collect()

    second_call = llm.calls[1]
    assert [(message.role, message.content) for message in second_call[:-1]] == [
        ("user", "what is this"),
        ("assistant", "first answer"),
    ]
    assert second_call[-1].content.endswith("User Query: and the outlook?")


@pytest.mark.anyio
async def test_attachments_flow_into_the_prompt(make_builder, library) -> None:
    llm = MockLLMClient(["ok"])
    orchestrator = ChatOrchestrator(make_builder(library), llm)
    orchestrator.start_session("s1")

    await (
        await orchestrator.submit_turn("s1", "explain this", [Attachment("report-1", "quoted passage", page_numbers=[1])])
    ).collect()

    assert llm.calls[0][-1].content == (
        "=== Document: Report.pdf ===\nSelected Text:\nquoted passage\n\n"
        + "=" * 50
        + "\n\nUser Query: explain this"
    )


@pytest.mark.anyio
async def test_end_session_and_export(make_builder, library) -> None:
    orchestrator = ChatOrchestrator(make_builder(library), MockLLMClient(["hi there"]))
    orchestrator.start_session("s1")
    await (await orchestrator.submit_turn("s1", "hello")).collect()

    exported = orchestrator.export_messages("s1")
    lines = exported.split("\n\n")
    assert lines[0].endswith("User: hello")
    assert lines[1].endswith("Assistant: hi there")
    assert lines[0].startswith("[")

    assert await orchestrator.end_session("s1")
    assert orchestrator.get_session("s1") is None
    assert not await orchestrator.end_session("s1")
    assert orchestrator.export_messages("s1") == ""


def test_build_llm_messages_starts_with_user_turn() -> None:
    welcome = ChatMessage(text="welcome", is_user=False, kind=MessageKind.ASSISTANT)
    history = [welcome, ChatMessage.user("q1"), ChatMessage(text="a1", is_user=False, kind=MessageKind.ASSISTANT)]

    messages = build_llm_messages(history, "prompt")

    assert [(message.role, message.content) for message in messages] == [
        ("user", "q1"),
        ("assistant", "a1"),
        ("user", "prompt"),
    ]


def test_conversation_history_respects_limit() -> None:
    session = ChatSession(id="s1")
    for index in range(6):
        session.messages.append(ChatMessage.user(f"q{index}"))

    assert [message.text for message in session.conversation_history(3)] == ["q3", "q4", "q5"]
    assert session.conversation_history(0) == []
    assert session.bundle.session_id == "s1"


def test_should_group_message_within_five_minutes() -> None:
    first = ChatMessage.user("one")
    second = ChatMessage.user("two")
    second.timestamp = first.timestamp + timedelta(minutes=4)
    third = ChatMessage.user("three")
    third.timestamp = second.timestamp + timedelta(minutes=6)
    reply = ChatMessage(text="reply", is_user=False, kind=MessageKind.ASSISTANT)
    reply.timestamp = third.timestamp

    messages = [first, second, third, reply]

    assert not should_group_message(messages, 0)
    assert should_group_message(messages, 1)
    assert not should_group_message(messages, 2)
    assert not should_group_message(messages, 3)
