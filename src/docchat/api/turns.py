"""API router streaming chat turns as newline-delimited JSON."""
from __future__ import annotations

import json
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from docchat.errors import ApiError
from docchat.models import Attachment, PartialText, Rect, TurnDone, TurnError
from docchat.orchestrator import ChatOrchestrator, TurnEvent, TurnStream
from docchat.session import message_to_dict

router = APIRouter(prefix="/sessions", tags=["chat"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class RectModel(BaseModel):
    x: float
    y: float
    width: float
    height: float


class AttachmentModel(BaseModel):
    """Text selection attached to a turn."""

    document_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    page_numbers: list[int] | None = None
    selection_bounds: list[RectModel] | None = None
    character_range: tuple[int, int] | None = None

    def to_attachment(self) -> Attachment:
        bounds = None
        if self.selection_bounds is not None:
            bounds = [Rect(x=item.x, y=item.y, width=item.width, height=item.height) for item in self.selection_bounds]
        return Attachment(
            document_id=self.document_id,
            text=self.text,
            page_numbers=self.page_numbers,
            selection_bounds=bounds,
            character_range=self.character_range,
        )


class TurnRequest(BaseModel):
    """Request body accepted by the turn endpoint."""

    text: str = Field(..., min_length=1, description="User message, may contain @document references.")
    attachments: list[AttachmentModel] = Field(default_factory=list)
    active_document_id: str | None = Field(
        None, description="Document the conversation is about; omitted keeps the session's current one."
    )


class MessageModel(BaseModel):
    id: str
    role: str
    kind: str
    text: str
    timestamp: str
    is_streaming: bool
    streaming_complete: bool
    stop_reason: str | None
    sources: list[str]


class MessagesResponse(BaseModel):
    session_id: str
    state: str
    messages: list[MessageModel]


def get_orchestrator(request: Request) -> ChatOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Chat orchestrator is not configured")
    return orchestrator


def event_to_dict(event: TurnEvent) -> dict[str, Any]:
    """Serialise one turn event into its wire representation."""

    if isinstance(event, PartialText):
        return {"type": event.type, "text": event.text, "accumulated": event.accumulated}
    if isinstance(event, TurnError):
        payload: dict[str, Any] = {
            "type": event.type,
            "error": type(event.error).__name__,
            "message": event.message,
        }
        if isinstance(event.error, ApiError):
            payload["kind"] = event.error.kind.value
        return payload
    if isinstance(event, TurnDone):
        return {
            "type": event.type,
            "message_id": event.message_id,
            "stop_reason": event.stop_reason,
            "cancelled": event.cancelled,
            "usage": {
                "input_tokens": event.usage.input_tokens,
                "output_tokens": event.usage.output_tokens,
            },
        }
    raise TypeError(f"Unsupported turn event: {event!r}")


async def _ndjson_events(stream: TurnStream) -> AsyncIterator[str]:
    try:
        async for event in stream:
            yield json.dumps(event_to_dict(event), ensure_ascii=False) + "\n"
    finally:
        # client went away before the turn settled
        if not stream.done:
            stream.cancel()


@router.post("/{session_id}/turns")
async def submit_turn(
    session_id: str,
    request: TurnRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Run one chat turn and stream its events."""

    if not request.text.strip():
        raise HTTPException(status_code=422, detail="Message text must not be empty")

    kwargs: dict[str, Any] = {}
    if "active_document_id" in request.model_fields_set:
        kwargs["active_document_id"] = request.active_document_id
    if orchestrator.get_session(session_id) is None:
        orchestrator.start_session(session_id, active_document_id=request.active_document_id)

    stream = await orchestrator.submit_turn(
        session_id,
        request.text,
        [attachment.to_attachment() for attachment in request.attachments],
        **kwargs,
    )
    return StreamingResponse(_ndjson_events(stream), media_type=NDJSON_MEDIA_TYPE)


@router.delete("/{session_id}/turn")
async def cancel_turn(
    session_id: str,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Cancel the turn currently running for the session, if any."""

    if orchestrator.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    cancelled = await orchestrator.cancel_turn(session_id)
    return {"session_id": session_id, "cancelled": cancelled}


@router.get("/{session_id}/messages", response_model=MessagesResponse)
def list_messages(
    session_id: str,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> MessagesResponse:
    session = orchestrator.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return MessagesResponse(
        session_id=session.id,
        state=session.state.value,
        messages=[MessageModel(**message_to_dict(message)) for message in session.messages],
    )


@router.get("/{session_id}/export", response_class=PlainTextResponse)
def export_transcript(
    session_id: str,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> str:
    if orchestrator.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return orchestrator.export_messages(session_id)


@router.delete("/{session_id}")
async def end_session(
    session_id: str,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Cancel any running turn and forget the session."""

    if not await orchestrator.end_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session_id": session_id, "status": "ended"}
