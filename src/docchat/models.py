"""Data model shared by the context pipeline, sessions and the cache."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from docchat.errors import CacheCorruptionError, PipelineError
from docchat.tokenizer import calculate_checksum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class ContextType(str, Enum):
    """Kind of text a :class:`DocumentContext` carries."""

    FULL_DOCUMENT = "fullDocument"
    PAGE_RANGE = "pageRange"
    TEXT_SELECTION = "textSelection"
    SEMANTIC_CHUNK = "semanticChunk"
    REFERENCE = "reference"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    ContextType.FULL_DOCUMENT: "Full Document",
    ContextType.PAGE_RANGE: "Page Range",
    ContextType.TEXT_SELECTION: "Selected Text",
    ContextType.SEMANTIC_CHUNK: "Relevant Section",
    ContextType.REFERENCE: "Referenced Document",
}


@dataclass(slots=True, frozen=True)
class Rect:
    """Selection bounds on a rendered page."""

    x: float
    y: float
    width: float
    height: float

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Rect":
        return cls(
            x=float(payload["x"]),
            y=float(payload["y"]),
            width=float(payload["width"]),
            height=float(payload["height"]),
        )


@dataclass(slots=True, frozen=True)
class ContextMetadata:
    """Extraction details attached to a :class:`DocumentContext`."""

    extraction_method: str
    token_count: int
    checksum: str
    page_numbers: Optional[List[int]] = None
    selection_bounds: Optional[List[Rect]] = None
    character_range: Optional[Tuple[int, int]] = None
    source_checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pageNumbers": list(self.page_numbers) if self.page_numbers is not None else None,
            "selectionBounds": (
                [rect.to_dict() for rect in self.selection_bounds]
                if self.selection_bounds is not None
                else None
            ),
            "characterRange": (
                list(self.character_range) if self.character_range is not None else None
            ),
            "extractionMethod": self.extraction_method,
            "tokenCount": self.token_count,
            "checksum": self.checksum,
            "sourceChecksum": self.source_checksum,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ContextMetadata":
        pages = payload.get("pageNumbers")
        bounds = payload.get("selectionBounds")
        char_range = payload.get("characterRange")
        if char_range is not None and len(char_range) != 2:
            raise ValueError("characterRange must have exactly two elements")
        return cls(
            extraction_method=str(payload["extractionMethod"]),
            token_count=int(payload["tokenCount"]),
            checksum=str(payload["checksum"]),
            page_numbers=[int(page) for page in pages] if pages is not None else None,
            selection_bounds=[Rect.from_dict(item) for item in bounds] if bounds is not None else None,
            character_range=(int(char_range[0]), int(char_range[1])) if char_range is not None else None,
            source_checksum=payload.get("sourceChecksum"),
        )


@dataclass(slots=True)
class DocumentContext:
    """One retrieved or selected piece of document text."""

    document_id: str
    document_title: str
    context_type: ContextType
    content: str
    metadata: ContextMetadata
    id: str = field(default_factory=new_id)
    extracted_at: datetime = field(default_factory=utcnow)
    relevance_score: Optional[float] = None

    @property
    def token_count(self) -> int:
        return self.metadata.token_count

    @property
    def checksum(self) -> str:
        return self.metadata.checksum

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "documentId": self.document_id,
            "documentTitle": self.document_title,
            "contextType": self.context_type.value,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "extractedAt": self.extracted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DocumentContext":
        """Rebuild a context from :meth:`to_dict` output.

        Any missing key or malformed value raises :class:`CacheCorruptionError`.
        """

        try:
            if not isinstance(payload.get("metadata"), dict):
                raise TypeError("metadata must be an object")
            extracted_at = datetime.fromisoformat(str(payload["extractedAt"]))
            if extracted_at.tzinfo is None:
                extracted_at = extracted_at.replace(tzinfo=timezone.utc)
            return cls(
                id=str(payload["id"]),
                document_id=str(payload["documentId"]),
                document_title=str(payload["documentTitle"]),
                context_type=ContextType(payload["contextType"]),
                content=str(payload["content"]),
                metadata=ContextMetadata.from_dict(payload["metadata"]),
                extracted_at=extracted_at,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise CacheCorruptionError("Malformed document context payload", cause=exc) from exc


@dataclass(slots=True)
class ChatContextBundle:
    """Per-session accumulator of contexts, in chronological order."""

    session_id: str
    contexts: List[DocumentContext] = field(default_factory=list)
    active_document_id: Optional[str] = None

    def token_count(self) -> int:
        return sum(context.metadata.token_count for context in self.contexts)

    def document_summary(self) -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for context in self.contexts:
            summary[context.document_id] = summary.get(context.document_id, 0) + 1
        return summary

    def contains_checksum(self, checksum: str) -> bool:
        return any(context.metadata.checksum == checksum for context in self.contexts)

    def add_context(self, context: DocumentContext) -> bool:
        """Append ``context`` unless an equal id or checksum is already present."""

        for existing in self.contexts:
            if existing.id == context.id or existing.metadata.checksum == context.metadata.checksum:
                return False
        self.contexts.append(context)
        return True

    def remove_context(self, context: DocumentContext) -> None:
        self.contexts = [existing for existing in self.contexts if existing.id != context.id]

    def clear_contexts(self) -> None:
        self.contexts.clear()

    def reset(self, active_document_id: Optional[str] = None) -> None:
        self.contexts.clear()
        self.active_document_id = active_document_id


class MessageKind(str, Enum):
    """Tag used to tell conversational messages apart from notices and errors."""

    USER = "user"
    ASSISTANT = "assistant"
    ERROR = "error"
    SYSTEM_NOTICE = "system_notice"


@dataclass(slots=True)
class ChatMessage:
    """One transcript entry. Assistant text is mutated while streaming."""

    text: str
    is_user: bool
    kind: MessageKind
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    contexts: List[DocumentContext] = field(default_factory=list)
    is_streaming: bool = False
    streaming_complete: bool = True
    error: Optional[PipelineError] = None
    stop_reason: Optional[str] = None

    @classmethod
    def user(cls, text: str) -> "ChatMessage":
        return cls(text=text, is_user=True, kind=MessageKind.USER)

    @classmethod
    def assistant_placeholder(cls) -> "ChatMessage":
        message = cls(text="", is_user=False, kind=MessageKind.ASSISTANT)
        message.start_streaming()
        return message

    @classmethod
    def from_error(cls, error: PipelineError) -> "ChatMessage":
        return cls(text=error.user_message, is_user=False, kind=MessageKind.ERROR, error=error)

    @property
    def is_conversational(self) -> bool:
        """True for user and finished assistant messages that belong in history."""

        if self.kind is MessageKind.USER:
            return True
        return self.kind is MessageKind.ASSISTANT and self.streaming_complete and bool(self.text)

    def start_streaming(self) -> None:
        self.is_streaming = True
        self.streaming_complete = False
        self.stop_reason = None

    def append_streaming_text(self, text: str) -> None:
        self.text += text

    def complete_streaming(self, stop_reason: Optional[str] = None) -> None:
        self.is_streaming = False
        self.streaming_complete = True
        self.stop_reason = stop_reason


@dataclass(slots=True, frozen=True)
class ChunkLocation:
    """Where a retrieved chunk sits inside its document."""

    page_numbers: Tuple[int, ...] = ()
    char_start: Optional[int] = None
    char_end: Optional[int] = None
    covers_full_pages: bool = False

    def overlaps(self, other: "ChunkLocation") -> bool:
        if None in (self.char_start, self.char_end, other.char_start, other.char_end):
            return False
        return self.char_start < other.char_end and other.char_start < self.char_end  # type: ignore[operator]


@dataclass(slots=True, frozen=True)
class SearchResult:
    """Internal product of the retrieval client; never persisted."""

    text: str
    relevance_score: float
    document_id: str
    location: ChunkLocation = field(default_factory=ChunkLocation)
    source: str = "semantic"

    @property
    def checksum(self) -> str:
        return calculate_checksum(self.text)


@dataclass(slots=True, frozen=True)
class Attachment:
    """A text selection the user attached to a turn."""

    document_id: str
    text: str
    page_numbers: Optional[Sequence[int]] = None
    selection_bounds: Optional[Sequence[Rect]] = None
    character_range: Optional[Tuple[int, int]] = None


@dataclass(slots=True, frozen=True)
class Selection:
    """Selection passed to the context service when extracting part of a document."""

    page_numbers: Tuple[int, ...] = ()
    text: Optional[str] = None
    bounds: Tuple[Rect, ...] = ()
    character_range: Optional[Tuple[int, int]] = None


class TurnState(str, Enum):
    IDLE = "idle"
    BUILDING_CONTEXT = "buildingContext"
    AWAITING_MODEL = "awaitingModel"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(slots=True, frozen=True)
class PartialText:
    text: str
    accumulated: str
    type: str = "partial_text"


@dataclass(slots=True, frozen=True)
class TurnError:
    error: PipelineError
    message: str
    type: str = "error"


@dataclass(slots=True, frozen=True)
class TurnDone:
    message_id: Optional[str]
    stop_reason: Optional[str]
    usage: TokenUsage = field(default_factory=TokenUsage)
    cancelled: bool = False
    type: str = "done"


__all__ = [
    "Attachment",
    "ChatContextBundle",
    "ChatMessage",
    "ChunkLocation",
    "ContextMetadata",
    "ContextType",
    "DocumentContext",
    "MessageKind",
    "PartialText",
    "Rect",
    "SearchResult",
    "Selection",
    "TokenUsage",
    "TurnDone",
    "TurnError",
    "TurnState",
    "utcnow",
]
