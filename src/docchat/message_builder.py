"""Multi-stage pipeline that turns a user turn into a context-grounded prompt.

Every stage completes before :meth:`MessageBuilder.build` returns, so callers
never hold a prompt that was assembled from partial retrieval results.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Optional, Sequence, Set, TypeVar

from docchat.context_service import ContextService
from docchat.documents import Document, DocumentLibrary
from docchat.errors import (
    BudgetExceededWithoutFit,
    ExtractionError,
    PipelineError,
    RetrievalError,
    TurnCancelledError,
)
from docchat.models import (
    Attachment,
    ChatContextBundle,
    ContextType,
    DocumentContext,
    SearchResult,
)
from docchat.resolvers import extract_page_hints, resolve_references
from docchat.retrieval import RetrievalClient
from docchat.selection import DEFAULT_TOKEN_LIMIT, DIVERSITY_BONUS, dedup_results, select_within_budget
from docchat.telemetry import emit_prompt_event, emit_retrieval_event, emit_selection_event

LOGGER = logging.getLogger(__name__)

DEFAULT_TOP_K = 50
DEFAULT_RETRIEVAL_TIMEOUT = 30.0
SECTION_RULE = "=" * 50

T = TypeVar("T")

_LABELS = {
    ContextType.FULL_DOCUMENT: "Full Document Content:",
    ContextType.TEXT_SELECTION: "Selected Text:",
    ContextType.SEMANTIC_CHUNK: "Relevant Section:",
    ContextType.REFERENCE: "Referenced Content:",
}


class CancellationToken:
    """Cooperative cancellation flag checked between pipeline stages."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError("Turn cancelled")


@dataclass(slots=True)
class BuiltMessage:
    prompt: str
    processed_text: str
    contexts: List[DocumentContext] = field(default_factory=list)
    dropped: List[DocumentContext] = field(default_factory=list)


def context_label(context: DocumentContext) -> str:
    if context.context_type is ContextType.PAGE_RANGE:
        pages = ", ".join(str(page) for page in context.metadata.page_numbers or [])
        return f"Pages {pages}:"
    return _LABELS[context.context_type]


def format_for_llm(text: str, contexts: Sequence[DocumentContext]) -> str:
    """Render contexts grouped by document, followed by the user query.

    Documents appear in the order of their first context; inside a document
    contexts keep the order they were given in.
    """

    grouped: Dict[str, List[DocumentContext]] = {}
    for context in contexts:
        grouped.setdefault(context.document_id, []).append(context)

    parts: List[str] = []
    for document_contexts in grouped.values():
        parts.append(f"=== Document: {document_contexts[0].document_title} ===\n")
        for context in document_contexts:
            parts.append(context_label(context) + "\n")
            parts.append(context.content + "\n\n")
        parts.append(SECTION_RULE + "\n\n")
    parts.append("User Query: " + text)
    return "".join(parts)


def normalise_scores(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Scale scores into ``[0, 1]`` by dividing by the best one."""

    best = max((result.relevance_score for result in results), default=0.0)
    if best <= 0:
        return []
    return [
        SearchResult(
            text=result.text,
            relevance_score=result.relevance_score / best,
            document_id=result.document_id,
            location=result.location,
            source=result.source,
        )
        for result in results
    ]


class MessageBuilder:
    """Resolve, retrieve, select and format the context for one user turn."""

    def __init__(
        self,
        library: DocumentLibrary,
        context_service: ContextService,
        retrieval: RetrievalClient,
        *,
        token_limit: int = DEFAULT_TOKEN_LIMIT,
        top_k: int = DEFAULT_TOP_K,
        diversity_bonus: float = DIVERSITY_BONUS,
        include_active_document: bool = True,
        retrieval_timeout: float = DEFAULT_RETRIEVAL_TIMEOUT,
    ) -> None:
        self.library = library
        self.context_service = context_service
        self.retrieval = retrieval
        self.token_limit = token_limit
        self.top_k = top_k
        self.diversity_bonus = diversity_bonus
        self.include_active_document = include_active_document
        self.retrieval_timeout = retrieval_timeout

    async def build(
        self,
        user_text: str,
        bundle: ChatContextBundle,
        *,
        attachments: Sequence[Attachment] = (),
        cancel_token: Optional[CancellationToken] = None,
    ) -> BuiltMessage:
        token = cancel_token or CancellationToken()
        session_id = bundle.session_id

        token.raise_if_cancelled()
        resolved = resolve_references(user_text, self.library)
        for document in resolved.documents:
            bundle.add_context(await self.context_service.create_context(document, ContextType.REFERENCE))
        if resolved.unresolved:
            LOGGER.info("Unresolved document references: %s", ", ".join(resolved.unresolved))

        token.raise_if_cancelled()
        for attachment in attachments:
            document = self._require_document(attachment.document_id)
            bundle.add_context(
                self.context_service.create_context_from_text(
                    attachment.text,
                    document,
                    page_numbers=attachment.page_numbers,
                    selection_bounds=attachment.selection_bounds,
                    character_range=attachment.character_range,
                )
            )

        token.raise_if_cancelled()
        active = self._active_document(bundle)
        referenced_ids = {document.id for document in resolved.documents}
        await self._with_timeout(self._register([*resolved.documents, *([active] if active else [])]))

        token.raise_if_cancelled()
        candidates = await self._retrieve(resolved.processed_text, referenced_ids, active, session_id)

        token.raise_if_cancelled()
        unique = dedup_results(candidates, exclude_checksums=[context.checksum for context in bundle.contexts])
        retrieved = [
            self.context_service.create_retrieved_context(result, self._title_for(result.document_id))
            for result in unique
        ]

        pinned = sorted(
            bundle.contexts,
            key=lambda context: 0 if context.context_type is ContextType.REFERENCE else 1,
        )
        selection = select_within_budget(
            pinned, retrieved, self.token_limit, diversity_bonus=self.diversity_bonus
        )
        if selection.nothing_fit:
            warning = BudgetExceededWithoutFit(
                f"No context fits the {self.token_limit} token budget; sending the query alone"
            )
            LOGGER.warning("%s", warning)
        emit_selection_event(
            session_id=session_id,
            candidates=len(pinned) + len(retrieved),
            selected=len(selection.selected),
            dropped=len(selection.dropped),
            used_tokens=selection.used_tokens,
            token_limit=self.token_limit,
            documents=[context.document_id for context in selection.selected],
        )

        token.raise_if_cancelled()
        prompt = format_for_llm(resolved.processed_text, selection.selected)
        emit_prompt_event(
            session_id=session_id,
            prompt=prompt,
            sources=[context.document_title for context in selection.selected],
            context_tokens=selection.used_tokens,
        )
        return BuiltMessage(
            prompt=prompt,
            processed_text=resolved.processed_text,
            contexts=selection.selected,
            dropped=selection.dropped,
        )

    def format_for_llm(self, text: str, contexts: Sequence[DocumentContext]) -> str:
        return format_for_llm(text, contexts)

    def _require_document(self, document_id: str) -> Document:
        document = self.library.find_by_id(document_id)
        if document is None:
            raise ExtractionError(f"Attached document {document_id} is not in the library")
        return document

    def _active_document(self, bundle: ChatContextBundle) -> Optional[Document]:
        if not self.include_active_document or bundle.active_document_id is None:
            return None
        document = self.library.find_by_id(bundle.active_document_id)
        if document is None:
            raise RetrievalError(f"Active document {bundle.active_document_id} is not in the library")
        return document

    def _title_for(self, document_id: str) -> str:
        document = self.library.find_by_id(document_id)
        return document.title if document is not None else document_id

    async def _with_timeout(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.retrieval_timeout)
        except asyncio.TimeoutError as exc:
            raise RetrievalError(
                f"Retrieval timed out after {self.retrieval_timeout:.1f}s", cause=exc
            ) from exc

    async def _register(self, documents: Sequence[Document]) -> None:
        extractor = self.context_service.extractor
        for document in documents:
            try:
                if await self.retrieval.is_indexed(document.id):
                    continue
                text = await asyncio.to_thread(extractor.extract_text, document)
                pages = document.pages
                await self.retrieval.ingest(document.id, text, pages)
            except PipelineError:
                raise
            except Exception as exc:
                raise RetrievalError(f"Failed to index {document.title!r}", cause=exc) from exc
            LOGGER.info("Indexed %s for retrieval", document.title)

    async def _retrieve(
        self,
        text: str,
        pinned_document_ids: Set[str],
        active: Optional[Document],
        session_id: str,
    ) -> List[SearchResult]:
        """Search every indexed document, skipping those pinned whole as references."""

        if not text.strip():
            return []

        started = time.perf_counter()
        try:
            semantic, keyword = await self._with_timeout(
                asyncio.gather(
                    self.retrieval.query(text, self.top_k),
                    self.retrieval.keyword_query(text, self.top_k),
                )
            )
        except PipelineError:
            raise
        except Exception as exc:
            raise RetrievalError("Document search failed", cause=exc) from exc

        keyword = normalise_scores(keyword)
        merged = [
            result
            for result in (*semantic, *keyword)
            if result.document_id not in pinned_document_ids
        ]
        page_hints = extract_page_hints(text)
        if page_hints and active is not None:
            wanted = set(page_hints)
            merged = [
                result
                for result in merged
                if result.document_id != active.id or wanted.intersection(result.location.page_numbers)
            ]

        emit_retrieval_event(
            session_id=session_id,
            query=text,
            top_k=self.top_k,
            semantic_hits=len(semantic),
            keyword_hits=len(keyword),
            page_hints=page_hints,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return merged


__all__ = [
    "BuiltMessage",
    "CancellationToken",
    "DEFAULT_RETRIEVAL_TIMEOUT",
    "DEFAULT_TOP_K",
    "MessageBuilder",
    "context_label",
    "format_for_llm",
    "normalise_scores",
]
