"""Creation, validation and caching of :class:`DocumentContext` values."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple, TypeVar

from docchat.cache import ContextCache, cache_key
from docchat.documents import Document, LibraryTextExtractor, TextExtractor
from docchat.errors import ExtractionError
from docchat.models import (
    ContextMetadata,
    ContextType,
    DocumentContext,
    Rect,
    SearchResult,
    Selection,
)
from docchat.selection import DEFAULT_TOKEN_LIMIT, DIVERSITY_BONUS, optimize_for_budget
from docchat.telemetry import emit_cache_event
from docchat.tokenizer import calculate_checksum, estimate_token_count

LOGGER = logging.getLogger(__name__)

FULL_DOCUMENT_MAX_CHARS = 50_000
SEMANTIC_CHUNK_MAX_CHARS = 10_000

T = TypeVar("T")


class ContextService:
    """Build document contexts, reading through the shared context cache."""

    def __init__(
        self,
        cache: ContextCache,
        extractor: Optional[TextExtractor] = None,
        *,
        token_limit: int = DEFAULT_TOKEN_LIMIT,
        diversity_bonus: float = DIVERSITY_BONUS,
    ) -> None:
        self.cache = cache
        self.extractor: TextExtractor = extractor or LibraryTextExtractor()
        self.token_limit = token_limit
        self.diversity_bonus = diversity_bonus
        self._pending: Set["asyncio.Task[None]"] = set()

    async def create_context(
        self,
        document: Document,
        context_type: ContextType,
        selection: Optional[Selection] = None,
    ) -> DocumentContext:
        """Return a context for ``document``, served from cache when still valid.

        A cached entry is reused only while it is younger than the cache's max
        age, was extracted from an unchanged source and (for page ranges and
        text selections) matches the requested selection. Extraction failures
        are retried once before :class:`ExtractionError` propagates.
        """

        _require_selection(context_type, selection)
        source_checksum = await self._with_retry(self.extractor.source_checksum, document)

        cached = await self.cache.get(document.id, context_type)
        if cached is not None:
            if cached.metadata.source_checksum == source_checksum and _selection_matches(
                cached, context_type, selection
            ):
                return cached
            emit_cache_event(
                "cache.stale", key=cache_key(document.id, context_type), reason="source or selection changed"
            )

        content, page_numbers, bounds, char_range, method = await self._with_retry(
            self._extract, document, context_type, selection
        )
        context = DocumentContext(
            document_id=document.id,
            document_title=document.title,
            context_type=context_type,
            content=content,
            metadata=ContextMetadata(
                extraction_method=method,
                token_count=estimate_token_count(content),
                checksum=calculate_checksum(content),
                page_numbers=page_numbers,
                selection_bounds=bounds,
                character_range=char_range,
                source_checksum=source_checksum,
            ),
        )
        self._schedule_cache_write(context)
        return context

    def create_context_from_text(
        self,
        text: str,
        document: Document,
        *,
        page_numbers: Optional[Sequence[int]] = None,
        selection_bounds: Optional[Sequence[Rect]] = None,
        character_range: Optional[Tuple[int, int]] = None,
        extraction_method: str = "attachment",
    ) -> DocumentContext:
        """Wrap text the user selected as a ``textSelection`` context."""

        return DocumentContext(
            document_id=document.id,
            document_title=document.title,
            context_type=ContextType.TEXT_SELECTION,
            content=text,
            metadata=ContextMetadata(
                extraction_method=extraction_method,
                token_count=estimate_token_count(text),
                checksum=calculate_checksum(text),
                page_numbers=list(page_numbers) if page_numbers else None,
                selection_bounds=list(selection_bounds) if selection_bounds else None,
                character_range=character_range,
            ),
        )

    def create_retrieved_context(self, result: SearchResult, document_title: str) -> DocumentContext:
        location = result.location
        context_type = (
            ContextType.PAGE_RANGE if location.covers_full_pages else ContextType.SEMANTIC_CHUNK
        )
        char_range = None
        if location.char_start is not None and location.char_end is not None:
            char_range = (location.char_start, location.char_end)
        return DocumentContext(
            document_id=result.document_id,
            document_title=document_title,
            context_type=context_type,
            content=result.text,
            metadata=ContextMetadata(
                extraction_method=f"retrieval.{result.source}",
                token_count=estimate_token_count(result.text),
                checksum=result.checksum,
                page_numbers=list(location.page_numbers) or None,
                character_range=char_range,
            ),
            relevance_score=result.relevance_score,
        )

    async def get_cached_context(
        self, document: Document, context_type: ContextType
    ) -> Optional[DocumentContext]:
        return await self.cache.get(document.id, context_type)

    async def invalidate_cache(self, document_id: str) -> None:
        await self.cache.invalidate(document_id)

    def estimate_token_count(self, text: str) -> int:
        return estimate_token_count(text)

    def optimize_for_budget(
        self, contexts: Sequence[DocumentContext], token_limit: Optional[int] = None
    ) -> List[DocumentContext]:
        return optimize_for_budget(
            contexts,
            self.token_limit if token_limit is None else token_limit,
            diversity_bonus=self.diversity_bonus,
        )

    async def drain(self) -> None:
        """Wait for scheduled cache writes to finish."""

        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _schedule_cache_write(self, context: DocumentContext) -> None:
        task = asyncio.get_running_loop().create_task(self._write_cache(context))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_cache(self, context: DocumentContext) -> None:
        key = cache_key(context.document_id, context.context_type)
        try:
            await self.cache.put(context)
        except Exception as exc:
            LOGGER.warning("Failed to write context cache entry %s: %s", key, exc)
            emit_cache_event("cache.write_failed", key=key, error=exc)

    async def _with_retry(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except ExtractionError as exc:
            LOGGER.warning("Extraction failed, retrying once: %s", exc)
            return await asyncio.to_thread(func, *args)

    def _extract(
        self,
        document: Document,
        context_type: ContextType,
        selection: Optional[Selection],
    ) -> Tuple[str, Optional[List[int]], Optional[List[Rect]], Optional[Tuple[int, int]], str]:
        if context_type in (ContextType.FULL_DOCUMENT, ContextType.REFERENCE):
            content = self.extractor.extract_text(document, FULL_DOCUMENT_MAX_CHARS)
            pages = list(range(1, document.page_count + 1)) or None
            return content, pages, None, None, f"text.{context_type.value}"

        if context_type is ContextType.SEMANTIC_CHUNK:
            content = self.extractor.extract_text(document, SEMANTIC_CHUNK_MAX_CHARS)
            return content, None, None, None, "text.semanticChunk"

        assert selection is not None
        if context_type is ContextType.PAGE_RANGE:
            numbers = sorted(set(selection.page_numbers))
            extracted = self.extractor.extract_pages(document, numbers)
            content = "".join(f"Page {number}:\n{extracted[number]}\n\n" for number in numbers)
            return content, numbers, None, None, "text.pageRange"

        content = selection.text or ""
        return (
            content,
            sorted(set(selection.page_numbers)) or None,
            list(selection.bounds) or None,
            selection.character_range,
            "text.textSelection",
        )


def _require_selection(context_type: ContextType, selection: Optional[Selection]) -> None:
    if context_type is ContextType.PAGE_RANGE and (selection is None or not selection.page_numbers):
        raise ExtractionError("No selection provided for page range extraction")
    if context_type is ContextType.TEXT_SELECTION and (selection is None or not selection.text):
        raise ExtractionError("No selection provided for text selection")


def _selection_matches(
    cached: DocumentContext, context_type: ContextType, selection: Optional[Selection]
) -> bool:
    if context_type is ContextType.PAGE_RANGE:
        assert selection is not None
        return cached.metadata.page_numbers == sorted(set(selection.page_numbers))
    if context_type is ContextType.TEXT_SELECTION:
        assert selection is not None
        return cached.content == selection.text
    return True


__all__ = ["ContextService", "FULL_DOCUMENT_MAX_CHARS", "SEMANTIC_CHUNK_MAX_CHARS"]
