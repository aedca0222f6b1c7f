"""Retrieval client contract and chunking shared by the backends."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from rank_bm25 import BM25Okapi

from docchat.models import ChunkLocation, SearchResult
from docchat.tokenizer import estimate_token_count, split_into_chunks

DEFAULT_CHUNK_TOKENS = 500
PAGE_SEPARATOR = "\n\n"


class RetrievalClient(Protocol):
    """Embedding/search backend consumed by the message builder."""

    async def ingest(self, document_id: str, text: str, pages: Optional[Sequence[str]] = None) -> None:
        ...

    async def is_indexed(self, document_id: str) -> bool:
        ...

    async def query(
        self, text: str, k: int, document_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        ...

    async def keyword_query(
        self, text: str, k: int, document_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        ...

    async def remove(self, document_id: str) -> None:
        ...


@dataclass(slots=True, frozen=True)
class DocumentChunk:
    """A retrieval-sized fragment of one document."""

    document_id: str
    index: int
    text: str
    location: ChunkLocation

    @property
    def chunk_id(self) -> str:
        seed = f"{self.document_id}:{self.index}:{self.location.char_start}:{self.location.char_end}"
        return uuid.uuid5(uuid.NAMESPACE_URL, seed).hex

    def to_result(self, score: float, source: str) -> SearchResult:
        return SearchResult(
            text=self.text,
            relevance_score=score,
            document_id=self.document_id,
            location=self.location,
            source=source,
        )


def chunk_document(
    document_id: str,
    text: str,
    pages: Optional[Sequence[str]] = None,
    *,
    max_tokens: int = DEFAULT_CHUNK_TOKENS,
) -> List[DocumentChunk]:
    """Split a document into chunks, keeping each chunk inside one page.

    A page that fits in ``max_tokens`` becomes a single chunk flagged as
    covering the full page. Character offsets refer to the pages joined with
    :data:`PAGE_SEPARATOR`, or to ``text`` when no pages are given.
    """

    if not pages:
        return _chunk_span(document_id, text, offset=0, page_number=None, max_tokens=max_tokens, start_index=0)

    chunks: List[DocumentChunk] = []
    offset = 0
    for number, page in enumerate(pages, start=1):
        if page.strip():
            if estimate_token_count(page) <= max_tokens:
                chunks.append(
                    DocumentChunk(
                        document_id=document_id,
                        index=len(chunks),
                        text=page.strip(),
                        location=ChunkLocation(
                            page_numbers=(number,),
                            char_start=offset,
                            char_end=offset + len(page),
                            covers_full_pages=True,
                        ),
                    )
                )
            else:
                chunks.extend(
                    _chunk_span(
                        document_id,
                        page,
                        offset=offset,
                        page_number=number,
                        max_tokens=max_tokens,
                        start_index=len(chunks),
                    )
                )
        offset += len(page) + len(PAGE_SEPARATOR)
    return chunks


def _chunk_span(
    document_id: str,
    text: str,
    *,
    offset: int,
    page_number: Optional[int],
    max_tokens: int,
    start_index: int,
) -> List[DocumentChunk]:
    chunks: List[DocumentChunk] = []
    cursor = 0
    for piece in split_into_chunks(text, max_tokens):
        found = text.find(piece, cursor)
        start = found if found >= 0 else cursor
        end = start + len(piece)
        cursor = end if found >= 0 else cursor
        chunks.append(
            DocumentChunk(
                document_id=document_id,
                index=start_index + len(chunks),
                text=piece,
                location=ChunkLocation(
                    page_numbers=(page_number,) if page_number is not None else (),
                    char_start=offset + start,
                    char_end=offset + end,
                    covers_full_pages=False,
                ),
            )
        )
    return chunks


def tokenize_for_keywords(text: str) -> List[str]:
    return text.lower().split()


def keyword_search(chunks: Sequence[DocumentChunk], text: str, k: int) -> List[SearchResult]:
    """Rank ``chunks`` against ``text`` with BM25; raw scores, positives only."""

    query_tokens = tokenize_for_keywords(text)
    corpus = [(chunk, tokenize_for_keywords(chunk.text)) for chunk in chunks]
    corpus = [(chunk, tokens) for chunk, tokens in corpus if tokens]
    if not corpus or not query_tokens or k <= 0:
        return []

    bm25 = BM25Okapi([tokens for _, tokens in corpus])
    scores = bm25.get_scores(query_tokens)
    ranked = sorted(range(len(corpus)), key=lambda index: scores[index], reverse=True)
    results: List[SearchResult] = []
    for index in ranked:
        score = float(scores[index])
        if score <= 0:
            break
        results.append(corpus[index][0].to_result(score, "keyword"))
        if len(results) >= k:
            break
    return results


__all__ = [
    "DEFAULT_CHUNK_TOKENS",
    "DocumentChunk",
    "PAGE_SEPARATOR",
    "RetrievalClient",
    "chunk_document",
    "keyword_search",
    "tokenize_for_keywords",
]
