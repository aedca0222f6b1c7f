"""In-process retrieval client using numpy cosine similarity and BM25."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from docchat.embeddings import EmbeddingModel, get_embedding_model
from docchat.models import SearchResult
from docchat.retrieval.base import DEFAULT_CHUNK_TOKENS, DocumentChunk, chunk_document, keyword_search
from docchat.telemetry import emit_vectorstore_event

LOGGER = logging.getLogger(__name__)

COLLECTION_NAME = "memory"


class InMemoryRetrievalClient:
    """Keep chunk embeddings in memory; suitable for tests and single-process use."""

    def __init__(
        self,
        *,
        embedding_model: Optional[EmbeddingModel] = None,
        chunk_tokens: int = DEFAULT_CHUNK_TOKENS,
    ) -> None:
        self.embedding_model = embedding_model or get_embedding_model()
        self.chunk_tokens = chunk_tokens
        self._chunks: Dict[str, List[DocumentChunk]] = {}
        self._vectors: Dict[str, np.ndarray] = {}
        self._lock = asyncio.Lock()

    async def ingest(self, document_id: str, text: str, pages: Optional[Sequence[str]] = None) -> None:
        chunks = chunk_document(document_id, text, pages, max_tokens=self.chunk_tokens)
        if chunks:
            embeddings = await asyncio.to_thread(
                self.embedding_model.embed_texts, [chunk.text for chunk in chunks]
            )
            matrix = np.asarray(embeddings, dtype=np.float32)
        else:
            matrix = np.zeros((0, self.embedding_model.dimension), dtype=np.float32)
        async with self._lock:
            self._chunks[document_id] = chunks
            self._vectors[document_id] = matrix
        emit_vectorstore_event(
            "vectorstore.ingest", collection=COLLECTION_NAME, count=len(chunks), document_id=document_id
        )

    async def is_indexed(self, document_id: str) -> bool:
        return document_id in self._chunks

    async def query(
        self, text: str, k: int, document_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        if not text.strip() or k <= 0:
            return []
        chunks, matrix = self._collect(document_ids)
        if not chunks:
            return []

        query_vectors = await asyncio.to_thread(self.embedding_model.embed_texts, [text])
        query = np.asarray(query_vectors[0], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query) or 1.0)
        norms[norms == 0] = 1.0
        similarities = (matrix @ query) / norms

        order = np.argsort(-similarities, kind="stable")[:k]
        return [
            chunks[index].to_result(float(max(similarities[index], 0.0)), "semantic")
            for index in order
        ]

    async def keyword_query(
        self, text: str, k: int, document_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        chunks, _ = self._collect(document_ids)
        return keyword_search(chunks, text, k)

    async def remove(self, document_id: str) -> None:
        async with self._lock:
            self._chunks.pop(document_id, None)
            self._vectors.pop(document_id, None)

    def _collect(self, document_ids: Optional[Sequence[str]]) -> tuple[List[DocumentChunk], np.ndarray]:
        wanted = list(self._chunks) if document_ids is None else [i for i in document_ids if i in self._chunks]
        chunks: List[DocumentChunk] = []
        matrices: List[np.ndarray] = []
        for document_id in wanted:
            chunks.extend(self._chunks[document_id])
            matrices.append(self._vectors[document_id])
        if not chunks:
            return [], np.zeros((0, self.embedding_model.dimension), dtype=np.float32)
        return chunks, np.vstack(matrices)


__all__ = ["InMemoryRetrievalClient"]
