"""Embedding/retrieval clients behind a narrow async interface."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from docchat.embeddings import EmbeddingModel
from docchat.models import SearchResult

from .base import DEFAULT_CHUNK_TOKENS, DocumentChunk, RetrievalClient, chunk_document, keyword_search
from .memory import InMemoryRetrievalClient


def create_retrieval_client(
    backend: str = "memory",
    *,
    persist_dir: str | Path = "chroma_db",
    embedding_model: Optional[EmbeddingModel] = None,
) -> RetrievalClient:
    """Build the retrieval client named by ``backend`` (``memory`` or ``chroma``)."""

    name = backend.strip().lower()
    if name == "memory":
        return InMemoryRetrievalClient(embedding_model=embedding_model)
    if name == "chroma":
        from .chroma_client import ChromaRetrievalClient

        return ChromaRetrievalClient(persist_dir, embedding_model=embedding_model)
    raise ValueError(f"Unsupported VECTOR_STORE backend: {backend!r}")


async def search_in_documents(
    client: RetrievalClient, document_ids: Sequence[str], text: str, k: int = 10
) -> List[SearchResult]:
    """Semantic search restricted to ``document_ids``; empty when none are given."""

    if not document_ids:
        return []
    return await client.query(text, k, document_ids=list(document_ids))


__all__ = [
    "DEFAULT_CHUNK_TOKENS",
    "DocumentChunk",
    "InMemoryRetrievalClient",
    "RetrievalClient",
    "chunk_document",
    "create_retrieval_client",
    "keyword_search",
    "search_in_documents",
]
