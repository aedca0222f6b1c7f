"""Chroma-backed retrieval client."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import chromadb

from docchat.embeddings import EmbeddingModel, get_embedding_model
from docchat.errors import RetrievalError
from docchat.models import ChunkLocation, SearchResult
from docchat.retrieval.base import DEFAULT_CHUNK_TOKENS, DocumentChunk, chunk_document, keyword_search
from docchat.telemetry import emit_vectorstore_event

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from chromadb.api import ClientAPI
    from chromadb.api.models.Collection import Collection

LOGGER = logging.getLogger(__name__)

DEFAULT_COLLECTION_NAME = "docchat_chunks"
DEFAULT_DISTANCE_METRIC = "cosine"


def _where(document_ids: Optional[Sequence[str]]) -> Optional[Dict[str, Any]]:
    if document_ids is None:
        return None
    ids = list(document_ids)
    if len(ids) == 1:
        return {"document_id": ids[0]}
    return {"document_id": {"$in": ids}}


def _chunk_metadata(chunk: DocumentChunk) -> Dict[str, Any]:
    location = chunk.location
    return {
        "document_id": chunk.document_id,
        "chunk_index": chunk.index,
        "char_start": location.char_start if location.char_start is not None else -1,
        "char_end": location.char_end if location.char_end is not None else -1,
        "pages": ",".join(str(page) for page in location.page_numbers),
        "covers_full_pages": location.covers_full_pages,
    }


def _chunk_from_record(text: str, metadata: Dict[str, Any]) -> DocumentChunk:
    pages = str(metadata.get("pages") or "")
    char_start = int(metadata.get("char_start", -1))
    char_end = int(metadata.get("char_end", -1))
    return DocumentChunk(
        document_id=str(metadata.get("document_id", "")),
        index=int(metadata.get("chunk_index", 0)),
        text=text,
        location=ChunkLocation(
            page_numbers=tuple(int(page) for page in pages.split(",") if page),
            char_start=char_start if char_start >= 0 else None,
            char_end=char_end if char_end >= 0 else None,
            covers_full_pages=bool(metadata.get("covers_full_pages", False)),
        ),
    )


class ChromaRetrievalClient:
    """Persist document chunks in a Chroma collection.

    Chroma calls are blocking, so every operation runs in a worker thread.
    Backend failures surface as :class:`RetrievalError`.
    """

    def __init__(
        self,
        persist_dir: str | Path,
        *,
        client: Optional["ClientAPI"] = None,
        collection_name: str = DEFAULT_COLLECTION_NAME,
        distance_metric: str = DEFAULT_DISTANCE_METRIC,
        embedding_model: Optional[EmbeddingModel] = None,
        chunk_tokens: int = DEFAULT_CHUNK_TOKENS,
    ) -> None:
        self.persist_dir = Path(persist_dir)
        self.collection_name = collection_name
        self.embedding_model = embedding_model or get_embedding_model()
        self.chunk_tokens = chunk_tokens
        try:
            if client is None:
                self.persist_dir.mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(path=str(self.persist_dir))
            self._client = client
            self._collection: "Collection" = client.get_or_create_collection(
                name=collection_name, metadata={"hnsw:space": distance_metric}
            )
        except Exception as exc:  # pragma: no cover - depends on chromadb runtime
            raise RetrievalError("Failed to initialise Chroma collection", cause=exc) from exc

    async def ingest(self, document_id: str, text: str, pages: Optional[Sequence[str]] = None) -> None:
        chunks = chunk_document(document_id, text, pages, max_tokens=self.chunk_tokens)
        await self._run("vectorstore.ingest", self._ingest_sync, document_id, chunks)
        emit_vectorstore_event(
            "vectorstore.ingest",
            collection=self.collection_name,
            count=len(chunks),
            document_id=document_id,
        )

    def _ingest_sync(self, document_id: str, chunks: List[DocumentChunk]) -> None:
        self._collection.delete(where={"document_id": document_id})
        if not chunks:
            return
        documents = [chunk.text for chunk in chunks]
        self._collection.upsert(
            ids=[chunk.chunk_id for chunk in chunks],
            embeddings=self.embedding_model.embed_texts(documents),
            documents=documents,
            metadatas=[_chunk_metadata(chunk) for chunk in chunks],
        )

    async def is_indexed(self, document_id: str) -> bool:
        records = await self._run(
            "vectorstore.lookup",
            self._collection.get,
            where={"document_id": document_id},
            limit=1,
            include=[],
        )
        return bool(records.get("ids"))

    async def query(
        self, text: str, k: int, document_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        if not text.strip() or k <= 0:
            return []
        return await self._run("vectorstore.query", self._query_sync, text, k, document_ids)

    def _query_sync(self, text: str, k: int, document_ids: Optional[Sequence[str]]) -> List[SearchResult]:
        available = self._collection.count()
        if available == 0:
            return []
        embedding = self.embedding_model.embed_texts([text])[0]
        result = self._collection.query(
            query_embeddings=[embedding],
            n_results=min(k, available),
            where=_where(document_ids),
            include=["documents", "metadatas", "distances"],
        )

        documents = (result.get("documents") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]

        results: List[SearchResult] = []
        for document, metadata, distance in zip(documents, metadatas, distances):
            chunk = _chunk_from_record(str(document or ""), dict(metadata or {}))
            score = 1.0 - float(distance) if distance is not None else 0.0
            results.append(chunk.to_result(max(score, 0.0), "semantic"))
        return results

    async def keyword_query(
        self, text: str, k: int, document_ids: Optional[Sequence[str]] = None
    ) -> List[SearchResult]:
        records = await self._run(
            "vectorstore.scan",
            self._collection.get,
            where=_where(document_ids),
            include=["documents", "metadatas"],
        )
        chunks = [
            _chunk_from_record(str(document or ""), dict(metadata or {}))
            for document, metadata in zip(records.get("documents") or [], records.get("metadatas") or [])
        ]
        return keyword_search(chunks, text, k)

    async def remove(self, document_id: str) -> None:
        await self._run("vectorstore.remove", self._collection.delete, where={"document_id": document_id})

    async def _run(self, step: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except RetrievalError:
            raise
        except Exception as exc:
            emit_vectorstore_event(step, collection=self.collection_name, count=0, error=exc)
            raise RetrievalError(f"Chroma operation {step!r} failed", cause=exc) from exc


__all__ = ["ChromaRetrievalClient"]
