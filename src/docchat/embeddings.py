"""Embedding helpers backed by Sentence Transformers or a hashed bag of words."""
from __future__ import annotations

import hashlib
import logging
import os
import re
import time
from functools import lru_cache
from typing import List, Sequence

import numpy as np

from docchat.errors import RetrievalError
from docchat.telemetry import emit_embeddings_event

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"
HASH_DIMENSION = 384
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class EmbeddingModel:
    """Text embedder with a selectable backend.

    ``hash`` (the default) projects lower-cased word tokens into a fixed number
    of buckets; it needs no model download and is fully deterministic, which
    keeps offline use and tests reproducible. ``sentence-transformers`` loads
    a real model from ``EMBEDDING_MODEL_PATH``.
    """

    def __init__(
        self,
        backend: str | None = None,
        *,
        model_name_or_path: str | None = None,
        device: str | None = None,
        dimension: int = HASH_DIMENSION,
    ) -> None:
        self.backend = (backend or os.getenv("EMBEDDING_BACKEND", "hash")).strip().lower()
        self._model = None
        self._dimension = dimension

        if self.backend == "hash":
            self._model_name = f"hashed-bow-{dimension}"
            self._embedder = self._hash_embed_texts
            return

        if self.backend != "sentence-transformers":
            raise ValueError(f"Unsupported EMBEDDING_BACKEND: {self.backend!r}")

        model_path = model_name_or_path or os.getenv("EMBEDDING_MODEL_PATH", DEFAULT_MODEL_NAME)
        embedding_device = device or os.getenv("EMBEDDING_DEVICE")
        self._model_name = model_path
        try:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(model_path, device=embedding_device)
        except Exception as exc:  # pragma: no cover - depends on model availability
            LOGGER.error("Failed to initialise sentence-transformers model '%s': %s", model_path, exc)
            raise RetrievalError(f"Embedding model {model_path!r} is unavailable", cause=exc) from exc

        self._dimension = int(self._model.get_sentence_embedding_dimension())
        self._embedder = self._embed_texts_with_model

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        started = time.perf_counter()
        try:
            embeddings = self._embedder(texts)
        except Exception as error:
            emit_embeddings_event(
                model=self._model_name,
                count=len(texts),
                duration_ms=(time.perf_counter() - started) * 1000.0,
                errors=[str(error)],
            )
            raise

        emit_embeddings_event(
            model=self._model_name,
            count=len(texts),
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return embeddings

    def _embed_texts_with_model(self, texts: Sequence[str]) -> List[List[float]]:
        embeddings = self._model.encode(  # type: ignore[union-attr]
            list(texts),
            convert_to_numpy=True,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    def _hash_embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        return [self._hash_embedding(str(text)).tolist() for text in texts]

    def _hash_embedding(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dimension, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            value = int.from_bytes(digest, "big")
            sign = 1.0 if value & 1 else -1.0
            vector[(value >> 1) % self._dimension] += sign
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector

    @property
    def dimension(self) -> int:
        return int(self._dimension)

    @property
    def model_name(self) -> str:
        return self._model_name


@lru_cache()
def get_embedding_model() -> EmbeddingModel:
    """Return a cached embedding model instance."""

    return EmbeddingModel()


__all__ = ["EmbeddingModel", "get_embedding_model"]
