"""Shared fixtures for building the context pipeline in tests."""
from __future__ import annotations

from typing import Callable, List, Optional

import pytest

from docchat.cache import ContextCache
from docchat.context_service import ContextService
from docchat.documents import DocumentLibrary, TextExtractor
from docchat.embeddings import EmbeddingModel
from docchat.message_builder import MessageBuilder
from docchat.retrieval import InMemoryRetrievalClient, RetrievalClient


def make_topic_page(topic: str, repeat: int = 33) -> str:
    """Roughly 400 tokens of text about ``topic``."""

    return (f"The {topic} section explains {topic} in detail. " * repeat).strip()


@pytest.fixture
def topic_page() -> Callable[..., str]:
    return make_topic_page


@pytest.fixture
def embedding_model() -> EmbeddingModel:
    return EmbeddingModel("hash")


@pytest.fixture
def report_pages() -> List[str]:
    return [make_topic_page("introduction"), make_topic_page("revenue"), make_topic_page("outlook")]


@pytest.fixture
def make_builder(embedding_model: EmbeddingModel) -> Callable[..., MessageBuilder]:
    def _factory(
        library: DocumentLibrary,
        *,
        retrieval: Optional[RetrievalClient] = None,
        cache: Optional[ContextCache] = None,
        extractor: Optional[TextExtractor] = None,
        token_limit: int = 4000,
        **kwargs: object,
    ) -> MessageBuilder:
        service = ContextService(cache or ContextCache(), extractor, token_limit=token_limit)
        client = retrieval or InMemoryRetrievalClient(embedding_model=embedding_model)
        return MessageBuilder(library, service, client, token_limit=token_limit, **kwargs)

    return _factory
