import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from docchat.api import turns_router
from docchat.cache import ContextCache
from docchat.config import Settings
from docchat.context_service import ContextService
from docchat.documents import DocumentLibrary, LibraryTextExtractor
from docchat.embeddings import EmbeddingModel
from docchat.llm_client import AnthropicStreamingClient
from docchat.logging_config import configure_logging
from docchat.message_builder import MessageBuilder
from docchat.orchestrator import ChatOrchestrator
from docchat.providers import LLMClient, MockLLMClient
from docchat.retrieval import create_retrieval_client
from docchat.telemetry import emit_app_startup_event

LOGGER = logging.getLogger(__name__)

LIBRARY_SUFFIXES = (".pdf", ".txt", ".md")


def load_library(directory: str | Path) -> DocumentLibrary:
    """Register every supported file under ``directory``; text is read lazily."""

    library = DocumentLibrary()
    root = Path(directory)
    if not root.is_dir():
        LOGGER.warning("Document directory %s does not exist; starting with an empty library", root)
        return library
    for path in sorted(root.iterdir()):
        if path.is_file() and path.suffix.lower() in LIBRARY_SUFFIXES:
            library.add_file(path)
    LOGGER.info("Loaded %d documents from %s", len(library), root)
    return library


def _build_llm(settings: Settings) -> LLMClient:
    if settings.llm_provider == "mock":
        return MockLLMClient()
    if settings.llm_provider != "anthropic":
        raise ValueError(f"Unsupported LLM_PROVIDER: {settings.llm_provider!r}")
    return AnthropicStreamingClient(
        settings.anthropic_api_key,
        base_url=settings.anthropic_base_url,
        model=settings.llm_model,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.llm_timeout,
    )


def build_orchestrator(
    settings: Optional[Settings] = None,
    library: Optional[DocumentLibrary] = None,
    *,
    llm: Optional[LLMClient] = None,
) -> ChatOrchestrator:
    """Wire the pipeline components once; callers share the returned orchestrator."""

    settings = settings or Settings.from_env()
    if library is None:
        library = load_library(settings.library_dir) if settings.library_dir else DocumentLibrary()

    embedding_model = EmbeddingModel(
        settings.embedding_backend, model_name_or_path=settings.embedding_model_path
    )
    retrieval = create_retrieval_client(
        settings.vector_store,
        persist_dir=settings.chroma_persist_dir,
        embedding_model=embedding_model,
    )
    cache = ContextCache(settings.cache_dir, max_age=settings.cache_max_age)
    context_service = ContextService(
        cache,
        LibraryTextExtractor(),
        token_limit=settings.context_token_limit,
        diversity_bonus=settings.diversity_bonus,
    )
    builder = MessageBuilder(
        library,
        context_service,
        retrieval,
        token_limit=settings.context_token_limit,
        top_k=settings.retrieval_top_k,
        diversity_bonus=settings.diversity_bonus,
        include_active_document=settings.include_active_document,
        retrieval_timeout=settings.retrieval_timeout,
    )
    return ChatOrchestrator(
        builder,
        llm or _build_llm(settings),
        history_limit=settings.history_limit,
    )


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    emit_app_startup_event()
    if app.state.orchestrator is None:
        app.state.orchestrator = build_orchestrator()
    try:
        yield
    finally:
        await app.state.orchestrator.aclose()


def create_app(orchestrator: Optional[ChatOrchestrator] = None) -> FastAPI:
    """Create the HTTP app; without ``orchestrator`` one is built from the environment at startup."""

    app = FastAPI(title="DocChat API", lifespan=_lifespan)
    app.state.orchestrator = orchestrator
    app.include_router(turns_router)

    @app.get("/", response_class=PlainTextResponse)
    def read_root() -> str:
        """Healthcheck endpoint for the service."""
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    async def readiness_probe(request: Request) -> str:
        """Readiness probe that ensures the retrieval backend answers."""

        orchestrator = request.app.state.orchestrator
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="orchestrator_unavailable")
        try:
            await orchestrator.builder.retrieval.query("__readyz__", 1)
        except Exception as exc:  # pragma: no cover - backend specific
            raise HTTPException(status_code=503, detail=f"retrieval_unavailable: {exc}") from exc
        return "ok"

    return app


configure_logging()

app = create_app()
