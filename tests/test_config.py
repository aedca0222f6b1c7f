"""Tests for environment settings and application wiring."""
from __future__ import annotations

from datetime import timedelta

from docchat.config import Settings
from docchat.documents import DocumentLibrary
from docchat.llm_client import AnthropicStreamingClient, DEFAULT_MODEL
from docchat.main import build_orchestrator, load_library
from docchat.providers import MockLLMClient
from docchat.retrieval import InMemoryRetrievalClient

_ENV_NAMES = (
    "DOCCHAT_CONTEXT_TOKEN_LIMIT",
    "DOCCHAT_RETRIEVAL_TOP_K",
    "DOCCHAT_DIVERSITY_BONUS",
    "DOCCHAT_INCLUDE_ACTIVE_DOCUMENT",
    "DOCCHAT_RETRIEVAL_TIMEOUT",
    "DOCCHAT_CACHE_DIR",
    "DOCCHAT_CACHE_MAX_AGE_DAYS",
    "DOCCHAT_HISTORY_LIMIT",
    "DOCCHAT_LIBRARY_DIR",
    "ANTHROPIC_API_KEY",
    "LLM_MODEL",
    "LLM_PROVIDER",
    "VECTOR_STORE",
)


def _clear_env(monkeypatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_settings_defaults(monkeypatch) -> None:
    _clear_env(monkeypatch)
    settings = Settings.from_env()

    assert settings.context_token_limit == 4000
    assert settings.retrieval_top_k == 50
    assert settings.diversity_bonus == 0.2
    assert settings.include_active_document is True
    assert settings.cache_dir is None
    assert settings.cache_max_age == timedelta(days=7)
    assert settings.history_limit == 10
    assert settings.llm_model == DEFAULT_MODEL
    assert settings.llm_max_tokens == 1000
    assert settings.vector_store == "memory"


def test_settings_read_environment(monkeypatch, tmp_path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("DOCCHAT_CONTEXT_TOKEN_LIMIT", "2000")
    monkeypatch.setenv("DOCCHAT_DIVERSITY_BONUS", "0.5")
    monkeypatch.setenv("DOCCHAT_INCLUDE_ACTIVE_DOCUMENT", "false")
    monkeypatch.setenv("DOCCHAT_CACHE_DIR", str(tmp_path))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "secret")
    monkeypatch.setenv("LLM_PROVIDER", "Mock")

    settings = Settings.from_env()

    assert settings.context_token_limit == 2000
    assert settings.diversity_bonus == 0.5
    assert settings.include_active_document is False
    assert settings.cache_dir == str(tmp_path)
    assert settings.anthropic_api_key == "secret"
    assert settings.llm_provider == "mock"


def test_invalid_numbers_fall_back_to_defaults(monkeypatch, caplog) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("DOCCHAT_RETRIEVAL_TOP_K", "many")
    monkeypatch.setenv("DOCCHAT_RETRIEVAL_TIMEOUT", "soon")
    monkeypatch.setenv("DOCCHAT_CONTEXT_TOKEN_LIMIT", "-5")

    with caplog.at_level("WARNING", logger="docchat.config"):
        settings = Settings.from_env()

    assert settings.retrieval_top_k == 50
    assert settings.retrieval_timeout == 30.0
    assert settings.context_token_limit == 4000
    assert "DOCCHAT_RETRIEVAL_TOP_K" in caplog.text


def test_build_orchestrator_wires_components() -> None:
    library = DocumentLibrary()
    settings = Settings(llm_provider="mock", context_token_limit=1234, history_limit=4)

    orchestrator = build_orchestrator(settings, library)

    assert isinstance(orchestrator.llm, MockLLMClient)
    assert isinstance(orchestrator.builder.retrieval, InMemoryRetrievalClient)
    assert orchestrator.builder.library is library
    assert orchestrator.builder.token_limit == 1234
    assert orchestrator.builder.context_service.token_limit == 1234
    assert orchestrator.history_limit == 4

    anthropic = build_orchestrator(Settings(anthropic_api_key="k", llm_model="model-x"), library)
    assert isinstance(anthropic.llm, AnthropicStreamingClient)
    assert anthropic.llm.model_name == "model-x"


def test_load_library_registers_supported_files(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("alpha", encoding="utf-8")
    (tmp_path / "b.md").write_text("beta", encoding="utf-8")
    (tmp_path / "c.png").write_bytes(b"")

    library = load_library(tmp_path)

    assert sorted(library.titles()) == ["a.txt", "b.md"]
    assert len(load_library(tmp_path / "missing")) == 0
