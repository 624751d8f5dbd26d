import pytest

pytest.importorskip("pydantic")

from ragsync.core.config import Settings


def test_embeddings_provider_is_normalized():
    cfg = Settings(EMBEDDINGS_PROVIDER=" HTTP ")
    assert cfg.EMBEDDINGS_PROVIDER == "http"


def test_unknown_embeddings_provider_is_rejected():
    with pytest.raises(ValueError, match="EMBEDDINGS_PROVIDER must be one of"):
        Settings(EMBEDDINGS_PROVIDER="openai")


def test_http_provider_requires_endpoint():
    with pytest.raises(ValueError, match="EMBEDDINGS_SERVICE_URL is required"):
        Settings(EMBEDDINGS_PROVIDER="http", EMBEDDINGS_SERVICE_URL="  ")


def test_negative_overlap_is_rejected():
    with pytest.raises(ValueError, match="greater than or equal to 0"):
        Settings(RAG_SYNC_OVERLAP_SECONDS=-1)


def test_page_size_bounds(monkeypatch):
    monkeypatch.setenv("RAG_SYNC_PAGE_SIZE", "5000")
    with pytest.raises(ValueError, match="RAG_SYNC_PAGE_SIZE must be between 1 and 1000"):
        Settings()


def test_stale_window_must_be_positive():
    with pytest.raises(ValueError, match="RAG_JOB_STALE_AFTER_SECONDS must be positive"):
        Settings(RAG_JOB_STALE_AFTER_SECONDS=0)


def test_env_overrides_defaults(monkeypatch):
    monkeypatch.setenv("RAG_SWEEP_LIMIT_PER_TYPE", "50")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://rag:rag@db:5432/crm")

    cfg = Settings()

    assert cfg.RAG_SWEEP_LIMIT_PER_TYPE == 50
    assert cfg.database_url == "postgresql+psycopg://rag:rag@db:5432/crm"
