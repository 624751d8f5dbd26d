import pytest

from ragsync.clients.embeddings_client import EmbeddingsHttpError
from ragsync.services import embeddings
from ragsync.services.embeddings import (
    EmbeddingProviderError,
    HttpEmbeddingProvider,
    MockEmbeddingProvider,
    get_embedding_provider,
)


class ScriptedClient:
    def __init__(self, *, fail_times=0, reject=()):
        self.calls = []
        self.fail_times = fail_times
        self.reject = set(reject)

    def embed_texts(self, texts, model_id, correlation_id=None):
        self.calls.append(list(texts))
        if self.fail_times:
            self.fail_times -= 1
            raise EmbeddingsHttpError("Embeddings service returned HTTP 503", status_code=503)
        if self.reject.intersection(texts):
            raise EmbeddingsHttpError("Embeddings service returned HTTP 422", status_code=422)
        return [[float(len(text))] for text in texts]


def _provider(client, **kwargs):
    sleeps = []
    provider = HttpEmbeddingProvider(client, model_id="m1", sleep=sleeps.append, **kwargs)
    return provider, sleeps


def test_mock_provider_is_deterministic():
    provider = MockEmbeddingProvider(dim=8)

    first = provider.embed_texts(["order A12345"])[0]

    assert first == provider.embed_texts(["order A12345"])[0]
    assert first != provider.embed_texts(["order A12346"])[0]
    assert len(first) == 8
    assert all(-1.0 <= value <= 1.0 for value in first)


def test_http_provider_batches_requests():
    client = ScriptedClient()
    provider, _ = _provider(client, batch_size=2, retry_attempts=1)

    vectors = provider.embed_texts(["a", "bb", "ccc"])

    assert vectors == [[1.0], [2.0], [3.0]]
    assert client.calls == [["a", "bb"], ["ccc"]]


def test_http_provider_retries_transient_errors_with_backoff():
    client = ScriptedClient(fail_times=2)
    provider, sleeps = _provider(client, retry_attempts=3)

    assert provider.embed_texts(["a"]) == [[1.0]]
    assert sleeps == [1, 2]


def test_http_provider_raises_after_exhausting_retries():
    provider, sleeps = _provider(ScriptedClient(fail_times=5), retry_attempts=2)

    with pytest.raises(EmbeddingProviderError):
        provider.embed_texts(["a"])
    assert sleeps == [1]


def test_rejected_input_is_isolated_to_a_null_vector():
    client = ScriptedClient(reject={"bad"})
    provider, sleeps = _provider(client, batch_size=8, retry_attempts=3)

    vectors = provider.embed_texts(["good", "bad", "ok"])

    assert vectors == [[4.0], None, [2.0]]
    assert sleeps == []


def test_provider_selection_follows_settings(monkeypatch):
    monkeypatch.setattr(embeddings.settings, "EMBEDDINGS_PROVIDER", "mock")
    assert isinstance(get_embedding_provider(), MockEmbeddingProvider)

    monkeypatch.setattr(embeddings.settings, "EMBEDDINGS_PROVIDER", "http")
    assert isinstance(get_embedding_provider(), HttpEmbeddingProvider)
