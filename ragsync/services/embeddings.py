"""Embedding providers consumed by the ingestion worker."""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from typing import Protocol

from ragsync.clients.embeddings_client import EmbeddingsClient, EmbeddingsHttpError
from ragsync.core.config import settings

LOGGER = logging.getLogger(__name__)

# HTTP statuses that mean the provider refused the input itself; retrying cannot help
_PERMANENT_REJECTION_STATUSES = {400, 413, 422}


class EmbeddingProviderError(Exception):
    """Transient provider failure; the job is retried."""


class EmbeddingRejectedError(Exception):
    """The provider permanently rejected the input."""


class EmbeddingProvider(Protocol):
    model_id: str

    def embed_texts(self, texts: list[str]) -> list[list[float] | None]:
        ...


class MockEmbeddingProvider:
    """Deterministic sha256-derived vectors for tests and local runs."""

    model_id = "mock"

    def __init__(self, dim: int | None = None) -> None:
        self.dim = int(dim or settings.EMBEDDING_DIM)

    def embed_text(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(digest[i % len(digest)] / 255.0) * 2.0 - 1.0 for i in range(self.dim)]

    def embed_texts(self, texts: list[str]) -> list[list[float] | None]:
        return [self.embed_text(text) for text in texts]


class HttpEmbeddingProvider:
    def __init__(
        self,
        client: EmbeddingsClient | None = None,
        *,
        model_id: str | None = None,
        batch_size: int | None = None,
        retry_attempts: int | None = None,
        sleep=time.sleep,
    ) -> None:
        self.client = client or EmbeddingsClient(settings.EMBEDDINGS_SERVICE_URL, settings.EMBEDDINGS_TIMEOUT_SECONDS)
        self.model_id = model_id or settings.EMBEDDINGS_MODEL_ID
        self.batch_size = max(1, int(batch_size or settings.EMBEDDINGS_BATCH_SIZE))
        self.retry_attempts = max(1, int(retry_attempts or settings.EMBEDDINGS_RETRY_ATTEMPTS))
        self._sleep = sleep

    def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        correlation_id = str(uuid.uuid4())
        last_exc: Exception | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self.client.embed_texts(batch, model_id=self.model_id, correlation_id=correlation_id)
            except EmbeddingsHttpError as exc:
                if exc.status_code in _PERMANENT_REJECTION_STATUSES:
                    raise EmbeddingRejectedError(str(exc)) from exc
                last_exc = exc
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
            if attempt < self.retry_attempts:
                delay_seconds = min(2 ** (attempt - 1), 8)
                LOGGER.warning(
                    "embeddings_retry",
                    extra={"attempt": attempt, "delay_seconds": delay_seconds, "batch_size": len(batch), "error": str(last_exc)},
                )
                self._sleep(delay_seconds)
        raise EmbeddingProviderError("S-EMB-INDEX-FAILED") from last_exc

    def _embed_individually(self, batch: list[str]) -> list[list[float] | None]:
        vectors: list[list[float] | None] = []
        for text in batch:
            try:
                vectors.extend(self._embed_batch([text]))
            except EmbeddingRejectedError:
                LOGGER.warning("embeddings_input_rejected", extra={"chars": len(text)})
                vectors.append(None)
        return vectors

    def embed_texts(self, texts: list[str]) -> list[list[float] | None]:
        vectors: list[list[float] | None] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            try:
                vectors.extend(self._embed_batch(batch))
            except EmbeddingRejectedError:
                # isolate the rejected input so the rest of the batch still gets vectors
                vectors.extend(self._embed_individually(batch))
        return vectors


def get_embedding_provider() -> EmbeddingProvider:
    if settings.EMBEDDINGS_PROVIDER == "http":
        return HttpEmbeddingProvider()
    return MockEmbeddingProvider()
