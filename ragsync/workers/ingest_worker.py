from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from ragsync.core.config import settings
from ragsync.core.logging import log_event
from ragsync.core.token_utils import estimate_tokens
from ragsync.db.errors import DatabaseOperationError, commit_or_raise
from ragsync.db.repositories.ingestion_jobs import ClaimedJob, IngestionJobRepository
from ragsync.db.repositories.rag_sources import ChunkRow, RagSourceRepository
from ragsync.db.session import SessionLocal
from ragsync.services.chunking import chunk_text
from ragsync.services.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from ragsync.services.embeddings import EmbeddingProvider, EmbeddingProviderError, get_embedding_provider
from ragsync.services.handlers.base import IndexDocument, SourceFetchError
from ragsync.services.handlers.registry import HandlerRegistryError

LOGGER = logging.getLogger(__name__)


def content_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@contextmanager
def session_scope(session_factory: Callable[[], Any] = SessionLocal):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@dataclass
class BatchResult:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    superseded: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, EmbeddingProviderError):
        return "S-EMB-INDEX-FAILED"
    if isinstance(exc, CircuitOpenError):
        return "CIRCUIT_OPEN"
    if isinstance(exc, SourceFetchError):
        return "SOURCE_FETCH_FAILED"
    if isinstance(exc, (HandlerRegistryError, DatabaseOperationError)):
        return exc.error_code
    return "INGEST_FAILED"


def _is_permanent(exc: Exception) -> bool:
    if isinstance(exc, HandlerRegistryError):
        return True
    return isinstance(exc, SourceFetchError) and not exc.retryable


def retry_delay_seconds(attempts: int) -> int:
    return settings.RAG_JOB_RETRY_BASE_SECONDS * 2 ** min(attempts, 6)


class IngestionWorker:
    def __init__(
        self,
        session_factory: Callable[[], Any] = SessionLocal,
        registry: Any = None,
        embedder: EmbeddingProvider | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ) -> None:
        if registry is None:
            from ragsync.services.handlers import register_default_handlers

            registry = register_default_handlers()
        self.session_factory = session_factory
        self.registry = registry
        self.embedder = embedder or get_embedding_provider()
        self.breakers = breakers or CircuitBreakerRegistry()

    def _format(self, session: Any, job: ClaimedJob) -> IndexDocument | None:
        handler = self.registry.get(job.source_type)

        def fetch() -> IndexDocument | None:
            return handler.format_for_index(session, job.source_type, job.source_id)

        if handler.upstream:
            return self.breakers.call(handler.upstream, fetch)
        return fetch()

    def _build_chunks(self, sources: RagSourceRepository, document: IndexDocument) -> list[ChunkRow]:
        texts = chunk_text(document.source_type, document.content_text)
        hashes = [content_hash(text) for text in texts]
        vectors: dict[str, list[float] | None] = dict(sources.existing_embeddings(hashes))
        pending = [index for index, chunk_hash in enumerate(hashes) if chunk_hash not in vectors]
        if pending:
            embedded = self.embedder.embed_texts([texts[index] for index in pending])
            if len(embedded) != len(pending):
                raise EmbeddingProviderError(f"expected {len(pending)} embeddings, got {len(embedded)}")
            for index, vector in zip(pending, embedded):
                vectors[hashes[index]] = vector
        return [
            ChunkRow(
                chunk_index=index,
                chunk_count=len(texts),
                chunk_text=text,
                chunk_hash=hashes[index],
                token_estimate=estimate_tokens(text),
                embedding=vectors.get(hashes[index]),
            )
            for index, text in enumerate(texts)
        ]

    def _execute(self, session: Any, job: ClaimedJob) -> tuple[str | None, int]:
        sources = RagSourceRepository(session)
        if job.operation == "delete":
            sources.delete_source(job.source_type, job.source_id)
            return None, 0

        document = self._format(session, job)
        if document is None:
            removed = sources.delete_source(job.source_type, job.source_id)
            LOGGER.info(
                "rag_source_missing",
                extra={"job_id": job.id, "source_type": job.source_type, "source_id": job.source_id, "removed": removed},
            )
            return None, 0

        digest = content_hash(document.content_text)
        existing = sources.get_by_key(document.source_type, document.source_id)
        if (
            job.operation == "index"
            and existing is not None
            and existing["content_hash"] == digest
            and int(existing["chunk_count"] or 0) > 0
        ):
            return sources.upsert_source(document, content_hash=digest, reindexed=False), int(existing["chunk_count"])

        chunks = self._build_chunks(sources, document)
        rag_source_id = sources.upsert_source(document, content_hash=digest, reindexed=job.operation == "reindex")
        return rag_source_id, sources.replace_chunks(rag_source_id, chunks)

    def _record_failure(self, session: Any, job: ClaimedJob, exc: Exception) -> str:
        jobs = IngestionJobRepository(session)
        error_code = _error_code(exc)
        message = f"{type(exc).__name__}: {exc}"
        payload = {
            "job_id": job.id,
            "source_type": job.source_type,
            "source_id": job.source_id,
            "operation": job.operation,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "error_code": error_code,
            "error": message,
        }

        if job.attempts >= job.max_attempts or _is_permanent(exc):
            jobs.mark_failed(job.id, error_code=error_code, last_error=message)
            commit_or_raise(session)
            log_event("rag.ingestion.failed", level=logging.ERROR, payload=payload)
            return "failed"

        next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=retry_delay_seconds(job.attempts))
        if jobs.has_other_pending(job.id, job.source_type, job.source_id) or not jobs.mark_retry(
            job.id, error_code=error_code, last_error=message, next_retry_at=next_retry_at
        ):
            jobs.mark_superseded(job.id, message)
            commit_or_raise(session)
            LOGGER.info("rag_ingestion_superseded", extra=payload)
            return "superseded"

        commit_or_raise(session)
        log_event(
            "rag.ingestion.retry_scheduled",
            level=logging.WARNING,
            payload={**payload, "next_retry_at": next_retry_at.isoformat()},
        )
        return "retried"

    def process_job(self, job: ClaimedJob) -> str:
        started = time.perf_counter()
        with session_scope(self.session_factory) as session:
            try:
                rag_source_id, chunk_count = self._execute(session, job)
                IngestionJobRepository(session).mark_completed(
                    job.id, result_source_id=rag_source_id, result_chunk_count=chunk_count
                )
                commit_or_raise(session)
            except Exception as exc:  # noqa: BLE001
                session.rollback()
                try:
                    return self._record_failure(session, job, exc)
                except Exception:  # noqa: BLE001
                    # left in processing; reclaimed once stale
                    session.rollback()
                    LOGGER.exception("rag_ingestion_failure_not_recorded", extra={"job_id": job.id})
                    return "failed"

        log_event(
            "rag.ingestion.completed",
            payload={
                "job_id": job.id,
                "source_type": job.source_type,
                "source_id": job.source_id,
                "operation": job.operation,
                "chunk_count": chunk_count,
                "duration_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return "completed"

    def process_batch(self, limit: int | None = None) -> BatchResult:
        limit = max(1, int(limit or settings.RAG_JOB_BATCH_SIZE))
        stale_before = datetime.now(timezone.utc) - timedelta(seconds=settings.RAG_JOB_STALE_AFTER_SECONDS)
        with session_scope(self.session_factory) as session:
            jobs = IngestionJobRepository(session).claim_batch(limit, stale_before)
            commit_or_raise(session)

        result = BatchResult(claimed=len(jobs))
        for job in jobs:
            outcome = self.process_job(job)
            setattr(result, outcome, getattr(result, outcome) + 1)
        if jobs:
            LOGGER.info("ingest_worker_batch_processed", extra=result.as_dict())
        return result


def run_forever(poll_interval_seconds: float | None = None, worker: IngestionWorker | None = None) -> None:
    worker = worker or IngestionWorker()
    interval = settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval_seconds is None else poll_interval_seconds
    while True:
        result = worker.process_batch()
        if not result.claimed:
            time.sleep(max(0.1, interval))


if __name__ == "__main__":
    from ragsync.core.logging import configure_logging

    configure_logging()
    run_forever()
