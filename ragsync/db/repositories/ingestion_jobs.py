from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import text

from ragsync.core.config import settings
from ragsync.models.models import JOB_OPERATION, JOB_STATUS

SUPERSEDED_ERROR_CODE = "SUPERSEDED"
STALE_EXHAUSTED_ERROR_CODE = "STALE_EXHAUSTED"


@dataclass(frozen=True)
class EnqueueResult:
    job_id: str
    created: bool


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    source_type: str
    source_id: str
    operation: str
    priority: int
    attempts: int
    max_attempts: int
    created_at: datetime | None = None


class IngestionJobRepository:
    """Durable job queue over rag_ingestion_jobs.

    At most one ``pending`` row exists per (source_type, source_id); the partial
    unique index ``uq_rag_ingestion_jobs_pending_source`` enforces it and
    ``enqueue`` merges into the waiting row instead of inserting a duplicate.
    """

    def __init__(self, db: Any):
        self.db = db

    def enqueue(self, source_type: str, source_id: str, operation: str = "index", priority: int = 0) -> EnqueueResult:
        if operation not in JOB_OPERATION:
            raise ValueError(f"Unsupported job operation: {operation}")
        row = self.db.execute(
            text(
                """
                INSERT INTO rag_ingestion_jobs (
                    id, source_type, source_id, operation, status, priority, attempts, max_attempts, created_at, updated_at
                ) VALUES (
                    CAST(:id AS uuid), :source_type, :source_id, CAST(:operation AS rag_job_operation),
                    'pending', :priority, 0, :max_attempts, now(), now()
                )
                ON CONFLICT (source_type, source_id) WHERE status = 'pending'
                DO UPDATE SET
                    -- rag_job_operation is declared index < reindex < delete
                    operation = GREATEST(rag_ingestion_jobs.operation, EXCLUDED.operation),
                    priority = GREATEST(rag_ingestion_jobs.priority, EXCLUDED.priority),
                    updated_at = now()
                RETURNING id::text AS id, (xmax = 0) AS created
                """
            ),
            {
                "id": str(uuid.uuid4()),
                "source_type": source_type,
                "source_id": source_id,
                "operation": operation,
                "priority": priority,
                "max_attempts": settings.RAG_MAX_JOB_ATTEMPTS,
            },
        ).mappings().first()
        return EnqueueResult(job_id=str(row["id"]), created=bool(row["created"]))

    def claim_batch(self, limit: int, stale_before: datetime) -> list[ClaimedJob]:
        """Claim due pending jobs plus stale processing jobs that still have attempts left.

        Stale processing jobs that already used every attempt are failed with
        ``STALE_EXHAUSTED`` in the same statement.
        """
        rows = self.db.execute(
            text(
                """
                WITH exhausted AS (
                    UPDATE rag_ingestion_jobs
                    SET status = 'failed',
                        completed_at = now(),
                        updated_at = now(),
                        next_retry_at = NULL,
                        error_code = :exhausted_code,
                        last_error = 'worker stopped while processing; attempts exhausted'
                    WHERE id IN (
                        SELECT id
                        FROM rag_ingestion_jobs
                        WHERE status = 'processing' AND started_at < :stale_before AND attempts >= max_attempts
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING id
                )
                UPDATE rag_ingestion_jobs
                SET status = 'processing',
                    attempts = attempts + 1,
                    started_at = now(),
                    next_retry_at = NULL,
                    updated_at = now()
                WHERE id IN (
                    SELECT id
                    FROM rag_ingestion_jobs
                    WHERE (status = 'pending' AND (next_retry_at IS NULL OR next_retry_at <= now()))
                       OR (status = 'processing' AND started_at < :stale_before AND attempts < max_attempts)
                    ORDER BY priority DESC, created_at ASC
                    LIMIT :limit_n
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id::text AS id, source_type, source_id, operation::text AS operation,
                          priority, attempts, max_attempts, created_at
                """
            ),
            {"limit_n": limit, "stale_before": stale_before, "exhausted_code": STALE_EXHAUSTED_ERROR_CODE},
        ).mappings().all()
        jobs = [ClaimedJob(**dict(row)) for row in rows]
        # RETURNING does not keep the subquery order
        return sorted(jobs, key=lambda job: (-job.priority, job.created_at.timestamp() if job.created_at else 0.0))

    def mark_completed(
        self,
        job_id: str,
        *,
        result_source_id: str | None = None,
        result_chunk_count: int | None = None,
        error_code: str | None = None,
        last_error: str | None = None,
    ) -> None:
        self.db.execute(
            text(
                """
                UPDATE rag_ingestion_jobs
                SET status = 'completed',
                    completed_at = now(),
                    updated_at = now(),
                    next_retry_at = NULL,
                    result_source_id = CAST(:result_source_id AS uuid),
                    result_chunk_count = :result_chunk_count,
                    error_code = :error_code,
                    last_error = :last_error
                WHERE id = CAST(:job_id AS uuid)
                """
            ),
            {
                "job_id": job_id,
                "result_source_id": result_source_id,
                "result_chunk_count": result_chunk_count,
                "error_code": error_code,
                "last_error": last_error,
            },
        )

    def mark_superseded(self, job_id: str, last_error: str) -> None:
        self.mark_completed(job_id, error_code=SUPERSEDED_ERROR_CODE, last_error=last_error[:2000])

    def mark_retry(self, job_id: str, *, error_code: str, last_error: str, next_retry_at: datetime) -> bool:
        """Put the job back in the queue; False when another pending job for the source already waits."""
        row = self.db.execute(
            text(
                """
                UPDATE rag_ingestion_jobs j
                SET status = 'pending',
                    next_retry_at = :next_retry_at,
                    error_code = :error_code,
                    last_error = :last_error,
                    updated_at = now()
                WHERE j.id = CAST(:job_id AS uuid)
                  AND NOT EXISTS (
                      SELECT 1 FROM rag_ingestion_jobs o
                      WHERE o.source_type = j.source_type
                        AND o.source_id = j.source_id
                        AND o.status = 'pending'
                        AND o.id <> j.id
                  )
                RETURNING j.id::text AS id
                """
            ),
            {"job_id": job_id, "next_retry_at": next_retry_at, "error_code": error_code, "last_error": last_error[:2000]},
        ).mappings().first()
        return row is not None

    def mark_failed(self, job_id: str, *, error_code: str, last_error: str) -> None:
        self.db.execute(
            text(
                """
                UPDATE rag_ingestion_jobs
                SET status = 'failed',
                    completed_at = now(),
                    updated_at = now(),
                    next_retry_at = NULL,
                    error_code = :error_code,
                    last_error = :last_error
                WHERE id = CAST(:job_id AS uuid)
                """
            ),
            {"job_id": job_id, "error_code": error_code, "last_error": last_error[:2000]},
        )

    def has_other_pending(self, job_id: str, source_type: str, source_id: str) -> bool:
        row = self.db.execute(
            text(
                """
                SELECT 1 AS found
                FROM rag_ingestion_jobs
                WHERE source_type = :source_type
                  AND source_id = :source_id
                  AND status = 'pending'
                  AND id <> CAST(:job_id AS uuid)
                LIMIT 1
                """
            ),
            {"job_id": job_id, "source_type": source_type, "source_id": source_id},
        ).mappings().first()
        return row is not None

    def status_histogram(self) -> dict[str, int]:
        rows = self.db.execute(
            text("SELECT status::text AS status, count(*) AS total FROM rag_ingestion_jobs GROUP BY status")
        ).mappings().all()
        histogram = {status: 0 for status in JOB_STATUS}
        for row in rows:
            histogram[row["status"]] = int(row["total"])
        return histogram

    def list_failed(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = self.db.execute(
            text(
                """
                SELECT id::text AS id, source_type, source_id, operation::text AS operation, attempts, max_attempts,
                       error_code, last_error, created_at, completed_at
                FROM rag_ingestion_jobs
                WHERE status = 'failed'
                ORDER BY completed_at DESC NULLS LAST
                LIMIT :limit_n
                """
            ),
            {"limit_n": limit},
        ).mappings().all()
        return [dict(row) for row in rows]
