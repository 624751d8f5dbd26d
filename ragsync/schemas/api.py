from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "rag-sync-service"
    version: str


class ReindexRequest(BaseModel):
    customer_id: int | None = Field(default=None, gt=0)
    source_type: str | None = Field(default=None, min_length=1)
    since_days: int | None = Field(default=None, ge=1, le=365)

    @model_validator(mode="after")
    def validate_scope(self) -> "ReindexRequest":
        if self.customer_id is not None and self.source_type is not None:
            raise ValueError("customer_id and source_type are mutually exclusive")
        if self.customer_id is not None and self.since_days is not None:
            raise ValueError("since_days does not apply to a customer reindex")
        return self


class SyncRunResult(BaseModel):
    source_type: str
    items_seen: int
    jobs_enqueued: int
    pages: int
    cursor_advanced: bool
    error: str | None = None


class CustomerReindexResponse(BaseModel):
    status: str = "queued"
    scope: str = "customer"
    customer_id: int
    counts: dict[str, int]
    jobs_enqueued: int


class SourceTypeReindexResponse(BaseModel):
    status: str
    scope: str = "source_type"
    source_type: str
    items_seen: int
    jobs_enqueued: int
    error: str | None = None


class FullReindexResponse(BaseModel):
    status: str
    scope: str = "all"
    jobs_enqueued: int
    results: list[SyncRunResult]


class FailedJob(BaseModel):
    id: str
    source_type: str
    source_id: str
    operation: str
    attempts: int
    max_attempts: int
    error_code: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class NullEmbeddingSample(BaseModel):
    chunk_id: str
    source_type: str
    source_id: str
    chunk_index: int
    created_at: datetime | None = None


class NullEmbeddingSummary(BaseModel):
    count: int
    samples: list[NullEmbeddingSample] = []


class CursorStatus(BaseModel):
    source_type: str
    last_synced_at: datetime | None = None
    items_synced: int = 0
    last_success_at: datetime | None = None
    last_error: str | None = None
    updated_at: datetime | None = None


class RagStatusResponse(BaseModel):
    jobs: dict[str, int]
    failed_jobs: list[FailedJob]
    null_embeddings: NullEmbeddingSummary
    cursors: list[CursorStatus]


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    correlation_id: UUID
    retryable: bool
    timestamp: datetime


class ErrorEnvelope(BaseModel):
    error: ErrorInfo
