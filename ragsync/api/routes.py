import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ragsync.core.config import settings
from ragsync.core.logging import log_event
from ragsync.db.repositories.ingestion_jobs import IngestionJobRepository
from ragsync.db.repositories.rag_sources import RagSourceRepository
from ragsync.db.repositories.sync_cursors import SyncCursorRepository
from ragsync.db.session import get_db
from ragsync.schemas.api import (
    CursorStatus,
    CustomerReindexResponse,
    ErrorEnvelope,
    ErrorInfo,
    FailedJob,
    FullReindexResponse,
    HealthResponse,
    NullEmbeddingSample,
    NullEmbeddingSummary,
    RagStatusResponse,
    ReindexRequest,
    SourceTypeReindexResponse,
    SyncRunResult,
)
from ragsync.services.circuit_breaker import CircuitBreakerRegistry
from ragsync.services.handlers import register_default_handlers
from ragsync.services.handlers.registry import HandlerRegistry, HandlerRegistryError
from ragsync.services.reindex import reindex_all, reindex_customer, reindex_source_type
from ragsync.services.security import InMemoryRateLimiter, client_key

router = APIRouter()
logger = logging.getLogger(__name__)

STATUS_SAMPLE_LIMIT = 50

rate_limiter = InMemoryRateLimiter(
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    per_key_limit=settings.RATE_LIMIT_PER_IP,
    burst_limit=settings.RATE_LIMIT_BURST,
    max_keys=settings.RATE_LIMIT_STORAGE_MAX_KEYS,
)


@lru_cache
def get_handler_registry() -> HandlerRegistry:
    return register_default_handlers(target=HandlerRegistry())


@lru_cache
def get_circuit_breakers() -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry()


def _error(
    code: str,
    message: str,
    correlation_id: uuid.UUID,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> HTTPException:
    envelope = ErrorEnvelope(
        error=ErrorInfo(
            code=code,
            message=message,
            details=details,
            correlation_id=correlation_id,
            retryable=retryable,
            timestamp=datetime.now(timezone.utc),
        )
    )
    return HTTPException(status_code=status_code, detail=envelope.model_dump(mode="json"))


def _correlation_id(request: Request) -> uuid.UUID:
    try:
        return uuid.UUID(str(getattr(request.state, "request_id", "")))
    except ValueError:
        return uuid.uuid4()


def require_admin(
    request: Request,
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
    x_forwarded_for: str | None = Header(default=None, alias="X-Forwarded-For"),
) -> uuid.UUID:
    corr = _correlation_id(request)
    remote = request.client.host if request.client else None
    if not rate_limiter.allow(client_key(x_forwarded_for, remote)):
        raise _error("RATE_LIMIT_EXCEEDED", "Too many requests. Please retry later.", corr, True, status.HTTP_429_TOO_MANY_REQUESTS)
    if (x_user_role or "").strip() != settings.ADMIN_ROLE:
        raise _error("AUTH_FORBIDDEN", "Admin role is required", corr, False, status.HTTP_403_FORBIDDEN)
    return corr


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(version=settings.APP_VERSION)


@router.post(
    "/admin/rag/reindex",
    response_model=CustomerReindexResponse | SourceTypeReindexResponse | FullReindexResponse,
)
def post_reindex(
    payload: ReindexRequest,
    db: Session = Depends(get_db),
    corr: uuid.UUID = Depends(require_admin),
    registry: HandlerRegistry = Depends(get_handler_registry),
    breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers),
):
    if payload.customer_id is not None:
        queued = reindex_customer(db, registry, payload.customer_id)
        return CustomerReindexResponse(**queued)

    if payload.source_type is not None:
        try:
            result = reindex_source_type(db, registry, breakers, payload.source_type, payload.since_days)
        except HandlerRegistryError as exc:
            raise _error(
                exc.error_code,
                str(exc),
                corr,
                False,
                status.HTTP_400_BAD_REQUEST,
                details={"source_type": payload.source_type, "registered": registry.list_registered()},
            ) from exc
        if result.error:
            raise _error(
                "REINDEX_SYNC_FAILED",
                result.error,
                corr,
                True,
                status.HTTP_502_BAD_GATEWAY,
                details={"source_type": result.source_type, "items_seen": result.items_seen, "jobs_enqueued": result.jobs_enqueued},
            )
        return SourceTypeReindexResponse(
            status="queued",
            source_type=result.source_type,
            items_seen=result.items_seen,
            jobs_enqueued=result.jobs_enqueued,
        )

    results = reindex_all(db, registry, breakers, payload.since_days)
    failed = [result.source_type for result in results if result.error]
    log_event(
        "rag.reindex.all_queued",
        payload={"source_types": [result.source_type for result in results], "failed_source_types": failed},
        plane="control",
    )
    return FullReindexResponse(
        status="partial" if failed else "queued",
        jobs_enqueued=sum(result.jobs_enqueued for result in results),
        results=[SyncRunResult(**result.as_dict()) for result in results],
    )


@router.get("/admin/rag/status", response_model=RagStatusResponse)
def get_rag_status(
    db: Session = Depends(get_db),
    corr: uuid.UUID = Depends(require_admin),
) -> RagStatusResponse:
    jobs = IngestionJobRepository(db)
    sources = RagSourceRepository(db)
    cursors = SyncCursorRepository(db)

    histogram = jobs.status_histogram()
    null_count = sources.count_null_embeddings()
    logger.info(
        "rag_status_snapshot",
        extra={"request_id": str(corr), "jobs": histogram, "null_embeddings": null_count},
    )
    return RagStatusResponse(
        jobs=histogram,
        failed_jobs=[FailedJob(**row) for row in jobs.list_failed(STATUS_SAMPLE_LIMIT)],
        null_embeddings=NullEmbeddingSummary(
            count=null_count,
            samples=[NullEmbeddingSample(**row) for row in sources.sample_null_embeddings(STATUS_SAMPLE_LIMIT)]
            if null_count
            else [],
        ),
        cursors=[
            CursorStatus(
                source_type=cursor.source_type,
                last_synced_at=cursor.last_synced_at,
                items_synced=cursor.items_synced,
                last_success_at=cursor.last_success_at,
                last_error=cursor.last_error,
                updated_at=cursor.updated_at,
            )
            for cursor in cursors.list_cursors()
        ],
    )
