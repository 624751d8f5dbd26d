from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from ragsync.core.logging import log_event
from ragsync.db.errors import commit_or_raise
from ragsync.db.repositories.ingestion_jobs import IngestionJobRepository
from ragsync.services.circuit_breaker import CircuitBreakerRegistry
from ragsync.services.handlers.base import SourceFetchError
from ragsync.services.syncers import SourceSyncer, SyncResult, run_all_syncers

LOGGER = logging.getLogger(__name__)

ADMIN_REINDEX_PRIORITY = 1


def _start_at(since_days: int | None) -> datetime | None:
    if not since_days:
        return None
    return datetime.now(timezone.utc) - timedelta(days=since_days)


def reindex_customer(session: Any, registry: Any, customer_id: int) -> dict[str, Any]:
    """Queue a reindex of every record owned by one customer, across all handlers."""
    jobs = IngestionJobRepository(session)
    counts: dict[str, int] = {}
    jobs_enqueued = 0
    for handler in registry.syncable():
        try:
            keys = handler.ids_for_customer(session, customer_id)
        except SourceFetchError as exc:
            session.rollback()
            LOGGER.warning("customer_reindex_lookup_failed", extra={"source_type": handler.source_type, "error": str(exc)})
            continue
        for source_type, source_id in keys:
            counts[source_type] = counts.get(source_type, 0) + 1
            if jobs.enqueue(source_type, source_id, "reindex", priority=ADMIN_REINDEX_PRIORITY).created:
                jobs_enqueued += 1
        commit_or_raise(session)

    log_event(
        "rag.reindex.customer_queued",
        payload={"customer_id": customer_id, "counts": counts, "jobs_enqueued": jobs_enqueued},
        plane="control",
    )
    return {"customer_id": customer_id, "counts": counts, "jobs_enqueued": jobs_enqueued}


def reindex_source_type(
    session: Any,
    registry: Any,
    breakers: CircuitBreakerRegistry,
    source_type: str,
    since_days: int | None = None,
) -> SyncResult:
    handler = registry.get(source_type)
    syncer = SourceSyncer(handler, session=session, breakers=breakers)
    return syncer.sync(operation="reindex", start_at=_start_at(since_days), max_pages=None)


def reindex_all(
    session: Any,
    registry: Any,
    breakers: CircuitBreakerRegistry,
    since_days: int | None = None,
) -> list[SyncResult]:
    return run_all_syncers(session, registry, breakers, operation="reindex", start_at=_start_at(since_days), max_pages=None)
