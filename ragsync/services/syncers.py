"""Per-source-type incremental and full syncs feeding the ingestion queue."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from ragsync.core.config import settings
from ragsync.core.logging import log_event
from ragsync.db.errors import commit_or_raise
from ragsync.db.repositories.ingestion_jobs import IngestionJobRepository
from ragsync.db.repositories.sync_cursors import SyncCursorRepository
from ragsync.services.circuit_breaker import CircuitBreakerRegistry, CircuitOpenError
from ragsync.services.handlers.base import ChangedPage, SourceFetchError, SourceHandler, isoformat

LOGGER = logging.getLogger(__name__)

SYNC_OPERATIONS = ("incremental", "reindex")

# sentinel so that an explicit ``max_pages=None`` means "no page bound"
DEFAULT_MAX_PAGES: Any = object()


@dataclass(frozen=True)
class SyncResult:
    source_type: str
    items_seen: int = 0
    jobs_enqueued: int = 0
    pages: int = 0
    cursor_advanced: bool = False
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class SourceSyncer:
    def __init__(
        self,
        handler: SourceHandler,
        *,
        session: Any,
        breakers: CircuitBreakerRegistry,
        cursors: SyncCursorRepository | None = None,
        jobs: IngestionJobRepository | None = None,
        page_size: int | None = None,
    ) -> None:
        self.handler = handler
        self.session = session
        self.breakers = breakers
        self.cursors = cursors or SyncCursorRepository(session)
        self.jobs = jobs or IngestionJobRepository(session)
        self.page_size = int(page_size or settings.RAG_SYNC_PAGE_SIZE)

    @property
    def source_type(self) -> str:
        return self.handler.source_type

    def _since(self, operation: str, start_at: datetime | None) -> datetime | None:
        if start_at is not None:
            return start_at
        if operation == "reindex":
            return None
        cursor = self.cursors.get_cursor(self.source_type)
        if cursor is None or cursor.last_synced_at is None:
            return None
        return cursor.last_synced_at - timedelta(seconds=settings.RAG_SYNC_OVERLAP_SECONDS)

    def _fetch_page(self, since: datetime | None, token: Any) -> ChangedPage:
        def fetch() -> ChangedPage:
            return self.handler.fetch_changed(self.session, since, token, self.page_size)

        if self.handler.upstream:
            return self.breakers.call(self.handler.upstream, fetch)
        return fetch()

    def _fail(self, result: SyncResult, exc: Exception) -> SyncResult:
        self.session.rollback()
        message = f"{type(exc).__name__}: {exc}"
        self.cursors.mark_error(self.source_type, message)
        commit_or_raise(self.session)
        log_event(
            "rag.sync.failed",
            level=logging.WARNING,
            payload={
                "source_type": self.source_type,
                "items_seen": result.items_seen,
                "jobs_enqueued": result.jobs_enqueued,
                "pages": result.pages,
                "error": message,
            },
        )
        return SyncResult(
            source_type=self.source_type,
            items_seen=result.items_seen,
            jobs_enqueued=result.jobs_enqueued,
            pages=result.pages,
            cursor_advanced=False,
            error=message,
        )

    def sync(
        self,
        operation: str = "incremental",
        start_at: datetime | None = None,
        max_pages: int | None = DEFAULT_MAX_PAGES,
        reset_cursor: bool = False,
    ) -> SyncResult:
        """Walk changed records page by page and enqueue one job per record.

        Jobs are committed page by page; the watermark is written only after
        the whole run succeeded, so a failed run is replayed from the old
        watermark and its re-enqueued jobs merge into the pending ones.
        """
        if operation not in SYNC_OPERATIONS:
            raise ValueError(f"Unsupported sync operation: {operation}")
        if max_pages is DEFAULT_MAX_PAGES:
            max_pages = settings.RAG_SYNC_MAX_PAGES
        job_operation = "index" if operation == "incremental" else "reindex"

        if operation == "reindex" and reset_cursor:
            self.cursors.reset_cursor(self.source_type)
            commit_or_raise(self.session)

        since = self._since(operation, start_at)
        items_seen = jobs_enqueued = pages = 0
        newest: datetime | None = None
        last_source_id: str | None = None
        token: Any = None

        while max_pages is None or pages < max_pages:
            try:
                page = self._fetch_page(since, token)
            except (SourceFetchError, CircuitOpenError) as exc:
                partial = SyncResult(self.source_type, items_seen, jobs_enqueued, pages)
                return self._fail(partial, exc)
            pages += 1
            for record in page.records:
                items_seen += 1
                if self.jobs.enqueue(record.source_type, record.source_id, job_operation).created:
                    jobs_enqueued += 1
                if record.changed_at is not None and (newest is None or record.changed_at >= newest):
                    newest = record.changed_at
                    last_source_id = record.source_id
            commit_or_raise(self.session)
            token = page.next_token
            if token is None:
                break

        self.cursors.advance_cursor(
            self.source_type,
            newest,
            {"operation": operation, "lastChangedAt": isoformat(newest), "lastSourceId": last_source_id},
            items_seen,
        )
        commit_or_raise(self.session)
        result = SyncResult(
            source_type=self.source_type,
            items_seen=items_seen,
            jobs_enqueued=jobs_enqueued,
            pages=pages,
            cursor_advanced=newest is not None,
        )
        log_event("rag.sync.completed", payload={"operation": operation, **result.as_dict()})
        return result


def run_all_syncers(
    session: Any,
    registry: Any,
    breakers: CircuitBreakerRegistry,
    *,
    operation: str = "incremental",
    start_at: datetime | None = None,
    max_pages: int | None = DEFAULT_MAX_PAGES,
    reset_cursor: bool = False,
) -> list[SyncResult]:
    """Run every configured syncer; one syncer failing never stops the others."""
    results: list[SyncResult] = []
    for handler in registry.syncable():
        syncer = SourceSyncer(handler, session=session, breakers=breakers)
        try:
            results.append(
                syncer.sync(operation=operation, start_at=start_at, max_pages=max_pages, reset_cursor=reset_cursor)
            )
        except Exception as exc:  # noqa: BLE001
            session.rollback()
            LOGGER.exception(
                "rag_sync_aborted",
                extra={"source_type": handler.source_type, "error": str(exc)},
            )
            results.append(SyncResult(source_type=handler.source_type, error=f"{type(exc).__name__}: {exc}"))
    return results
