"""Reconciliation pass that removes index rows the job queue failed to clean up.

Two sweeps run per source type, each bounded by ``limit_per_type``:

* ``referential``: rows whose backing record no longer exists.
* ``null_customer``: rows stored without a customer although their backing
  record resolves to one. A row like that escapes customer scoping at query
  time, so it is deleted rather than re-linked; the next sync indexes the
  record again with its customer. Rows whose backing record has no customer
  either are kept.

Candidates rotate so repeated bounded passes cover the whole table: the
referential sweep through ``orphan_checked_at`` and the null-customer sweep
through ``scope_checked_at``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from ragsync.core.config import settings
from ragsync.core.logging import log_event
from ragsync.db.errors import commit_or_raise
from ragsync.db.repositories.orphans import OrphanRepository
from ragsync.db.repositories.rag_sources import RagSourceRepository
from ragsync.services.handlers.registry import HandlerRegistryError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    source_type: str
    sweep: str
    checked_count: int = 0
    orphaned_count: int = 0
    deleted_count: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class OrphanSweeper:
    def __init__(
        self,
        session: Any,
        registry: Any,
        orphans: OrphanRepository | None = None,
        sources: RagSourceRepository | None = None,
    ) -> None:
        self.session = session
        self.registry = registry
        self.orphans = orphans or OrphanRepository(session, registry)
        self.sources = sources or RagSourceRepository(session)

    def _referential(self, source_type: str, limit: int) -> SweepResult:
        source_ids = self.sources.candidates_for_sweep(source_type, limit, sweep="referential")
        orphaned = self.orphans.find_missing_backing_record(source_type, source_ids)
        deleted = self.sources.delete_sources([row["id"] for row in orphaned])
        self.sources.stamp_checked(source_type, source_ids, sweep="referential")
        return SweepResult(source_type, "referential", len(source_ids), len(orphaned), deleted)

    def _null_customer(self, source_type: str, limit: int) -> SweepResult:
        source_ids = self.sources.candidates_for_sweep(source_type, limit, sweep="null_customer")
        mismatched = self.orphans.find_customer_mismatch(source_type, source_ids)
        deleted = self.sources.delete_sources([row["id"] for row in mismatched])
        self.sources.stamp_checked(source_type, source_ids, sweep="null_customer")
        return SweepResult(source_type, "null_customer", len(source_ids), len(mismatched), deleted)

    def _run(self, source_type: str, sweep: str, limit: int) -> SweepResult:
        step = self._referential if sweep == "referential" else self._null_customer
        try:
            result = step(source_type, limit)
            commit_or_raise(self.session)
        except Exception as exc:  # noqa: BLE001
            self.session.rollback()
            LOGGER.exception("orphan_sweep_failed", extra={"source_type": source_type, "sweep": sweep})
            return SweepResult(source_type, sweep, error=f"{type(exc).__name__}: {exc}")
        if result.deleted_count:
            LOGGER.info("orphan_sweep_deleted", extra=result.as_dict())
        return result

    def sweep(self, limit_per_type: int | None = None) -> list[SweepResult]:
        limit = max(1, int(limit_per_type or settings.RAG_SWEEP_LIMIT_PER_TYPE))
        results: list[SweepResult] = []
        for source_type in self.registry.indexed_types():
            try:
                backing = self.registry.get(source_type).backing_for(source_type)
            except HandlerRegistryError:
                continue
            if backing is None:
                continue
            results.append(self._run(source_type, "referential", limit))
            if backing.customer and backing.customer_link_authoritative:
                results.append(self._run(source_type, "null_customer", limit))

        log_event(
            "rag.sweep.completed",
            payload={
                "limit_per_type": limit,
                "checked_count": sum(r.checked_count for r in results),
                "orphaned_count": sum(r.orphaned_count for r in results),
                "deleted_count": sum(r.deleted_count for r in results),
                "failed_sweeps": [f"{r.source_type}:{r.sweep}" for r in results if r.error],
            },
        )
        return results
