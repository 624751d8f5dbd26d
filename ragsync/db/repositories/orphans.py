from __future__ import annotations

from typing import Any

from sqlalchemy import text

from ragsync.services.handlers.base import BackingRecord


class OrphanRepository:
    """Anti-joins between rag_sources and the tables that back them.

    The SQL fragments come from each handler's ``BackingRecord`` so that the
    id mapping used here is the same one the handler writes with.
    """

    def __init__(self, db: Any, registry: Any):
        self.db = db
        self.registry = registry

    def _backing(self, source_type: str) -> BackingRecord | None:
        return self.registry.get(source_type).backing_for(source_type)

    def find_missing_backing_record(self, source_type: str, source_ids: list[str]) -> list[dict[str, str]]:
        backing = self._backing(source_type)
        if backing is None or not source_ids:
            return []
        rows = self.db.execute(
            text(
                f"""
                SELECT s.id::text AS id, s.source_id
                FROM rag_sources s
                WHERE s.source_type = :source_type
                  AND s.source_id = ANY(:source_ids)
                  AND NOT EXISTS (
                      SELECT 1 FROM {backing.table} b {backing.joins}
                      WHERE {backing.match}
                  )
                """
            ),
            {"source_type": source_type, "source_ids": source_ids},
        ).mappings().all()
        return [dict(row) for row in rows]

    def find_customer_mismatch(self, source_type: str, source_ids: list[str]) -> list[dict[str, str]]:
        """Unscoped rows whose backing record does resolve to a customer."""
        backing = self._backing(source_type)
        if backing is None or backing.customer is None or not source_ids:
            return []
        rows = self.db.execute(
            text(
                f"""
                SELECT s.id::text AS id, s.source_id
                FROM rag_sources s
                WHERE s.source_type = :source_type
                  AND s.source_id = ANY(:source_ids)
                  AND s.customer_id IS NULL
                  AND EXISTS (
                      SELECT 1 FROM {backing.table} b {backing.joins}
                      WHERE {backing.match} AND {backing.customer} IS NOT NULL
                  )
                """
            ),
            {"source_type": source_type, "source_ids": source_ids},
        ).mappings().all()
        return [dict(row) for row in rows]
