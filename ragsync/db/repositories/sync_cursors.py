from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import text


@dataclass
class SyncCursor:
    source_type: str
    last_synced_at: datetime | None
    cursor_value: dict[str, Any] = field(default_factory=dict)
    items_synced: int = 0
    last_success_at: datetime | None = None
    last_error: str | None = None
    updated_at: datetime | None = None


_CURSOR_COLUMNS = "source_type, last_synced_at, cursor_value, items_synced, last_success_at, last_error, updated_at"


def _to_cursor(row: Any) -> SyncCursor:
    data = dict(row)
    value = data.get("cursor_value")
    if isinstance(value, str):
        value = json.loads(value)
    data["cursor_value"] = value or {}
    data["items_synced"] = int(data.get("items_synced") or 0)
    return SyncCursor(**data)


class SyncCursorRepository:
    """Per-source-type watermarks; the watermark never moves backwards outside ``reset_cursor``."""

    def __init__(self, db: Any):
        self.db = db

    def get_cursor(self, source_type: str) -> SyncCursor | None:
        row = self.db.execute(
            text(f"SELECT {_CURSOR_COLUMNS} FROM rag_sync_cursors WHERE source_type = :source_type"),
            {"source_type": source_type},
        ).mappings().first()
        return _to_cursor(row) if row else None

    def advance_cursor(
        self,
        source_type: str,
        last_synced_at: datetime | None,
        cursor_value: dict[str, Any] | None = None,
        items_synced: int = 0,
    ) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO rag_sync_cursors (
                    source_type, last_synced_at, cursor_value, items_synced, last_success_at, last_error, updated_at
                ) VALUES (
                    :source_type, :last_synced_at, CAST(:cursor_value AS jsonb), :items_synced, now(), NULL, now()
                )
                ON CONFLICT (source_type)
                DO UPDATE SET
                    last_synced_at = GREATEST(rag_sync_cursors.last_synced_at, EXCLUDED.last_synced_at),
                    cursor_value = EXCLUDED.cursor_value,
                    items_synced = EXCLUDED.items_synced,
                    last_success_at = now(),
                    last_error = NULL,
                    updated_at = now()
                """
            ),
            {
                "source_type": source_type,
                "last_synced_at": last_synced_at,
                "cursor_value": json.dumps(cursor_value or {}, default=str),
                "items_synced": items_synced,
            },
        )

    def mark_error(self, source_type: str, message: str) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO rag_sync_cursors (source_type, last_synced_at, cursor_value, items_synced, last_error, updated_at)
                VALUES (:source_type, NULL, '{}'::jsonb, 0, :last_error, now())
                ON CONFLICT (source_type)
                DO UPDATE SET last_error = EXCLUDED.last_error, updated_at = now()
                """
            ),
            {"source_type": source_type, "last_error": (message or "")[:1024] or None},
        )

    def reset_cursor(self, source_type: str) -> None:
        self.db.execute(
            text(
                """
                UPDATE rag_sync_cursors
                SET last_synced_at = NULL, cursor_value = '{}'::jsonb, items_synced = 0, updated_at = now()
                WHERE source_type = :source_type
                """
            ),
            {"source_type": source_type},
        )

    def list_cursors(self) -> list[SyncCursor]:
        rows = self.db.execute(
            text(f"SELECT {_CURSOR_COLUMNS} FROM rag_sync_cursors ORDER BY source_type ASC")
        ).mappings().all()
        return [_to_cursor(row) for row in rows]
