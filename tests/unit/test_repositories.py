from datetime import datetime, timezone

import pytest

pytest.importorskip("sqlalchemy")

from ragsync.db.repositories.ingestion_jobs import STALE_EXHAUSTED_ERROR_CODE, IngestionJobRepository
from ragsync.db.repositories.orphans import OrphanRepository
from ragsync.db.repositories.rag_sources import ChunkRow, RagSourceRepository, parse_vector_literal, to_vector_literal
from ragsync.db.repositories.sync_cursors import SyncCursorRepository
from ragsync.services.handlers.base import BackingRecord, IndexDocument
from ragsync.services.handlers.registry import HandlerRegistry


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def mappings(self):
        return self

    def first(self):
        return self.rows[0] if self.rows else None

    def all(self):
        return list(self.rows)


class FakeDb:
    def __init__(self, *results):
        self.calls = []
        self.results = list(results)

    def execute(self, statement, params=None):
        self.calls.append((" ".join(str(statement).split()), params))
        return self.results.pop(0) if self.results else FakeResult()


class BackedHandler:
    source_type = "ticket"
    source_types = ("ticket",)
    upstream = None

    def __init__(self, backing):
        self.backing = backing

    def is_configured(self):
        return True, None

    def backing_for(self, source_type):
        return self.backing


def test_enqueue_merges_into_pending_job():
    db = FakeDb(FakeResult([{"id": "j1", "created": False}]))

    result = IngestionJobRepository(db).enqueue("ticket", "42", "reindex", priority=1)

    sql, params = db.calls[0]
    assert "ON CONFLICT (source_type, source_id) WHERE status = 'pending'" in sql
    assert "operation = GREATEST(rag_ingestion_jobs.operation, EXCLUDED.operation)" in sql
    assert "priority = GREATEST(rag_ingestion_jobs.priority, EXCLUDED.priority)" in sql
    assert params["operation"] == "reindex"
    assert params["priority"] == 1
    assert result.job_id == "j1"
    assert result.created is False


def test_enqueue_rejects_unknown_operation():
    with pytest.raises(ValueError):
        IngestionJobRepository(FakeDb()).enqueue("ticket", "42", "purge")


def test_claim_batch_skips_locked_rows_and_orders_by_priority():
    early = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    late = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
    row = {"source_type": "ticket", "operation": "index", "attempts": 1, "max_attempts": 5}
    db = FakeDb(
        FakeResult(
            [
                {**row, "id": "a", "source_id": "1", "priority": 0, "created_at": early},
                {**row, "id": "b", "source_id": "2", "priority": 1, "created_at": late},
                {**row, "id": "c", "source_id": "3", "priority": 1, "created_at": early},
            ]
        )
    )

    jobs = IngestionJobRepository(db).claim_batch(10, stale_before=late)

    sql, params = db.calls[0]
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "attempts = attempts + 1" in sql
    assert "status = 'processing' AND started_at < :stale_before AND attempts < max_attempts" in sql
    assert params == {"limit_n": 10, "stale_before": late, "exhausted_code": "STALE_EXHAUSTED"}
    assert [job.id for job in jobs] == ["c", "b", "a"]


def test_claim_batch_fails_stale_jobs_without_attempts_left():
    late = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
    db = FakeDb(FakeResult([]))

    assert IngestionJobRepository(db).claim_batch(5, stale_before=late) == []

    sql, params = db.calls[0]
    exhausted, claim = sql.split("SET status = 'processing'")
    assert "SET status = 'failed'" in exhausted
    assert "error_code = :exhausted_code" in exhausted
    assert "attempts >= max_attempts" in exhausted
    assert "attempts < max_attempts" in claim
    assert params["exhausted_code"] == STALE_EXHAUSTED_ERROR_CODE


def test_mark_retry_reports_existing_pending_job():
    db = FakeDb(FakeResult([]))

    requeued = IngestionJobRepository(db).mark_retry(
        "j1", error_code="INGEST_FAILED", last_error="x" * 5000, next_retry_at=datetime.now(timezone.utc)
    )

    sql, params = db.calls[0]
    assert "AND NOT EXISTS" in sql
    assert len(params["last_error"]) == 2000
    assert requeued is False


def test_status_histogram_fills_missing_statuses():
    db = FakeDb(FakeResult([{"status": "failed", "total": 3}]))

    assert IngestionJobRepository(db).status_histogram() == {"pending": 0, "processing": 0, "completed": 0, "failed": 3}


def test_advance_cursor_never_moves_backwards():
    db = FakeDb()

    SyncCursorRepository(db).advance_cursor("ticket", datetime(2024, 3, 1, tzinfo=timezone.utc), {"lastSourceId": "9"}, 4)

    sql, params = db.calls[0]
    assert "GREATEST(rag_sync_cursors.last_synced_at, EXCLUDED.last_synced_at)" in sql
    assert params["cursor_value"] == '{"lastSourceId": "9"}'
    assert params["items_synced"] == 4


def test_get_cursor_decodes_json_value():
    db = FakeDb(
        FakeResult(
            [
                {
                    "source_type": "email",
                    "last_synced_at": None,
                    "cursor_value": '{"lastSourceId": "AAMk"}',
                    "items_synced": None,
                    "last_success_at": None,
                    "last_error": None,
                    "updated_at": None,
                }
            ]
        )
    )

    cursor = SyncCursorRepository(db).get_cursor("email")

    assert cursor.cursor_value == {"lastSourceId": "AAMk"}
    assert cursor.items_synced == 0


def test_replace_chunks_deletes_then_inserts_in_one_batch():
    db = FakeDb()
    chunks = [
        ChunkRow(0, 2, "first", "h0", 2, [0.5, 0.25]),
        ChunkRow(1, 2, "second", "h1", 2, None),
    ]

    assert RagSourceRepository(db).replace_chunks("src-1", chunks) == 2

    delete_sql, _ = db.calls[0]
    insert_sql, rows = db.calls[1]
    assert delete_sql.startswith("DELETE FROM rag_chunks")
    assert "CAST(:embedding AS vector)" in insert_sql
    assert [row["embedding"] for row in rows] == ["[0.50000000,0.25000000]", None]
    assert [row["embedded"] for row in rows] == [True, False]


def test_sweep_candidates_rotate_nulls_first():
    db = FakeDb(FakeResult([{"source_id": "7"}]))

    ids = RagSourceRepository(db).candidates_for_sweep("ticket", 25)

    sql, params = db.calls[0]
    assert "ORDER BY orphan_checked_at ASC NULLS FIRST" in sql
    assert "customer_id IS NULL" not in sql
    assert params == {"source_type": "ticket", "limit_n": 25}
    assert ids == ["7"]


def test_scope_sweep_rotates_on_its_own_stamp():
    db = FakeDb(FakeResult([{"source_id": "7"}]))
    sources = RagSourceRepository(db)

    sources.candidates_for_sweep("ticket", 25, sweep="null_customer")
    sources.stamp_checked("ticket", ["7"], sweep="null_customer")

    select_sql, _ = db.calls[0]
    update_sql, params = db.calls[1]
    assert "AND customer_id IS NULL" in select_sql
    assert "ORDER BY scope_checked_at ASC NULLS FIRST" in select_sql
    assert "SET scope_checked_at = now()" in update_sql
    assert "orphan_checked_at" not in update_sql
    assert params == {"source_type": "ticket", "source_ids": ["7"]}


def test_upsert_source_writes_scoping_columns():
    db = FakeDb(FakeResult([{"id": "s1"}]))
    document = IndexDocument(
        source_type="ticket_comment",
        source_id="88",
        content_text="note",
        customer_id=7,
        sensitivity="internal",
        ticket_id=12,
        thread_id="ticket-12",
        owner_user_id=31,
    )

    assert RagSourceRepository(db).upsert_source(document, content_hash="h", reindexed=False) == "s1"

    sql, params = db.calls[0]
    assert "CAST(:sensitivity AS rag_sensitivity)" in sql
    assert "WHEN rag_sources.customer_id IS DISTINCT FROM EXCLUDED.customer_id THEN NULL" in sql
    assert params["sensitivity"] == "internal"
    assert params["ticket_id"] == 12
    assert params["thread_id"] == "ticket-12"
    assert params["owner_user_id"] == "31"


def test_delete_sources_skips_empty_batches():
    db = FakeDb()
    assert RagSourceRepository(db).delete_sources([]) == 0
    assert db.calls == []


def test_vector_literals():
    assert to_vector_literal(None) is None
    assert parse_vector_literal("[0.5,-1]") == [0.5, -1.0]
    assert parse_vector_literal("[]") == []


def test_orphan_queries_use_handler_backing_fragments():
    registry = HandlerRegistry()
    registry.register(
        BackedHandler(
            BackingRecord(
                table="tickets",
                match="b.ticket_id::text = s.source_id",
                customer="b.customer_id",
                customer_link_authoritative=True,
            )
        )
    )
    db = FakeDb(FakeResult([{"id": "s1", "source_id": "3"}]), FakeResult([]))
    orphans = OrphanRepository(db, registry)

    missing = orphans.find_missing_backing_record("ticket", ["3", "4"])
    orphans.find_customer_mismatch("ticket", ["4"])

    missing_sql, params = db.calls[0]
    mismatch_sql, _ = db.calls[1]
    assert "NOT EXISTS ( SELECT 1 FROM tickets b WHERE b.ticket_id::text = s.source_id )" in missing_sql
    assert params == {"source_type": "ticket", "source_ids": ["3", "4"]}
    assert "s.customer_id IS NULL" in mismatch_sql
    assert "AND EXISTS ( SELECT 1 FROM tickets b WHERE b.ticket_id::text = s.source_id AND b.customer_id IS NOT NULL )" in mismatch_sql
    assert missing == [{"id": "s1", "source_id": "3"}]


def test_orphan_queries_skip_empty_candidate_lists():
    registry = HandlerRegistry()
    registry.register(BackedHandler(BackingRecord(table="tickets", match="TRUE")))
    db = FakeDb()

    assert OrphanRepository(db, registry).find_missing_backing_record("ticket", []) == []
    assert OrphanRepository(db, registry).find_customer_mismatch("ticket", ["1"]) == []
    assert db.calls == []
