from types import SimpleNamespace

import pytest

pytest.importorskip("sqlalchemy")

from sqlalchemy.exc import IntegrityError, OperationalError

from ragsync.db.errors import DatabaseOperationError, commit_or_raise, map_db_error
from ragsync.services.circuit_breaker import CircuitBreakerRegistry
from ragsync.workers.ingest_worker import IngestionWorker
from tests.unit.test_ingest_worker import (
    T0,
    CountingEmbedder,
    FakeJobRepository,
    FakeRecordHandler,
    FakeSession,
    InMemoryStore,
    _job_for,
    build_registry,
    install_fakes,
)


class FlakyCommitSession(FakeSession):
    """Raises the queued driver errors on the next commits, then commits normally."""

    def __init__(self, store, failures):
        super().__init__(store)
        self.failures = list(failures)

    def commit(self):
        if self.failures:
            raise self.failures.pop(0)
        super().commit()


def _driver_error(kind, sqlstate):
    return kind("UPDATE rag_ingestion_jobs ...", {}, SimpleNamespace(sqlstate=sqlstate))


def test_deadlock_on_completion_requeues_the_job(monkeypatch):
    store = InMemoryStore()
    install_fakes(monkeypatch, store)
    handler = FakeRecordHandler("ticket")
    handler.put("1", "Customer asked about order A12345.", T0)
    FakeJobRepository(store).enqueue("ticket", "1")
    session = FlakyCommitSession(store, [_driver_error(OperationalError, "40P01")])
    worker = IngestionWorker(
        session_factory=lambda: session,
        registry=build_registry(handler),
        embedder=CountingEmbedder(),
        breakers=CircuitBreakerRegistry(failure_threshold=3, reset_seconds=60),
    )
    claimed = FakeJobRepository(store).claim_batch(10, stale_before=T0)

    outcome = worker.process_job(claimed[0])

    job = _job_for(store, "ticket", "1")
    assert outcome == "retried"
    assert session.rollbacks == 1
    assert job["status"] == "pending"
    assert job["error_code"] == "deadlock_detected"
    assert job["next_retry_at"] is not None


def test_duplicate_pending_job_is_not_retryable():
    session = FlakyCommitSession(InMemoryStore(), [_driver_error(IntegrityError, "23505")])

    with pytest.raises(DatabaseOperationError) as exc_info:
        commit_or_raise(session)

    assert session.rollbacks == 1
    assert exc_info.value.error_code == "unique_violation"
    assert exc_info.value.sqlstate == "23505"
    assert exc_info.value.retryable is False


@pytest.mark.parametrize(
    "sqlstate, error_code, retryable",
    [
        ("40001", "serialization_failure", True),
        ("55P03", "lock_not_available", True),
        ("57014", "query_canceled", True),
        ("23503", "foreign_key_violation", False),
    ],
)
def test_claim_and_sweep_failures_map_by_sqlstate(sqlstate, error_code, retryable):
    error = map_db_error(_driver_error(OperationalError, sqlstate))

    assert error.error_code == error_code
    assert error.retryable is retryable


def test_psycopg2_pgcode_is_read_when_sqlstate_is_missing():
    error = map_db_error(IntegrityError("INSERT INTO rag_sources ...", {}, SimpleNamespace(pgcode="99999")))

    assert error.error_code == "database_error"
    assert error.sqlstate == "99999"
    assert error.retryable is False


def test_non_driver_errors_pass_through_without_rollback():
    class BrokenSession(FakeSession):
        def commit(self):
            raise RuntimeError("session closed")

    session = BrokenSession()

    with pytest.raises(RuntimeError, match="session closed"):
        commit_or_raise(session)
    assert session.rollbacks == 0
