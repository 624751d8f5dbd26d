import json
from datetime import datetime, timezone

import pytest

from ragsync.cli import jobs


def test_parse_args_requires_command_negative():
    with pytest.raises(SystemExit):
        jobs.parse_args([])


def test_parse_args_sync_positive():
    args = jobs.parse_args(["sync", "--source-type", "ticket", "--start-at", "2024-03-01T00:00:00Z", "--max-pages", "3"])

    assert args.source_type == "ticket"
    assert args.operation == "incremental"
    assert args.start_at == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert args.max_pages == 3


def test_parse_args_reset_cursor_needs_reindex_negative():
    with pytest.raises(SystemExit):
        jobs.parse_args(["sync", "--reset-cursor"])


def test_parse_args_unbounded_conflicts_with_max_pages_negative():
    with pytest.raises(SystemExit):
        jobs.parse_args(["sync", "--unbounded", "--max-pages", "2"])


def test_main_prints_results_and_exits_zero(monkeypatch, capsys):
    called = {}

    def fake_sweep(args):
        called["limit_per_type"] = args.limit_per_type
        return [{"source_type": "ticket", "sweep": "referential", "deleted_count": 2, "error": None}]

    monkeypatch.setitem(jobs.COMMANDS, "sweep", fake_sweep)
    rc = jobs.main(["sweep", "--limit-per-type", "25"])

    assert rc == 0
    assert called == {"limit_per_type": 25}
    output = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert output["command"] == "sweep"
    assert output["results"][0]["deleted_count"] == 2


def test_main_exits_nonzero_when_any_result_failed(monkeypatch, capsys):
    monkeypatch.setitem(
        jobs.COMMANDS,
        "sync",
        lambda args: [{"source_type": "ticket", "error": None}, {"source_type": "email", "error": "SourceFetchError: x"}],
    )

    assert jobs.main(["sync", "--unbounded"]) == 1


def test_sync_unknown_source_type_reports_error_and_exits_nonzero(monkeypatch, capsys):
    pytest.importorskip("sqlalchemy")

    def no_session():
        raise AssertionError("an unknown source type must not open a session")

    monkeypatch.setattr("ragsync.db.session.SessionLocal", no_session)

    rc = jobs.main(["sync", "--source-type", "fax"])

    assert rc == 1
    output = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert output["command"] == "sync"
    assert output["results"][0]["source_type"] == "fax"
    assert output["results"][0]["error"].startswith("RAG-HANDLER-UNKNOWN-SOURCE")
