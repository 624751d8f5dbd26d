"""Scheduled entry points: ``python -m ragsync.cli.jobs sync|ingest|sweep``."""

import argparse
import json
import uuid
from collections.abc import Sequence
from datetime import datetime, timezone


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="RAG sync pipeline jobs")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Enqueue ingestion jobs for changed records")
    sync.add_argument("--source-type", type=str, help="Only run the syncer for this source type")
    sync.add_argument("--operation", choices=("incremental", "reindex"), default="incremental")
    sync.add_argument("--start-at", type=_parse_datetime, help="ISO-8601 lower bound for changed records")
    sync.add_argument("--max-pages", type=int, help="Page bound for this run (default from settings)")
    sync.add_argument("--unbounded", action="store_true", help="Walk every page")
    sync.add_argument("--reset-cursor", action="store_true", help="Clear the watermark before a reindex")

    ingest = commands.add_parser("ingest", help="Drain a batch of ingestion jobs")
    ingest.add_argument("--limit", type=int, help="Jobs per batch (default from settings)")
    ingest.add_argument("--batches", type=int, default=1, help="Number of batches to run")

    sweep = commands.add_parser("sweep", help="Delete orphaned and unscoped index rows")
    sweep.add_argument("--limit-per-type", type=int, help="Rows checked per source type (default from settings)")

    args = parser.parse_args(argv)
    if args.command == "sync":
        if args.reset_cursor and args.operation != "reindex":
            parser.error("--reset-cursor is only valid with --operation reindex")
        if args.unbounded and args.max_pages is not None:
            parser.error("--unbounded and --max-pages are mutually exclusive")
    return args


def run_sync(args: argparse.Namespace) -> list[dict]:
    from ragsync.db.session import SessionLocal
    from ragsync.services.circuit_breaker import CircuitBreakerRegistry
    from ragsync.services.handlers import HandlerRegistryError, register_default_handlers
    from ragsync.services.syncers import DEFAULT_MAX_PAGES, SourceSyncer, SyncResult, run_all_syncers

    registry = register_default_handlers()
    handler = None
    if args.source_type:
        try:
            handler = registry.get(args.source_type)
        except HandlerRegistryError as exc:
            return [SyncResult(source_type=args.source_type, error=f"{exc.error_code}: {exc}").as_dict()]

    breakers = CircuitBreakerRegistry()
    max_pages = None if args.unbounded else (args.max_pages if args.max_pages is not None else DEFAULT_MAX_PAGES)
    options = {
        "operation": args.operation,
        "start_at": args.start_at,
        "max_pages": max_pages,
        "reset_cursor": args.reset_cursor,
    }
    with SessionLocal() as session:
        if handler is not None:
            syncer = SourceSyncer(handler, session=session, breakers=breakers)
            return [syncer.sync(**options).as_dict()]
        return [result.as_dict() for result in run_all_syncers(session, registry, breakers, **options)]


def run_ingest(args: argparse.Namespace) -> list[dict]:
    from ragsync.workers.ingest_worker import IngestionWorker

    worker = IngestionWorker()
    results = []
    for _ in range(max(1, args.batches)):
        result = worker.process_batch(args.limit)
        results.append(result.as_dict())
        if not result.claimed:
            break
    return results


def run_sweep(args: argparse.Namespace) -> list[dict]:
    from ragsync.db.session import SessionLocal
    from ragsync.services.handlers import register_default_handlers
    from ragsync.services.orphan_sweeper import OrphanSweeper

    with SessionLocal() as session:
        sweeper = OrphanSweeper(session, register_default_handlers())
        return [result.as_dict() for result in sweeper.sweep(args.limit_per_type)]


COMMANDS = {"sync": run_sync, "ingest": run_ingest, "sweep": run_sweep}


def main(argv: Sequence[str] | None = None) -> int:
    from ragsync.core.logging import configure_logging, set_request_context

    args = parse_args(argv)
    configure_logging()
    set_request_context(run_id=str(uuid.uuid4()))
    results = COMMANDS[args.command](args)
    print(json.dumps({"command": args.command, "results": results}, default=str))
    failed = [result for result in results if result.get("error")]
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
