from __future__ import annotations

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from ragsync.core.config import settings

# request_id is set per HTTP request, run_id per CLI invocation (sync, ingest, sweep)
_request_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
_run_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("run_id", default=None)

LOG_FORMAT = "%(ts)s %(levelname)s %(service)s %(env)s %(event_type)s %(request_id)s %(run_id)s %(plane)s %(version)s %(message)s"


class JsonLineFormatter(jsonlogger.JsonFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = super().format(record)
        return json.dumps(json.loads(payload), separators=(",", ":"), ensure_ascii=False, default=str)


def _context_fields() -> dict[str, Any]:
    return {
        "request_id": _request_id_ctx.get(),
        "run_id": _run_id_ctx.get(),
        "event_type": None,
        "plane": None,
        "service": settings.APP_NAME,
        "env": settings.APP_ENV,
        "version": settings.APP_VERSION,
        "ts": datetime.now(timezone.utc).isoformat(),
    }


class _StructuredContextFilter(logging.Filter):
    """Fills the fixed JSON fields on records that did not pass them via ``extra``."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in _context_fields().items():
            if getattr(record, name, None) is None:
                setattr(record, name, value)
        return True


def set_request_context(*, request_id: str | None = None, run_id: str | None = None) -> None:
    _request_id_ctx.set(request_id)
    _run_id_ctx.set(run_id)


def clear_request_context() -> None:
    set_request_context(request_id=None, run_id=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def get_run_id() -> str | None:
    return _run_id_ctx.get()


def log_event(
    event_type: str,
    *,
    level: int = logging.INFO,
    payload: dict[str, Any] | None = None,
    request_id: str | None = None,
    plane: str = "data",
) -> None:
    extra = _context_fields()
    extra.update(event_type=event_type, plane=plane)
    if request_id is not None:
        extra["request_id"] = request_id
    if payload:
        extra.update(payload)
    logging.getLogger("ragsync.observability").log(level, event_type, extra=extra)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(_StructuredContextFilter())
    handler.setFormatter(JsonLineFormatter(LOG_FORMAT))
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
