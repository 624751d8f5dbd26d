from __future__ import annotations

from typing import Any

_SQLSTATE_CODES: dict[str, tuple[str, bool]] = {
    "23505": ("unique_violation", False),
    "23503": ("foreign_key_violation", False),
    "23502": ("not_null_violation", False),
    "40001": ("serialization_failure", True),
    "40P01": ("deadlock_detected", True),
    "55P03": ("lock_not_available", True),
    "57014": ("query_canceled", True),
}


class DatabaseOperationError(RuntimeError):
    def __init__(self, *, error_code: str, sqlstate: str | None, retryable: bool) -> None:
        super().__init__(error_code)
        self.error_code = error_code
        self.sqlstate = sqlstate
        self.retryable = retryable


def map_db_error(exc: Exception) -> DatabaseOperationError:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    error_code, retryable = _SQLSTATE_CODES.get(str(sqlstate or ""), ("database_error", False))
    return DatabaseOperationError(error_code=error_code, sqlstate=sqlstate, retryable=retryable)


def commit_or_raise(db: Any) -> None:
    from sqlalchemy.exc import DBAPIError

    try:
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise map_db_error(exc) from exc
