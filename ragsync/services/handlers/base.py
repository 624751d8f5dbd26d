from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Protocol

from sqlalchemy import text


class SourceFetchError(RuntimeError):
    """A source-of-truth read failed; the caller decides whether to retry."""

    def __init__(self, source_type: str, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.source_type = source_type
        self.retryable = retryable


@dataclass(frozen=True)
class ChangedRecord:
    source_type: str
    source_id: str
    changed_at: datetime
    row_key: Any = None


@dataclass(frozen=True)
class ChangedPage:
    records: list[ChangedRecord]
    next_token: Any = None


@dataclass(frozen=True)
class IndexDocument:
    source_type: str
    source_id: str
    content_text: str
    customer_id: int | None = None
    title: str | None = None
    source_uri: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    source_created_at: datetime | None = None
    source_updated_at: datetime | None = None
    # internal rows are only served to staff; anything not marked public stays internal
    sensitivity: str = "internal"
    ticket_id: int | None = None
    thread_id: str | None = None
    owner_user_id: str | None = None


@dataclass(frozen=True)
class BackingRecord:
    """How a rag_sources row of one type joins back to its source-of-truth row.

    ``match`` and ``customer`` are SQL fragments over the backing alias ``b``
    (plus any alias introduced by ``joins``) and the rag_sources alias ``s``.
    """

    table: str
    match: str
    joins: str = ""
    customer: str | None = None
    customer_link_authoritative: bool = False


class SourceHandler(Protocol):
    source_type: str
    source_types: tuple[str, ...]
    upstream: str | None

    def is_configured(self) -> tuple[bool, str | None]:
        ...

    def backing_for(self, source_type: str) -> BackingRecord | None:
        ...

    def fetch_changed(self, db: Any, since: datetime | None, token: Any, page_size: int) -> ChangedPage:
        ...

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        ...

    def map_id(self, row: dict[str, Any]) -> tuple[str, str]:
        ...

    def ids_for_customer(self, db: Any, customer_id: int) -> list[tuple[str, str]]:
        ...


def as_utc(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def isoformat(value: Any) -> str | None:
    moment = as_utc(value)
    return moment.isoformat() if moment else None


def format_date(value: Any) -> str:
    moment = as_utc(value)
    return moment.date().isoformat() if moment else "-"


def format_money(value: Any, currency: str | None) -> str:
    code = currency or "USD"
    if value is None:
        return f"{code} 0.00"
    try:
        return f"{code} {float(value):.2f}"
    except (TypeError, ValueError):
        return f"{code} {value}"


def display_name(first_name: Any, last_name: Any, company: Any) -> str:
    name = " ".join(part for part in (first_name, last_name) if part).strip()
    return name or (company or "Customer")


def join_lines(*lines: str | None) -> str:
    return "\n".join(line for line in lines if line)


class TableSourceHandler:
    """Shared keyset pagination and id lookups for handlers backed by one table.

    Subclasses describe the table through class attributes and implement
    ``format_for_index``.
    """

    source_type: str = ""
    source_types: tuple[str, ...] = ()
    upstream: str | None = None
    table: str = ""
    id_column: str = "id"
    changed_at_column: str = "updated_at"
    extra_columns: tuple[str, ...] = ()
    base_filter: str = "TRUE"
    customer_column: str | None = "customer_id"
    backing: dict[str, BackingRecord] = {}

    def is_configured(self) -> tuple[bool, str | None]:
        return True, None

    def backing_for(self, source_type: str) -> BackingRecord | None:
        return self.backing.get(source_type)

    def map_id(self, row: dict[str, Any]) -> tuple[str, str]:
        return self.source_type, str(row["id"])

    def _select_columns(self) -> str:
        columns = [f"b.{self.id_column} AS id", f"b.{self.changed_at_column} AS changed_at"]
        columns.extend(f"b.{column} AS {column}" for column in self.extra_columns)
        return ", ".join(columns)

    def fetch_changed(self, db: Any, since: datetime | None, token: Any, page_size: int) -> ChangedPage:
        predicates = [self.base_filter, f"b.{self.changed_at_column} IS NOT NULL"]
        params: dict[str, Any] = {"page_size": page_size}
        if token is not None:
            predicates.append(f"(b.{self.changed_at_column}, b.{self.id_column}) > (:last_changed_at, :last_id)")
            params["last_changed_at"], params["last_id"] = token
        elif since is not None:
            predicates.append(f"b.{self.changed_at_column} >= :since")
            params["since"] = since
        try:
            rows = db.execute(
                text(
                    f"""
                    SELECT {self._select_columns()}
                    FROM {self.table} b
                    WHERE {" AND ".join(predicates)}
                    ORDER BY b.{self.changed_at_column} ASC, b.{self.id_column} ASC
                    LIMIT :page_size
                    """
                ),
                params,
            ).mappings().all()
        except Exception as exc:  # noqa: BLE001
            raise SourceFetchError(self.source_type, f"{self.table} read failed: {exc}") from exc

        records = []
        for row in rows:
            source_type, source_id = self.map_id(dict(row))
            records.append(ChangedRecord(source_type, source_id, as_utc(row["changed_at"]), row["id"]))
        next_token = None
        if len(rows) >= page_size and rows:
            next_token = (rows[-1]["changed_at"], rows[-1]["id"])
        return ChangedPage(records=records, next_token=next_token)

    def ids_for_customer(self, db: Any, customer_id: int) -> list[tuple[str, str]]:
        if not self.customer_column:
            return []
        try:
            rows = db.execute(
                text(
                    f"""
                    SELECT {self._select_columns()}
                    FROM {self.table} b
                    WHERE {self.base_filter} AND b.{self.customer_column} = :customer_id
                    ORDER BY b.{self.id_column} ASC
                    """
                ),
                {"customer_id": customer_id},
            ).mappings().all()
        except Exception as exc:  # noqa: BLE001
            raise SourceFetchError(self.source_type, f"{self.table} customer lookup failed: {exc}") from exc
        return [self.map_id(dict(row)) for row in rows]

    def _fetch_one(self, db: Any, sql: str, params: dict[str, Any]) -> dict[str, Any] | None:
        try:
            row = db.execute(text(sql), params).mappings().first()
        except Exception as exc:  # noqa: BLE001
            raise SourceFetchError(self.source_type, f"{self.table} lookup failed: {exc}") from exc
        return dict(row) if row else None

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        raise NotImplementedError
