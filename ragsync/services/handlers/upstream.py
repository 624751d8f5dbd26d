"""Handlers whose changes are discovered through third-party APIs.

QuickBooks invoices/estimates and ShipStation shipments are mirrored into local
tables by their integration services; when a feed is injected the syncer asks
the upstream API what changed, otherwise it walks the mirror table. Email has
no local table at all and is only available through its feed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import text

from ragsync.services.cleaning import clean_email_text, clean_structured_text
from ragsync.services.handlers.base import (
    BackingRecord,
    ChangedPage,
    ChangedRecord,
    IndexDocument,
    SourceFetchError,
    TableSourceHandler,
    as_utc,
    display_name,
    format_date,
    format_money,
    isoformat,
)
from ragsync.services.identifiers import extract_identifiers


@dataclass(frozen=True)
class UpstreamPage:
    records: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False


class UpstreamFeed(Protocol):
    def fetch_changed(self, since: datetime | None, page: int, page_size: int) -> UpstreamPage:
        ...

    def fetch_record(self, source_id: str) -> dict[str, Any] | None:
        ...


def _feed_page(source_type: str, feed: UpstreamFeed, since: datetime | None, token: Any, page_size: int) -> ChangedPage:
    page = int(token or 1)
    try:
        result = feed.fetch_changed(since, page, page_size)
    except Exception as exc:  # noqa: BLE001
        raise SourceFetchError(source_type, f"{source_type} feed page {page} failed: {exc}") from exc
    records = [
        ChangedRecord(source_type, str(record["id"]), as_utc(record["changed_at"]), record["id"])
        for record in result.records
        if record.get("id")
    ]
    return ChangedPage(records=records, next_token=page + 1 if result.has_more else None)


class MirroredUpstreamHandler(TableSourceHandler):
    upstream_name: str = ""

    def __init__(self, feed: UpstreamFeed | None = None) -> None:
        self.feed = feed
        self.upstream = self.upstream_name if feed is not None else None

    def fetch_changed(self, db: Any, since: datetime | None, token: Any, page_size: int) -> ChangedPage:
        if self.feed is None:
            return super().fetch_changed(db, since, token, page_size)
        return _feed_page(self.source_type, self.feed, since, token, page_size)


class QboInvoiceHandler(MirroredUpstreamHandler):
    source_type = "qbo_invoice"
    source_types = ("qbo_invoice",)
    upstream_name = "quickbooks"
    table = "qbo_invoices"
    id_column = "qbo_invoice_id"
    backing = {
        "qbo_invoice": BackingRecord(table="qbo_invoices", match="b.qbo_invoice_id = s.source_id", customer="b.customer_id")
    }

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        invoice = self._fetch_one(
            db,
            """
            SELECT i.qbo_invoice_id, i.qbo_customer_id, i.doc_number, i.status, i.total_amount, i.balance,
                   i.currency, i.txn_date, i.due_date, i.customer_id,
                   c.first_name, c.last_name, c.company, q.terms
            FROM qbo_invoices i
            LEFT JOIN customers c ON c.id = i.customer_id
            LEFT JOIN qbo_customer_snapshots q ON q.customer_id = i.customer_id
            WHERE i.qbo_invoice_id = :source_id
            LIMIT 1
            """,
            {"source_id": source_id},
        )
        if invoice is None:
            return None

        label = invoice["doc_number"] or source_id
        customer = (
            display_name(invoice["first_name"], invoice["last_name"], invoice["company"])
            if invoice["customer_id"]
            else "customer"
        )
        return IndexDocument(
            source_type=self.source_type,
            source_id=source_id,
            content_text=clean_structured_text(
                f"QBO Invoice {label} for {customer}: balance {format_money(invoice['balance'], invoice['currency'])}, "
                f"total {format_money(invoice['total_amount'], invoice['currency'])}, terms {invoice['terms'] or '-'}, "
                f"due {format_date(invoice['due_date'])}, status {invoice['status'] or 'unknown'}."
            ),
            customer_id=invoice["customer_id"],
            title=f"QBO Invoice {label}",
            source_uri=f"/customers/{invoice['customer_id']}" if invoice["customer_id"] else "/customers",
            metadata={
                "invoiceNumber": invoice["doc_number"],
                "qboInvoiceId": source_id,
                "qboCustomerId": invoice["qbo_customer_id"],
                "status": invoice["status"],
                "currency": invoice["currency"],
                "txnDate": isoformat(invoice["txn_date"]),
                "dueDate": isoformat(invoice["due_date"]),
            },
            source_created_at=as_utc(invoice["txn_date"]),
            source_updated_at=as_utc(invoice["due_date"]),
        )


class QboEstimateHandler(MirroredUpstreamHandler):
    source_type = "qbo_estimate"
    source_types = ("qbo_estimate",)
    upstream_name = "quickbooks"
    table = "qbo_estimates"
    id_column = "qbo_estimate_id"
    backing = {
        "qbo_estimate": BackingRecord(table="qbo_estimates", match="b.qbo_estimate_id = s.source_id", customer="b.customer_id")
    }

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        estimate = self._fetch_one(
            db,
            """
            SELECT e.qbo_estimate_id, e.qbo_customer_id, e.doc_number, e.status, e.total_amount, e.currency,
                   e.txn_date, e.expiration_date, e.customer_id, c.first_name, c.last_name, c.company
            FROM qbo_estimates e
            LEFT JOIN customers c ON c.id = e.customer_id
            WHERE e.qbo_estimate_id = :source_id
            """,
            {"source_id": source_id},
        )
        if estimate is None:
            return None

        label = estimate["doc_number"] or source_id
        customer = (
            display_name(estimate["first_name"], estimate["last_name"], estimate["company"])
            if estimate["customer_id"]
            else "customer"
        )
        return IndexDocument(
            source_type=self.source_type,
            source_id=source_id,
            content_text=clean_structured_text(
                f"QBO Estimate {label} for {customer}: total {format_money(estimate['total_amount'], estimate['currency'])}, "
                f"status {estimate['status'] or 'unknown'}, expires {format_date(estimate['expiration_date'])}."
            ),
            customer_id=estimate["customer_id"],
            title=f"QBO Estimate {label}",
            source_uri=f"/customers/{estimate['customer_id']}" if estimate["customer_id"] else "/customers",
            metadata={
                "estimateNumber": estimate["doc_number"],
                "poNumber": estimate["doc_number"],
                "qboEstimateId": source_id,
                "qboCustomerId": estimate["qbo_customer_id"],
                "status": estimate["status"],
                "currency": estimate["currency"],
                "txnDate": isoformat(estimate["txn_date"]),
                "expirationDate": isoformat(estimate["expiration_date"]),
            },
            source_created_at=as_utc(estimate["txn_date"]),
            source_updated_at=as_utc(estimate["expiration_date"]),
        )


class ShipstationShipmentHandler(MirroredUpstreamHandler):
    source_type = "shipstation_shipment"
    source_types = ("shipstation_shipment",)
    upstream_name = "shipstation"
    table = "shipstation_shipments"
    id_column = "shipstation_shipment_id"
    backing = {
        "shipstation_shipment": BackingRecord(
            table="shipstation_shipments",
            match="b.shipstation_shipment_id::text = s.source_id",
            customer="b.customer_id",
            customer_link_authoritative=True,
        )
    }

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        if not source_id.isdigit():
            return None
        shipment = self._fetch_one(
            db,
            """
            SELECT shipstation_shipment_id, order_number, tracking_number, carrier_code, service_code,
                   ship_date, delivery_date, status, cost, weight, weight_unit, customer_id
            FROM shipstation_shipments
            WHERE shipstation_shipment_id = :shipment_id
            """,
            {"shipment_id": int(source_id)},
        )
        if shipment is None:
            return None

        label = shipment["order_number"] or source_id
        weight = f"{shipment['weight'] or '-'} {shipment['weight_unit'] or ''}".strip()
        return IndexDocument(
            source_type=self.source_type,
            source_id=source_id,
            content_text=clean_structured_text(
                f"Shipment {label}: carrier {shipment['carrier_code'] or '-'}, service {shipment['service_code'] or '-'}, "
                f"tracking {shipment['tracking_number'] or '-'}, cost {format_money(shipment['cost'], None)}, "
                f"weight {weight}, status {shipment['status'] or 'unknown'}."
            ),
            customer_id=shipment["customer_id"],
            title=f"Shipment {label}",
            source_uri=f"/customers/{shipment['customer_id'] or ''}",
            metadata={
                "shipmentId": source_id,
                "orderNumber": shipment["order_number"],
                "trackingNumber": shipment["tracking_number"],
                "carrierCode": shipment["carrier_code"],
                "serviceCode": shipment["service_code"],
                "shipDate": isoformat(shipment["ship_date"]),
                "deliveryDate": isoformat(shipment["delivery_date"]),
                "status": shipment["status"],
            },
            source_created_at=as_utc(shipment["ship_date"]),
            source_updated_at=as_utc(shipment["delivery_date"]),
        )


def _normalize_email(value: Any) -> str | None:
    cleaned = str(value or "").strip().lower()
    return cleaned or None


class EmailHandler:
    """Mailbox messages, read through the mail feed only."""

    source_type = "email"
    source_types = ("email",)
    upstream_name = "microsoft_graph"

    def __init__(self, feed: UpstreamFeed | None = None) -> None:
        self.feed = feed
        self.upstream = self.upstream_name if feed is not None else None

    def is_configured(self) -> tuple[bool, str | None]:
        if self.feed is None:
            return False, "Mail feed is not configured"
        return True, None

    def backing_for(self, source_type: str) -> BackingRecord | None:
        return None

    def map_id(self, row: dict[str, Any]) -> tuple[str, str]:
        return self.source_type, str(row["id"])

    def fetch_changed(self, db: Any, since: datetime | None, token: Any, page_size: int) -> ChangedPage:
        if self.feed is None:
            raise SourceFetchError(self.source_type, "Mail feed is not configured", retryable=False)
        return _feed_page(self.source_type, self.feed, since, token, page_size)

    def ids_for_customer(self, db: Any, customer_id: int) -> list[tuple[str, str]]:
        # mail has no local table; the index itself knows which messages belong to the customer
        try:
            rows = db.execute(
                text(
                    """
                    SELECT source_id
                    FROM rag_sources
                    WHERE source_type = 'email' AND customer_id = :customer_id
                    ORDER BY source_id ASC
                    """
                ),
                {"customer_id": customer_id},
            ).mappings().all()
        except Exception as exc:  # noqa: BLE001
            raise SourceFetchError(self.source_type, f"email customer lookup failed: {exc}") from exc
        return [(self.source_type, row["source_id"]) for row in rows]

    def _resolve_customer_id(self, db: Any, emails: list[str]) -> int | None:
        if not emails:
            return None
        rows = db.execute(
            text(
                """
                SELECT lower(email) AS email, customer_id FROM customer_identities WHERE lower(email) = ANY(:emails)
                UNION ALL
                SELECT lower(primary_email) AS email, id AS customer_id FROM customers WHERE lower(primary_email) = ANY(:emails)
                """
            ),
            {"emails": emails},
        ).mappings().all()
        by_email: dict[str, int] = {}
        for row in rows:
            by_email.setdefault(row["email"], row["customer_id"])
        for email in emails:
            if email in by_email:
                return by_email[email]
        return None

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        if self.feed is None:
            raise SourceFetchError(self.source_type, "Mail feed is not configured", retryable=False)
        try:
            message = self.feed.fetch_record(source_id)
        except Exception as exc:  # noqa: BLE001
            raise SourceFetchError(self.source_type, f"email {source_id} fetch failed: {exc}") from exc
        if not message:
            return None

        subject = message.get("subject") or "Email"
        body = clean_email_text(message.get("body") or message.get("body_preview") or "")
        from_email = _normalize_email(message.get("from_email"))
        to_emails = [email for email in map(_normalize_email, message.get("to_emails") or []) if email]
        cc_emails = [email for email in map(_normalize_email, message.get("cc_emails") or []) if email]
        participants = list(dict.fromkeys([email for email in [from_email, *to_emails, *cc_emails] if email]))
        customer_id = self._resolve_customer_id(db, participants)
        identifiers = extract_identifiers(f"{subject}\n{body}").as_metadata()
        return IndexDocument(
            source_type=self.source_type,
            source_id=source_id,
            content_text=body,
            customer_id=customer_id,
            title=subject,
            source_uri=message.get("web_link") or f"/customers/{customer_id or ''}",
            metadata={
                **identifiers,
                "subject": subject,
                "fromEmail": from_email,
                "toEmails": to_emails,
                "ccEmails": cc_emails,
                "internetMessageId": message.get("internet_message_id"),
                "inReplyTo": message.get("in_reply_to"),
                "conversationId": message.get("conversation_id"),
            },
            source_created_at=as_utc(message.get("received_at")),
            source_updated_at=as_utc(message.get("sent_at")),
            sensitivity="public",
            thread_id=message.get("conversation_id") or message.get("internet_message_id") or source_id,
        )
