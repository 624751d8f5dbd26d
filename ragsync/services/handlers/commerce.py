"""Handlers for commerce records mirrored locally: orders and customer profiles."""

from __future__ import annotations

from typing import Any

from sqlalchemy import text

from ragsync.services.cleaning import clean_structured_text
from ragsync.services.handlers.base import (
    BackingRecord,
    IndexDocument,
    TableSourceHandler,
    as_utc,
    display_name,
    format_date,
    format_money,
    isoformat,
)

# rag source id of an order: the marketplace id when there is one, else the local primary key
ORDER_SOURCE_ID_SQL = "COALESCE(NULLIF(b.external_id, ''), b.id::text)"

_ORDER_PROVIDERS = {"shopify_order": "shopify", "amazon_order": "amazon"}
_ORDER_LABELS = {"shopify": "Shopify", "amazon": "Amazon"}


def order_source_type(provider: str | None) -> str:
    if provider == "shopify":
        return "shopify_order"
    if provider == "amazon":
        return "amazon_order"
    return "order"


def _order_provider_filter(source_type: str) -> str:
    provider = _ORDER_PROVIDERS.get(source_type)
    if provider:
        return f"b.provider = '{provider}'"
    return "COALESCE(b.provider, '') NOT IN ('shopify', 'amazon')"


def _order_backing(source_type: str) -> BackingRecord:
    return BackingRecord(
        table="orders",
        match=f"{ORDER_SOURCE_ID_SQL} = s.source_id AND {_order_provider_filter(source_type)}",
        customer="b.customer_id",
        customer_link_authoritative=True,
    )


class OrderHandler(TableSourceHandler):
    source_type = "order"
    source_types = ("shopify_order", "amazon_order", "order")
    table = "orders"
    extra_columns = ("provider", "external_id")
    backing = {source_type: _order_backing(source_type) for source_type in ("shopify_order", "amazon_order", "order")}

    def map_id(self, row: dict[str, Any]) -> tuple[str, str]:
        return order_source_type(row.get("provider")), str(row.get("external_id") or row["id"])

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        order = self._fetch_one(
            db,
            f"""
            SELECT b.id, b.customer_id, b.provider, b.external_id, b.order_number, b.status,
                   b.financial_status, b.currency, b.total, b.placed_at, b.due_at, b.paid_at,
                   c.first_name, c.last_name, c.company
            FROM orders b
            LEFT JOIN customers c ON c.id = b.customer_id
            WHERE {ORDER_SOURCE_ID_SQL} = :source_id AND {_order_provider_filter(source_type)}
            LIMIT 1
            """,
            {"source_id": source_id},
        )
        if order is None:
            return None
        items = db.execute(
            text("SELECT sku, title, quantity FROM order_items WHERE order_id = :order_id ORDER BY id ASC"),
            {"order_id": order["id"]},
        ).mappings().all()

        label = order["order_number"] or order["external_id"] or order["id"]
        provider = order["provider"] or "order"
        item_count = sum(int(item["quantity"] or 0) for item in items)
        skus = [item["sku"] for item in items if item["sku"]]
        top_items = [item["sku"] or item["title"] for item in items if item["sku"] or item["title"]][:3]
        customer_name = display_name(order["first_name"], order["last_name"], order["company"])
        content = clean_structured_text(
            f"{_ORDER_LABELS.get(provider, 'Order')} {label} for {customer_name}: {item_count} items, "
            f"top SKUs {', '.join(top_items) or '-'}, total {format_money(order['total'], order['currency'])}, "
            f"fulfillment {order['status']}, financial {order['financial_status']}, placed {format_date(order['placed_at'])}."
        )
        return IndexDocument(
            source_type=order_source_type(order["provider"]),
            source_id=str(order["external_id"] or order["id"]),
            content_text=content,
            customer_id=order["customer_id"],
            title=f"{provider.upper()} Order {label}",
            source_uri=f"/customers/{order['customer_id']}" if order["customer_id"] else "/customers",
            metadata={
                "orderId": order["id"],
                "orderNumber": order["order_number"],
                "provider": order["provider"],
                "externalId": order["external_id"],
                "status": order["status"],
                "financialStatus": order["financial_status"],
                "currency": order["currency"],
                "total": str(order["total"]) if order["total"] is not None else None,
                "placedAt": isoformat(order["placed_at"]),
                "paidAt": isoformat(order["paid_at"]),
                "itemSkus": skus,
            },
            source_created_at=as_utc(order["placed_at"]),
            source_updated_at=as_utc(order["paid_at"] or order["due_at"]),
        )


class ShopifyCustomerHandler(TableSourceHandler):
    source_type = "shopify_customer"
    source_types = ("shopify_customer",)
    table = "customer_identities"
    extra_columns = ("external_id",)
    base_filter = "b.provider = 'shopify' AND b.external_id IS NOT NULL"
    backing = {
        "shopify_customer": BackingRecord(
            table="customer_identities",
            match="b.provider = 'shopify' AND b.external_id = s.source_id",
            customer="b.customer_id",
        )
    }

    def map_id(self, row: dict[str, Any]) -> tuple[str, str]:
        return self.source_type, str(row["external_id"])

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        identity = self._fetch_one(
            db,
            """
            SELECT i.external_id, i.email, i.phone, c.id AS customer_id, c.first_name, c.last_name,
                   c.company, c.primary_email, c.primary_phone, c.created_at, c.updated_at
            FROM customer_identities i
            JOIN customers c ON c.id = i.customer_id
            WHERE i.provider = 'shopify' AND i.external_id = :source_id
            LIMIT 1
            """,
            {"source_id": source_id},
        )
        if identity is None:
            return None

        name = display_name(identity["first_name"], identity["last_name"], identity["company"])
        email = identity["email"] or identity["primary_email"]
        phone = identity["phone"] or identity["primary_phone"]
        return IndexDocument(
            source_type=self.source_type,
            source_id=source_id,
            content_text=clean_structured_text(
                f"Shopify Customer {name}: email {email or '-'}, phone {phone or '-'}, company {identity['company'] or '-'}."
            ),
            customer_id=identity["customer_id"],
            title=f"Shopify Customer {name}",
            source_uri=f"/customers/{identity['customer_id']}",
            metadata={"shopifyCustomerId": source_id, "email": email, "phone": phone, "company": identity["company"]},
            source_created_at=as_utc(identity["created_at"]),
            source_updated_at=as_utc(identity["updated_at"]),
        )


class QboCustomerHandler(TableSourceHandler):
    source_type = "qbo_customer"
    source_types = ("qbo_customer",)
    table = "qbo_customer_snapshots"
    id_column = "qbo_customer_id"
    changed_at_column = "snapshot_taken_at"
    backing = {
        "qbo_customer": BackingRecord(
            table="qbo_customer_snapshots",
            match="b.qbo_customer_id = s.source_id",
            customer="b.customer_id",
        )
    }

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        snapshot = self._fetch_one(
            db,
            """
            SELECT q.qbo_customer_id, q.customer_id, q.balance, q.currency, q.terms,
                   q.last_invoice_date, q.last_payment_date, q.snapshot_taken_at,
                   c.first_name, c.last_name, c.company
            FROM qbo_customer_snapshots q
            LEFT JOIN customers c ON c.id = q.customer_id
            WHERE q.qbo_customer_id = :source_id
            """,
            {"source_id": source_id},
        )
        if snapshot is None:
            return None

        name = source_id
        if snapshot["first_name"] or snapshot["last_name"] or snapshot["company"]:
            name = display_name(snapshot["first_name"], snapshot["last_name"], snapshot["company"])
        return IndexDocument(
            source_type=self.source_type,
            source_id=source_id,
            content_text=clean_structured_text(
                f"QBO Customer {name}: balance {format_money(snapshot['balance'], snapshot['currency'])}, "
                f"terms {snapshot['terms'] or '-'}, last invoice {format_date(snapshot['last_invoice_date'])}, "
                f"last payment {format_date(snapshot['last_payment_date'])}."
            ),
            customer_id=snapshot["customer_id"],
            title=f"QBO Customer {name}",
            source_uri=f"/customers/{snapshot['customer_id']}" if snapshot["customer_id"] else "/customers",
            metadata={
                "qboCustomerId": source_id,
                "balance": str(snapshot["balance"]) if snapshot["balance"] is not None else None,
                "currency": snapshot["currency"],
                "terms": snapshot["terms"],
                "lastInvoiceDate": isoformat(snapshot["last_invoice_date"]),
                "lastPaymentDate": isoformat(snapshot["last_payment_date"]),
            },
            source_created_at=as_utc(snapshot["snapshot_taken_at"]),
        )
