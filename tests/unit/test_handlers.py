from datetime import datetime, timezone

import pytest

pytest.importorskip("sqlalchemy")

from ragsync.services.handlers import register_default_handlers
from ragsync.services.handlers.base import SourceFetchError
from ragsync.services.handlers.commerce import OrderHandler, ShopifyCustomerHandler
from ragsync.services.handlers.registry import HandlerRegistry, HandlerRegistryError
from ragsync.services.handlers.tickets import TicketCommentHandler, TicketHandler
from ragsync.services.handlers.upstream import EmailHandler, QboInvoiceHandler, UpstreamPage

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def mappings(self):
        return self

    def first(self):
        return self.rows[0] if self.rows else None

    def all(self):
        return list(self.rows)


class FakeDb:
    """Answers each statement with the rows registered for the first matching SQL fragment."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    def execute(self, statement, params=None):
        sql = " ".join(str(statement).split())
        self.calls.append((sql, params))
        if self.error is not None:
            raise self.error
        for fragment, rows in self.responses:
            if fragment in sql:
                return FakeResult(rows)
        return FakeResult([])


class FakeFeed:
    def __init__(self, pages=None, records=None, error=None):
        self.pages = pages or {}
        self.records = records or {}
        self.error = error
        self.requests = []

    def fetch_changed(self, since, page, page_size):
        self.requests.append((since, page, page_size))
        if self.error is not None:
            raise self.error
        return self.pages.get(page, UpstreamPage())

    def fetch_record(self, source_id):
        if self.error is not None:
            raise self.error
        return self.records.get(source_id)


def test_default_handlers_register_every_local_type():
    registry = register_default_handlers(target=HandlerRegistry())

    assert registry.list_registered() == [
        "interaction",
        "order",
        "qbo_customer",
        "qbo_estimate",
        "qbo_invoice",
        "shipstation_shipment",
        "shopify_customer",
        "ticket",
        "ticket_comment",
    ]
    assert "amazon_order" in registry.indexed_types()
    assert isinstance(registry.get("shopify_order"), OrderHandler)
    assert "email" not in registry.indexed_types()


def test_email_handler_is_registered_only_with_a_feed():
    registry = register_default_handlers({"email": FakeFeed()}, target=HandlerRegistry())

    assert isinstance(registry.get("email"), EmailHandler)
    assert "email" in [handler.source_type for handler in registry.syncable()]
    assert registry.get("qbo_invoice").upstream is None


def test_registry_errors():
    registry = HandlerRegistry()
    registry.register(EmailHandler())

    with pytest.raises(HandlerRegistryError) as unknown:
        registry.get("fax")
    with pytest.raises(HandlerRegistryError) as unconfigured:
        registry.get("email")

    assert unknown.value.error_code == "RAG-HANDLER-UNKNOWN-SOURCE"
    assert unconfigured.value.error_code == "RAG-HANDLER-NOT-CONFIGURED"
    assert registry.syncable() == []


def test_table_handler_pages_with_keyset_token():
    rows = [{"id": 1, "changed_at": T0}, {"id": 2, "changed_at": T0}]
    db = FakeDb([("FROM tickets b", rows)])

    page = TicketHandler().fetch_changed(db, T0, None, 2)

    sql, params = db.calls[0]
    assert "b.updated_at >= :since" in sql
    assert "ORDER BY b.updated_at ASC, b.id ASC" in sql
    assert params["since"] == T0
    assert [record.source_id for record in page.records] == ["1", "2"]
    assert page.next_token == (T0, 2)

    TicketHandler().fetch_changed(db, T0, page.next_token, 2)
    sql, params = db.calls[1]
    assert "(b.updated_at, b.id) > (:last_changed_at, :last_id)" in sql
    assert "since" not in params


def test_table_handler_last_page_has_no_token():
    db = FakeDb([("FROM tickets b", [{"id": 1, "changed_at": T0}])])

    assert TicketHandler().fetch_changed(db, None, None, 5).next_token is None


def test_table_handler_wraps_read_errors():
    db = FakeDb(error=RuntimeError("connection reset"))

    with pytest.raises(SourceFetchError, match="tickets read failed"):
        TicketHandler().fetch_changed(db, None, None, 5)
    with pytest.raises(SourceFetchError, match="ticket_comments customer lookup failed"):
        TicketCommentHandler().ids_for_customer(db, 7)


def test_order_ids_follow_provider():
    handler = OrderHandler()

    assert handler.map_id({"id": 5, "provider": "shopify", "external_id": "gid-1"}) == ("shopify_order", "gid-1")
    assert handler.map_id({"id": 6, "provider": "amazon", "external_id": "112-3"}) == ("amazon_order", "112-3")
    assert handler.map_id({"id": 7, "provider": None, "external_id": None}) == ("order", "7")
    assert ShopifyCustomerHandler().map_id({"id": 1, "external_id": 998}) == ("shopify_customer", "998")


def test_order_customer_lookup_maps_each_row():
    db = FakeDb([("FROM orders b", [{"id": 5, "changed_at": T0, "provider": "shopify", "external_id": "gid-1"}])])

    assert OrderHandler().ids_for_customer(db, 7) == [("shopify_order", "gid-1")]
    assert db.calls[0][1] == {"customer_id": 7}


def test_upstream_handler_pages_through_feed():
    feed = FakeFeed(
        pages={
            1: UpstreamPage(records=[{"id": "130", "changed_at": "2024-03-01T12:00:00Z"}], has_more=True),
            2: UpstreamPage(records=[{"id": "131", "changed_at": "2024-03-01T12:05:00Z"}, {"id": None}]),
        }
    )
    handler = QboInvoiceHandler(feed)

    first = handler.fetch_changed(FakeDb(), T0, None, 1)
    second = handler.fetch_changed(FakeDb(), T0, first.next_token, 1)

    assert handler.upstream == "quickbooks"
    assert [record.source_id for record in first.records] == ["130"]
    assert first.next_token == 2
    assert [record.source_id for record in second.records] == ["131"]
    assert second.next_token is None
    assert [request[1] for request in feed.requests] == [1, 2]


def test_upstream_feed_failure_is_a_fetch_error():
    handler = QboInvoiceHandler(FakeFeed(error=TimeoutError("read timeout")))

    with pytest.raises(SourceFetchError, match="qbo_invoice feed page 1 failed"):
        handler.fetch_changed(FakeDb(), None, None, 50)


def test_upstream_handler_without_feed_reads_mirror_table():
    db = FakeDb()

    QboInvoiceHandler().fetch_changed(db, None, None, 50)

    assert "FROM qbo_invoices b" in db.calls[0][0]


def test_ticket_document():
    db = FakeDb(
        [
            (
                "FROM tickets",
                [
                    {
                        "id": 12,
                        "title": "Printer jams",
                        "description": "<p>Unit from order A12345 jams on every job.</p>",
                        "status": "open",
                        "priority": "high",
                        "type": None,
                        "order_number": "A12345",
                        "tracking_number": None,
                        "sender_email": "jane@acme.com",
                        "sender_name": "Jane",
                        "customer_id": 7,
                        "conversation_id": None,
                        "assignee_id": None,
                        "reporter_id": 31,
                        "created_at": T0,
                        "updated_at": T0,
                    }
                ],
            )
        ]
    )

    document = TicketHandler().format_for_index(db, "ticket", "12")

    assert document.content_text.startswith("Ticket #12: Printer jams\nStatus: open\nPriority: high\n")
    assert "<p>" not in document.content_text
    assert document.customer_id == 7
    assert document.source_uri == "/tickets/12"
    assert document.metadata["orderNumber"] == "A12345"
    assert document.sensitivity == "public"
    assert document.ticket_id == 12
    assert document.thread_id == "ticket-12"
    assert document.owner_user_id == "31"
    assert TicketHandler().format_for_index(db, "ticket", "not-a-number") is None


@pytest.mark.parametrize("internal_note, sensitivity", [(True, "internal"), (False, "public")])
def test_comment_document_scoping(internal_note, sensitivity):
    comment = {
        "id": 88,
        "ticket_id": 12,
        "comment_text": "Refund approved for order A12345.",
        "commenter_id": 5,
        "is_from_customer": False,
        "is_internal_note": internal_note,
        "is_outgoing_reply": not internal_note,
        "created_at": T0,
        "customer_id": 7,
        "conversation_id": "conv-77",
    }
    db = FakeDb([("FROM ticket_comments c", [comment])])

    document = TicketCommentHandler().format_for_index(db, "ticket_comment", "88")

    assert document.sensitivity == sensitivity
    assert document.ticket_id == 12
    assert document.thread_id == "conv-77"
    assert document.owner_user_id == "5"
    assert document.customer_id == 7


def test_email_document_resolves_customer_from_participants():
    feed = FakeFeed(
        records={
            "AAMk-1": {
                "subject": "Re: Order #A12345 delayed",
                "body": "<p>Any update?</p><p>Thanks,</p><p>Jane</p>",
                "from_email": " Jane@Acme.com ",
                "to_emails": ["support@shop.example"],
                "received_at": "2024-03-01T10:00:00Z",
            }
        }
    )
    db = FakeDb([("customer_identities", [{"email": "jane@acme.com", "customer_id": 31}])])

    document = EmailHandler(feed).format_for_index(db, "email", "AAMk-1")

    assert document.content_text == "Any update?"
    assert document.customer_id == 31
    assert document.metadata["fromEmail"] == "jane@acme.com"
    assert document.metadata["orderNumber"] == "A12345"
    assert document.source_created_at == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert document.sensitivity == "public"
    assert document.thread_id == "AAMk-1"
    assert db.calls[0][1] == {"emails": ["jane@acme.com", "support@shop.example"]}
    assert EmailHandler(feed).format_for_index(db, "email", "missing") is None


def test_email_without_feed_is_a_permanent_failure():
    with pytest.raises(SourceFetchError) as exc_info:
        EmailHandler().fetch_changed(FakeDb(), None, None, 10)

    assert exc_info.value.retryable is False
