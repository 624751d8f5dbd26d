"""Handlers for the helpdesk records: tickets, their comments, and customer interactions."""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import text

from ragsync.services.cleaning import clean_ticket_text
from ragsync.services.handlers.base import (
    BackingRecord,
    IndexDocument,
    SourceFetchError,
    TableSourceHandler,
    as_utc,
    join_lines,
)
from ragsync.services.identifiers import extract_identifiers


def _identifier_metadata(*parts: str | None) -> dict[str, Any]:
    return extract_identifiers("\n".join(part for part in parts if part)).as_metadata()


def _user_id(value: Any) -> str | None:
    return str(value) if value is not None else None


class TicketHandler(TableSourceHandler):
    source_type = "ticket"
    source_types = ("ticket",)
    table = "tickets"
    backing = {
        "ticket": BackingRecord(
            table="tickets",
            match="b.id::text = s.source_id",
            customer="b.customer_id",
            customer_link_authoritative=True,
        )
    }

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        if not source_id.isdigit():
            return None
        ticket = self._fetch_one(
            db,
            """
            SELECT id, title, description, status, priority, type, order_number, tracking_number,
                   sender_email, sender_name, customer_id, conversation_id, assignee_id, reporter_id,
                   created_at, updated_at
            FROM tickets
            WHERE id = :ticket_id
            """,
            {"ticket_id": int(source_id)},
        )
        if ticket is None:
            return None

        identifiers = _identifier_metadata(
            ticket["title"], ticket["description"], ticket["order_number"], ticket["tracking_number"]
        )
        content = clean_ticket_text(
            join_lines(
                f"Ticket #{ticket['id']}: {ticket['title']}",
                f"Status: {ticket['status']}",
                f"Priority: {ticket['priority']}",
                f"Type: {ticket['type']}" if ticket["type"] else None,
                ticket["description"],
                f"Order: {ticket['order_number']}" if ticket["order_number"] else None,
                f"Tracking: {ticket['tracking_number']}" if ticket["tracking_number"] else None,
            )
        )
        metadata = {
            **identifiers,
            "ticketId": ticket["id"],
            "status": ticket["status"],
            "priority": ticket["priority"],
            "type": ticket["type"],
            "orderNumber": ticket["order_number"] or identifiers["orderNumber"],
            "trackingNumber": ticket["tracking_number"] or identifiers["trackingNumber"],
            "senderEmail": ticket["sender_email"],
            "senderName": ticket["sender_name"],
            "conversationId": ticket["conversation_id"],
        }
        return IndexDocument(
            source_type="ticket",
            source_id=str(ticket["id"]),
            content_text=content,
            customer_id=ticket["customer_id"],
            title=ticket["title"],
            source_uri=f"/tickets/{ticket['id']}",
            metadata=metadata,
            source_created_at=as_utc(ticket["created_at"]),
            source_updated_at=as_utc(ticket["updated_at"]),
            sensitivity="public",
            ticket_id=ticket["id"],
            thread_id=ticket["conversation_id"] or f"ticket-{ticket['id']}",
            owner_user_id=_user_id(ticket["assignee_id"] or ticket["reporter_id"]),
        )


class TicketCommentHandler(TableSourceHandler):
    source_type = "ticket_comment"
    source_types = ("ticket_comment",)
    table = "ticket_comments"
    changed_at_column = "created_at"
    customer_column = None
    # comments carry no customer of their own; the parent ticket decides
    backing = {
        "ticket_comment": BackingRecord(
            table="ticket_comments",
            match="b.id::text = s.source_id",
            joins="LEFT JOIN tickets t ON t.id = b.ticket_id",
            customer="t.customer_id",
            customer_link_authoritative=True,
        )
    }

    def ids_for_customer(self, db: Any, customer_id: int) -> list[tuple[str, str]]:
        try:
            rows = db.execute(
                text(
                    """
                    SELECT c.id
                    FROM ticket_comments c
                    JOIN tickets t ON t.id = c.ticket_id
                    WHERE t.customer_id = :customer_id
                    ORDER BY c.id ASC
                    """
                ),
                {"customer_id": customer_id},
            ).mappings().all()
        except Exception as exc:  # noqa: BLE001
            raise SourceFetchError(self.source_type, f"ticket_comments customer lookup failed: {exc}") from exc
        return [self.map_id(dict(row)) for row in rows]

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        if not source_id.isdigit():
            return None
        comment = self._fetch_one(
            db,
            """
            SELECT c.id, c.ticket_id, c.comment_text, c.commenter_id, c.is_from_customer, c.is_internal_note,
                   c.is_outgoing_reply, c.created_at, t.customer_id, t.conversation_id
            FROM ticket_comments c
            LEFT JOIN tickets t ON t.id = c.ticket_id
            WHERE c.id = :comment_id
            """,
            {"comment_id": int(source_id)},
        )
        if comment is None:
            return None

        metadata = {
            **_identifier_metadata(comment["comment_text"]),
            "ticketId": comment["ticket_id"],
            "commentId": comment["id"],
            "isFromCustomer": bool(comment["is_from_customer"]),
            "isInternalNote": bool(comment["is_internal_note"]),
            "isOutgoingReply": bool(comment["is_outgoing_reply"]),
            "conversationId": comment["conversation_id"],
        }
        return IndexDocument(
            source_type="ticket_comment",
            source_id=str(comment["id"]),
            content_text=clean_ticket_text(comment["comment_text"] or ""),
            customer_id=comment["customer_id"],
            title=f"Ticket #{comment['ticket_id']} comment",
            source_uri=f"/tickets/{comment['ticket_id']}#comment-{comment['id']}",
            metadata=metadata,
            source_created_at=as_utc(comment["created_at"]),
            sensitivity="internal" if comment["is_internal_note"] else "public",
            ticket_id=comment["ticket_id"],
            thread_id=comment["conversation_id"] or f"ticket-{comment['ticket_id']}",
            owner_user_id=_user_id(comment["commenter_id"]),
        )


class InteractionHandler(TableSourceHandler):
    source_type = "interaction"
    source_types = ("interaction",)
    table = "interactions"
    changed_at_column = "occurred_at"
    backing = {
        "interaction": BackingRecord(
            table="interactions",
            match="b.id::text = s.source_id",
            customer="b.customer_id",
            customer_link_authoritative=True,
        )
    }

    def format_for_index(self, db: Any, source_type: str, source_id: str) -> IndexDocument | None:
        if not source_id.isdigit():
            return None
        interaction = self._fetch_one(
            db,
            """
            SELECT id, customer_id, ticket_id, comment_id, channel, direction, occurred_at, metadata
            FROM interactions
            WHERE id = :interaction_id
            """,
            {"interaction_id": int(source_id)},
        )
        if interaction is None:
            return None

        summary = f"Interaction ({interaction['channel']}, {interaction['direction']})"
        details = json.dumps(interaction["metadata"], sort_keys=True, default=str) if interaction["metadata"] else None
        ticket_id = interaction["ticket_id"]
        return IndexDocument(
            source_type="interaction",
            source_id=str(interaction["id"]),
            content_text=clean_ticket_text(join_lines(summary, details)),
            customer_id=interaction["customer_id"],
            title=summary,
            source_uri=f"/tickets/{ticket_id}" if ticket_id else f"/customers/{interaction['customer_id']}",
            metadata={
                "interactionId": interaction["id"],
                "channel": interaction["channel"],
                "direction": interaction["direction"],
                "ticketId": ticket_id,
                "commentId": interaction["comment_id"],
            },
            source_created_at=as_utc(interaction["occurred_at"]),
            ticket_id=ticket_id,
            thread_id=f"ticket-{ticket_id}" if ticket_id else None,
        )
