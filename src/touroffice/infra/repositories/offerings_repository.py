"""Offerings and tickets repository for shared group tours.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from touroffice.infra.db import guarded_update

OFFERING_COLUMNS = (
    "id",
    "title",
    "starts_at",
    "brand",
    "currency",
    "base_price_cents",
    "lunch_price_cents",
    "discount_type",
    "discount_value",
    "discount_reason",
    "discount_applied_at",
    "discount_applied_by",
)

TICKET_COLUMNS = (
    "id",
    "offering_id",
    "ticket_number",
    "customer_name",
    "customer_email",
    "quantity",
    "includes_lunch",
    "price_per_person_cents",
    "total_cents",
    "payment_status",
    "payment_authorization_ref",
    "original_price_per_person_cents",
    "original_total_cents",
    "refund_amount_cents",
    "refund_id",
    "refund_status",
    "refund_error",
    "refunded_at",
)


def get_offering(cur: PgCursor, offering_id: str) -> dict[str, Any] | None:
    cur.execute(
        "SELECT " + ", ".join(OFFERING_COLUMNS) + " FROM offerings WHERE id = %s",
        (offering_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    offering = dict(zip(OFFERING_COLUMNS, row))
    offering["id"] = str(offering["id"])
    return offering


def claim_discount(
    cur: PgCursor,
    offering_id: str,
    *,
    discount_type: str,
    discount_value: Decimal,
    reason: str | None,
    applied_by: str | None,
    new_base_price_cents: int,
    new_lunch_price_cents: int,
) -> bool:
    """Record the discount and new prices if none is applied yet.

    Returns:
        True if this caller applied the discount, False if one already exists.
    """
    return guarded_update(
        cur,
        """
        UPDATE offerings
        SET base_price_cents = %s,
            lunch_price_cents = %s,
            discount_type = %s,
            discount_value = %s,
            discount_reason = %s,
            discount_applied_at = now(),
            discount_applied_by = %s,
            updated_at = now()
        WHERE id = %s AND discount_type IS NULL
        """,
        (
            new_base_price_cents,
            new_lunch_price_cents,
            discount_type,
            discount_value,
            reason,
            applied_by,
            offering_id,
        ),
    ) == 1


def list_active_tickets(cur: PgCursor, offering_id: str) -> list[dict[str, Any]]:
    """Non-cancelled tickets of an offering in purchase order."""
    cur.execute(
        "SELECT "
        + ", ".join(TICKET_COLUMNS)
        + """
        FROM tickets
        WHERE offering_id = %s AND payment_status <> 'cancelled'
        ORDER BY created_at ASC, ticket_number ASC
        """,
        (offering_id,),
    )
    tickets = []
    for row in cur.fetchall():
        ticket = dict(zip(TICKET_COLUMNS, row))
        ticket["id"] = str(ticket["id"])
        ticket["offering_id"] = str(ticket["offering_id"])
        tickets.append(ticket)
    return tickets


def record_ticket_refund(
    cur: PgCursor,
    ticket_id: str,
    *,
    new_price_per_person_cents: int,
    new_total_cents: int,
    refund_amount_cents: int,
    refund_id: str | None,
    refund_status: str,
    refund_error: str | None,
    succeeded: bool,
) -> None:
    """Persist one ticket's discount outcome.

    The original price is captured once (COALESCE) so a later rewrite
    never loses what the customer actually paid.
    """
    cur.execute(
        """
        UPDATE tickets
        SET original_price_per_person_cents =
                COALESCE(original_price_per_person_cents, price_per_person_cents),
            original_total_cents = COALESCE(original_total_cents, total_cents),
            price_per_person_cents = %s,
            total_cents = %s,
            refund_amount_cents = CASE
                WHEN %s THEN COALESCE(refund_amount_cents, 0) + %s
                ELSE refund_amount_cents
            END,
            refund_id = COALESCE(%s, refund_id),
            refund_status = %s,
            refund_error = %s,
            refunded_at = CASE WHEN %s THEN now() ELSE refunded_at END,
            payment_status = CASE
                WHEN %s THEN 'partially_refunded'
                ELSE payment_status
            END,
            updated_at = now()
        WHERE id = %s
        """,
        (
            new_price_per_person_cents,
            new_total_cents,
            succeeded,
            refund_amount_cents,
            refund_id,
            refund_status,
            refund_error,
            succeeded,
            succeeded,
            ticket_id,
        ),
    )


def reprice_unpaid_tickets(
    cur: PgCursor,
    offering_id: str,
    *,
    base_price_cents: int,
    lunch_price_cents: int,
) -> int:
    """Apply new per-person prices to unpaid, non-cancelled tickets."""
    return guarded_update(
        cur,
        """
        UPDATE tickets
        SET price_per_person_cents = CASE WHEN includes_lunch THEN %s ELSE %s END,
            total_cents = quantity * CASE WHEN includes_lunch THEN %s ELSE %s END,
            updated_at = now()
        WHERE offering_id = %s AND payment_status = 'unpaid'
        """,
        (
            lunch_price_cents,
            base_price_cents,
            lunch_price_cents,
            base_price_cents,
            offering_id,
        ),
    )


def mark_refund_pending(cur: PgCursor, ticket_id: str) -> None:
    """Record that a refund is about to be requested for this ticket.

    Written before the gateway call so an interrupted run leaves the ticket
    visibly ``pending`` rather than looking untouched.
    """
    cur.execute(
        """
        UPDATE tickets
        SET refund_status = 'pending',
            refund_error = NULL,
            updated_at = now()
        WHERE id = %s
        """,
        (ticket_id,),
    )
