"""Bookings repository - booking numbers and booking rows.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

import uuid
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from touroffice.infra.db import guarded_update

BOOKING_COLUMNS = (
    "id",
    "booking_number",
    "proposal_id",
    "status",
    "currency",
    "total_cents",
    "deposit_amount_cents",
    "deposit_paid_cents",
    "deposit_paid",
    "final_payment_due",
    "final_payment_paid",
    "final_payment_paid_at",
    "customer_name",
    "customer_email",
    "customer_phone",
    "brand",
    "created_at",
)

_SELECT = "SELECT " + ", ".join(BOOKING_COLUMNS) + " FROM bookings"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _row_to_booking(row: tuple) -> dict[str, Any]:
    booking = dict(zip(BOOKING_COLUMNS, row))
    booking["id"] = str(booking["id"])
    booking["proposal_id"] = str(booking["proposal_id"])
    return booking


def format_booking_number(prefix: str, year: int, sequence: int) -> str:
    """TB-2025-000042."""
    return f"{prefix}-{year}-{sequence:06d}"


def next_booking_number(cur: PgCursor, *, prefix: str, year: int) -> str:
    """Allocate the next booking number for ``year``.

    The upsert takes the counter row lock, so concurrent callers get
    distinct, gap-free sequence values within committed transactions.
    """
    cur.execute(
        """
        INSERT INTO booking_number_counters (year, last_value)
        VALUES (%s, 1)
        ON CONFLICT (year) DO UPDATE
        SET last_value = booking_number_counters.last_value + 1
        RETURNING last_value
        """,
        (year,),
    )
    sequence = cur.fetchone()[0]
    return format_booking_number(prefix, year, sequence)


def insert_booking(
    cur: PgCursor,
    *,
    booking_number: str,
    proposal: dict[str, Any],
    deposit_paid_cents: int,
    deposit_paid: bool,
) -> str:
    """Insert a booking, copying the proposal's financial snapshot.

    Returns:
        Booking UUID string.
    """
    total_cents = proposal["total_cents"]
    cur.execute(
        """
        INSERT INTO bookings (
            booking_number, proposal_id, status, currency, brand,
            total_cents, deposit_amount_cents, deposit_paid_cents,
            deposit_paid, final_payment_due,
            customer_name, customer_email, customer_phone
        )
        VALUES (%s, %s, 'confirmed', %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            booking_number,
            proposal["id"],
            proposal["currency"],
            proposal["brand"],
            total_cents,
            proposal["deposit_amount_cents"],
            deposit_paid_cents,
            deposit_paid,
            total_cents > deposit_paid_cents,
            proposal["customer_name"],
            proposal["customer_email"],
            proposal["customer_phone"],
        ),
    )
    return str(cur.fetchone()[0])


def get_booking(cur: PgCursor, booking_ref: str) -> dict[str, Any] | None:
    """Load a booking by UUID or booking number."""
    column = "id" if _is_uuid(booking_ref) else "booking_number"
    cur.execute(f"{_SELECT} WHERE {column} = %s", (booking_ref,))
    row = cur.fetchone()
    return _row_to_booking(row) if row else None


def get_booking_by_proposal(cur: PgCursor, proposal_id: str) -> dict[str, Any] | None:
    cur.execute(f"{_SELECT} WHERE proposal_id = %s", (proposal_id,))
    row = cur.fetchone()
    return _row_to_booking(row) if row else None


def mark_final_payment_paid(cur: PgCursor, booking_id: str) -> int:
    """Guarded final-payment flag; 0 rows means it was already recorded."""
    return guarded_update(
        cur,
        """
        UPDATE bookings
        SET final_payment_paid = true,
            final_payment_paid_at = now(),
            final_payment_due = false,
            updated_at = now()
        WHERE id = %s AND final_payment_paid = false
        """,
        (booking_id,),
    )
