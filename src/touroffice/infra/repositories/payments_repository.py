"""Payments repository - immutable ledger of money movements.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

from psycopg2.extensions import cursor as PgCursor

PAYMENT_TYPES = {"deposit", "final", "refund"}
PROVIDER_STRIPE = "stripe"


def insert_payment(
    cur: PgCursor,
    *,
    provider_ref: str,
    payment_type: str,
    amount_cents: int,
    currency: str,
    status: str = "succeeded",
    proposal_id: str | None = None,
    booking_id: str | None = None,
    ticket_id: str | None = None,
    provider: str = PROVIDER_STRIPE,
) -> tuple[str | None, bool]:
    """Insert a payment row, idempotent by (provider, provider_ref, payment_type).

    Returns:
        (payment_id, created). payment_id is the existing row's id when
        the movement was already recorded.

    Raises:
        ValueError: If payment_type is unknown.
    """
    if payment_type not in PAYMENT_TYPES:
        raise ValueError(f"Invalid payment_type: {payment_type}")

    cur.execute(
        """
        INSERT INTO payments (
            proposal_id, booking_id, ticket_id, provider, provider_ref,
            payment_type, amount_cents, currency, status
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (provider, provider_ref, payment_type) DO NOTHING
        RETURNING id
        """,
        (
            proposal_id,
            booking_id,
            ticket_id,
            provider,
            provider_ref,
            payment_type,
            amount_cents,
            currency,
            status,
        ),
    )
    row = cur.fetchone()
    if row is not None:
        return str(row[0]), True

    cur.execute(
        """
        SELECT id FROM payments
        WHERE provider = %s AND provider_ref = %s AND payment_type = %s
        """,
        (provider, provider_ref, payment_type),
    )
    existing = cur.fetchone()
    return (str(existing[0]) if existing else None), False
