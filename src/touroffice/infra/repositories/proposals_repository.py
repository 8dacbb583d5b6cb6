"""Proposals repository - persistence and guarded transitions.

Uses raw SQL with psycopg2 (no ORM). Every status transition is a
conditional UPDATE that returns the affected row count; zero means a
concurrent writer changed the row first.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from touroffice.infra.db import guarded_update

PROPOSAL_COLUMNS = (
    "id",
    "proposal_number",
    "status",
    "brand",
    "currency",
    "total_cents",
    "deposit_percentage",
    "deposit_amount_cents",
    "valid_until",
    "customer_name",
    "customer_email",
    "customer_phone",
    "payment_authorization_ref",
    "skip_deposit_on_accept",
    "deposit_paid",
    "deposit_paid_at",
    "converted",
    "converted_booking_id",
    "converted_at",
    "accepted_at",
    "accepted_by",
    "accepted_ip",
    "declined_at",
    "decline_category",
    "decline_reason",
    "desired_changes",
    "sent_at",
    "first_viewed_at",
    "last_viewed_at",
    "view_count",
    "expired_at",
)

_SELECT = "SELECT " + ", ".join(PROPOSAL_COLUMNS) + " FROM proposals"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _row_to_proposal(row: tuple) -> dict[str, Any]:
    proposal = dict(zip(PROPOSAL_COLUMNS, row))
    proposal["id"] = str(proposal["id"])
    if proposal["converted_booking_id"] is not None:
        proposal["converted_booking_id"] = str(proposal["converted_booking_id"])
    return proposal


def get_proposal(
    cur: PgCursor,
    proposal_ref: str,
    *,
    lock: bool = False,
) -> dict[str, Any] | None:
    """Load a proposal by UUID or by proposal number.

    Args:
        cur: Database cursor.
        proposal_ref: Proposal UUID or proposal_number (e.g. TP-2025-00042).
        lock: Take a row lock (SELECT ... FOR UPDATE).

    Returns:
        Proposal dict or None if not found.
    """
    column = "id" if _is_uuid(proposal_ref) else "proposal_number"
    query = f"{_SELECT} WHERE {column} = %s"
    if lock:
        query += " FOR UPDATE"
    cur.execute(query, (str(proposal_ref),))
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_proposal(row)


def expire(cur: PgCursor, proposal_id: str, *, from_status: str) -> int:
    return guarded_update(
        cur,
        """
        UPDATE proposals
        SET status = 'expired', expired_at = now(), updated_at = now()
        WHERE id = %s AND status = %s
        """,
        (proposal_id, from_status),
    )


def mark_sent(cur: PgCursor, proposal_id: str, *, from_status: str) -> int:
    return guarded_update(
        cur,
        """
        UPDATE proposals
        SET status = 'sent', sent_at = now(), updated_at = now()
        WHERE id = %s AND status = %s
        """,
        (proposal_id, from_status),
    )


def record_view(cur: PgCursor, proposal_id: str, *, from_status: str) -> int:
    """Move sent -> viewed (or stay viewed) and bump view counters."""
    return guarded_update(
        cur,
        """
        UPDATE proposals
        SET status = 'viewed',
            view_count = view_count + 1,
            first_viewed_at = COALESCE(first_viewed_at, now()),
            last_viewed_at = now(),
            updated_at = now()
        WHERE id = %s AND status = %s
        """,
        (proposal_id, from_status),
    )


def accept(
    cur: PgCursor,
    proposal_id: str,
    *,
    from_status: str,
    accepted_by: str,
    signature: dict[str, Any] | None,
    ip_address: str | None,
) -> int:
    return guarded_update(
        cur,
        """
        UPDATE proposals
        SET status = 'accepted',
            accepted_at = now(),
            accepted_by = %s,
            accepted_signature = %s::jsonb,
            accepted_ip = %s,
            updated_at = now()
        WHERE id = %s AND status = %s AND valid_until > now()
        """,
        (
            accepted_by,
            json.dumps(signature) if signature else None,
            ip_address,
            proposal_id,
            from_status,
        ),
    )


def decline(
    cur: PgCursor,
    proposal_id: str,
    *,
    from_status: str,
    category: str,
    reason: str,
    desired_changes: str | None,
) -> int:
    return guarded_update(
        cur,
        """
        UPDATE proposals
        SET status = 'declined',
            declined_at = now(),
            decline_category = %s,
            decline_reason = %s,
            desired_changes = %s,
            updated_at = now()
        WHERE id = %s AND status = %s
        """,
        (category, reason, desired_changes, proposal_id, from_status),
    )


def set_payment_authorization_ref(
    cur: PgCursor, proposal_id: str, authorization_ref: str
) -> None:
    cur.execute(
        """
        UPDATE proposals
        SET payment_authorization_ref = %s, updated_at = now()
        WHERE id = %s
        """,
        (authorization_ref, proposal_id),
    )


def claim_conversion(
    cur: PgCursor,
    proposal_id: str,
    *,
    deposit_paid: bool,
    authorization_ref: str | None = None,
) -> bool:
    """Atomically claim the right to convert a proposal.

    This is the only statement that sets ``converted``. Under READ
    COMMITTED a concurrent claimer blocks on the row, then re-checks
    ``converted = false`` against the committed version and matches
    nothing.

    Returns:
        True if this caller won the claim, False if already converted.
    """
    return guarded_update(
        cur,
        """
        UPDATE proposals
        SET converted = true,
            deposit_paid = %s,
            deposit_paid_at = CASE WHEN %s THEN now() ELSE deposit_paid_at END,
            payment_authorization_ref = COALESCE(%s, payment_authorization_ref),
            updated_at = now()
        WHERE id = %s AND converted = false AND status = 'accepted'
        """,
        (deposit_paid, deposit_paid, authorization_ref, proposal_id),
    ) == 1


def finish_conversion(cur: PgCursor, proposal_id: str, *, booking_id: str) -> None:
    """Link the booking and move status to converted (after a won claim)."""
    linked = guarded_update(
        cur,
        """
        UPDATE proposals
        SET status = 'converted',
            converted_booking_id = %s,
            converted_at = now(),
            updated_at = now()
        WHERE id = %s AND converted = true AND converted_booking_id IS NULL
        """,
        (booking_id, proposal_id),
    )
    if linked != 1:
        raise RuntimeError(f"Proposal {proposal_id} conversion link failed")
