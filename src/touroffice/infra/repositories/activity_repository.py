"""Activity log repository - append-only audit trail.

Uses raw SQL with psycopg2 (no ORM). Rows are written in the same
transaction as the state change they describe.
"""

import json

from psycopg2.extensions import cursor as PgCursor

from touroffice.observability.context import get_correlation_id

ACTOR_TYPES = {"customer", "admin", "system"}


def log_activity(
    cur: PgCursor,
    *,
    aggregate_type: str,
    aggregate_id: str,
    action: str,
    actor_type: str,
    actor_ref: str | None = None,
    payload: dict | None = None,
    correlation_id: str | None = None,
) -> int:
    """Append one activity row.

    Args:
        cur: Database cursor (within transaction).
        aggregate_type: proposal, booking, offering, ticket or lunch_order.
        aggregate_id: Aggregate identifier.
        action: What happened (e.g. payment_confirmed).
        actor_type: customer, admin or system.
        actor_ref: Optional actor identifier (staff email, guest id).
        payload: Optional JSON payload (no contact details).
        correlation_id: Defaults to the current request/task correlation ID.

    Returns:
        The generated activity row ID.

    Raises:
        ValueError: If actor_type is unknown.
    """
    if actor_type not in ACTOR_TYPES:
        raise ValueError(f"Invalid actor_type: {actor_type}")

    payload_json = json.dumps(payload, default=str) if payload else None

    cur.execute(
        """
        INSERT INTO activity_log (
            aggregate_type, aggregate_id, action,
            actor_type, actor_ref, payload, correlation_id
        )
        VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
        RETURNING id
        """,
        (
            aggregate_type,
            str(aggregate_id),
            action,
            actor_type,
            actor_ref,
            payload_json,
            correlation_id or get_correlation_id() or None,
        ),
    )
    return cur.fetchone()[0]
