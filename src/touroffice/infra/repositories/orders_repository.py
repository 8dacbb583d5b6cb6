"""Lunch orders repository - locked read-modify-write of the shared order row.

Uses raw SQL with psycopg2 (no ORM). The guest order list is stored as a
single jsonb column, so every writer must go through update_order_locked.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable

from psycopg2.extensions import cursor as PgCursor

from touroffice.domain.errors import NotFoundError
from touroffice.domain.guest_orders import Order, parse_guest_orders, serialize_guest_orders
from touroffice.infra.db import for_update

ORDER_COLUMNS = (
    "id",
    "proposal_id",
    "supplier_name",
    "status",
    "cutoff_at",
    "event_starts_at",
    "guest_orders",
    "special_requests",
    "subtotal_cents",
    "tax_cents",
    "total_cents",
    "sent_to_supplier_at",
    "supplier_confirmed_at",
    "supplier_reference",
)

_SELECT = "SELECT " + ", ".join(ORDER_COLUMNS) + " FROM lunch_orders WHERE id = %s"


def _row_to_order(row: tuple) -> Order:
    data = dict(zip(ORDER_COLUMNS, row))
    return Order(
        id=str(data["id"]),
        proposal_id=str(data["proposal_id"]),
        supplier_name=data["supplier_name"],
        status=data["status"],
        cutoff_at=data["cutoff_at"],
        event_starts_at=data["event_starts_at"],
        guest_orders=parse_guest_orders(data["guest_orders"]),
        special_requests=data["special_requests"],
        subtotal_cents=data["subtotal_cents"] or 0,
        tax_cents=data["tax_cents"] or 0,
        total_cents=data["total_cents"] or 0,
        sent_to_supplier_at=data["sent_to_supplier_at"],
        supplier_confirmed_at=data["supplier_confirmed_at"],
        supplier_reference=data["supplier_reference"],
    )


def get_order(cur: PgCursor, order_id: str) -> Order | None:
    cur.execute(_SELECT, (order_id,))
    row = cur.fetchone()
    return _row_to_order(row) if row else None


def insert_order(
    cur: PgCursor,
    *,
    proposal_id: str,
    supplier_name: str,
    event_starts_at: datetime,
    cutoff_at: datetime,
    special_requests: str | None = None,
) -> Order:
    cur.execute(
        """
        INSERT INTO lunch_orders (
            proposal_id, supplier_name, status, cutoff_at, event_starts_at,
            guest_orders, special_requests, subtotal_cents, tax_cents, total_cents
        )
        VALUES (%s, %s, 'draft', %s, %s, '[]'::jsonb, %s, 0, 0, 0)
        RETURNING """
        + ", ".join(ORDER_COLUMNS),
        (proposal_id, supplier_name, cutoff_at, event_starts_at, special_requests),
    )
    return _row_to_order(cur.fetchone())


def save_order(cur: PgCursor, order: Order) -> None:
    cur.execute(
        """
        UPDATE lunch_orders
        SET status = %s,
            guest_orders = %s::jsonb,
            special_requests = %s,
            subtotal_cents = %s,
            tax_cents = %s,
            total_cents = %s,
            sent_to_supplier_at = %s,
            supplier_confirmed_at = %s,
            supplier_reference = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (
            order.status,
            json.dumps(serialize_guest_orders(order.guest_orders)),
            order.special_requests,
            order.subtotal_cents,
            order.tax_cents,
            order.total_cents,
            order.sent_to_supplier_at,
            order.supplier_confirmed_at,
            order.supplier_reference,
            order.id,
        ),
    )


def update_order_locked(
    cur: PgCursor,
    order_id: str,
    mutate: Callable[[PgCursor, Order], Order],
) -> Order:
    """Lock the order row, apply ``mutate`` and persist its result.

    ``mutate`` receives the current Order and returns the new one; raising
    inside it leaves the row untouched (the caller's transaction rolls
    back). The lock is held until the enclosing transaction ends.

    Raises:
        NotFoundError: If the order does not exist.
    """
    row = for_update(cur, _SELECT, (order_id,))
    if row is None:
        raise NotFoundError("Lunch order not found", code="order_not_found")

    updated = mutate(cur, _row_to_order(row))
    save_order(cur, updated)
    return updated


def get_trip_guest(
    cur: PgCursor, proposal_id: str, guest_id: str
) -> dict[str, Any] | None:
    """A guest registered on the order's parent trip."""
    cur.execute(
        """
        SELECT id, name
        FROM proposal_guests
        WHERE proposal_id = %s AND id::text = %s
        """,
        (proposal_id, str(guest_id)),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {"id": str(row[0]), "name": row[1]}


class MenuPricing:
    """Current menu names and prices read from lunch_menu_items.

    Both come from the server side; a client-supplied item name is never
    stored.
    """

    def get_items(self, cur: PgCursor, item_ids: list[str]) -> dict[str, dict[str, Any]]:
        """Map available item ids to ``{"name", "price_cents"}`` (unknown ids absent)."""
        if not item_ids:
            return {}
        cur.execute(
            """
            SELECT id, name, price_cents
            FROM lunch_menu_items
            WHERE id = ANY(%s) AND is_available
            """,
            (list(item_ids),),
        )
        return {
            str(r[0]): {"name": r[1], "price_cents": r[2]}
            for r in cur.fetchall()
        }
