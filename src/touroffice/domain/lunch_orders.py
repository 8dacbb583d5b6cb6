"""Lunch order service.

Guests of a trip each submit their own items into one shared order row.
All writers go through orders_repository.update_order_locked, which holds
the row lock for the read-merge-write, so two guests submitting at the
same moment both end up in the list.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from touroffice.config import Settings, get_settings
from touroffice.domain.actors import ADMIN, CUSTOMER, Actor
from touroffice.domain.errors import ConflictError, NotFoundError, ValidationError
from touroffice.domain.guest_orders import (
    GuestOrder,
    Order,
    compute_totals,
    cutoff_for,
    merge_guest_order,
    ordering_window,
    reprice,
    validate_submission,
)
from touroffice.infra.db import txn
from touroffice.infra.repositories import activity_repository, orders_repository
from touroffice.infra.repositories.orders_repository import MenuPricing
from touroffice.infra.time import utc_now
from touroffice.notifications import schedule_notification
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import safe_log_context

logger = get_logger(__name__)


def _log(cur: PgCursor, order: Order, action: str, actor: Actor, **payload: Any) -> None:
    activity_repository.log_activity(
        cur,
        aggregate_type="lunch_order",
        aggregate_id=order.id,
        action=action,
        actor_type=actor.actor_type,
        actor_ref=actor.ref,
        payload=payload or None,
    )


def submit_guest_order(
    order_id: str,
    guest_id: str,
    items: Any,
    notes: str | None = None,
    *,
    menu: MenuPricing | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> Order:
    """Replace the guest's entry in the order and recompute totals.

    Raises:
        ValidationError: Bad items, or an item not on the menu.
        NotFoundError: order_not_found, guest_not_found.
        ConflictError: ordering_closed (status or cutoff).
    """
    submitted_items = validate_submission(items)
    menu = menu or MenuPricing()
    tax_rate = (settings or get_settings()).lunch_tax_rate

    def mutate(cur: PgCursor, order: Order) -> Order:
        guest = orders_repository.get_trip_guest(cur, order.proposal_id, guest_id)
        if guest is None:
            raise NotFoundError("Guest is not part of this trip", code="guest_not_found")

        is_open, reason = ordering_window(order, now=now)
        if not is_open:
            raise ConflictError(reason, code="ordering_closed", reason=reason)

        submission = GuestOrder(
            guest_id=guest["id"],
            guest_name=guest["name"],
            items=submitted_items,
            notes=(notes or "").strip() or None,
            submitted_at=(now or utc_now()).isoformat(),
        )
        guest_orders = merge_guest_order(order.guest_orders, submission)
        item_ids = sorted({i.item_id for g in guest_orders for i in g.items})
        menu_items = menu.get_items(cur, item_ids)
        guest_orders = reprice(
            guest_orders,
            {item_id: m["price_cents"] for item_id, m in menu_items.items()},
            submitting_guest_id=guest["id"],
            names={item_id: m["name"] for item_id, m in menu_items.items()},
        )
        subtotal, tax, total = compute_totals(guest_orders, tax_rate)

        _log(
            cur,
            order,
            "guest_order_submitted",
            Actor(CUSTOMER, guest["id"]),
            items=len(submission.items),
        )
        return replace(
            order,
            guest_orders=guest_orders,
            subtotal_cents=subtotal,
            tax_cents=tax,
            total_cents=total,
            status="submitted",
        )

    with txn() as cur:
        updated = orders_repository.update_order_locked(cur, order_id, mutate)

    logger.info(
        "guest order submitted",
        extra={
            "extra_fields": safe_log_context(
                order_id=order_id,
                guest_id=guest_id,
                guests=len(updated.guest_orders),
                total_cents=updated.total_cents,
            )
        },
    )
    return updated


def ordering_status(order_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    """Whether guests may still order, with the cutoff and a reason if not."""
    with txn() as cur:
        order = orders_repository.get_order(cur, order_id)
    if order is None:
        raise NotFoundError("Lunch order not found", code="order_not_found")

    is_open, reason = ordering_window(order, now=now)
    return {
        "open": is_open,
        "cutoff_at": order.cutoff_at.isoformat() if order.cutoff_at else None,
        "reason": reason,
    }


def create_order(
    proposal_id: str,
    supplier_name: str,
    event_starts_at: datetime,
    party_size: int,
    *,
    special_requests: str | None = None,
    actor: Actor = Actor(ADMIN),
    settings: Settings | None = None,
) -> Order:
    """Open a draft order whose cutoff depends on the party size."""
    if party_size < 1:
        raise ValidationError("Party size must be at least 1", code="invalid_party_size")
    settings = settings or get_settings()
    cutoff_at = cutoff_for(
        event_starts_at,
        party_size,
        cutoff_hours=settings.order_cutoff_hours,
        large_group_cutoff_hours=settings.large_group_cutoff_hours,
        large_group_threshold=settings.large_group_threshold,
    )

    with txn() as cur:
        order = orders_repository.insert_order(
            cur,
            proposal_id=proposal_id,
            supplier_name=supplier_name,
            event_starts_at=event_starts_at,
            cutoff_at=cutoff_at,
            special_requests=special_requests,
        )
        _log(cur, order, "created", actor, party_size=party_size)
    return order


def _change_status(
    order_id: str,
    *,
    allowed: tuple[str, ...],
    action: str,
    apply,
    actor: Actor,
) -> Order:
    def mutate(cur: PgCursor, order: Order) -> Order:
        if order.status not in allowed:
            raise ConflictError(
                f"Order in status {order.status} cannot become {action}",
                code="invalid_transition",
                status=order.status,
            )
        updated = apply(order)
        _log(cur, order, action, actor, from_status=order.status)
        return updated

    with txn() as cur:
        return orders_repository.update_order_locked(cur, order_id, mutate)


def mark_sent_to_supplier(order_id: str, actor: Actor = Actor(ADMIN)) -> Order:
    """submitted -> sent_to_supplier; the supplier is notified after commit."""

    def apply(order: Order) -> Order:
        if not order.guest_orders:
            raise ConflictError("Order has no guest orders", code="empty_order")
        return replace(order, status="sent_to_supplier", sent_to_supplier_at=utc_now())

    order = _change_status(
        order_id,
        allowed=("submitted",),
        action="sent_to_supplier",
        apply=apply,
        actor=actor,
    )
    schedule_notification(
        "lunch_order_sent_to_supplier", aggregate_type="lunch_order", aggregate_id=order.id
    )
    return order


def confirm_order(
    order_id: str, reference: str | None = None, actor: Actor = Actor(ADMIN)
) -> Order:
    return _change_status(
        order_id,
        allowed=("sent_to_supplier",),
        action="confirmed",
        apply=lambda order: replace(
            order,
            status="confirmed",
            supplier_confirmed_at=utc_now(),
            supplier_reference=reference,
        ),
        actor=actor,
    )


def cancel_order(order_id: str, actor: Actor = Actor(ADMIN)) -> Order:
    return _change_status(
        order_id,
        allowed=("draft", "submitted", "sent_to_supplier", "confirmed"),
        action="cancelled",
        apply=lambda order: replace(order, status="cancelled"),
        actor=actor,
    )
