"""Guest order aggregate.

A lunch Order holds one GuestOrder per guest inside a single record. This
module is pure: parsing the stored list, merging a new submission (last
write wins per guest), repricing from the menu and deriving totals.
Locking and persistence live in the orders repository.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

from touroffice.domain.errors import ValidationError
from touroffice.domain.money import round_cents
from touroffice.infra.time import is_past

OPEN_STATUSES = ("draft", "submitted")
MAX_ITEM_QUANTITY = 10


@dataclass(frozen=True)
class OrderItem:
    item_id: str
    quantity: int
    unit_price_cents: int = 0
    name: str | None = None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class GuestOrder:
    guest_id: str
    items: tuple[OrderItem, ...]
    guest_name: str | None = None
    notes: str | None = None
    submitted_at: str | None = None

    @property
    def subtotal_cents(self) -> int:
        return sum(item.line_total_cents for item in self.items)


@dataclass(frozen=True)
class Order:
    id: str
    proposal_id: str
    supplier_name: str | None
    status: str
    cutoff_at: datetime | None
    event_starts_at: datetime | None
    guest_orders: list[GuestOrder] = field(default_factory=list)
    special_requests: str | None = None
    subtotal_cents: int = 0
    tax_cents: int = 0
    total_cents: int = 0
    sent_to_supplier_at: datetime | None = None
    supplier_confirmed_at: datetime | None = None
    supplier_reference: str | None = None


def _parse_item(raw: dict[str, Any]) -> OrderItem:
    return OrderItem(
        item_id=str(raw.get("item_id")),
        quantity=int(raw.get("quantity", 0)),
        unit_price_cents=int(raw.get("unit_price_cents", 0)),
        name=raw.get("name"),
    )


def parse_guest_orders(raw: Any) -> list[GuestOrder]:
    """Decode the stored guest order list.

    Accepts what the column may hold: None, a decoded list, or JSON text
    (rows written by older clients stored a string).
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw)
    if not isinstance(raw, list):
        raise ValueError("guest_orders must be a list")

    return [
        GuestOrder(
            guest_id=str(entry["guest_id"]),
            guest_name=entry.get("guest_name"),
            items=tuple(_parse_item(item) for item in entry.get("items") or []),
            notes=entry.get("notes"),
            submitted_at=entry.get("submitted_at"),
        )
        for entry in raw
    ]


def serialize_guest_orders(guest_orders: Iterable[GuestOrder]) -> list[dict[str, Any]]:
    return [
        {
            "guest_id": g.guest_id,
            "guest_name": g.guest_name,
            "items": [
                {
                    "item_id": i.item_id,
                    "name": i.name,
                    "quantity": i.quantity,
                    "unit_price_cents": i.unit_price_cents,
                }
                for i in g.items
            ],
            "notes": g.notes,
            "submitted_at": g.submitted_at,
        }
        for g in guest_orders
    ]


def validate_submission(items: Any) -> tuple[OrderItem, ...]:
    """Check a guest's submitted items before any transaction opens.

    Raises:
        ValidationError: Empty list, blank item id, quantity outside
            1..10 or a duplicated item id.
    """
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("At least one item is required", code="empty_order")

    parsed = []
    seen: set[str] = set()
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object")
        item_id = str(raw.get("item_id") or "").strip()
        if not item_id:
            raise ValidationError("Item id is required", code="invalid_item")
        quantity = raw.get("quantity")
        if (
            isinstance(quantity, bool)
            or not isinstance(quantity, int)
            or not 1 <= quantity <= MAX_ITEM_QUANTITY
        ):
            raise ValidationError(
                f"Quantity must be an integer between 1 and {MAX_ITEM_QUANTITY}",
                code="invalid_quantity",
                item_id=item_id,
            )
        if item_id in seen:
            raise ValidationError(
                "Item listed more than once", code="duplicate_item", item_id=item_id
            )
        seen.add(item_id)
        parsed.append(OrderItem(item_id=item_id, quantity=quantity))
    return tuple(parsed)


def merge_guest_order(
    guest_orders: list[GuestOrder], submission: GuestOrder
) -> list[GuestOrder]:
    """Drop the guest's previous entry and append the new one."""
    kept = [g for g in guest_orders if g.guest_id != submission.guest_id]
    kept.append(submission)
    return kept


def reprice(
    guest_orders: list[GuestOrder],
    prices: dict[str, int],
    *,
    submitting_guest_id: str,
    names: dict[str, str] | None = None,
) -> list[GuestOrder]:
    """Apply current menu prices (and display names) to every item.

    Raises:
        ValidationError: If the submitting guest ordered an item not on the
            menu. Other guests' items that left the menu keep their stored
            price.
    """
    names = names or {}
    repriced = []
    for guest in guest_orders:
        items = []
        for item in guest.items:
            price = prices.get(item.item_id)
            if price is None:
                if guest.guest_id == submitting_guest_id:
                    raise ValidationError(
                        "Item is not on the menu",
                        code="unknown_item",
                        item_id=item.item_id,
                    )
                items.append(item)
            else:
                items.append(replace(
                    item,
                    unit_price_cents=price,
                    name=names.get(item.item_id, item.name),
                ))
        repriced.append(replace(guest, items=tuple(items)))
    return repriced


def compute_totals(
    guest_orders: Iterable[GuestOrder], tax_rate: Decimal
) -> tuple[int, int, int]:
    """Return (subtotal, tax, total) in cents; tax is rounded half-up."""
    subtotal = sum(g.subtotal_cents for g in guest_orders)
    tax = round_cents(Decimal(subtotal) * tax_rate)
    return subtotal, tax, subtotal + tax


def ordering_window(order: Order, *, now: datetime | None = None) -> tuple[bool, str | None]:
    """Whether guests may still submit, and why not."""
    if order.status not in OPEN_STATUSES:
        return False, f'Order is in "{order.status}" status'
    if is_past(order.cutoff_at, now=now):
        return False, "The ordering deadline has passed"
    if is_past(order.event_starts_at, now=now):
        return False, "The event has already started"
    return True, None


def cutoff_for(
    event_starts_at: datetime,
    party_size: int,
    *,
    cutoff_hours: int,
    large_group_cutoff_hours: int,
    large_group_threshold: int,
) -> datetime:
    """Ordering deadline: earlier for large parties."""
    hours = large_group_cutoff_hours if party_size >= large_group_threshold else cutoff_hours
    return event_starts_at - timedelta(hours=hours)
