"""Discount math for shared-tour offerings. Pure functions, no I/O.

Prices are per person in cents. A ticket's per-person price is the
offering's lunch price when it includes lunch, its base price otherwise.
Refunds for paid tickets are computed from what the customer actually paid
(the ticket's original per-person price), rounded per person first, then
multiplied by the ticket quantity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from touroffice.domain.errors import ValidationError
from touroffice.domain.money import dollars_to_cents, percent_of, to_decimal

FLAT = "flat"
PERCENTAGE = "percentage"
DISCOUNT_TYPES = (FLAT, PERCENTAGE)

_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class Discount:
    """A validated discount. ``value`` is dollars (flat) or percent."""

    discount_type: str
    value: Decimal

    @property
    def flat_cents(self) -> int:
        return dollars_to_cents(self.value)


def parse_discount(discount_type: Any, amount: Any) -> Discount:
    """Validate the request before anything else runs.

    Raises:
        ValidationError: Unknown type, non-positive amount or a percentage
            above 100.
    """
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError(
            'Invalid discount_type. Must be "flat" or "percentage"',
            code="invalid_discount_type",
        )
    try:
        value = to_decimal(amount)
    except ValueError as e:
        raise ValidationError(
            "discount_amount must be a positive number", code="invalid_discount_amount"
        ) from e
    if value <= 0:
        raise ValidationError(
            "discount_amount must be a positive number", code="invalid_discount_amount"
        )
    if discount_type == PERCENTAGE and value > _HUNDRED:
        raise ValidationError(
            "Percentage discount cannot exceed 100%", code="invalid_discount_amount"
        )
    if discount_type == FLAT and dollars_to_cents(value) == 0:
        raise ValidationError(
            "discount_amount is below one cent", code="invalid_discount_amount"
        )
    return Discount(discount_type=discount_type, value=value)


def discounted_price(price_cents: int, discount: Discount) -> int:
    """New per-person price, never below zero."""
    if discount.discount_type == FLAT:
        return max(0, price_cents - discount.flat_cents)
    return percent_of(price_cents, _HUNDRED - discount.value)


def refund_per_person(original_price_cents: int, discount: Discount) -> int:
    if discount.discount_type == FLAT:
        return discount.flat_cents
    return percent_of(original_price_cents, discount.value)


@dataclass(frozen=True)
class TicketPreview:
    ticket_id: str
    ticket_number: str
    quantity: int
    includes_lunch: bool
    original_paid_cents: int
    original_price_per_person_cents: int
    new_price_per_person_cents: int
    new_total_cents: int
    refund_amount_cents: int
    authorization_ref: str | None


@dataclass(frozen=True)
class DiscountPreview:
    discount: Discount
    original_base_price_cents: int
    new_base_price_cents: int
    original_lunch_price_cents: int
    new_lunch_price_cents: int
    tickets: list[TicketPreview] = field(default_factory=list)
    total_refund_cents: int = 0
    can_apply: bool = True
    warnings: list[str] = field(default_factory=list)


def build_preview(
    offering: dict[str, Any],
    tickets: list[dict[str, Any]],
    discount: Discount,
) -> DiscountPreview:
    """Compute new prices and per-ticket refunds for an offering."""
    base = offering["base_price_cents"]
    lunch = offering["lunch_price_cents"]
    new_base = discounted_price(base, discount)
    new_lunch = discounted_price(lunch, discount)

    previews: list[TicketPreview] = []
    warnings: list[str] = []
    for ticket in tickets:
        status = ticket["payment_status"]
        label = f"Ticket {ticket['ticket_number']} ({ticket['customer_name']})"
        if status == "unpaid":
            warnings.append(f"{label} is unpaid - will receive new price automatically")
            continue
        if status != "paid":
            continue

        quantity = ticket["quantity"]
        # A ticket repriced before keeps the price its customer paid.
        paid_per_person = (
            ticket.get("original_price_per_person_cents")
            or ticket["price_per_person_cents"]
        )
        new_per_person = new_lunch if ticket["includes_lunch"] else new_base
        refund = refund_per_person(paid_per_person, discount) * quantity
        if not ticket["payment_authorization_ref"]:
            warnings.append(
                f"{label} was paid but has no payment authorization - "
                "manual refund needed"
            )

        previews.append(
            TicketPreview(
                ticket_id=ticket["id"],
                ticket_number=ticket["ticket_number"],
                quantity=quantity,
                includes_lunch=ticket["includes_lunch"],
                original_paid_cents=ticket.get("original_total_cents")
                or ticket["total_cents"],
                original_price_per_person_cents=paid_per_person,
                new_price_per_person_cents=new_per_person,
                new_total_cents=new_per_person * quantity,
                refund_amount_cents=refund,
                authorization_ref=ticket["payment_authorization_ref"],
            )
        )

    return DiscountPreview(
        discount=discount,
        original_base_price_cents=base,
        new_base_price_cents=new_base,
        original_lunch_price_cents=lunch,
        new_lunch_price_cents=new_lunch,
        tickets=previews,
        total_refund_cents=sum(p.refund_amount_cents for p in previews),
        can_apply=True,
        warnings=warnings,
    )
