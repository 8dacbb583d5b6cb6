"""Lunch order routes: guest submissions and supplier lifecycle."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Path
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field

from touroffice.api.dependencies import get_admin_actor
from touroffice.domain import lunch_orders
from touroffice.domain.actors import Actor
from touroffice.domain.guest_orders import Order

router = APIRouter(prefix="/lunch-orders", tags=["lunch-orders"])


class GuestItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    item_id: str
    quantity: int


class GuestOrderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[GuestItem]
    notes: str | None = Field(default=None, max_length=500)


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    proposal_id: str
    supplier_name: str
    event_starts_at: datetime
    party_size: int
    special_requests: str | None = None


class ConfirmOrderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    supplier_reference: str | None = None


def _order_body(order: Order) -> dict[str, Any]:
    return jsonable_encoder(asdict(order))


@router.post("")
def create_order(
    body: CreateOrderRequest,
    actor: Actor = Depends(get_admin_actor),
) -> dict:
    order = lunch_orders.create_order(
        body.proposal_id,
        body.supplier_name,
        body.event_starts_at,
        body.party_size,
        special_requests=body.special_requests,
        actor=actor,
    )
    return _order_body(order)


@router.post("/{order_id}/guests/{guest_id}")
def submit_guest_order(
    body: GuestOrderRequest,
    order_id: str = Path(...),
    guest_id: str = Path(...),
) -> dict:
    # Range checks happen in the domain so direct callers get them too.
    order = lunch_orders.submit_guest_order(
        order_id,
        guest_id,
        [item.model_dump() for item in body.items],
        notes=body.notes,
    )
    return _order_body(order)


@router.get("/{order_id}/ordering-status")
def ordering_status(order_id: str = Path(...)) -> dict:
    return lunch_orders.ordering_status(order_id)


@router.post("/{order_id}/actions/send-to-supplier")
def send_to_supplier(
    order_id: str = Path(...),
    actor: Actor = Depends(get_admin_actor),
) -> dict:
    return _order_body(lunch_orders.mark_sent_to_supplier(order_id, actor))


@router.post("/{order_id}/actions/confirm")
def confirm_order(
    body: ConfirmOrderRequest,
    order_id: str = Path(...),
    actor: Actor = Depends(get_admin_actor),
) -> dict:
    return _order_body(lunch_orders.confirm_order(order_id, body.supplier_reference, actor))


@router.post("/{order_id}/actions/cancel")
def cancel_order(
    order_id: str = Path(...),
    actor: Actor = Depends(get_admin_actor),
) -> dict:
    return _order_body(lunch_orders.cancel_order(order_id, actor))
