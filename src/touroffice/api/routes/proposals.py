"""Proposal routes: customer actions, deposit payment and conversion."""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Path, Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field

from touroffice.api.dependencies import get_admin_actor, get_gateway_registry
from touroffice.domain import conversion, proposals
from touroffice.domain.actors import CUSTOMER, Actor
from touroffice.gateway.registry import GatewayRegistry

router = APIRouter(prefix="/proposals", tags=["proposals"])

# Contact snapshot and signature stay out of API responses.
_HIDDEN_FIELDS = {"customer_email", "customer_phone", "accepted_ip"}


class AcceptRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actor_type: Literal["customer", "admin"] = "customer"
    actor_ref: str | None = None
    signature: dict[str, Any] | None = None


class DeclineRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str
    reason: str
    desired_changes: str | None = None


class ConfirmPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_authorization_ref: str = Field(min_length=1)


def _public(proposal: dict[str, Any]) -> dict[str, Any]:
    return jsonable_encoder(
        {k: v for k, v in proposal.items() if k not in _HIDDEN_FIELDS}
    )


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.get("/{proposal_ref}")
def get_proposal(proposal_ref: str = Path(...)) -> dict:
    return _public(proposals.get_proposal(proposal_ref))


@router.post("/{proposal_ref}/actions/send")
def send_proposal(
    proposal_ref: str = Path(...),
    actor: Actor = Depends(get_admin_actor),
) -> dict:
    return _public(proposals.mark_sent(proposal_ref, actor))


@router.post("/{proposal_ref}/actions/view")
def view_proposal(proposal_ref: str = Path(...)) -> dict:
    return _public(proposals.record_view(proposal_ref))


@router.post("/{proposal_ref}/actions/accept")
def accept_proposal(
    body: AcceptRequest,
    request: Request,
    proposal_ref: str = Path(...),
) -> dict:
    result = proposals.accept_proposal(
        proposal_ref,
        Actor(body.actor_type, body.actor_ref),
        signature=body.signature,
        ip_address=_client_ip(request),
    )
    return {
        "proposal": _public(result.proposal),
        "deposit_required": result.deposit_required,
    }


@router.post("/{proposal_ref}/actions/decline")
def decline_proposal(body: DeclineRequest, proposal_ref: str = Path(...)) -> dict:
    declined = proposals.decline_proposal(
        proposal_ref,
        body.category,
        body.reason,
        desired_changes=body.desired_changes,
        actor=Actor(CUSTOMER),
    )
    return _public(declined)


@router.post("/{proposal_ref}/payments/deposit")
def create_deposit_payment(
    proposal_ref: str = Path(...),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> dict:
    return conversion.create_deposit_authorization(proposal_ref, gateways=gateways)


@router.post("/{proposal_ref}/actions/confirm-payment")
def confirm_payment(
    body: ConfirmPaymentRequest,
    proposal_ref: str = Path(...),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> dict:
    result = conversion.confirm_payment(
        proposal_ref,
        body.payment_authorization_ref,
        gateways=gateways,
        actor=Actor(CUSTOMER),
    )
    return {
        "booking_id": result.booking_id,
        "booking_number": result.booking_number,
        "already_converted": result.already_converted,
    }


@router.post("/{proposal_ref}/actions/convert-without-deposit")
def convert_without_deposit(
    proposal_ref: str = Path(...),
    actor: Actor = Depends(get_admin_actor),
) -> dict:
    result = conversion.convert_without_deposit(proposal_ref, actor)
    return {
        "booking_id": result.booking_id,
        "booking_number": result.booking_number,
        "already_converted": result.already_converted,
    }
