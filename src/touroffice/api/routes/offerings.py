"""Offering routes: discount preview and application."""

from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Path
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict

from touroffice.api.dependencies import get_admin_actor, get_gateway_registry
from touroffice.domain.actors import Actor
from touroffice.domain.discounts import DiscountResult, preview_or_apply_discount
from touroffice.domain.pricing import DiscountPreview
from touroffice.gateway.registry import GatewayRegistry

router = APIRouter(prefix="/offerings", tags=["offerings"])


class DiscountRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    discount_type: str
    # Dollars for flat discounts, percent for percentage discounts.
    discount_amount: Decimal
    confirmed: bool = False
    reason: str | None = None


def _preview_body(preview: DiscountPreview) -> dict[str, Any]:
    body = asdict(preview)
    body["discount"] = {
        "discount_type": preview.discount.discount_type,
        "value": str(preview.discount.value),
    }
    return body


def _result_body(result: DiscountResult) -> dict[str, Any]:
    message = f"Discount applied. {result.succeeded_count} refund(s) processed successfully"
    if result.failed_count:
        message += f", {result.failed_count} failed"
    return {
        "message": message + ".",
        "refunds_issued": [asdict(o) for o in result.outcomes],
        "succeeded": result.succeeded_count,
        "failed": result.failed_count,
        "skipped": result.skipped_count,
        "unpersisted": result.unpersisted_count,
        "unpaid_repriced": result.unpaid_repriced,
        "offering": result.offering,
        "preview": _preview_body(result.preview),
    }


@router.post("/{offering_id}/discount")
def apply_discount(
    body: DiscountRequest,
    offering_id: str = Path(...),
    actor: Actor = Depends(get_admin_actor),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> dict:
    outcome = preview_or_apply_discount(
        offering_id,
        body.discount_type,
        body.discount_amount,
        confirmed=body.confirmed,
        reason=body.reason,
        actor=actor,
        gateways=gateways,
    )
    if isinstance(outcome, DiscountPreview):
        return jsonable_encoder({"preview": _preview_body(outcome)})
    return jsonable_encoder(_result_body(outcome))
