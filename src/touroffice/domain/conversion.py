"""Payment confirmation and proposal -> booking conversion.

Conversion must happen at most once per proposal no matter how many
clients, retries and webhook deliveries confirm the same payment. The
mutex is proposals_repository.claim_conversion: a single conditional
UPDATE on ``converted = false``. Whoever changes the row creates the
booking in the same transaction; everyone else returns the booking the
winner created.

Gateway calls always happen before the transaction opens, so no row lock
is ever held while waiting on the network.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from touroffice.config import Settings, get_settings
from touroffice.domain.actors import SYSTEM, Actor
from touroffice.domain.errors import ConflictError, NotFoundError, ValidationError
from touroffice.gateway.client import Authorization
from touroffice.gateway.registry import GatewayRegistry
from touroffice.gateway.webhook import GatewayEvent
from touroffice.infra.db import txn
from touroffice.infra.repositories import (
    activity_repository,
    bookings_repository,
    payments_repository,
    proposals_repository,
)
from touroffice.infra.time import utc_now
from touroffice.notifications import schedule_notification
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import mask_reference, safe_log_context

logger = get_logger(__name__)

PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"


@dataclass(frozen=True)
class ConfirmationResult:
    booking_id: str
    booking_number: str
    already_converted: bool


def _load_proposal(cur: PgCursor, proposal_ref: str) -> dict[str, Any]:
    proposal = proposals_repository.get_proposal(cur, proposal_ref)
    if proposal is None:
        raise NotFoundError("Proposal not found", code="proposal_not_found")
    return proposal


def _existing_result(cur: PgCursor, proposal_id: str) -> ConfirmationResult:
    booking = bookings_repository.get_booking_by_proposal(cur, proposal_id)
    if booking is None:
        # converted=true is only ever committed together with the booking.
        raise ConflictError(
            "Proposal is converted but has no booking", code="conversion_incomplete"
        )
    return ConfirmationResult(
        booking_id=booking["id"],
        booking_number=booking["booking_number"],
        already_converted=True,
    )


def _require_accepted(proposal: dict[str, Any]) -> None:
    if proposal["status"] != "accepted":
        raise ConflictError(
            f"Proposal must be accepted (status is {proposal['status']})",
            code="proposal_not_accepted",
            status=proposal["status"],
        )


def _verify_authorization(
    authorization: Authorization, *, metadata_key: str, expected_id: str
) -> None:
    if not authorization.succeeded:
        raise ConflictError(
            "Payment has not succeeded",
            code="payment_not_succeeded",
            payment_status=authorization.status,
        )
    if authorization.metadata.get(metadata_key) != expected_id:
        raise ValidationError(
            "Payment does not belong to this record",
            code="authorization_mismatch",
        )


def _convert(
    cur: PgCursor,
    proposal: dict[str, Any],
    *,
    actor: Actor,
    settings: Settings,
    authorization: Authorization | None,
) -> ConfirmationResult | None:
    """Claim and convert inside the caller's transaction.

    Returns None when the claim missed (already converted or no longer
    accepted); nothing has been written in that case.
    """
    deposit_paid = authorization is not None
    if not proposals_repository.claim_conversion(
        cur,
        proposal["id"],
        deposit_paid=deposit_paid,
        authorization_ref=authorization.ref if authorization else None,
    ):
        return None

    deposit_paid_cents = authorization.amount_cents if authorization else 0
    booking_number = bookings_repository.next_booking_number(
        cur, prefix=settings.booking_number_prefix, year=utc_now().year
    )
    booking_id = bookings_repository.insert_booking(
        cur,
        booking_number=booking_number,
        proposal=proposal,
        deposit_paid_cents=deposit_paid_cents,
        deposit_paid=deposit_paid,
    )
    if authorization is not None:
        payments_repository.insert_payment(
            cur,
            proposal_id=proposal["id"],
            booking_id=booking_id,
            provider_ref=authorization.ref,
            payment_type="deposit",
            amount_cents=authorization.amount_cents,
            currency=authorization.currency or proposal["currency"],
        )
    proposals_repository.finish_conversion(cur, proposal["id"], booking_id=booking_id)

    activity_repository.log_activity(
        cur,
        aggregate_type="proposal",
        aggregate_id=proposal["id"],
        action="payment_confirmed" if deposit_paid else "converted_without_deposit",
        actor_type=actor.actor_type,
        actor_ref=actor.ref,
        payload={
            "booking_id": booking_id,
            "booking_number": booking_number,
            "deposit_paid_cents": deposit_paid_cents,
        },
    )
    return ConfirmationResult(
        booking_id=booking_id,
        booking_number=booking_number,
        already_converted=False,
    )


def _after_conversion(proposal_id: str, result: ConfirmationResult) -> None:
    logger.info(
        "proposal converted",
        extra={
            "extra_fields": safe_log_context(
                proposal_id=proposal_id,
                booking_id=result.booking_id,
                booking_number=result.booking_number,
            )
        },
    )
    schedule_notification(
        "booking_confirmed",
        aggregate_type="booking",
        aggregate_id=result.booking_id,
        data={"proposal_id": proposal_id},
    )


def _claim_missed(cur: PgCursor, proposal_id: str) -> ConfirmationResult:
    current = _load_proposal(cur, proposal_id)
    if current["converted"]:
        return _existing_result(cur, proposal_id)
    _require_accepted(current)
    raise ConflictError("Conversion claim failed", code="conversion_conflict")


def confirm_payment(
    proposal_ref: str,
    authorization_ref: str,
    *,
    gateways: GatewayRegistry | None = None,
    actor: Actor = SYSTEM,
    settings: Settings | None = None,
) -> ConfirmationResult:
    """Confirm the deposit payment and convert the proposal into a booking.

    Safe to call any number of times, concurrently: exactly one call
    creates the booking, every other one returns it with
    ``already_converted=True``.

    Raises:
        NotFoundError: proposal_not_found.
        ConflictError: proposal_not_accepted, payment_not_succeeded.
        ValidationError: authorization_mismatch.
        GatewayError: Gateway lookup failed (retryable ones may be retried).
    """
    settings = settings or get_settings()

    with txn() as cur:
        proposal = _load_proposal(cur, proposal_ref)
        if proposal["converted"]:
            return _existing_result(cur, proposal["id"])
    _require_accepted(proposal)

    gateway = (gateways or GatewayRegistry(settings)).for_brand(proposal["brand"])
    authorization = gateway.get_authorization(authorization_ref)
    _verify_authorization(
        authorization, metadata_key="proposal_id", expected_id=proposal["id"]
    )

    with txn() as cur:
        result = _convert(
            cur, proposal, actor=actor, settings=settings, authorization=authorization
        )
        if result is None:
            return _claim_missed(cur, proposal["id"])

    _after_conversion(proposal["id"], result)
    return result


def convert_without_deposit(
    proposal_ref: str,
    actor: Actor,
    *,
    settings: Settings | None = None,
) -> ConfirmationResult:
    """Convert an accepted proposal flagged to skip the deposit."""
    settings = settings or get_settings()

    with txn() as cur:
        proposal = _load_proposal(cur, proposal_ref)
        if proposal["converted"]:
            return _existing_result(cur, proposal["id"])
        _require_accepted(proposal)
        if not proposal["skip_deposit_on_accept"]:
            raise ConflictError(
                "Proposal requires a deposit", code="deposit_required"
            )
        result = _convert(
            cur, proposal, actor=actor, settings=settings, authorization=None
        )
        if result is None:
            return _claim_missed(cur, proposal["id"])

    _after_conversion(proposal["id"], result)
    return result


def create_deposit_authorization(
    proposal_ref: str,
    *,
    gateways: GatewayRegistry | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Create (or fetch, by idempotency key) the deposit PaymentIntent."""
    settings = settings or get_settings()

    with txn() as cur:
        proposal = _load_proposal(cur, proposal_ref)
    if proposal["converted"]:
        raise ConflictError("Proposal is already converted", code="already_converted")
    _require_accepted(proposal)
    if proposal["skip_deposit_on_accept"] or proposal["deposit_amount_cents"] <= 0:
        raise ConflictError("Proposal does not require a deposit", code="deposit_not_required")

    gateway = (gateways or GatewayRegistry(settings)).for_brand(proposal["brand"])
    authorization = gateway.create_authorization(
        amount_cents=proposal["deposit_amount_cents"],
        currency=proposal["currency"] or settings.default_currency,
        metadata={
            "proposal_id": proposal["id"],
            "proposal_number": proposal["proposal_number"],
            "payment_type": "deposit",
        },
        idempotency_key=f"proposal:{proposal['id']}:deposit",
    )

    with txn() as cur:
        proposals_repository.set_payment_authorization_ref(
            cur, proposal["id"], authorization.ref
        )

    return {
        "authorization_ref": authorization.ref,
        "client_secret": authorization.client_secret,
        "amount_cents": authorization.amount_cents,
        "currency": authorization.currency,
    }


def record_final_payment(
    booking_ref: str,
    authorization_ref: str,
    *,
    gateways: GatewayRegistry | None = None,
    actor: Actor = SYSTEM,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Record the final balance payment of a booking (idempotent)."""
    settings = settings or get_settings()

    with txn() as cur:
        booking = bookings_repository.get_booking(cur, booking_ref)
    if booking is None:
        raise NotFoundError("Booking not found", code="booking_not_found")

    gateway = (gateways or GatewayRegistry(settings)).for_brand(booking["brand"])
    authorization = gateway.get_authorization(authorization_ref)
    _verify_authorization(
        authorization, metadata_key="booking_id", expected_id=booking["id"]
    )

    with txn() as cur:
        recorded = bookings_repository.mark_final_payment_paid(cur, booking["id"]) == 1
        if recorded:
            payments_repository.insert_payment(
                cur,
                proposal_id=booking["proposal_id"],
                booking_id=booking["id"],
                provider_ref=authorization.ref,
                payment_type="final",
                amount_cents=authorization.amount_cents,
                currency=authorization.currency or booking["currency"],
            )
            activity_repository.log_activity(
                cur,
                aggregate_type="booking",
                aggregate_id=booking["id"],
                action="final_payment_recorded",
                actor_type=actor.actor_type,
                actor_ref=actor.ref,
                payload={"amount_cents": authorization.amount_cents},
            )

    if recorded:
        schedule_notification(
            "final_payment_received", aggregate_type="booking", aggregate_id=booking["id"]
        )
    return {
        "booking_id": booking["id"],
        "booking_number": booking["booking_number"],
        "already_recorded": not recorded,
    }


def handle_gateway_event(
    event: GatewayEvent,
    *,
    gateways: GatewayRegistry | None = None,
) -> dict[str, Any]:
    """Route a verified webhook event to the matching confirmation."""
    fields = safe_log_context(
        event_id=event.event_id,
        event_type=event.event_type,
        authorization_ref=mask_reference(event.object_id),
    )
    payment_type = event.metadata.get("payment_type")

    if event.event_type != PAYMENT_SUCCEEDED_EVENT or not event.object_id:
        logger.info("gateway event ignored", extra={"extra_fields": fields})
        return {"status": "ignored"}

    if payment_type == "deposit" and event.metadata.get("proposal_id"):
        result = confirm_payment(
            event.metadata["proposal_id"], event.object_id, gateways=gateways
        )
        logger.info("deposit event processed", extra={"extra_fields": fields})
        return {
            "status": "already_converted" if result.already_converted else "converted",
            "booking_id": result.booking_id,
            "booking_number": result.booking_number,
        }

    if payment_type == "final" and event.metadata.get("booking_id"):
        outcome = record_final_payment(
            event.metadata["booking_id"], event.object_id, gateways=gateways
        )
        logger.info("final payment event processed", extra={"extra_fields": fields})
        return {
            "status": "already_recorded" if outcome["already_recorded"] else "recorded",
            "booking_id": outcome["booking_id"],
        }

    logger.info(
        "gateway event without routable metadata",
        extra={"extra_fields": {**fields, "payment_type": str(payment_type)}},
    )
    return {"status": "ignored"}
