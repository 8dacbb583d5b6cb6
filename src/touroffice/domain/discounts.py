"""Discount application and per-ticket refunds for shared-tour offerings.

Apply runs in three phases:
1. claim: one transaction records the discount on the offering, guarded
   by ``discount_type IS NULL`` so a second apply can never refund twice;
2. refunds: for each paid ticket a ``pending`` marker is committed, then
   one gateway call is made outside any transaction with its own
   idempotency key;
3. bookkeeping: each ticket outcome is written in its own short
   transaction, then unpaid tickets are repriced.

A refund that fails is an outcome, not an exception: the caller gets the
per-ticket list and counts. A database error while writing one ticket's
outcome is reported on that outcome (``persisted=False``) and the run
continues; the ticket keeps its ``pending`` marker and activity row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

import psycopg2

from touroffice.domain.actors import Actor
from touroffice.domain.errors import (
    ConflictError,
    GatewayConfigurationError,
    GatewayError,
    NotFoundError,
)
from touroffice.domain.pricing import (
    Discount,
    DiscountPreview,
    TicketPreview,
    build_preview,
    parse_discount,
)
from touroffice.gateway.client import PaymentGateway
from touroffice.gateway.registry import GatewayRegistry
from touroffice.infra.db import txn
from touroffice.infra.repositories import (
    activity_repository,
    offerings_repository,
    payments_repository,
)
from touroffice.notifications import schedule_notification
from touroffice.observability.logging import get_logger, log_event
from touroffice.observability.redaction import mask_reference, safe_log_context

logger = get_logger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"

NO_AUTHORIZATION_ERROR = "No payment authorization on file - manual refund needed"
PENDING_NOT_RECORDED_ERROR = "Refund not attempted - could not record pending refund"


@dataclass(frozen=True)
class RefundOutcome:
    ticket_id: str
    ticket_number: str
    amount_cents: int
    status: str
    refund_id: str | None = None
    error: str | None = None
    # False when the outcome could not be written; the ticket stays pending.
    persisted: bool = True


@dataclass(frozen=True)
class DiscountResult:
    preview: DiscountPreview
    offering: dict[str, Any]
    outcomes: list[RefundOutcome] = field(default_factory=list)
    unpaid_repriced: int = 0

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def succeeded_count(self) -> int:
        return self._count(SUCCEEDED)

    @property
    def failed_count(self) -> int:
        return self._count(FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(SKIPPED)

    @property
    def unpersisted_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.persisted)


def refund_idempotency_key(offering_id: str, ticket_id: str) -> str:
    return f"discount:{offering_id}:ticket:{ticket_id}"


def _load(offering_id: str) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    with txn() as cur:
        offering = offerings_repository.get_offering(cur, offering_id)
        if offering is None:
            raise NotFoundError("Offering not found", code="offering_not_found")
        if offering["discount_type"] is not None:
            raise _already_applied()
        tickets = offerings_repository.list_active_tickets(cur, offering_id)
    return offering, tickets


def _already_applied() -> ConflictError:
    return ConflictError(
        "A discount has already been applied to this offering",
        code="discount_already_applied",
    )


def _claim(
    offering_id: str,
    preview: DiscountPreview,
    *,
    reason: str | None,
    actor: Actor,
) -> None:
    discount = preview.discount
    with txn() as cur:
        if not offerings_repository.claim_discount(
            cur,
            offering_id,
            discount_type=discount.discount_type,
            discount_value=discount.value,
            reason=reason,
            applied_by=actor.ref,
            new_base_price_cents=preview.new_base_price_cents,
            new_lunch_price_cents=preview.new_lunch_price_cents,
        ):
            raise _already_applied()
        activity_repository.log_activity(
            cur,
            aggregate_type="offering",
            aggregate_id=offering_id,
            action="discount_applied",
            actor_type=actor.actor_type,
            actor_ref=actor.ref,
            payload={
                "discount_type": discount.discount_type,
                "discount_value": str(discount.value),
                "total_refund_cents": preview.total_refund_cents,
                "tickets": len(preview.tickets),
            },
        )


def _refund_one(
    gateway: PaymentGateway,
    offering_id: str,
    ticket: TicketPreview,
    discount: Discount,
    reason: str | None,
) -> RefundOutcome:
    refund = gateway.create_refund(
        ticket.authorization_ref,
        amount_cents=ticket.refund_amount_cents,
        metadata={
            "type": "offering_discount",
            "offering_id": offering_id,
            "ticket_id": ticket.ticket_id,
            "discount_type": discount.discount_type,
            "discount_value": str(discount.value),
            "discount_reason": reason or "",
        },
        idempotency_key=refund_idempotency_key(offering_id, ticket.ticket_id),
    )
    return RefundOutcome(
        ticket_id=ticket.ticket_id,
        ticket_number=ticket.ticket_number,
        amount_cents=ticket.refund_amount_cents,
        status=SUCCEEDED,
        refund_id=refund.refund_id,
    )


def _persist_outcome(
    offering: dict[str, Any],
    ticket: TicketPreview,
    outcome: RefundOutcome,
    actor: Actor,
) -> None:
    succeeded = outcome.status == SUCCEEDED
    with txn() as cur:
        offerings_repository.record_ticket_refund(
            cur,
            ticket.ticket_id,
            new_price_per_person_cents=ticket.new_price_per_person_cents,
            new_total_cents=ticket.new_total_cents,
            refund_amount_cents=outcome.amount_cents,
            refund_id=outcome.refund_id,
            refund_status=outcome.status,
            refund_error=outcome.error,
            succeeded=succeeded,
        )
        if succeeded:
            payments_repository.insert_payment(
                cur,
                ticket_id=ticket.ticket_id,
                provider_ref=outcome.refund_id,
                payment_type="refund",
                amount_cents=outcome.amount_cents,
                currency=offering["currency"],
            )
        activity_repository.log_activity(
            cur,
            aggregate_type="ticket",
            aggregate_id=ticket.ticket_id,
            action=f"discount_refund_{outcome.status}",
            actor_type=actor.actor_type,
            actor_ref=actor.ref,
            payload={
                "offering_id": offering["id"],
                "amount_cents": outcome.amount_cents,
                "refund_id": outcome.refund_id,
                "error": outcome.error,
            },
        )


def _failed(ticket: TicketPreview, error: str) -> RefundOutcome:
    return RefundOutcome(
        ticket_id=ticket.ticket_id,
        ticket_number=ticket.ticket_number,
        amount_cents=ticket.refund_amount_cents,
        status=FAILED,
        error=error,
    )


def _mark_pending(offering: dict[str, Any], ticket: TicketPreview, actor: Actor) -> bool:
    """Write the pending marker for one ticket; False if it could not be written.

    No gateway call is made for a ticket without the marker.
    """
    try:
        with txn() as cur:
            offerings_repository.mark_refund_pending(cur, ticket.ticket_id)
            activity_repository.log_activity(
                cur,
                aggregate_type="ticket",
                aggregate_id=ticket.ticket_id,
                action="discount_refund_pending",
                actor_type=actor.actor_type,
                actor_ref=actor.ref,
                payload={
                    "offering_id": offering["id"],
                    "amount_cents": ticket.refund_amount_cents,
                    "idempotency_key": refund_idempotency_key(
                        offering["id"], ticket.ticket_id
                    ),
                },
            )
    except psycopg2.Error:
        logger.exception(
            "discount refund not attempted: pending marker not written",
            extra={
                "extra_fields": safe_log_context(
                    offering_id=offering["id"], ticket_id=ticket.ticket_id
                )
            },
        )
        return False
    return True


def _record(
    offering: dict[str, Any],
    ticket: TicketPreview,
    outcome: RefundOutcome,
    actor: Actor,
) -> RefundOutcome:
    """Persist an outcome; on failure return it flagged as not persisted.

    The ticket then stays ``pending`` and the refund id is still reported
    to the caller.
    """
    try:
        _persist_outcome(offering, ticket, outcome, actor)
    except psycopg2.Error:
        logger.exception(
            "discount refund outcome not persisted",
            extra={
                "extra_fields": safe_log_context(
                    offering_id=offering["id"],
                    ticket_id=ticket.ticket_id,
                    status=outcome.status,
                    refund_id=mask_reference(outcome.refund_id),
                )
            },
        )
        return replace(outcome, persisted=False)
    return outcome


def _issue_refunds(
    offering: dict[str, Any],
    preview: DiscountPreview,
    gateway: PaymentGateway | None,
    *,
    reason: str | None,
    actor: Actor,
) -> list[RefundOutcome]:
    outcomes: list[RefundOutcome] = []
    # Set once the gateway rejects our credentials; every later call would too.
    stop_error: GatewayConfigurationError | None = None

    for ticket in preview.tickets:
        if not ticket.authorization_ref:
            outcome = RefundOutcome(
                ticket_id=ticket.ticket_id,
                ticket_number=ticket.ticket_number,
                amount_cents=ticket.refund_amount_cents,
                status=SKIPPED,
                error=NO_AUTHORIZATION_ERROR,
            )
        elif stop_error is not None:
            outcome = _failed(ticket, stop_error.message)
        elif not _mark_pending(offering, ticket, actor):
            outcome = _failed(ticket, PENDING_NOT_RECORDED_ERROR)
        else:
            try:
                outcome = _refund_one(
                    gateway, offering["id"], ticket, preview.discount, reason
                )
            except GatewayConfigurationError as e:
                stop_error = e
                outcome = _failed(ticket, e.message)
            except GatewayError as e:
                outcome = _failed(ticket, e.message)

        if outcome.status == FAILED:
            log_event(
                logger,
                logging.ERROR,
                "discount refund failed",
                offering_id=offering["id"],
                ticket_id=ticket.ticket_id,
                amount_cents=outcome.amount_cents,
                error=outcome.error,
            )
        else:
            log_event(
                logger,
                logging.INFO,
                "discount refund outcome",
                offering_id=offering["id"],
                ticket_id=ticket.ticket_id,
                amount_cents=outcome.amount_cents,
                status=outcome.status,
                refund_id=mask_reference(outcome.refund_id),
            )

        outcomes.append(_record(offering, ticket, outcome, actor))

    return outcomes


def preview_or_apply_discount(
    offering_id: str,
    discount_type: str,
    amount: Any,
    confirmed: bool = False,
    reason: str | None = None,
    *,
    actor: Actor,
    gateways: GatewayRegistry | None = None,
) -> DiscountPreview | DiscountResult:
    """Preview a discount, or apply it and refund paid tickets.

    Raises:
        ValidationError: Bad type or amount (before any database access).
        NotFoundError: offering_not_found.
        ConflictError: discount_already_applied (nothing is refunded).
        GatewayConfigurationError: No gateway configured for the brand while
            refunds are due (raised before the discount is recorded).
    """
    discount = parse_discount(discount_type, amount)
    offering, tickets = _load(offering_id)
    preview = build_preview(offering, tickets, discount)
    if not confirmed:
        return preview

    gateway = None
    if any(t.authorization_ref for t in preview.tickets):
        gateway = (gateways or GatewayRegistry()).for_brand(offering["brand"])

    _claim(offering["id"], preview, reason=reason, actor=actor)
    outcomes = _issue_refunds(offering, preview, gateway, reason=reason, actor=actor)

    with txn() as cur:
        repriced = offerings_repository.reprice_unpaid_tickets(
            cur,
            offering["id"],
            base_price_cents=preview.new_base_price_cents,
            lunch_price_cents=preview.new_lunch_price_cents,
        )
        updated = offerings_repository.get_offering(cur, offering["id"])

    result = DiscountResult(
        preview=preview,
        offering=updated,
        outcomes=outcomes,
        unpaid_repriced=repriced,
    )
    logger.info(
        "discount applied",
        extra={
            "extra_fields": safe_log_context(
                offering_id=offering["id"],
                succeeded=result.succeeded_count,
                failed=result.failed_count,
                skipped=result.skipped_count,
                unpersisted=result.unpersisted_count,
            )
        },
    )
    schedule_notification(
        "discount_applied",
        aggregate_type="offering",
        aggregate_id=offering["id"],
        data={"failed": result.failed_count},
    )
    return result
