"""Proposal lifecycle.

States: draft -> sent -> viewed -> accepted -> converted, with declined and
expired as the other terminal states. Conversion happens only in
touroffice.domain.conversion.

Every transition is a guarded UPDATE (``WHERE status = <expected>``) plus
one activity row in the same transaction. A guard miss means someone
else moved the proposal first and surfaces as a ConflictError carrying the
current status.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from touroffice.domain.actors import CUSTOMER, SYSTEM, Actor
from touroffice.domain.errors import ConflictError, NotFoundError, ValidationError
from touroffice.infra.db import txn
from touroffice.infra.repositories import activity_repository, proposals_repository
from touroffice.infra.time import is_past
from touroffice.notifications import schedule_notification
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Accepted proposals wait for payment and never expire by time.
LAZY_EXPIRY_STATUSES = ("draft", "sent", "viewed")

SENDABLE_STATUSES = ("draft", "viewed")
RESPONDABLE_STATUSES = ("sent", "viewed")

DECLINE_CATEGORIES = frozenset({
    "price",
    "dates",
    "itinerary",
    "group_size",
    "chose_another_provider",
    "other",
})
MIN_DECLINE_REASON_LENGTH = 10


@dataclass(frozen=True)
class AcceptResult:
    proposal: dict[str, Any]
    deposit_required: bool


def _load(cur: PgCursor, proposal_ref: str) -> dict[str, Any]:
    proposal = proposals_repository.get_proposal(cur, proposal_ref)
    if proposal is None:
        raise NotFoundError("Proposal not found", code="proposal_not_found")
    return proposal


def _log(
    cur: PgCursor,
    proposal: dict[str, Any],
    action: str,
    actor: Actor,
    payload: dict[str, Any] | None = None,
) -> None:
    activity_repository.log_activity(
        cur,
        aggregate_type="proposal",
        aggregate_id=proposal["id"],
        action=action,
        actor_type=actor.actor_type,
        actor_ref=actor.ref,
        payload=payload,
    )


def _guard_miss(cur: PgCursor, proposal_id: str, action: str) -> ConflictError:
    current = proposals_repository.get_proposal(cur, proposal_id)
    status = current["status"] if current else None
    return ConflictError(
        f"Cannot {action} proposal in status {status}",
        code="invalid_transition",
        status=status,
    )


def _require_status(proposal: dict[str, Any], allowed: tuple[str, ...], action: str) -> None:
    if proposal["status"] not in allowed:
        raise ConflictError(
            f"Cannot {action} proposal in status {proposal['status']}",
            code="invalid_transition",
            status=proposal["status"],
        )


def _expire_if_due(
    cur: PgCursor, proposal: dict[str, Any], *, now: datetime | None = None
) -> dict[str, Any]:
    status = proposal["status"]
    if status not in LAZY_EXPIRY_STATUSES or not is_past(proposal["valid_until"], now=now):
        return proposal

    if proposals_repository.expire(cur, proposal["id"], from_status=status):
        _log(cur, proposal, "expired", SYSTEM, {"from_status": status})
        logger.info(
            "proposal expired",
            extra={
                "extra_fields": safe_log_context(
                    proposal_id=proposal["id"], from_status=status
                )
            },
        )
    return _load(cur, proposal["id"])


def get_proposal(proposal_ref: str, *, now: datetime | None = None) -> dict[str, Any]:
    """Load a proposal, expiring it first if its validity has passed.

    Raises:
        NotFoundError: If no proposal matches the id or number.
    """
    with txn() as cur:
        proposal = _load(cur, proposal_ref)
        return _expire_if_due(cur, proposal, now=now)


def mark_sent(proposal_ref: str, actor: Actor) -> dict[str, Any]:
    """draft|viewed -> sent."""
    with txn() as cur:
        proposal = _expire_if_due(cur, _load(cur, proposal_ref))
        _require_status(proposal, SENDABLE_STATUSES, "send")
        if not proposals_repository.mark_sent(
            cur, proposal["id"], from_status=proposal["status"]
        ):
            raise _guard_miss(cur, proposal["id"], "send")
        _log(cur, proposal, "sent", actor, {"from_status": proposal["status"]})
        return _load(cur, proposal["id"])


def record_view(proposal_ref: str) -> dict[str, Any]:
    """sent -> viewed; repeated views only bump the counters."""
    with txn() as cur:
        proposal = _expire_if_due(cur, _load(cur, proposal_ref))
        status = proposal["status"]
        if status not in RESPONDABLE_STATUSES:
            # Views of drafts or finished proposals are not tracked.
            return proposal
        if not proposals_repository.record_view(cur, proposal["id"], from_status=status):
            raise _guard_miss(cur, proposal["id"], "view")
        if status == "sent":
            _log(cur, proposal, "viewed", Actor(CUSTOMER))
        return _load(cur, proposal["id"])


def accept_proposal(
    proposal_ref: str,
    actor: Actor,
    signature: dict[str, Any] | None = None,
    ip_address: str | None = None,
) -> AcceptResult:
    """sent|viewed -> accepted.

    Customers must sign. An out-of-date proposal is expired (committed) and
    the acceptance refused.

    Raises:
        ValidationError: Customer acceptance without a signature.
        NotFoundError: Unknown proposal.
        ConflictError: Expired, already answered or concurrently changed.
    """
    if actor.actor_type == CUSTOMER and not signature:
        raise ValidationError(
            "A signature is required to accept", code="signature_required"
        )

    # Separate transaction so the expiry sticks even though we raise.
    proposal = get_proposal(proposal_ref)
    if proposal["status"] == "expired":
        raise ConflictError(
            "Proposal has expired", code="proposal_expired", status="expired"
        )
    _require_status(proposal, RESPONDABLE_STATUSES, "accept")

    with txn() as cur:
        if not proposals_repository.accept(
            cur,
            proposal["id"],
            from_status=proposal["status"],
            accepted_by=actor.ref or actor.actor_type,
            signature=signature if actor.actor_type == CUSTOMER else None,
            ip_address=ip_address,
        ):
            raise _guard_miss(cur, proposal["id"], "accept")
        _log(
            cur,
            proposal,
            "accepted",
            actor,
            {"from_status": proposal["status"], "signed": bool(signature)},
        )
        accepted = _load(cur, proposal["id"])

    schedule_notification(
        "proposal_accepted", aggregate_type="proposal", aggregate_id=accepted["id"]
    )
    return AcceptResult(
        proposal=accepted,
        deposit_required=not accepted["skip_deposit_on_accept"],
    )


def validate_decline(
    reason_category: str, reason_text: str | None
) -> tuple[str, str]:
    if reason_category not in DECLINE_CATEGORIES:
        raise ValidationError(
            "Unknown decline category",
            code="invalid_decline_category",
            allowed=sorted(DECLINE_CATEGORIES),
        )
    reason = (reason_text or "").strip()
    if len(reason) < MIN_DECLINE_REASON_LENGTH:
        raise ValidationError(
            f"Reason must be at least {MIN_DECLINE_REASON_LENGTH} characters",
            code="reason_too_short",
        )
    return reason_category, reason


def decline_proposal(
    proposal_ref: str,
    reason_category: str,
    reason_text: str,
    desired_changes: str | None = None,
    actor: Actor = Actor(CUSTOMER),
) -> dict[str, Any]:
    """sent|viewed -> declined, recording the customer's feedback."""
    category, reason = validate_decline(reason_category, reason_text)

    with txn() as cur:
        proposal = _expire_if_due(cur, _load(cur, proposal_ref))
        _require_status(proposal, RESPONDABLE_STATUSES, "decline")
        if not proposals_repository.decline(
            cur,
            proposal["id"],
            from_status=proposal["status"],
            category=category,
            reason=reason,
            desired_changes=(desired_changes or "").strip() or None,
        ):
            raise _guard_miss(cur, proposal["id"], "decline")
        _log(cur, proposal, "declined", actor, {"category": category})
        declined = _load(cur, proposal["id"])

    schedule_notification(
        "proposal_declined",
        aggregate_type="proposal",
        aggregate_id=declined["id"],
        data={"category": category},
    )
    return declined
