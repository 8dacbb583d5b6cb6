"""Stripe webhook signature validation and payload extraction.

Purpose:
- Validate Stripe-Signature against every configured endpoint secret
  (one per brand account, live and test).
- Extract only what routing needs: event id/type, the object id, its
  metadata and amount.
- Never log payload or signature.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import stripe

from touroffice.observability.logging import get_logger

logger = get_logger(__name__)


class InvalidSignatureError(Exception):
    """No configured secret validates the signature."""


class InvalidPayloadError(Exception):
    """Payload structure is invalid or missing required fields."""


@dataclass
class GatewayEvent:
    """Minimal extracted data from a Stripe webhook event."""

    event_id: str
    event_type: str
    object_id: str | None
    metadata: dict[str, str] = field(default_factory=dict)
    amount_cents: int | None = None


def verify_and_extract(
    payload_bytes: bytes,
    signature_header: str,
    webhook_secrets: Sequence[str],
) -> GatewayEvent:
    """Validate the signature with each secret in turn and extract event data.

    Raises:
        InvalidSignatureError: If no secret validates the signature.
        InvalidPayloadError: If the event structure is invalid.
    """
    if not webhook_secrets:
        raise InvalidSignatureError("No webhook secrets configured")

    event = None
    for secret in webhook_secrets:
        try:
            event = stripe.Webhook.construct_event(
                payload_bytes,
                signature_header,
                secret,
            )
            break
        except stripe.SignatureVerificationError:
            continue
        except ValueError as e:
            logger.warning("stripe webhook payload parsing failed")
            raise InvalidPayloadError("Invalid payload") from e

    if event is None:
        logger.warning("stripe webhook signature verification failed")
        raise InvalidSignatureError("Invalid signature")

    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise InvalidPayloadError("Missing event id or type")

    obj = _extract_object(event)
    amount = obj.get("amount")

    return GatewayEvent(
        event_id=event_id,
        event_type=event_type,
        object_id=obj.get("id"),
        metadata=dict(obj.get("metadata") or {}),
        amount_cents=int(amount) if amount is not None else None,
    )


def _extract_object(event: Any) -> Any:
    data = event.get("data") or {}
    return data.get("object") or {}
