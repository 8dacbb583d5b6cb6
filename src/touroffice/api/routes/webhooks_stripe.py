"""Stripe webhook route - public endpoint for payment events.

Security rules:
- Validate Stripe-Signature on every request against every configured
  endpoint secret.
- Never log payload or signature header.
- Return 5xx when a retry can help (gateway unavailable, unexpected
  failure) so Stripe redelivers; 2xx once the event is handled or is
  not ours to handle.

Redelivery is harmless: deposit confirmation and final payment recording
are idempotent.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.concurrency import run_in_threadpool

from touroffice.api.dependencies import get_gateway_registry
from touroffice.config import get_settings
from touroffice.domain.conversion import handle_gateway_event
from touroffice.domain.errors import DomainError, RetryableGatewayError
from touroffice.gateway.registry import GatewayRegistry
from touroffice.gateway.webhook import (
    InvalidPayloadError,
    InvalidSignatureError,
    verify_and_extract,
)
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import mask_reference, safe_log_context

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> Response:
    """Receive Stripe webhook events.

    Returns:
        200 OK if processed, duplicate or ignored.
        400 Bad Request if signature or payload are invalid.
        500 if no secret is configured or processing failed unexpectedly.
        503 if the gateway was unavailable while verifying the payment.
    """
    payload_bytes = await request.body()

    secrets = get_settings().stripe_webhook_secrets
    if not secrets:
        logger.error("webhook secrets not configured")
        return Response(status_code=500, content="server configuration error")

    try:
        event = verify_and_extract(payload_bytes, stripe_signature, secrets)
    except InvalidSignatureError:
        return Response(status_code=400, content="invalid signature")
    except InvalidPayloadError:
        return Response(status_code=400, content="invalid payload")

    fields = safe_log_context(
        event_id=mask_reference(event.event_id),
        event_type=event.event_type,
    )
    logger.info("stripe webhook received", extra={"extra_fields": fields})

    try:
        # Gateway lookups and psycopg2 transactions block; keep them off the loop.
        outcome = await run_in_threadpool(handle_gateway_event, event, gateways=gateways)
    except RetryableGatewayError:
        logger.warning("stripe webhook deferred: gateway unavailable", extra={"extra_fields": fields})
        return Response(status_code=503, content="retry later")
    except DomainError as e:
        # Redelivering would fail the same way.
        logger.warning(
            "stripe webhook rejected by domain",
            extra={"extra_fields": {**fields, **safe_log_context(kind=e.kind, code=e.code)}},
        )
        return Response(status_code=200, content="ignored")
    except Exception:
        logger.exception("stripe webhook processing failed", extra={"extra_fields": fields})
        return Response(status_code=500, content="processing failed")

    return Response(status_code=200, content=outcome["status"])
