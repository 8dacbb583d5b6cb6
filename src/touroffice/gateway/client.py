"""Thin wrapper around the Stripe SDK.

Purpose:
- Keep stripe.* imports out of domain code.
- Bound every call by a timeout and disable SDK-internal retries, so a
  retry is always a deliberate caller decision.
- Translate Stripe exceptions into the retryable/terminal/configuration
  gateway error classes.
- Never log full Stripe payloads (only IDs by prefix + correlation metadata).

A "payment authorization" here is a Stripe PaymentIntent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import stripe

from touroffice.domain.errors import (
    GatewayConfigurationError,
    GatewayError,
    RetryableGatewayError,
    TerminalGatewayError,
)
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import mask_reference, safe_log_context

logger = get_logger(__name__)

STATUS_SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class Authorization:
    """Gateway view of one payment authorization."""

    ref: str
    status: str
    amount_cents: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)
    client_secret: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED


@dataclass(frozen=True)
class Refund:
    refund_id: str
    status: str
    amount_cents: int


class PaymentGateway(Protocol):
    """Operations the core needs from a payment gateway."""

    def create_authorization(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> Authorization: ...

    def get_authorization(self, ref: str) -> Authorization: ...

    def create_refund(
        self,
        authorization_ref: str,
        *,
        amount_cents: int,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> Refund: ...


def translate_stripe_error(exc: stripe.StripeError) -> GatewayError:
    """Classify a Stripe exception.

    - authentication/permission -> GatewayConfigurationError
    - connection, rate limit, 5xx -> RetryableGatewayError
    - card, invalid request, idempotency conflicts, other 4xx -> TerminalGatewayError
    """
    message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__

    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        return GatewayConfigurationError(message)
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return RetryableGatewayError(message)
    if isinstance(
        exc, (stripe.CardError, stripe.InvalidRequestError, stripe.IdempotencyError)
    ):
        return TerminalGatewayError(message, stripe_code=getattr(exc, "code", None))

    http_status = getattr(exc, "http_status", None)
    if http_status is None or http_status >= 500:
        return RetryableGatewayError(message)
    return TerminalGatewayError(message)


def _stringify_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    # Stripe metadata values are strings; None becomes "".
    return {k: "" if v is None else str(v) for k, v in metadata.items()}


class StripeGateway:
    """Stripe-backed PaymentGateway.

    Usage:
        gateway = StripeGateway(api_key="sk_test_...", timeout_seconds=10)
        auth = gateway.create_authorization(
            amount_cents=125000,
            currency="usd",
            metadata={"proposal_id": pid, "payment_type": "deposit"},
            idempotency_key=f"proposal:{pid}:deposit",
        )
    """

    def __init__(self, api_key: str | None, *, timeout_seconds: int = 10) -> None:
        """Initialize the gateway.

        Raises:
            GatewayConfigurationError: If no API key is provided.
        """
        if not api_key:
            raise GatewayConfigurationError("Stripe API key not configured")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._client: stripe.StripeClient | None = None

    def _stripe(self) -> stripe.StripeClient:
        if self._client is None:
            self._client = stripe.StripeClient(
                self._api_key,
                http_client=stripe.RequestsClient(timeout=self._timeout_seconds),
                max_network_retries=0,
            )
        return self._client

    @staticmethod
    def _to_authorization(intent: Any) -> Authorization:
        return Authorization(
            ref=intent.id,
            status=intent.status,
            amount_cents=int(intent.amount or 0),
            currency=(intent.currency or "").lower(),
            metadata=dict(intent.metadata or {}),
            client_secret=getattr(intent, "client_secret", None),
        )

    def create_authorization(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> Authorization:
        """Create a PaymentIntent (idempotent by ``idempotency_key``)."""
        try:
            intent = self._stripe().v1.payment_intents.create(
                params={
                    "amount": amount_cents,
                    "currency": currency.lower(),
                    "metadata": _stringify_metadata(metadata),
                    "automatic_payment_methods": {"enabled": True},
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise translate_stripe_error(e) from e

        logger.info(
            "stripe payment intent created",
            extra={
                "extra_fields": safe_log_context(
                    authorization_ref=mask_reference(intent.id),
                    amount_cents=amount_cents,
                )
            },
        )
        return self._to_authorization(intent)

    def get_authorization(self, ref: str) -> Authorization:
        """Retrieve a PaymentIntent's current status, amount and metadata."""
        try:
            intent = self._stripe().v1.payment_intents.retrieve(ref)
        except stripe.StripeError as e:
            raise translate_stripe_error(e) from e

        logger.info(
            "stripe payment intent retrieved",
            extra={
                "extra_fields": safe_log_context(
                    authorization_ref=mask_reference(intent.id),
                    status=intent.status,
                )
            },
        )
        return self._to_authorization(intent)

    def create_refund(
        self,
        authorization_ref: str,
        *,
        amount_cents: int,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> Refund:
        """Issue a (partial) refund against a PaymentIntent."""
        try:
            refund = self._stripe().v1.refunds.create(
                params={
                    "payment_intent": authorization_ref,
                    "amount": amount_cents,
                    "reason": "requested_by_customer",
                    "metadata": _stringify_metadata(metadata),
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise translate_stripe_error(e) from e

        logger.info(
            "stripe refund created",
            extra={
                "extra_fields": safe_log_context(
                    refund_id=mask_reference(refund.id),
                    authorization_ref=mask_reference(authorization_ref),
                    amount_cents=amount_cents,
                    status=refund.status,
                )
            },
        )
        return Refund(
            refund_id=refund.id,
            status=refund.status or "pending",
            amount_cents=int(refund.amount or amount_cents),
        )
