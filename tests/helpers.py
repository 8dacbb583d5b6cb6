"""Test helpers: in-memory payment gateway and row builders."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

from touroffice.domain.errors import GatewayError
from touroffice.gateway.client import Authorization, Refund


class FakeGateway:
    """PaymentGateway double recording every call.

    ``authorizations`` maps ref -> Authorization for get_authorization.
    ``refund_errors`` maps authorization ref -> GatewayError to raise.
    """

    def __init__(self) -> None:
        self.authorizations: dict[str, Authorization] = {}
        self.refund_errors: dict[str, GatewayError] = {}
        self.refund_calls: list[dict[str, Any]] = []
        self.created: list[dict[str, Any]] = []
        self.lookups: list[str] = []

    def add_authorization(
        self,
        ref: str,
        *,
        status: str = "succeeded",
        amount_cents: int = 50000,
        currency: str = "usd",
        **metadata: str,
    ) -> Authorization:
        auth = Authorization(
            ref=ref,
            status=status,
            amount_cents=amount_cents,
            currency=currency,
            metadata=metadata,
        )
        self.authorizations[ref] = auth
        return auth

    def create_authorization(self, *, amount_cents, currency, metadata, idempotency_key):
        self.created.append({
            "amount_cents": amount_cents,
            "currency": currency,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return Authorization(
            ref=f"pi_{idempotency_key}",
            status="requires_payment_method",
            amount_cents=amount_cents,
            currency=currency,
            metadata={k: str(v) for k, v in metadata.items()},
            client_secret="secret_test",
        )

    def get_authorization(self, ref: str) -> Authorization:
        self.lookups.append(ref)
        return self.authorizations[ref]

    def create_refund(self, authorization_ref, *, amount_cents, metadata, idempotency_key):
        self.refund_calls.append({
            "authorization_ref": authorization_ref,
            "amount_cents": amount_cents,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        error = self.refund_errors.get(authorization_ref)
        if error is not None:
            raise error
        return Refund(
            refund_id=f"re_{len(self.refund_calls)}",
            status="succeeded",
            amount_cents=amount_cents,
        )


class FakeRegistry:
    """GatewayRegistry double returning one gateway for every brand."""

    def __init__(self, gateway: Any) -> None:
        self.gateway = gateway
        self.brands: list[str | None] = []

    def for_brand(self, brand: str | None) -> Any:
        self.brands.append(brand)
        return self.gateway


def fake_txn(cursor: Any | None = None):
    """Replacement for infra.db.txn yielding a MagicMock cursor."""
    cur = cursor or MagicMock()

    @contextmanager
    def _txn(conn=None):
        yield cur

    return _txn


def make_proposal(**overrides: Any) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    proposal = {
        "id": str(uuid.uuid4()),
        "proposal_number": "P-2026-0001",
        "brand": "default",
        "status": "accepted",
        "customer_name": "Ana Lima",
        "customer_email": "ana@example.com",
        "customer_phone": None,
        "total_cents": 200000,
        "deposit_percentage": 25,
        "deposit_amount_cents": 50000,
        "currency": "usd",
        "valid_until": now + timedelta(days=7),
        "skip_deposit_on_accept": False,
        "payment_authorization_ref": None,
        "deposit_paid": False,
        "converted": False,
        "converted_booking_id": None,
    }
    proposal.update(overrides)
    return proposal


def make_offering(**overrides: Any) -> dict[str, Any]:
    offering = {
        "id": "off-1",
        "brand": "default",
        "title": "Sunset Sail",
        "base_price_cents": 12500,
        "lunch_price_cents": 15000,
        "currency": "usd",
        "discount_type": None,
    }
    offering.update(overrides)
    return offering


def make_ticket(number: int, **overrides: Any) -> dict[str, Any]:
    ticket = {
        "id": f"t-{number}",
        "ticket_number": f"TK-{number:04d}",
        "customer_name": f"Guest {number}",
        "quantity": 1,
        "includes_lunch": False,
        "price_per_person_cents": 12500,
        "total_cents": 12500,
        "original_price_per_person_cents": None,
        "original_total_cents": None,
        "payment_status": "paid",
        "payment_authorization_ref": f"pi_ticket_{number}",
    }
    ticket.update(overrides)
    return ticket
