"""Tests for payment confirmation and proposal -> booking conversion.

Repositories are mocked here; the real concurrency guarantee (one booking
under parallel confirmations) is covered by test_db_races.py.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from touroffice.config import Settings
from touroffice.domain.actors import ADMIN, Actor
from touroffice.domain.conversion import (
    ConfirmationResult,
    confirm_payment,
    convert_without_deposit,
    create_deposit_authorization,
    handle_gateway_event,
    record_final_payment,
)
from touroffice.domain.errors import (
    ConflictError,
    NotFoundError,
    RetryableGatewayError,
    ValidationError,
)
from touroffice.gateway.webhook import GatewayEvent
from tests.helpers import FakeGateway, FakeRegistry, fake_txn, make_proposal

SETTINGS = Settings()


@pytest.fixture
def env():
    gateway = FakeGateway()
    proposal = make_proposal()
    with patch("touroffice.domain.conversion.txn", fake_txn()), \
         patch("touroffice.domain.conversion.proposals_repository") as proposals, \
         patch("touroffice.domain.conversion.bookings_repository") as bookings, \
         patch("touroffice.domain.conversion.payments_repository") as payments, \
         patch("touroffice.domain.conversion.activity_repository") as activity, \
         patch("touroffice.domain.conversion.schedule_notification") as notify:
        proposals.get_proposal.return_value = proposal
        proposals.claim_conversion.return_value = True
        bookings.next_booking_number.return_value = "TB-2026-000001"
        bookings.insert_booking.return_value = "booking-1"
        bookings.get_booking_by_proposal.return_value = {
            "id": "booking-1",
            "booking_number": "TB-2026-000001",
        }
        yield SimpleNamespace(
            gateway=gateway,
            registry=FakeRegistry(gateway),
            proposal=proposal,
            proposals=proposals,
            bookings=bookings,
            payments=payments,
            activity=activity,
            notify=notify,
        )


def _confirm(env, ref="pi_1"):
    return confirm_payment(
        env.proposal["id"], ref, gateways=env.registry, settings=SETTINGS
    )


class TestConfirmPayment:
    def test_converts_accepted_proposal(self, env):
        env.gateway.add_authorization(
            "pi_1", proposal_id=env.proposal["id"], payment_type="deposit"
        )

        result = _confirm(env)

        assert result == ConfirmationResult("booking-1", "TB-2026-000001", False)
        claim = env.proposals.claim_conversion.call_args.kwargs
        assert claim == {"deposit_paid": True, "authorization_ref": "pi_1"}
        payment = env.payments.insert_payment.call_args.kwargs
        assert payment["payment_type"] == "deposit"
        assert payment["amount_cents"] == 50000
        assert payment["provider_ref"] == "pi_1"
        env.proposals.finish_conversion.assert_called_once()
        assert env.proposals.finish_conversion.call_args.kwargs == {"booking_id": "booking-1"}
        assert env.notify.call_args.args[0] == "booking_confirmed"

    def test_booking_number_uses_prefix(self, env):
        env.gateway.add_authorization("pi_1", proposal_id=env.proposal["id"])

        _confirm(env)

        assert env.bookings.next_booking_number.call_args.kwargs["prefix"] == "TB"

    def test_already_converted_skips_gateway(self, env):
        env.proposal["converted"] = True

        result = _confirm(env)

        assert result.already_converted is True
        assert result.booking_number == "TB-2026-000001"
        assert env.gateway.lookups == []
        env.bookings.insert_booking.assert_not_called()

    def test_converted_without_booking(self, env):
        env.proposal["converted"] = True
        env.bookings.get_booking_by_proposal.return_value = None

        with pytest.raises(ConflictError) as exc:
            _confirm(env)
        assert exc.value.code == "conversion_incomplete"

    def test_unknown_proposal(self, env):
        env.proposals.get_proposal.return_value = None
        with pytest.raises(NotFoundError):
            _confirm(env)

    def test_not_accepted(self, env):
        env.proposal["status"] = "sent"

        with pytest.raises(ConflictError) as exc:
            _confirm(env)

        assert exc.value.code == "proposal_not_accepted"
        assert env.gateway.lookups == []

    def test_payment_not_succeeded(self, env):
        env.gateway.add_authorization(
            "pi_1", status="processing", proposal_id=env.proposal["id"]
        )

        with pytest.raises(ConflictError) as exc:
            _confirm(env)

        assert exc.value.code == "payment_not_succeeded"
        env.proposals.claim_conversion.assert_not_called()

    def test_payment_for_other_proposal(self, env):
        env.gateway.add_authorization("pi_1", proposal_id="someone-else")

        with pytest.raises(ValidationError) as exc:
            _confirm(env)

        assert exc.value.code == "authorization_mismatch"
        env.proposals.claim_conversion.assert_not_called()

    def test_lost_claim_returns_winner_booking(self, env):
        env.gateway.add_authorization("pi_1", proposal_id=env.proposal["id"])
        env.proposals.claim_conversion.return_value = False
        env.proposals.get_proposal.side_effect = [
            env.proposal,
            {**env.proposal, "converted": True, "status": "converted"},
        ]

        result = _confirm(env)

        assert result.already_converted is True
        env.bookings.insert_booking.assert_not_called()
        env.payments.insert_payment.assert_not_called()
        env.notify.assert_not_called()

    def test_lost_claim_to_other_transition(self, env):
        env.gateway.add_authorization("pi_1", proposal_id=env.proposal["id"])
        env.proposals.claim_conversion.return_value = False
        env.proposals.get_proposal.side_effect = [
            env.proposal,
            {**env.proposal, "status": "declined"},
        ]

        with pytest.raises(ConflictError) as exc:
            _confirm(env)
        assert exc.value.code == "proposal_not_accepted"

    def test_retryable_gateway_error_propagates(self, env):
        gateway = MagicMock()
        gateway.get_authorization.side_effect = RetryableGatewayError("timeout")

        with pytest.raises(RetryableGatewayError):
            confirm_payment(
                env.proposal["id"], "pi_1", gateways=FakeRegistry(gateway), settings=SETTINGS
            )
        env.proposals.claim_conversion.assert_not_called()


class TestConvertWithoutDeposit:
    def test_requires_skip_flag(self, env):
        with pytest.raises(ConflictError) as exc:
            convert_without_deposit(env.proposal["id"], Actor(ADMIN), settings=SETTINGS)
        assert exc.value.code == "deposit_required"

    def test_converts_without_payment_row(self, env):
        env.proposal["skip_deposit_on_accept"] = True

        result = convert_without_deposit(
            env.proposal["id"], Actor(ADMIN, "staff-1"), settings=SETTINGS
        )

        assert result.already_converted is False
        assert env.proposals.claim_conversion.call_args.kwargs["deposit_paid"] is False
        env.payments.insert_payment.assert_not_called()
        assert env.bookings.insert_booking.call_args.kwargs["deposit_paid_cents"] == 0


class TestCreateDepositAuthorization:
    def test_idempotency_key_and_reference_saved(self, env):
        body = create_deposit_authorization(
            env.proposal["id"], gateways=env.registry, settings=SETTINGS
        )

        [created] = env.gateway.created
        assert created["idempotency_key"] == f"proposal:{env.proposal['id']}:deposit"
        assert created["amount_cents"] == 50000
        assert created["metadata"]["payment_type"] == "deposit"
        assert body["client_secret"] == "secret_test"
        env.proposals.set_payment_authorization_ref.assert_called_once()

    def test_already_converted(self, env):
        env.proposal["converted"] = True
        with pytest.raises(ConflictError) as exc:
            create_deposit_authorization(env.proposal["id"], gateways=env.registry)
        assert exc.value.code == "already_converted"

    def test_deposit_not_required(self, env):
        env.proposal["skip_deposit_on_accept"] = True
        with pytest.raises(ConflictError) as exc:
            create_deposit_authorization(
                env.proposal["id"], gateways=env.registry, settings=SETTINGS
            )
        assert exc.value.code == "deposit_not_required"


class TestRecordFinalPayment:
    @pytest.fixture
    def booking(self, env):
        booking = {
            "id": "booking-1",
            "booking_number": "TB-2026-000001",
            "brand": "default",
            "proposal_id": env.proposal["id"],
            "currency": "usd",
        }
        env.bookings.get_booking.return_value = booking
        env.gateway.add_authorization(
            "pi_final", amount_cents=150000, booking_id="booking-1", payment_type="final"
        )
        return booking

    def test_records_once(self, env, booking):
        env.bookings.mark_final_payment_paid.return_value = 1

        outcome = record_final_payment(
            "TB-2026-000001", "pi_final", gateways=env.registry, settings=SETTINGS
        )

        assert outcome["already_recorded"] is False
        payment = env.payments.insert_payment.call_args.kwargs
        assert payment["payment_type"] == "final"
        assert payment["amount_cents"] == 150000
        assert env.notify.call_args.args[0] == "final_payment_received"

    def test_repeat_is_noop(self, env, booking):
        env.bookings.mark_final_payment_paid.return_value = 0

        outcome = record_final_payment(
            "booking-1", "pi_final", gateways=env.registry, settings=SETTINGS
        )

        assert outcome["already_recorded"] is True
        env.payments.insert_payment.assert_not_called()
        env.notify.assert_not_called()

    def test_unknown_booking(self, env):
        env.bookings.get_booking.return_value = None
        with pytest.raises(NotFoundError):
            record_final_payment("nope", "pi_final", gateways=env.registry, settings=SETTINGS)


class TestHandleGatewayEvent:
    def _event(self, event_type="payment_intent.succeeded", **metadata):
        return GatewayEvent(
            event_id="evt_1",
            event_type=event_type,
            object_id="pi_1",
            metadata=metadata,
            amount_cents=50000,
        )

    def test_other_event_types_ignored(self):
        assert handle_gateway_event(self._event("charge.refunded")) == {"status": "ignored"}

    def test_missing_metadata_ignored(self):
        assert handle_gateway_event(self._event(payment_type="deposit")) == {"status": "ignored"}

    def test_deposit_routes_to_confirmation(self):
        registry = MagicMock()
        with patch("touroffice.domain.conversion.confirm_payment") as confirm:
            confirm.return_value = ConfirmationResult("b-1", "TB-2026-000001", True)
            outcome = handle_gateway_event(
                self._event(payment_type="deposit", proposal_id="p-1"), gateways=registry
            )

        confirm.assert_called_once_with("p-1", "pi_1", gateways=registry)
        assert outcome["status"] == "already_converted"

    def test_final_routes_to_recording(self):
        with patch("touroffice.domain.conversion.record_final_payment") as record:
            record.return_value = {
                "booking_id": "b-1",
                "booking_number": "TB-2026-000001",
                "already_recorded": False,
            }
            outcome = handle_gateway_event(
                self._event(payment_type="final", booking_id="b-1")
            )

        assert outcome == {"status": "recorded", "booking_id": "b-1"}
