"""Tests for discount application and per-ticket refunds.

Repositories are mocked; the gateway is an in-memory fake so the refund
loop's handling of partial failures can be checked call by call.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from touroffice.domain.actors import ADMIN, Actor
from touroffice.domain.discounts import (
    FAILED,
    PENDING_NOT_RECORDED_ERROR,
    SKIPPED,
    SUCCEEDED,
    DiscountResult,
    preview_or_apply_discount,
    refund_idempotency_key,
)
from touroffice.domain.errors import (
    ConflictError,
    GatewayConfigurationError,
    NotFoundError,
    TerminalGatewayError,
    ValidationError,
)
from touroffice.domain.pricing import DiscountPreview
from tests.helpers import FakeGateway, FakeRegistry, fake_txn, make_offering, make_ticket

STAFF = Actor(ADMIN, "staff-1")


@pytest.fixture
def env():
    gateway = FakeGateway()
    with patch("touroffice.domain.discounts.txn", fake_txn()), \
         patch("touroffice.domain.discounts.offerings_repository") as offerings, \
         patch("touroffice.domain.discounts.payments_repository") as payments, \
         patch("touroffice.domain.discounts.activity_repository") as activity, \
         patch("touroffice.domain.discounts.schedule_notification") as notify:
        offerings.get_offering.return_value = make_offering()
        offerings.list_active_tickets.return_value = [make_ticket(n) for n in (1, 2, 3)]
        offerings.claim_discount.return_value = True
        offerings.reprice_unpaid_tickets.return_value = 0
        yield SimpleNamespace(
            gateway=gateway,
            registry=FakeRegistry(gateway),
            offerings=offerings,
            payments=payments,
            activity=activity,
            notify=notify,
        )


def _apply(env, discount_type="percentage", amount=10, **kwargs):
    return preview_or_apply_discount(
        "off-1",
        discount_type,
        amount,
        confirmed=True,
        reason="Weather delay",
        actor=STAFF,
        gateways=env.registry,
        **kwargs,
    )


class TestPreview:
    def test_preview_has_no_side_effects(self, env):
        preview = preview_or_apply_discount(
            "off-1", "percentage", 10, actor=STAFF, gateways=env.registry
        )

        assert isinstance(preview, DiscountPreview)
        assert preview.total_refund_cents == 3750
        env.offerings.claim_discount.assert_not_called()
        assert env.registry.brands == []
        assert env.gateway.refund_calls == []

    def test_validation_before_any_db_access(self):
        db = MagicMock()
        with patch("touroffice.domain.discounts.txn", db):
            with pytest.raises(ValidationError):
                preview_or_apply_discount("off-1", "percentage", 150, actor=STAFF)
        db.assert_not_called()

    def test_unknown_offering(self, env):
        env.offerings.get_offering.return_value = None
        with pytest.raises(NotFoundError):
            _apply(env)


class TestApply:
    def test_all_refunds_succeed(self, env):
        result = _apply(env)

        assert isinstance(result, DiscountResult)
        assert result.succeeded_count == 3
        assert [c["amount_cents"] for c in env.gateway.refund_calls] == [1250, 1250, 1250]
        assert env.payments.insert_payment.call_count == 3
        env.notify.assert_called_once()
        assert env.notify.call_args.args[0] == "discount_applied"

    def test_claim_records_new_prices(self, env):
        _apply(env)

        kwargs = env.offerings.claim_discount.call_args.kwargs
        assert kwargs["new_base_price_cents"] == 11250
        assert kwargs["new_lunch_price_cents"] == 13500
        assert kwargs["applied_by"] == "staff-1"

    def test_idempotency_key_per_ticket(self, env):
        _apply(env)

        keys = [c["idempotency_key"] for c in env.gateway.refund_calls]
        assert keys == [refund_idempotency_key("off-1", f"t-{n}") for n in (1, 2, 3)]
        assert keys[0] == "discount:off-1:ticket:t-1"

    def test_refund_metadata(self, env):
        _apply(env)

        metadata = env.gateway.refund_calls[0]["metadata"]
        assert metadata["type"] == "offering_discount"
        assert metadata["ticket_id"] == "t-1"
        assert metadata["discount_reason"] == "Weather delay"

    def test_partial_failure_continues(self, env):
        """Ticket 2 is declined; tickets 1 and 3 are still refunded."""
        env.gateway.refund_errors["pi_ticket_2"] = TerminalGatewayError("charge disputed")

        result = _apply(env)

        assert [o.status for o in result.outcomes] == [SUCCEEDED, FAILED, SUCCEEDED]
        assert result.outcomes[1].error == "charge disputed"
        assert result.succeeded_count == 2
        assert result.failed_count == 1
        assert len(env.gateway.refund_calls) == 3

        recorded = env.offerings.record_ticket_refund.call_args_list
        assert len(recorded) == 3
        failed = recorded[1].kwargs
        assert failed["succeeded"] is False
        assert failed["refund_status"] == FAILED
        assert failed["new_price_per_person_cents"] == 11250
        # Refund rows exist only for money that actually moved.
        assert env.payments.insert_payment.call_count == 2

    def test_configuration_error_stops_gateway_calls(self, env):
        env.gateway.refund_errors["pi_ticket_1"] = GatewayConfigurationError("Invalid API key")

        result = _apply(env)

        assert len(env.gateway.refund_calls) == 1
        assert [o.status for o in result.outcomes] == [FAILED, FAILED, FAILED]
        assert {o.error for o in result.outcomes} == {"Invalid API key"}
        assert env.offerings.record_ticket_refund.call_count == 3

    def test_ticket_without_reference_skipped(self, env):
        env.offerings.list_active_tickets.return_value = [
            make_ticket(1),
            make_ticket(2, payment_authorization_ref=None),
        ]

        result = _apply(env)

        assert [o.status for o in result.outcomes] == [SUCCEEDED, SKIPPED]
        assert result.skipped_count == 1
        assert "manual refund needed" in result.outcomes[1].error
        assert len(env.gateway.refund_calls) == 1

    def test_no_gateway_needed_without_references(self, env):
        env.offerings.list_active_tickets.return_value = [
            make_ticket(1, payment_status="unpaid", payment_authorization_ref=None),
        ]
        env.offerings.reprice_unpaid_tickets.return_value = 1

        result = _apply(env, "flat", 5)

        assert env.registry.brands == []
        assert result.outcomes == []
        assert result.unpaid_repriced == 1
        env.offerings.reprice_unpaid_tickets.assert_called_once()

    def test_second_apply_refunds_nothing(self, env):
        env.offerings.claim_discount.return_value = False

        with pytest.raises(ConflictError) as exc:
            _apply(env)

        assert exc.value.code == "discount_already_applied"
        assert env.gateway.refund_calls == []
        env.offerings.record_ticket_refund.assert_not_called()

    def test_already_discounted_offering_rejected_on_load(self, env):
        env.offerings.get_offering.return_value = make_offering(discount_type="flat")

        with pytest.raises(ConflictError):
            _apply(env)

        env.offerings.claim_discount.assert_not_called()

    def test_pending_marker_written_before_each_refund(self, env):
        order = []
        env.offerings.mark_refund_pending.side_effect = lambda cur, tid: order.append(("pending", tid))
        create_refund = env.gateway.create_refund

        def tracking_refund(ref, **kwargs):
            order.append(("refund", kwargs["metadata"]["ticket_id"]))
            return create_refund(ref, **kwargs)

        env.gateway.create_refund = tracking_refund

        _apply(env)

        assert order == [
            ("pending", "t-1"), ("refund", "t-1"),
            ("pending", "t-2"), ("refund", "t-2"),
            ("pending", "t-3"), ("refund", "t-3"),
        ]
        actions = [c.kwargs["action"] for c in env.activity.log_activity.call_args_list]
        assert actions.count("discount_refund_pending") == 3

    def test_outcome_write_failure_keeps_going(self, env):
        """A database error on ticket 1's outcome does not strand tickets 2 and 3."""
        env.offerings.record_ticket_refund.side_effect = [
            psycopg2.OperationalError("connection reset"),
            None,
            None,
        ]

        result = _apply(env)

        assert len(env.gateway.refund_calls) == 3
        assert [o.status for o in result.outcomes] == [SUCCEEDED, SUCCEEDED, SUCCEEDED]
        assert [o.persisted for o in result.outcomes] == [False, True, True]
        assert result.outcomes[0].refund_id == "re_1"
        assert result.unpersisted_count == 1
        env.offerings.reprice_unpaid_tickets.assert_called_once()
        env.notify.assert_called_once()

    def test_pending_write_failure_skips_gateway_call(self, env):
        env.offerings.mark_refund_pending.side_effect = [
            None,
            psycopg2.OperationalError("connection reset"),
            None,
        ]

        result = _apply(env)

        assert [c["metadata"]["ticket_id"] for c in env.gateway.refund_calls] == ["t-1", "t-3"]
        assert [o.status for o in result.outcomes] == [SUCCEEDED, FAILED, SUCCEEDED]
        assert result.outcomes[1].error == PENDING_NOT_RECORDED_ERROR
        env.offerings.reprice_unpaid_tickets.assert_called_once()

    def test_unexpected_error_still_propagates(self, env):
        env.offerings.record_ticket_refund.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            _apply(env)
