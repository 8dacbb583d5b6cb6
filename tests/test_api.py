"""HTTP layer tests: routing, error mapping and webhook/task entry points.

Domain operations are patched; their behavior is tested on its own.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from touroffice.api.dependencies import get_gateway_registry
from touroffice.api.factory import create_app
from touroffice.domain.conversion import ConfirmationResult
from touroffice.domain.discounts import FAILED, SUCCEEDED, DiscountResult, RefundOutcome
from touroffice.domain.errors import (
    ConflictError,
    NotFoundError,
    RetryableGatewayError,
    TerminalGatewayError,
    ValidationError,
)
from touroffice.domain.guest_orders import Order
from touroffice.domain.pricing import build_preview, parse_discount
from touroffice.domain.proposals import AcceptResult
from touroffice.gateway.webhook import GatewayEvent, InvalidSignatureError
from touroffice.notifications import NotifierError
from touroffice.tasks.http_backend import INTERNAL_SECRET_HEADER
from tests.helpers import make_offering, make_proposal, make_ticket


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _client(role="public"):
    app = create_app(role=role)
    app.dependency_overrides[get_gateway_registry] = lambda: MagicMock()
    return TestClient(app)


@pytest.fixture
def client():
    return _client()


class TestHealthAndCorrelation:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_correlation_id_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "cid-123"})
        assert response.headers["X-Correlation-ID"] == "cid-123"

    def test_correlation_id_generated(self, client):
        assert client.get("/health").headers["X-Correlation-ID"]

    def test_ready_reports_database_down(self, client):
        with patch("touroffice.api.routers.public.txn", side_effect=RuntimeError("no db")):
            response = client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["database"] == "down"


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (ValidationError("bad", code="reason_too_short"), 400),
            (NotFoundError("missing", code="proposal_not_found"), 404),
            (ConflictError("late", code="proposal_expired"), 409),
            (TerminalGatewayError("declined"), 502),
            (RetryableGatewayError("timeout"), 503),
        ],
    )
    def test_domain_errors(self, client, error, status):
        with patch("touroffice.domain.proposals.get_proposal", side_effect=error):
            response = client.get("/proposals/P-1")

        assert response.status_code == status
        body = response.json()["error"]
        assert body["code"] == error.code
        assert body["kind"] == error.kind


class TestProposalRoutes:
    def test_get_hides_contact_details(self, client):
        with patch("touroffice.domain.proposals.get_proposal", return_value=make_proposal()):
            body = client.get("/proposals/P-2026-0001").json()

        assert body["proposal_number"] == "P-2026-0001"
        assert "customer_email" not in body
        assert "customer_phone" not in body

    def test_accept_passes_client_ip(self, client):
        result = AcceptResult(proposal=make_proposal(), deposit_required=True)
        with patch("touroffice.domain.proposals.accept_proposal", return_value=result) as accept:
            response = client.post(
                "/proposals/P-1/actions/accept",
                json={"signature": {"name": "Ana"}},
                headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
            )

        assert response.status_code == 200
        assert response.json()["deposit_required"] is True
        assert accept.call_args.kwargs["ip_address"] == "203.0.113.9"
        assert accept.call_args.args[1].actor_type == "customer"

    def test_decline(self, client):
        declined = make_proposal(status="declined")
        with patch("touroffice.domain.proposals.decline_proposal", return_value=declined) as decline:
            response = client.post(
                "/proposals/P-1/actions/decline",
                json={"category": "price", "reason": "Over our budget"},
            )

        assert response.status_code == 200
        assert decline.call_args.args[1:3] == ("price", "Over our budget")

    def test_confirm_payment(self, client):
        result = ConfirmationResult("b-1", "TB-2026-000001", False)
        with patch("touroffice.domain.conversion.confirm_payment", return_value=result):
            response = client.post(
                "/proposals/P-1/actions/confirm-payment",
                json={"payment_authorization_ref": "pi_1"},
            )

        assert response.json() == {
            "booking_id": "b-1",
            "booking_number": "TB-2026-000001",
            "already_converted": False,
        }

    def test_confirm_payment_rejects_unknown_fields(self, client):
        response = client.post(
            "/proposals/P-1/actions/confirm-payment",
            json={"payment_authorization_ref": "pi_1", "amount": 1},
        )
        assert response.status_code == 422

    def test_admin_actor_from_header(self, client):
        with patch("touroffice.domain.proposals.mark_sent", return_value=make_proposal()) as send:
            client.post("/proposals/P-1/actions/send", headers={"X-Actor-Ref": "staff-7"})

        actor = send.call_args.args[1]
        assert (actor.actor_type, actor.ref) == ("admin", "staff-7")


class TestOfferingRoutes:
    def _preview(self):
        return build_preview(make_offering(), [make_ticket(1)], parse_discount("percentage", 10))

    def test_preview(self, client):
        with patch(
            "touroffice.api.routes.offerings.preview_or_apply_discount",
            return_value=self._preview(),
        ):
            response = client.post(
                "/offerings/off-1/discount",
                json={"discount_type": "percentage", "discount_amount": "10"},
            )

        preview = response.json()["preview"]
        assert preview["new_base_price_cents"] == 11250
        assert preview["discount"] == {"discount_type": "percentage", "value": "10"}

    def test_apply_reports_counts(self, client):
        result = DiscountResult(
            preview=self._preview(),
            offering=make_offering(discount_type="percentage"),
            outcomes=[
                RefundOutcome("t-1", "TK-0001", 1250, SUCCEEDED, refund_id="re_1"),
                RefundOutcome("t-2", "TK-0002", 1250, FAILED, error="declined"),
            ],
        )
        with patch(
            "touroffice.api.routes.offerings.preview_or_apply_discount", return_value=result
        ):
            response = client.post(
                "/offerings/off-1/discount",
                json={"discount_type": "percentage", "discount_amount": 10, "confirmed": True},
            )

        body = response.json()
        assert body["message"] == "Discount applied. 1 refund(s) processed successfully, 1 failed."
        assert (body["succeeded"], body["failed"], body["skipped"]) == (1, 1, 0)
        assert body["refunds_issued"][1]["error"] == "declined"


class TestLunchOrderRoutes:
    def _order(self):
        return Order(
            id="order-1",
            proposal_id="prop-1",
            supplier_name="Harbor Deli",
            status="submitted",
            cutoff_at=datetime.now(timezone.utc) + timedelta(days=1),
            event_starts_at=datetime.now(timezone.utc) + timedelta(days=3),
        )

    def test_submit_guest_order(self, client):
        with patch(
            "touroffice.domain.lunch_orders.submit_guest_order", return_value=self._order()
        ) as submit:
            response = client.post(
                "/lunch-orders/order-1/guests/g-1",
                json={"items": [{"item_id": "X", "quantity": 2}], "notes": "no nuts"},
            )

        assert response.status_code == 200
        assert response.json()["status"] == "submitted"
        assert submit.call_args.args[:2] == ("order-1", "g-1")
        assert submit.call_args.args[2] == [{"item_id": "X", "quantity": 2}]

    def test_client_item_name_rejected(self, client):
        with patch("touroffice.domain.lunch_orders.submit_guest_order") as submit:
            response = client.post(
                "/lunch-orders/order-1/guests/g-1",
                json={"items": [{"item_id": "X", "quantity": 1, "name": "Free Lobster"}]},
            )
        assert response.status_code == 422
        submit.assert_not_called()

    def test_ordering_closed(self, client):
        error = ConflictError("closed", code="ordering_closed")
        with patch("touroffice.domain.lunch_orders.submit_guest_order", side_effect=error):
            response = client.post(
                "/lunch-orders/order-1/guests/g-1",
                json={"items": [{"item_id": "X", "quantity": 1}]},
            )
        assert response.status_code == 409

    def test_ordering_status(self, client):
        status = {"open": False, "cutoff_at": None, "reason": "The event has already started"}
        with patch("touroffice.domain.lunch_orders.ordering_status", return_value=status):
            assert client.get("/lunch-orders/order-1/ordering-status").json() == status


class TestStripeWebhookRoute:
    HEADERS = {"Stripe-Signature": "t=1,v1=abc"}

    @pytest.fixture(autouse=True)
    def _secrets(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRETS", "whsec_a,whsec_b")

    def _event(self):
        return GatewayEvent(
            event_id="evt_1",
            event_type="payment_intent.succeeded",
            object_id="pi_1",
            metadata={"proposal_id": "p-1", "payment_type": "deposit"},
        )

    def test_missing_secrets(self, client, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRETS")
        assert client.post("/webhooks/stripe", content=b"{}", headers=self.HEADERS).status_code == 500

    def test_invalid_signature(self, client):
        with patch(
            "touroffice.api.routes.webhooks_stripe.verify_and_extract",
            side_effect=InvalidSignatureError("bad"),
        ):
            response = client.post("/webhooks/stripe", content=b"{}", headers=self.HEADERS)
        assert response.status_code == 400

    def test_secrets_passed_in_order(self, client):
        with patch(
            "touroffice.api.routes.webhooks_stripe.verify_and_extract",
            side_effect=InvalidSignatureError("bad"),
        ) as verify:
            client.post("/webhooks/stripe", content=b"{}", headers=self.HEADERS)
        assert verify.call_args.args[2] == ("whsec_a", "whsec_b")

    @pytest.mark.parametrize(
        ("side_effect", "status", "text"),
        [
            ([{"status": "converted"}], 200, "converted"),
            (RetryableGatewayError("timeout"), 503, "retry later"),
            (ConflictError("not accepted"), 200, "ignored"),
            (RuntimeError("boom"), 500, "processing failed"),
        ],
    )
    def test_processing_outcomes(self, client, side_effect, status, text):
        with patch(
            "touroffice.api.routes.webhooks_stripe.verify_and_extract",
            return_value=self._event(),
        ), patch(
            "touroffice.api.routes.webhooks_stripe.handle_gateway_event",
            side_effect=side_effect,
        ):
            response = client.post("/webhooks/stripe", content=b"{}", headers=self.HEADERS)

        assert response.status_code == status
        assert response.text == text

    def test_event_handled_off_the_event_loop(self, client):
        seen = []

        def handle(event, *, gateways):
            seen.append(_on_event_loop())
            return {"status": "converted"}

        with patch(
            "touroffice.api.routes.webhooks_stripe.verify_and_extract",
            return_value=self._event(),
        ), patch("touroffice.api.routes.webhooks_stripe.handle_gateway_event", handle):
            response = client.post("/webhooks/stripe", content=b"{}", headers=self.HEADERS)

        assert response.status_code == 200
        assert seen == [False]


class TestNotificationTaskRoute:
    PAYLOAD = {"event": "booking_confirmed", "aggregate_type": "booking", "aggregate_id": "b-1"}

    @pytest.fixture
    def worker(self, monkeypatch):
        monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
        return _client(role="worker")

    def test_not_mounted_on_public(self, client):
        assert client.post("/tasks/notifications/send", json=self.PAYLOAD).status_code == 404

    def test_requires_auth(self, worker):
        response = worker.post("/tasks/notifications/send", json=self.PAYLOAD)
        assert response.status_code == 401

    def test_wrong_secret(self, worker):
        response = worker.post(
            "/tasks/notifications/send",
            json=self.PAYLOAD,
            headers={INTERNAL_SECRET_HEADER: "guess"},
        )
        assert response.status_code == 401

    def test_delivers(self, worker):
        with patch("touroffice.api.routes.tasks_notifications.deliver_notification") as deliver:
            response = worker.post(
                "/tasks/notifications/send",
                json=self.PAYLOAD,
                headers={INTERNAL_SECRET_HEADER: "s3cret"},
            )

        assert response.status_code == 200
        deliver.assert_called_once_with(self.PAYLOAD)

    def test_delivery_runs_off_the_event_loop(self, worker):
        seen = []
        with patch(
            "touroffice.api.routes.tasks_notifications.deliver_notification",
            lambda payload: seen.append(_on_event_loop()),
        ):
            response = worker.post(
                "/tasks/notifications/send",
                json=self.PAYLOAD,
                headers={INTERNAL_SECRET_HEADER: "s3cret"},
            )

        assert response.status_code == 200
        assert seen == [False]

    def test_unknown_event(self, worker):
        response = worker.post(
            "/tasks/notifications/send",
            json={"event": "nope"},
            headers={INTERNAL_SECRET_HEADER: "s3cret"},
        )
        assert response.status_code == 400

    def test_notifier_failure_is_retried(self, worker):
        with patch(
            "touroffice.api.routes.tasks_notifications.deliver_notification",
            side_effect=NotifierError("down"),
        ):
            response = worker.post(
                "/tasks/notifications/send",
                json=self.PAYLOAD,
                headers={INTERNAL_SECRET_HEADER: "s3cret"},
            )
        assert response.status_code == 502

    def test_worker_health(self, worker):
        body = worker.get("/tasks/health").json()
        assert body["backend"] == "inline"
        assert body["notifier"] == "log"
