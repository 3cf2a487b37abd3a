"""Tests for the webhooks blueprint and Stripe event handling.

Covers:
- Webhook signature verification (missing, invalid, unparseable)
- Stripe-signed payloads through the real signature check
- checkout.session.completed: order created, stock decremented once
- Session-level idempotency (new event id, same session)
- Event-level idempotency (same event id)
- Resuming a session whose order exists but whose stock was not adjusted
- checkout.session.async_payment_succeeded / payment_intent.succeeded
- Unknown event types (accepted but not processed)
- Unprocessable payloads (4xx) vs store failures (5xx)
"""

import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy.exc import OperationalError

from shop.errors import OrderError, external_service
from shop.extensions import db
from shop.models.audit import AuditEvent
from shop.models.order import Order
from shop.models.stock import StockRecord
from shop.models.stripe_event import StripeEvent
from shop.services.order_derivation import build_order_draft
from shop.services.order_service import create_order
from shop.services.webhook_service import handle_webhook_event

CONSTRUCT_EVENT = "shop.services.stripe_gateway.stripe.Webhook.construct_event"


def _event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _post(client):
    return client.post(
        "/api/stripe/webhook",
        data="{}",
        content_type="application/json",
        headers={"Stripe-Signature": "valid_sig"},
    )


def _stock_values():
    db.session.expire_all()
    return {r.id: r.stock_value for r in StockRecord.query.all()}


def _signed_post(client, event, secret="whsec_test_fake"):
    """POST a payload signed the way Stripe signs it (t=<ts>,v1=<hmac>)."""
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return client.post(
        "/api/stripe/webhook",
        data=payload,
        content_type="application/json",
        headers={"Stripe-Signature": f"t={timestamp},v1={signature}"},
    )


class TestWebhookSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client):
        """POST without Stripe-Signature -> 400."""
        resp = client.post(
            "/api/stripe/webhook",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "MISSING_SIGNATURE"

    @patch(CONSTRUCT_EVENT)
    def test_invalid_signature_returns_400(self, mock_construct, client, stock):
        """Bad signature -> 400, nothing written."""
        mock_construct.side_effect = stripe.SignatureVerificationError(
            "No signatures found matching the expected signature", "bad_sig"
        )

        resp = client.post(
            "/api/stripe/webhook",
            data="{}",
            content_type="application/json",
            headers={"Stripe-Signature": "bad_sig"},
        )
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_SIGNATURE"
        assert Order.query.count() == 0
        assert StripeEvent.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_unparseable_payload_returns_400(self, mock_construct, client):
        mock_construct.side_effect = ValueError("Expecting value")

        resp = _post(client)
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_PAYLOAD"

    def test_get_not_allowed(self, client):
        resp = client.get("/api/stripe/webhook")
        assert resp.status_code == 405


class TestSignedPayloads:
    """Real signature verification, no SDK mocking."""

    def test_signed_checkout_completed_creates_order(
        self, client, stock, gateway, make_session, line_items
    ):
        session = make_session()
        gateway.add_session(session, line_items)
        event = {"object": "event", **_event("evt_signed", "checkout.session.completed", session)}

        resp = _signed_post(client, event)

        assert resp.status_code == 200
        assert resp.get_json() == {"received": True, "outcome": "created"}
        order = Order.query.one()
        assert order.session_id == "cs_test_123"
        assert order.amount_total == 2800
        assert order.metadata_["shipping_address"]["city"] == "Porto"
        assert _stock_values() == {1: 8, 2: 4, 3: 0, 4: 50}

    def test_signed_with_wrong_secret_rejected(self, client, stock, make_session):
        event = _event("evt_forged", "checkout.session.completed", make_session())

        resp = _signed_post(client, event, secret="whsec_someone_else")

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_SIGNATURE"
        assert Order.query.count() == 0

    def test_construct_event_returns_plain_dicts(self, gateway, make_session):
        payload = json.dumps(_event("evt_plain", "checkout.session.completed", make_session()))
        timestamp = int(time.time())
        signature = hmac.new(
            b"whsec_test_fake", f"{timestamp}.{payload}".encode(), hashlib.sha256
        ).hexdigest()

        event = gateway.construct_event(payload, f"t={timestamp},v1={signature}")

        assert type(event) is dict
        assert type(event["data"]["object"]) is dict
        assert type(event["data"]["object"]["customer_details"]["address"]) is dict
        assert event["data"]["object"]["metadata"]["shipping_cost_cents"] == "300"


class TestCheckoutCompleted:
    """Tests for checkout.session.completed."""

    @patch(CONSTRUCT_EVENT)
    def test_creates_order_and_decrements_stock(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        """qty 2 @ 1000 + qty 1 @ 500 + 300 shipping -> one order of 2800."""
        session = make_session()
        gateway.add_session(session, line_items)
        mock_construct.return_value = _event("evt_001", "checkout.session.completed", session)

        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json() == {"received": True, "outcome": "created"}

        orders = Order.query.all()
        assert len(orders) == 1
        order = orders[0]
        assert order.amount_total == 2800
        assert order.shipping_cost_cents == 300
        assert order.session_id == "cs_test_123"
        assert order.payment_id == "pi_test_123"
        assert order.email == "ana.silva@example.com"
        assert order.stock_adjusted_at is not None
        assert "stock_adjusted_at" in order.metadata_

        assert _stock_values() == {1: 8, 2: 4, 3: 0, 4: 50}
        assert gateway.line_item_calls == ["cs_test_123"]

        actions = [a.action for a in AuditEvent.query.filter_by(order_id=order.id)]
        assert sorted(actions) == ["order.created", "order.stock_adjusted"]

        event = StripeEvent.query.filter_by(stripe_event_id="evt_001").first()
        assert event.outcome == "created"
        assert event.order_id == order.id

    @patch(CONSTRUCT_EVENT)
    def test_new_event_for_same_session_is_duplicate(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        """Stripe sends a second event for the same session -> no second order."""
        session = make_session()
        gateway.add_session(session, line_items)

        mock_construct.return_value = _event("evt_001", "checkout.session.completed", session)
        assert _post(client).status_code == 200

        mock_construct.return_value = _event("evt_002", "checkout.session.completed", session)
        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == "duplicate"

        assert Order.query.count() == 1
        assert _stock_values() == {1: 8, 2: 4, 3: 0, 4: 50}

    @patch(CONSTRUCT_EVENT)
    def test_same_event_id_short_circuits(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        """Exact redelivery -> already_processed without any Stripe call."""
        session = make_session()
        gateway.add_session(session, line_items)
        mock_construct.return_value = _event("evt_001", "checkout.session.completed", session)

        _post(client)
        resp = _post(client)

        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == "already_processed"
        assert gateway.line_item_calls == ["cs_test_123"]
        assert Order.query.count() == 1

    @patch(CONSTRUCT_EVENT)
    def test_resumes_order_without_stock_adjustment(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        """Order committed but the stock step never ran -> next delivery adjusts."""
        session = make_session()
        gateway.add_session(session, line_items)
        existing = create_order(build_order_draft(session, line_items), notify=False)
        assert existing.stock_adjusted_at is None

        mock_construct.return_value = _event("evt_retry", "checkout.session.completed", session)
        resp = _post(client)

        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == "resumed"
        assert Order.query.count() == 1
        assert _stock_values() == {1: 8, 2: 4, 3: 0, 4: 50}

        db.session.expire_all()
        assert db.session.get(Order, existing.id).stock_adjusted_at is not None

    @patch(CONSTRUCT_EVENT)
    def test_partial_stock_keeps_marker(
        self, mock_construct, client, stock, gateway, make_session, make_line_item
    ):
        """A short line is logged, the others are decremented, no retry decrements again."""
        session = make_session(amount_total=3000)
        line_items = [
            make_line_item(1, "Mug", 1, 1000),
            make_line_item(3, "Poster", 1, 2000),
        ]
        gateway.add_session(session, line_items)
        mock_construct.return_value = _event("evt_001", "checkout.session.completed", session)

        resp = _post(client)
        assert resp.status_code == 200
        assert _stock_values()[1] == 9
        assert _stock_values()[3] == 0

        order = Order.query.one()
        assert order.stock_adjusted_at is not None
        partial = AuditEvent.query.filter_by(order_id=order.id, action="order.stock_partial").one()
        assert partial.metadata_["failed"][0]["id"] == 3

        mock_construct.return_value = _event("evt_002", "checkout.session.completed", session)
        assert _post(client).get_json()["outcome"] == "duplicate"
        assert _stock_values()[1] == 9

    @patch(CONSTRUCT_EVENT)
    def test_no_line_items_returns_400(self, mock_construct, client, stock, make_session):
        mock_construct.return_value = _event(
            "evt_001", "checkout.session.completed", make_session(session_id="cs_empty")
        )

        resp = _post(client)
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "NO_LINE_ITEMS"
        assert Order.query.count() == 0
        assert StripeEvent.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_underivable_order_returns_400(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        session = make_session()
        session["customer_details"]["email"] = ""
        gateway.add_session(session, line_items)
        mock_construct.return_value = _event("evt_001", "checkout.session.completed", session)

        resp = _post(client)
        assert resp.status_code == 400
        assert Order.query.count() == 0
        assert _stock_values()[1] == 10

    @patch(CONSTRUCT_EVENT)
    def test_store_failure_returns_500(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        """Database errors surface as 5xx so Stripe retries."""
        session = make_session()
        gateway.add_session(session, line_items)
        mock_construct.return_value = _event("evt_001", "checkout.session.completed", session)

        with patch(
            "shop.services.webhook_service.create_order",
            side_effect=OperationalError("INSERT", {}, Exception("db down")),
        ):
            resp = _post(client)

        assert resp.status_code == 500
        assert resp.get_json()["message"] == "Webhook handler error"
        assert StripeEvent.query.count() == 0

        # Stripe's retry succeeds
        resp = _post(client)
        assert resp.get_json()["outcome"] == "created"

    @patch(CONSTRUCT_EVENT)
    def test_stripe_api_error_is_500_whatever_its_status(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        """A rate-limited line item call must not answer Stripe with a 4xx."""
        session = make_session()
        gateway.add_session(session, line_items)
        mock_construct.return_value = _event("evt_001", "checkout.session.completed", session)

        rate_limited = external_service("slow down", code="STRIPE_RATE_LIMITED", status=429)
        with patch.object(gateway, "list_line_items", side_effect=rate_limited):
            resp = _post(client)

        assert resp.status_code == 500
        assert resp.get_json()["code"] == "STRIPE_RATE_LIMITED"
        assert Order.query.count() == 0


class TestOtherEvents:
    """async_payment_succeeded, payment_intent.succeeded, unknown types."""

    @patch(CONSTRUCT_EVENT)
    def test_async_payment_succeeded_creates_order(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        session = make_session()
        gateway.add_session(session, line_items)
        mock_construct.return_value = _event(
            "evt_async", "checkout.session.async_payment_succeeded", session
        )

        resp = _post(client)
        assert resp.get_json()["outcome"] == "created"
        assert Order.query.count() == 1

    @patch(CONSTRUCT_EVENT)
    def test_payment_intent_reconciles_its_session(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        session = make_session()
        gateway.add_session(session, line_items)
        mock_construct.return_value = _event(
            "evt_pi", "payment_intent.succeeded", {"id": "pi_test_123", "object": "payment_intent"}
        )

        resp = _post(client)
        assert resp.get_json()["outcome"] == "created"
        assert Order.query.one().payment_intent == "pi_test_123"

    @patch(CONSTRUCT_EVENT)
    def test_payment_intent_then_session_completed(
        self, mock_construct, client, stock, gateway, make_session, line_items
    ):
        """Both events for one purchase -> one order, one decrement."""
        session = make_session()
        gateway.add_session(session, line_items)

        mock_construct.return_value = _event(
            "evt_pi", "payment_intent.succeeded", {"id": "pi_test_123"}
        )
        _post(client)
        mock_construct.return_value = _event("evt_cs", "checkout.session.completed", session)
        resp = _post(client)

        assert resp.get_json()["outcome"] == "duplicate"
        assert Order.query.count() == 1
        assert _stock_values()[1] == 8

    @patch(CONSTRUCT_EVENT)
    def test_payment_intent_without_session_is_noop(self, mock_construct, client, stock):
        mock_construct.return_value = _event(
            "evt_pi", "payment_intent.succeeded", {"id": "pi_standalone"}
        )

        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == "no_session"
        assert Order.query.count() == 0

    @patch(CONSTRUCT_EVENT)
    def test_unknown_event_type_is_ignored(self, mock_construct, client):
        mock_construct.return_value = _event("evt_x", "customer.created", {"id": "cus_1"})

        resp = _post(client)
        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == "ignored"
        assert StripeEvent.query.filter_by(stripe_event_id="evt_x").one().outcome == "ignored"


class TestHandleWebhookEvent:
    """Service-level dispatch."""

    def test_missing_id_or_type_is_invalid(self):
        with pytest.raises(OrderError) as exc:
            handle_webhook_event({"type": "checkout.session.completed"})
        assert exc.value.code == "INVALID_EVENT"

    def test_session_without_id_is_invalid(self, stock):
        with pytest.raises(OrderError) as exc:
            handle_webhook_event(_event("evt_1", "checkout.session.completed", {}))
        assert exc.value.code == "INVALID_SESSION"

    def test_cli_replay_reconciles_session(self, app, stock, gateway, make_session, line_items):
        gateway.add_session(make_session(), line_items)

        result = app.test_cli_runner().invoke(args=["reconcile-session", "cs_test_123"])
        assert result.exit_code == 0, result.output
        assert "created" in result.output

        result = app.test_cli_runner().invoke(args=["reconcile-session", "cs_test_123"])
        assert "duplicate" in result.output
        assert _stock_values()[1] == 8

    def test_non_json_content_type_accepted(self, client):
        # Only the raw body is verified; the content type is irrelevant.
        with patch(CONSTRUCT_EVENT) as mock_construct:
            mock_construct.return_value = _event("evt_y", "charge.refunded", {})
            resp = client.post(
                "/api/stripe/webhook",
                data=json.dumps({"id": "evt_y"}),
                content_type="text/plain",
                headers={"Stripe-Signature": "valid_sig"},
            )
        assert resp.status_code == 200
