"""Tests for POST /api/checkout-sessions.

Covers:
- Country routing (hosted Stripe Checkout vs manual bank-transfer order)
- Catalog cross-check (unknown product, sold out, insufficient stock)
- Hosted session parameters (metadata, shipping line, coupon)
- Manual orders (unpaid, stock reserved all-or-nothing)
- Request normalization helpers
"""

import json

import pytest

from shop.errors import OrderError
from shop.extensions import db
from shop.models.audit import AuditEvent
from shop.models.order import Order
from shop.models.stock import StockRecord
from shop.services.checkout_service import (
    normalize_country,
    normalize_discount,
    prepare_checkout_request,
    resolve_country,
    uses_hosted_checkout,
)


def _body(country="PT", items=None, **overrides):
    body = {
        "items": items if items is not None else [{"id": 1, "qty": 2}, {"id": 2, "qty": 1}],
        "customer": {
            "name": "Ana Silva",
            "email": "Ana.Silva@Example.com",
            "phone": "+351912345678",
        },
        "shipping_address": {
            "line1": "Rua das Flores 12",
            "city": "Porto",
            "postalCode": "4050-262",
            "country": country,
        },
        "billingSameAsShipping": True,
        "shipping_cost_cents": 300,
        "notes": "Leave with the neighbour",
        "clientReferenceId": "cart-42",
    }
    body.update(overrides)
    return body


def _checkout(client, body):
    return client.post("/api/checkout-sessions", json=body)


def _stock_value(product_id):
    db.session.expire_all()
    return db.session.get(StockRecord, product_id).stock_value


class TestHostedCheckout:
    """Supported countries get a Stripe Checkout Session."""

    def test_portugal_gets_hosted_session(self, client, stock, gateway):
        resp = _checkout(client, _body("PT"))

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["ok"] is True
        assert data["mode"] == "hosted"
        assert data["country"] == "PT"
        assert data["sessionId"] == "cs_test_created_1"
        assert data["url"].startswith("https://checkout.stripe.com/")

        # Nothing persisted, no stock touched until the webhook
        assert Order.query.count() == 0
        assert _stock_value(1) == 10

    def test_session_parameters(self, client, stock, gateway):
        _checkout(client, _body("PT"))
        params = gateway.created_sessions[0]

        assert params["mode"] == "payment"
        assert params["customer_email"] == "ana.silva@example.com"
        assert params["client_reference_id"] == "cart-42"
        assert params["success_url"] == (
            "http://localhost:5173/checkout/success/{CHECKOUT_SESSION_ID}"
        )
        assert params["cancel_url"] == "http://localhost:5173/checkout/cancel"
        assert "discounts" not in params

        lines = params["line_items"]
        assert [li["quantity"] for li in lines] == [2, 1, 1]
        assert lines[0]["price_data"]["unit_amount"] == 1000
        assert lines[0]["price_data"]["product_data"]["metadata"] == {"productId": "1"}
        assert lines[2]["price_data"]["product_data"]["metadata"] == {"productId": "__shipping__"}
        assert lines[2]["price_data"]["unit_amount"] == 300

    def test_session_metadata_round_trips_to_webhook(self, client, stock, gateway):
        _checkout(client, _body("PT"))
        metadata = gateway.created_sessions[0]["metadata"]

        assert metadata["product_ids"] == "1,2"
        assert metadata["billing_same_as_shipping"] == "true"
        assert metadata["shipping_cost_cents"] == "300"
        assert metadata["pre_discount_total_cents"] == "2800"
        shipping = json.loads(metadata["shipping_address"])
        assert shipping["postal_code"] == "4050-262"
        assert shipping["phone"] == ""
        assert json.loads(metadata["billing_address"]) == shipping

    def test_country_name_is_accepted(self, client, stock):
        resp = _checkout(client, _body("Portugal"))
        assert resp.get_json()["mode"] == "hosted"
        assert resp.get_json()["country"] == "PT"

    def test_discount_creates_coupon(self, client, stock, gateway):
        resp = _checkout(client, _body("PT", discount={"code": "SPRING", "amountCents": 500}))

        assert resp.status_code == 200
        assert gateway.coupons[0]["amount_off"] == 500
        assert gateway.coupons[0]["name"] == "SPRING"
        params = gateway.created_sessions[0]
        assert params["discounts"] == [{"coupon": "coupon_1"}]
        assert params["metadata"]["discount_amount_cents"] == "500"

    def test_discount_capped_at_items_subtotal(self, client, stock, gateway):
        """Shipping is never discounted."""
        _checkout(client, _body("PT", discount={"code": "ALL", "amountCents": 99999}))
        assert gateway.coupons[0]["amount_off"] == 2500

    def test_cors_headers(self, client, stock):
        resp = _checkout(client, _body("PT"))
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"

    def test_preflight(self, client):
        resp = client.options("/api/checkout-sessions")
        assert resp.status_code == 204
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]


class TestCatalogCrossCheck:
    """Cart lines are checked against the live stock ledger."""

    def test_unknown_product_rejected(self, client, stock, gateway):
        resp = _checkout(client, _body("PT", items=[{"id": 99, "qty": 1}]))
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "UNKNOWN_PRODUCT"
        assert gateway.created_sessions == []

    def test_sold_out_product_rejected(self, client, stock, gateway):
        resp = _checkout(client, _body("PT", items=[{"id": 3, "qty": 1}]))
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "OUT_OF_STOCK"
        assert gateway.created_sessions == []

    def test_quantity_above_stock_rejected(self, client, stock):
        resp = _checkout(client, _body("PT", items=[{"id": 2, "qty": 6}]))
        assert resp.status_code == 409
        assert resp.get_json()["details"] == {"id": 2, "available": 5}

    def test_empty_cart_rejected(self, client, stock):
        resp = _checkout(client, _body("PT", items=[]))
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "EMPTY_CART"

    def test_malformed_item_rejected(self, client, stock):
        resp = _checkout(client, _body("PT", items=[{"id": "abc"}]))
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "MALFORMED_INPUT"

    def test_missing_country_rejected(self, client, stock):
        body = _body("")
        resp = _checkout(client, body)
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "MISSING_COUNTRY"

    def test_non_object_body_rejected(self, client):
        resp = client.post("/api/checkout-sessions", json=[1, 2])
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "INVALID_DATA"

    def test_invalid_email_rejected(self, client, stock):
        body = _body("PT")
        body["customer"]["email"] = "not-an-email"
        resp = _checkout(client, body)
        assert resp.status_code == 400


class TestManualCheckout:
    """Unsupported countries get an unpaid order with stock reserved."""

    def test_us_gets_manual_order(self, client, stock, gateway):
        resp = _checkout(client, _body("US"))

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["mode"] == "manual"
        assert data["country"] == "US"
        assert data["amountTotal"] == 2800
        assert data["currency"] == "eur"
        assert data["paymentId"].startswith("notPaid_Manual-")
        assert gateway.created_sessions == []

        order = db.session.get(Order, data["orderId"])
        assert order.payment_status is False
        assert order.payment_type == "manual"
        assert order.session_id is None
        assert order.stock_adjusted_at is not None
        assert order.metadata_["billing_address"] == order.metadata_["shipping_address"]
        assert order.metadata_["shipping_address"]["phone"] == "+351912345678"

        assert _stock_value(1) == 8
        assert _stock_value(2) == 4

    def test_manual_discount_recorded(self, client, stock):
        resp = _checkout(client, _body("US", discount={"code": "SPRING", "amountCents": 800}))
        data = resp.get_json()
        assert data["amountTotal"] == 2000

        order = db.session.get(Order, data["orderId"])
        assert order.metadata_["discount"] == {
            "code": "SPRING",
            "amount_cents": 800,
            "percent": None,
            "pre_discount_total_cents": 2800,
            "final_total_cents": 2000,
        }

    def test_discount_above_items_subtotal_keeps_shipping(self, client, stock):
        """2500 of items + 300 shipping, 2600 off -> items free, shipping still paid."""
        resp = _checkout(client, _body("US", discount={"code": "VIP", "amountCents": 2600}))

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["amountTotal"] == 300

        order = db.session.get(Order, data["orderId"])
        assert order.shipping_cost_cents == 300
        assert order.metadata_["discount"]["amount_cents"] == 2500
        assert order.metadata_["discount"]["final_total_cents"] == 300

    def test_insufficient_stock_rolls_back_everything(self, client, stock):
        """First line fits, second does not -> no order, no decrement."""
        items = [{"id": 1, "qty": 2}, {"id": 2, "qty": 6}]
        resp = _checkout(client, _body("US", items=items))

        assert resp.status_code == 409
        assert resp.get_json()["code"] == "INSUFFICIENT_STOCK"
        assert Order.query.count() == 0
        assert AuditEvent.query.count() == 0
        assert _stock_value(1) == 10
        assert _stock_value(2) == 5

    def test_unknown_product_is_404(self, client, stock):
        resp = _checkout(client, _body("US", items=[{"id": 99, "qty": 1}]))
        assert resp.status_code == 404


class TestRequestNormalization:
    """prepare_checkout_request and friends."""

    def test_alternate_spellings(self):
        request = prepare_checkout_request({
            "items": [{"id": 1, "quantity": 2}],
            "address": {"country": "pt"},
            "billing_same_as_shipping": "true",
            "shippingCostCents": "450",
            "client_reference_id": "ref-1",
            "customer": {"notes": "<i>fragile</i>"},
        })
        assert request["shipping_address"] == {"country": "pt"}
        assert request["billing_same_as_shipping"] is True
        assert request["shipping_cost_cents"] == 450
        assert request["client_reference_id"] == "ref-1"
        assert request["notes"] == "fragile"
        assert request["discount"] is None

    def test_flat_discount_fields(self):
        request = prepare_checkout_request({"discountCode": "X", "discountAmountCents": 150})
        assert request["discount"] == {"code": "X", "amount_cents": 150, "percent": None}

    def test_normalize_discount_empty(self):
        assert normalize_discount({}) is None
        assert normalize_discount({"label": "VIP", "percent": "10"}) == {
            "code": "VIP", "amount_cents": 0, "percent": 10,
        }

    def test_country_resolution_order(self):
        request = {
            "shipping_address": {},
            "billing_address": {"country": "germany"},
            "customer": {"country": "US"},
        }
        assert resolve_country(request) == "DE"

    def test_missing_country(self):
        with pytest.raises(OrderError) as exc:
            resolve_country({"shipping_address": {}, "customer": {}})
        assert exc.value.code == "MISSING_COUNTRY"

    @pytest.mark.parametrize("country,hosted", [
        ("PT", True), ("pt", True), ("Netherlands", True), ("US", False), ("FR", False),
    ])
    def test_hosted_countries(self, app, country, hosted):
        assert uses_hosted_checkout(country) is hosted

    def test_normalize_country(self):
        assert normalize_country(" united states ") == "US"
        assert normalize_country("fr") == "FR"
