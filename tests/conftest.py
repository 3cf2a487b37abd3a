"""Shared test fixtures for the shop-orders test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, fake Stripe keys)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- gateway: FakeGateway swapped into the app for every test (no Stripe calls)
- stock: seeded stock ledger (1: Mug x10, 2: Tea Towel x5, 3: Poster x0, 4: sample x50)
- admin_headers: Authorization header for the admin routes
- make_session / make_line_item: Checkout Session payload builders
"""

import json

import pytest

from shop import create_app
from shop.extensions import db as _db
from shop.models.stock import StockRecord
from shop.services.stripe_gateway import StripeGateway


class FakeGateway(StripeGateway):
    """StripeGateway with every outbound Stripe call replaced by canned data.

    construct_event is inherited, so signature checks still go through
    stripe.Webhook.construct_event (patched in the HTTP-level tests).
    """

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret="whsec_test_fake")
        self.line_items = {}          # session_id -> [line item]
        self.sessions = {}            # session_id -> session
        self.sessions_by_pi = {}      # payment_intent_id -> session
        self.created_sessions = []    # params passed to create_checkout_session
        self.coupons = []
        self.line_item_calls = []

    def add_session(self, session, line_items):
        self.sessions[session["id"]] = session
        self.line_items[session["id"]] = line_items
        if session.get("payment_intent"):
            self.sessions_by_pi[session["payment_intent"]] = session

    def list_line_items(self, session_id):
        self.line_item_calls.append(session_id)
        return list(self.line_items.get(session_id, []))

    def retrieve_session(self, session_id):
        return self.sessions[session_id]

    def find_session_for_payment_intent(self, payment_intent_id):
        return self.sessions_by_pi.get(payment_intent_id)

    def create_checkout_session(self, **params):
        self.created_sessions.append(params)
        number = len(self.created_sessions)
        return {
            "id": f"cs_test_created_{number}",
            "url": f"https://checkout.stripe.com/c/pay/cs_test_created_{number}",
            "payment_intent": None,
        }

    def create_coupon(self, amount_off, currency, name):
        coupon = {"id": f"coupon_{len(self.coupons) + 1}", "amount_off": amount_off,
                  "currency": currency, "name": name}
        self.coupons.append(coupon)
        return coupon


def build_line_item(product_id, name, quantity, unit_amount, amount_total=None):
    """A Checkout line item as returned by list_line_items (price.product expanded)."""
    return {
        "id": f"li_{product_id}",
        "object": "item",
        "description": name,
        "quantity": quantity,
        "amount_total": quantity * unit_amount if amount_total is None else amount_total,
        "price": {
            "id": f"price_{product_id}",
            "unit_amount": unit_amount,
            "product": {
                "id": f"prod_{product_id}",
                "name": name,
                "metadata": {"productId": str(product_id)},
            },
        },
    }


def build_session(session_id="cs_test_123", payment_intent="pi_test_123", **overrides):
    """A completed Checkout Session for a Portuguese customer."""
    shipping = {
        "name": "Ana Silva",
        "line1": "Rua das Flores 12",
        "line2": "",
        "city": "Porto",
        "state": "",
        "postal_code": "4050-262",
        "country": "PT",
        "phone": "",
    }
    session = {
        "id": session_id,
        "object": "checkout.session",
        "currency": "eur",
        "amount_total": 2800,
        "payment_intent": payment_intent,
        "payment_status": "paid",
        "customer": "cus_test_1",
        "client_reference_id": "cart-42",
        "customer_details": {
            "name": "Ana Silva",
            "email": "Ana.Silva@Example.com",
            "phone": "+351912345678",
            "address": {
                "line1": "Rua das Flores 12",
                "city": "Porto",
                "postal_code": "4050-262",
                "country": "PT",
            },
        },
        "metadata": {
            "shipping_address": json.dumps(shipping),
            "billing_address": json.dumps({**shipping, "line1": ""}),
            "billing_same_as_shipping": "true",
            "notes": "Leave with the neighbour",
            "shipping_cost_cents": "300",
        },
    }
    session.update(overrides)
    return session


def standard_line_items():
    """qty 2 @ 1000 (product 1) + qty 1 @ 500 (product 2) + 300 shipping."""
    return [
        build_line_item(1, "Mug", 2, 1000),
        build_line_item(2, "Tea Towel", 1, 500),
        build_line_item("__shipping__", "Shipping", 1, 300),
    ]


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture(autouse=True)
def gateway(app):
    """Swap the app's Stripe gateway for a fake for the duration of a test."""
    original = app.extensions["stripe_gateway"]
    fake = FakeGateway()
    app.extensions["stripe_gateway"] = fake
    yield fake
    app.extensions["stripe_gateway"] = original


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def admin_headers(app):
    return {"Authorization": f"Bearer {app.config['ADMIN_API_TOKEN']}"}


@pytest.fixture
def stock(db_session):
    """Seed the stock ledger. Returns {product_id: StockRecord}."""
    records = [
        StockRecord(id=1, name="Mug", stock_value=10, price_cents=1000),
        StockRecord(id=2, name="Tea Towel", stock_value=5, price_cents=500),
        StockRecord(id=3, name="Poster", stock_value=0, price_cents=2000),
        StockRecord(id=4, name="Glaze Sample", stock_value=50, price_cents=150, is_sample=True),
    ]
    for record in records:
        db_session.add(record)
    db_session.commit()
    return {record.id: record for record in records}


@pytest.fixture
def make_session():
    return build_session


@pytest.fixture
def make_line_item():
    return build_line_item


@pytest.fixture
def line_items():
    return standard_line_items()
