"""
Pytest fixtures for storefront backend tests.

Provides an app on in-memory SQLite, a fresh database per test, catalog and
promo factories, a gateway session builder, and a fake for outbound HTTP.
"""

import json
from decimal import Decimal

import httpx
import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import Product, ProductVariant, PromoCode
from storefront.services import currency_service


ADMIN_TOKEN = "test-admin-token"
WEBHOOK_SECRET = "whsec_test_secret"

ADDRESS = {
    "line1": "1 Carnaby Street",
    "line2": "",
    "city": "London",
    "state": "",
    "postalCode": "W1F 9PS",
    "country": "GB",
}


def _offline(request):
    raise httpx.ConnectError(f"Network disabled in tests: {request.url}", request=request)


class FakeHttp:
    """Routes outbound httpx requests to per-host handlers and records them."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, host, handler=None, *, status=200, json=None):
        if handler is None:
            def handler(request):
                return httpx.Response(status, json=json)
        self.routes[host] = handler

    def requests_to(self, host):
        return [r for r in self.requests if r.url.host == host]

    def __call__(self, request):
        self.requests.append(request)
        handler = self.routes.get(request.url.host)
        if handler is None:
            return _offline(request)
        return handler(request)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ADMIN_API_TOKEN': ADMIN_TOKEN,
        'STRIPE_SECRET_KEY': 'sk_test_123',
        'STRIPE_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'RESEND_API_KEY': None,
        'BASE_CURRENCY': 'GBP',
        'DEFAULT_CURRENCY': 'GBP',
        'HTTP_TRANSPORT': httpx.MockTransport(_offline),
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        currency_service.clear_rate_cache()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def fake_http(app):
    """Swap the outbound transport for a FakeHttp router."""
    fake = FakeHttp()
    previous = app.config['HTTP_TRANSPORT']
    app.config['HTTP_TRANSPORT'] = httpx.MockTransport(fake)
    yield fake
    app.config['HTTP_TRANSPORT'] = previous


@pytest.fixture(scope='function')
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(name="Logo Tee", price="25.00", stock=10, reserved_stock=0, active=True, images=None, cost_price=None):
        product = Product(
            name=name,
            price=Decimal(price),
            cost_price=Decimal(cost_price) if cost_price is not None else None,
            stock=stock,
            reserved_stock=reserved_stock,
            active=active,
            images=json.dumps(images) if images else None,
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def make_variant(db_session):
    def _make(product, size="M", color="Black", stock=0):
        variant = ProductVariant(product_id=product.id, size=size, color=color, stock=stock)
        db_session.add(variant)
        db_session.commit()
        return variant
    return _make


@pytest.fixture(scope='function')
def make_promo(db_session):
    def _make(code="SAVE10", discount_type="PERCENTAGE", amount="10", **fields):
        promo = PromoCode(
            code=code,
            discount_type=discount_type,
            amount=Decimal(amount),
            active=fields.pop("active", True),
            redemptions=fields.pop("redemptions", 0),
            **fields,
        )
        db_session.add(promo)
        db_session.commit()
        return promo
    return _make


@pytest.fixture(scope='function')
def make_session():
    """Build a gateway checkout session object the way checkout creation writes it."""
    def _make(
        items,
        session_id="cs_test_1",
        payment_intent="pi_test_1",
        promo_codes=None,
        email="ada@example.com",
        address=ADDRESS,
        metadata=None,
    ):
        subtotal = sum(Decimal(str(i.get("priceAtPurchase", "0"))) * int(i["quantity"]) for i in items)
        metadata_blob = {
            "customerName": "Ada Lovelace",
            "address": json.dumps(address),
            "items": json.dumps(items),
            "subtotal": str(subtotal),
            "shipping": "0",
            "tax": "0",
            "total": str(subtotal),
            "discount": "0",
            "promoCode": "",
            "promoCodeId": "",
        }
        if promo_codes is not None:
            metadata_blob["promoCodes"] = json.dumps(promo_codes)
        metadata_blob.update(metadata or {})
        session = {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": "paid",
            "customer_email": email,
            "amount_total": int(subtotal * 100),
            "metadata": metadata_blob,
        }
        if payment_intent:
            session["payment_intent"] = payment_intent
        return session
    return _make


def cart_item(product, quantity, **extra):
    item = {
        "productId": product.id,
        "productName": product.name,
        "quantity": quantity,
        "priceAtPurchase": str(product.price),
    }
    item.update(extra)
    return item


@pytest.fixture(scope='function')
def item_for():
    return cart_item
