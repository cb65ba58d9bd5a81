"""
Pytest fixtures for checkout engine tests.

Provides test database setup, seeded catalog/stock/coupons, a fresh simulated
payment gateway per test, and the Flask test client.
"""

from datetime import timedelta

import pytest
from checkout_engine import create_app
from checkout_engine.extensions import db
from checkout_engine.models import Coupon
from checkout_engine.services import catalog_service, stock_service, checkout_service
from checkout_engine.services.payment_gateway import SimulatedPaymentGateway
from checkout_engine.time_utils import utcnow


ADMIN_TOKEN = "test-admin-token"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ADMIN_API_TOKEN': ADMIN_TOKEN,
        'RETRY_BACKOFF_SECONDS': 0,
        'PAYMENT_GATEWAY': 'simulated',
        'CURRENCY': 'EUR',
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
    """Create fresh database and payment gateway for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions["payment_gateway"] = SimulatedPaymentGateway()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app, db_session):
    return app.extensions["payment_gateway"]


@pytest.fixture(scope='function')
def product(db_session):
    """Tee at 25.00."""
    return catalog_service.create_product(sku="TEE-001", name="Basic Tee", price_cents=2500)


@pytest.fixture(scope='function')
def variant_m(product):
    """Size M, black, 10 in stock."""
    variant = catalog_service.create_variant(product_id=product.id, size="M", color="Black")
    stock_service.reserve_and_commit(
        variant_id=variant.id, quantity=10, movement_type="INBOUND", reason="Initial stock"
    )
    return catalog_service.get_variant(variant.id)


@pytest.fixture(scope='function')
def variant_l(product):
    """Size L, black, 3 in stock, auto-restock to 20."""
    variant = catalog_service.create_variant(
        product_id=product.id,
        size="L",
        color="Black",
        low_stock_threshold=5,
        auto_restock_enabled=True,
        auto_restock_level=20,
    )
    stock_service.reserve_and_commit(
        variant_id=variant.id, quantity=3, movement_type="INBOUND", reason="Initial stock"
    )
    return catalog_service.get_variant(variant.id)


def make_coupon(**overrides) -> Coupon:
    data = {
        "code": "SAVE20",
        "coupon_type": "PERCENTAGE",
        "value": 2000,
        "min_purchase_cents": 0,
        "max_discount_cents": None,
        "expires_at": utcnow() + timedelta(days=30),
        "max_uses": 100,
        "used_count": 0,
        "is_active": True,
    }
    data.update(overrides)
    coupon = Coupon(**data)
    db.session.add(coupon)
    db.session.commit()
    return coupon


@pytest.fixture(scope='function')
def coupon(db_session):
    """20% off, no cap."""
    return make_coupon()


@pytest.fixture(scope='function')
def pay_for(gateway):
    """
    Quote a cart, request payment and confirm it at the simulated processor.

    Returns (checkout, payment).
    """
    def _pay(items, coupon_code=None, email="shopper@example.com", phone="+34 600 111 222", confirm=True):
        checkout = checkout_service.quote(
            items,
            coupon_code=coupon_code,
            customer={"email": email, "phone": phone, "shipping_address": {"city": "Madrid"}},
        )
        checkout, payment = checkout_service.request_payment(checkout.quote_token)
        if confirm:
            payment = gateway.confirm(payment.reference)
        return checkout, payment

    return _pay


@pytest.fixture(scope='function')
def admin_headers() -> dict:
    """Authorization headers for admin routes."""
    return {'Authorization': f'Bearer {ADMIN_TOKEN}', 'X-Actor': 'ops@test'}
