"""
Pytest fixtures for Sakura backend tests.

Provides test database setup, catalog/coupon/order factories, and test client.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sakura import create_app
from sakura.extensions import db
from sakura.models.constants import COUPON_PERCENTAGE
from sakura.services import coupon_service, inventory_service, order_service
from sakura.time_utils import utcnow


WEBHOOK_SECRET = "test-sepay-secret"

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'CONCURRENCY_RETRY_BACKOFF': 0,
    'PAYMENT_WEBHOOK_SECRETS': {'SEPAY': WEBHOOK_SECRET, 'VNPAY': None, 'MOMO': None},
    'PAYMENT_WEBHOOK_ALLOW_UNSIGNED': False,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

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
        db.session.remove()
        # Clear all data but keep schema (Core deletes bypass the append-only guards)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.remove()


@pytest.fixture(scope='function')
def product(db_session):
    """Product with 100 units booked through the inventory log."""
    return inventory_service.create_product("SKU-TEA-001", "Matcha Tea Set", "250000", opening_stock=100)


@pytest.fixture(scope='function')
def coupon_factory(db_session):
    """Build coupons; defaults to an active 10% coupon valid for a week."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        now = utcnow()
        fields = {
            "code": f"TEST{counter['n']}",
            "name": f"Test coupon {counter['n']}",
            "coupon_type": COUPON_PERCENTAGE,
            "value": Decimal("10"),
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=7),
        }
        fields.update(overrides)
        return coupon_service.create_coupon(**fields)

    return _make


@pytest.fixture(scope='function')
def order_factory(db_session, product):
    """Check out orders of `product` (2 units by default)."""

    def _make(quantity=2, user_id=7, coupon_code=None, **kwargs):
        kwargs.setdefault("shipping_fee", Decimal("30000"))
        result = order_service.create_order(
            user_id,
            [{"product_id": kwargs.pop("product_id", product.id), "quantity": quantity}],
            receiver_name="Tanaka Yui",
            receiver_phone="0901234567",
            shipping_address="12 Le Loi, District 1, HCMC",
            coupon_code=coupon_code,
            **kwargs,
        )
        return result

    return _make
