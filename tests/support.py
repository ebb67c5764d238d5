from __future__ import annotations

from datetime import datetime

from byblos import create_app
from byblos.extensions import db
from byblos.services.order_workflow import create_order

T0 = datetime(2026, 3, 1, 9, 0, 0)


def build_test_app(**overrides):
    config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "NOTIFICATIONS_QUEUE": False,
        "RATE_LIMIT_REDIS_URL": None,
        "PAYD_ALLOWED_IPS": "127.0.0.1",
        "PLATFORM_COMMISSION_RATE": "0.10",
        "PAYOUT_PROVIDER": "mock",
    }
    config.update(overrides)
    return create_app(config)


class AppTestMixin:
    """Fresh in-memory database and a pushed app context per test."""

    app_overrides: dict = {}

    def setUp(self):
        self.app = build_test_app(**self.app_overrides)
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()
        self.client = self.app.test_client()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()


def physical_order(*, buyer_id: int = 11, seller_id: int = 22, unit_price: int = 150000, seller_has_shop: bool = False):
    return create_order(
        buyer_id=buyer_id,
        seller_id=seller_id,
        items=[{"name": "Beaded necklace", "unit_price": unit_price, "quantity": 1, "product_type": "physical"}],
        shipping_address={"line1": "Moi Avenue 12", "city": "Nairobi"},
        seller_has_shop=seller_has_shop,
    )


def service_order(*, booking_date: datetime, buyer_id: int = 11, seller_id: int = 22, unit_price: int = 80000):
    return create_order(
        buyer_id=buyer_id,
        seller_id=seller_id,
        items=[{"name": "Braiding session", "unit_price": unit_price, "quantity": 1, "product_type": "service"}],
        booking_date=booking_date,
    )


def digital_order(*, buyer_id: int = 11, seller_id: int = 22, unit_price: int = 20000):
    return create_order(
        buyer_id=buyer_id,
        seller_id=seller_id,
        items=[{"name": "Pattern PDF", "unit_price": unit_price, "quantity": 1, "product_type": "digital"}],
    )
