import json
from datetime import datetime

from byblos.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.Integer, nullable=False, index=True)
    seller_id = db.Column(db.Integer, nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default="PENDING", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    total_amount = db.Column(db.Integer, nullable=False, default=0)  # minor units
    currency = db.Column(db.String(8), nullable=False, default="KES")
    commission_rate = db.Column(db.Numeric(6, 4), nullable=True)
    platform_fee = db.Column(db.Integer, nullable=True)
    seller_payout = db.Column(db.Integer, nullable=True)

    shipping_address_json = db.Column(db.Text, nullable=True)
    seller_has_shop = db.Column(db.Boolean, nullable=False, default=False)
    booking_date = db.Column(db.DateTime, nullable=True)

    seller_dropoff_deadline = db.Column(db.DateTime, nullable=True, index=True)
    buyer_pickup_deadline = db.Column(db.DateTime, nullable=True, index=True)
    ready_for_pickup_at = db.Column(db.DateTime, nullable=True)
    auto_cancelled_reason = db.Column(db.String(240), nullable=True)
    cancelled_by = db.Column(db.String(16), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def shipping_address(self) -> dict | None:
        raw = (self.shipping_address_json or "").strip()
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except Exception:
            return None
        return data if isinstance(data, dict) else None

    @shipping_address.setter
    def shipping_address(self, value: dict | None) -> None:
        self.shipping_address_json = json.dumps(value) if value else None

    def product_types(self) -> set[str]:
        return {(item.product_type or "physical").strip().lower() for item in (self.items or [])}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_number": self.order_number or "",
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "status": self.status or "",
            "payment_status": self.payment_status or "",
            "total_amount": int(self.total_amount or 0),
            "currency": self.currency or "KES",
            "platform_fee": int(self.platform_fee) if self.platform_fee is not None else None,
            "seller_payout": int(self.seller_payout) if self.seller_payout is not None else None,
            "shipping_address": self.shipping_address,
            "seller_dropoff_deadline": self.seller_dropoff_deadline.isoformat() if self.seller_dropoff_deadline else None,
            "buyer_pickup_deadline": self.buyer_pickup_deadline.isoformat() if self.buyer_pickup_deadline else None,
            "ready_for_pickup_at": self.ready_for_pickup_at.isoformat() if self.ready_for_pickup_at else None,
            "auto_cancelled_reason": self.auto_cancelled_reason or None,
            "cancelled_by": self.cancelled_by or None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "items": [item.to_dict() for item in (self.items or [])],
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    product_id = db.Column(db.Integer, nullable=True)
    name = db.Column(db.String(200), nullable=False)
    unit_price = db.Column(db.Integer, nullable=False)  # minor units at purchase time
    quantity = db.Column(db.Integer, nullable=False, default=1)
    product_type = db.Column(db.String(16), nullable=False, default="physical")

    @property
    def subtotal(self) -> int:
        return int(self.unit_price or 0) * int(self.quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id) if self.id is not None else None,
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "name": self.name or "",
            "unit_price": int(self.unit_price or 0),
            "quantity": int(self.quantity or 0),
            "product_type": self.product_type or "physical",
            "subtotal": self.subtotal,
        }
