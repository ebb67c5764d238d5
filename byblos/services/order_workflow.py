from __future__ import annotations

import json
import secrets
from datetime import datetime

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from byblos.errors import ValidationError
from byblos.extensions import db
from byblos.models import Order, OrderItem, OrderTransition
from byblos.services.escrow_ledger import EscrowLedger
from byblos.services.notification_service import dispatch_notifications
from byblos.services.order_state_machine import (
    Actor,
    OrderEvent,
    OrderSnapshot,
    OrderStatus,
    PaymentStatus,
    ProductType,
    TransitionPolicy,
    TransitionResult,
    plan,
)


def transition_policy() -> TransitionPolicy:
    cfg = current_app.config
    return TransitionPolicy(
        commission_rate=cfg.get("PLATFORM_COMMISSION_RATE", "0.09"),
        seller_dropoff_hours=int(cfg.get("SELLER_DROPOFF_HOURS", 48)),
        buyer_pickup_hours=int(cfg.get("BUYER_PICKUP_HOURS", 48)),
        service_release_hours=int(cfg.get("SERVICE_RELEASE_HOURS", 24)),
        payment_expiry_hours=int(cfg.get("PAYMENT_EXPIRY_HOURS", 24)),
    )


def _order_number(now: datetime) -> str:
    return f"BYB-{now.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


def _parse_item(raw: dict, position: int) -> OrderItem:
    if not isinstance(raw, dict):
        raise ValidationError("each item must be an object", details={"position": position})
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ValidationError("item name is required", details={"position": position})
    unit_price = raw.get("unit_price")
    quantity = raw.get("quantity", 1)
    if isinstance(unit_price, bool) or not isinstance(unit_price, int) or unit_price < 0:
        raise ValidationError("unit_price must be a non-negative integer in minor units", details={"position": position})
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", details={"position": position})
    product_type = str(raw.get("product_type") or ProductType.PHYSICAL).strip().lower()
    if product_type not in ProductType.ALL:
        raise ValidationError(f"unknown product_type {product_type!r}", details={"position": position})
    return OrderItem(
        position=position,
        product_id=raw.get("product_id"),
        name=name[:200],
        unit_price=unit_price,
        quantity=quantity,
        product_type=product_type,
    )


def create_order(
    *,
    buyer_id: int,
    seller_id: int,
    items: list[dict],
    currency: str = "KES",
    shipping_address: dict | None = None,
    seller_has_shop: bool = False,
    booking_date: datetime | None = None,
    commit: bool = True,
) -> Order:
    if not items:
        raise ValidationError("an order needs at least one item")
    parsed = [_parse_item(raw, idx) for idx, raw in enumerate(items)]
    types = {item.product_type for item in parsed}
    if ProductType.PHYSICAL in types and not shipping_address and not seller_has_shop:
        raise ValidationError("shipping_address is required for physical items")
    if ProductType.SERVICE in types and booking_date is None:
        raise ValidationError("booking_date is required for service items")

    now = datetime.utcnow()
    order = Order(
        order_number=_order_number(now),
        buyer_id=int(buyer_id),
        seller_id=int(seller_id),
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        total_amount=sum(item.subtotal for item in parsed),
        currency=(currency or "KES").strip().upper()[:8],
        seller_has_shop=bool(seller_has_shop),
        booking_date=booking_date,
        created_at=now,
    )
    order.shipping_address = shipping_address
    order.items = parsed
    db.session.add(order)
    db.session.flush()
    if commit:
        db.session.commit()
    current_app.logger.info(
        json.dumps(
            {
                "event": "order_created",
                "order_id": int(order.id),
                "order_number": order.order_number,
                "total_amount": int(order.total_amount),
            }
        )
    )
    return order


def _duplicate_key(order: Order, key: str) -> bool:
    if not key:
        return False
    existing = OrderTransition.query.filter_by(order_id=int(order.id), idempotency_key=key[:160]).first()
    return existing is not None


TRANSIENT_DB_ERRORS = (StaleDataError, OperationalError, IntegrityError)


def run_with_retry(fn, *, attempts: int, label: str, context: dict | None = None):
    """Run one unit of work, rolling back and retrying on transient conflicts.

    ``fn`` must start from fresh reads; the rollback expires every loaded row.
    """
    attempts = max(1, int(attempts))
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except TRANSIENT_DB_ERRORS as exc:
            db.session.rollback()
            current_app.logger.warning(
                json.dumps(
                    {
                        "event": f"{label}_retry",
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": type(exc).__name__,
                        **(context or {}),
                    }
                )
            )
            if attempt >= attempts:
                raise


def timeout_statements(dialect: str, timeout_ms: int) -> list[str]:
    if not timeout_ms or dialect != "postgresql":
        return []
    ms = int(timeout_ms)
    return [f"SET LOCAL statement_timeout = {ms}", f"SET LOCAL lock_timeout = {ms}"]


def bound_transaction_time(timeout_ms: int) -> None:
    """Cap statement and lock waits for the rest of the current transaction."""
    for statement in timeout_statements(db.session.get_bind().dialect.name, timeout_ms):
        db.session.execute(text(statement))


def execute_transition(
    order: Order,
    event: str,
    *,
    actor=None,
    reason: str = "",
    idempotency_key: str = "",
    now: datetime | None = None,
    commit: bool = True,
    dispatch: bool = True,
) -> TransitionResult:
    """Plan a transition and apply it to the session.

    With ``commit=False`` the caller owns the transaction and must dispatch
    ``result.notifications`` after its own commit. Committed transitions are
    retried on version and unique-key conflicts up to
    ``RECONCILE_MAX_ATTEMPTS`` times.
    """
    if order is None:
        raise ValidationError("order required")
    actor = Actor.parse(actor)

    def once():
        return _execute_once(
            order,
            event,
            actor=actor,
            reason=reason,
            idempotency_key=idempotency_key,
            now=now,
            commit=commit,
            dispatch=dispatch,
        )

    if not commit:
        return once()
    return run_with_retry(
        once,
        attempts=int(current_app.config.get("RECONCILE_MAX_ATTEMPTS", 3)),
        label="order_transition",
        context={"order_id": int(order.id), "transition": (event or "").strip().upper()},
    )


def _execute_once(
    order: Order,
    event: str,
    *,
    actor: Actor,
    reason: str,
    idempotency_key: str,
    now: datetime | None,
    commit: bool,
    dispatch: bool,
) -> TransitionResult:
    key = (idempotency_key or "").strip()
    snapshot = OrderSnapshot.from_order(order)
    if _duplicate_key(order, key):
        return TransitionResult.noop(snapshot, event)

    result = plan(
        snapshot,
        event,
        actor=actor,
        now=now or datetime.utcnow(),
        policy=transition_policy(),
        reason=reason,
    )
    if not result.changed:
        current_app.logger.info(
            "order_transition_noop order_id=%s event=%s status=%s", int(order.id), result.event, result.to_status
        )
        return result

    try:
        for name, value in result.updates.items():
            setattr(order, name, value)
        EscrowLedger().apply_all(result.ledger)
        db.session.add(order)
        db.session.add(
            OrderTransition(
                order_id=int(order.id),
                event=result.event,
                from_status=result.from_status,
                to_status=result.to_status,
                actor_type=actor.role[:16],
                actor_id=actor.id,
                idempotency_key=key[:160] or None,
                reason=(result.reason or reason or "")[:240] or None,
                metadata_json=json.dumps({"ledger": [intent.to_dict() for intent in result.ledger]}),
            )
        )
        # Version check happens here; a concurrent writer surfaces as StaleDataError.
        db.session.flush()
        if commit:
            db.session.commit()
    except Exception:
        if commit:
            db.session.rollback()
        raise

    if commit and dispatch:
        dispatch_notifications(result.notifications)

    current_app.logger.info(
        json.dumps(
            {
                "event": "order_transition",
                "order_id": int(order.id),
                "transition": result.event,
                "from": result.from_status,
                "to": result.to_status,
                "actor": actor.role,
                "committed": bool(commit),
            }
        )
    )
    return result


def mark_ready_for_pickup(order: Order, *, seller_id: int) -> TransitionResult:
    return execute_transition(order, OrderEvent.SELLER_MARKED_READY, actor={"role": "seller", "id": seller_id})


def confirm_receipt(order: Order, *, buyer_id: int) -> TransitionResult:
    return execute_transition(order, OrderEvent.BUYER_CONFIRMED_RECEIPT, actor={"role": "buyer", "id": buyer_id})


def confirm_service_booking(order: Order, *, seller_id: int) -> TransitionResult:
    return execute_transition(order, OrderEvent.SELLER_CONFIRMED_SERVICE, actor={"role": "seller", "id": seller_id})


def confirm_service_delivered(order: Order, *, buyer_id: int) -> TransitionResult:
    return execute_transition(order, OrderEvent.BUYER_CONFIRMED_SERVICE, actor={"role": "buyer", "id": buyer_id})


def cancel_order(order: Order, *, actor, reason: str = "") -> TransitionResult:
    return execute_transition(order, OrderEvent.CANCEL, actor=actor, reason=reason)
