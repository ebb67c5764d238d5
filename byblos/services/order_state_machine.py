from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from byblos.errors import AuthorizationError, GuardViolation, InvalidTransition
from byblos.services.escrow_ledger import (
    LedgerIntent,
    buyer_refunds,
    platform_fees,
    seller_available,
    seller_held,
)
from byblos.services.fees import clamp_rate, split_minor


class OrderStatus:
    PENDING = "PENDING"
    SERVICE_PENDING = "SERVICE_PENDING"
    DELIVERY_PENDING = "DELIVERY_PENDING"
    COLLECTION_PENDING = "COLLECTION_PENDING"
    DELIVERY_COMPLETE = "DELIVERY_COMPLETE"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    TERMINAL = {COMPLETED, CANCELLED, FAILED}
    ALL = {
        PENDING,
        SERVICE_PENDING,
        DELIVERY_PENDING,
        COLLECTION_PENDING,
        DELIVERY_COMPLETE,
        CONFIRMED,
        COMPLETED,
        CANCELLED,
        FAILED,
    }


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REVERSED = "reversed"


class ProductType:
    PHYSICAL = "physical"
    DIGITAL = "digital"
    SERVICE = "service"

    ALL = {PHYSICAL, DIGITAL, SERVICE}


class OrderEvent:
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_EXPIRED = "PAYMENT_EXPIRED"
    SELLER_MARKED_READY = "SELLER_MARKED_READY"
    BUYER_CONFIRMED_RECEIPT = "BUYER_CONFIRMED_RECEIPT"
    SELLER_CONFIRMED_SERVICE = "SELLER_CONFIRMED_SERVICE"
    BUYER_CONFIRMED_SERVICE = "BUYER_CONFIRMED_SERVICE"
    CANCEL = "CANCEL"
    SELLER_DROPOFF_EXPIRED = "SELLER_DROPOFF_EXPIRED"
    BUYER_PICKUP_EXPIRED = "BUYER_PICKUP_EXPIRED"
    SERVICE_AUTO_RELEASE = "SERVICE_AUTO_RELEASE"


class ActorRole:
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


# PAYMENT_CONFIRMED lands on a fulfilment status chosen from the order's items.
FULFILMENT = "FULFILMENT"
FULFILMENT_TARGETS = {
    OrderStatus.DELIVERY_PENDING,
    OrderStatus.COLLECTION_PENDING,
    OrderStatus.SERVICE_PENDING,
    OrderStatus.COMPLETED,
}

_CANCELLABLE = (
    OrderStatus.PENDING,
    OrderStatus.SERVICE_PENDING,
    OrderStatus.DELIVERY_PENDING,
    OrderStatus.COLLECTION_PENDING,
    OrderStatus.DELIVERY_COMPLETE,
    OrderStatus.CONFIRMED,
)

TRANSITIONS: dict[str, dict[str, str]] = {
    OrderEvent.PAYMENT_CONFIRMED: {OrderStatus.PENDING: FULFILMENT},
    # A failed attempt keeps the order open for another one.
    OrderEvent.PAYMENT_FAILED: {OrderStatus.PENDING: OrderStatus.PENDING},
    OrderEvent.PAYMENT_EXPIRED: {OrderStatus.PENDING: OrderStatus.FAILED},
    OrderEvent.SELLER_MARKED_READY: {OrderStatus.DELIVERY_PENDING: OrderStatus.DELIVERY_COMPLETE},
    OrderEvent.BUYER_CONFIRMED_RECEIPT: {
        OrderStatus.DELIVERY_COMPLETE: OrderStatus.COMPLETED,
        OrderStatus.COLLECTION_PENDING: OrderStatus.COMPLETED,
    },
    OrderEvent.SELLER_CONFIRMED_SERVICE: {OrderStatus.SERVICE_PENDING: OrderStatus.CONFIRMED},
    OrderEvent.BUYER_CONFIRMED_SERVICE: {
        OrderStatus.SERVICE_PENDING: OrderStatus.COMPLETED,
        OrderStatus.CONFIRMED: OrderStatus.COMPLETED,
    },
    OrderEvent.CANCEL: {status: OrderStatus.CANCELLED for status in _CANCELLABLE},
    OrderEvent.SELLER_DROPOFF_EXPIRED: {OrderStatus.DELIVERY_PENDING: OrderStatus.CANCELLED},
    OrderEvent.BUYER_PICKUP_EXPIRED: {OrderStatus.DELIVERY_COMPLETE: OrderStatus.CANCELLED},
    OrderEvent.SERVICE_AUTO_RELEASE: {
        OrderStatus.SERVICE_PENDING: OrderStatus.COMPLETED,
        OrderStatus.CONFIRMED: OrderStatus.COMPLETED,
    },
}

EVENT_ACTORS: dict[str, set[str]] = {
    OrderEvent.PAYMENT_CONFIRMED: {ActorRole.SYSTEM, ActorRole.ADMIN},
    OrderEvent.PAYMENT_FAILED: {ActorRole.SYSTEM, ActorRole.ADMIN},
    OrderEvent.PAYMENT_EXPIRED: {ActorRole.SYSTEM, ActorRole.ADMIN},
    OrderEvent.SELLER_MARKED_READY: {ActorRole.SELLER, ActorRole.ADMIN},
    OrderEvent.BUYER_CONFIRMED_RECEIPT: {ActorRole.BUYER, ActorRole.ADMIN},
    OrderEvent.SELLER_CONFIRMED_SERVICE: {ActorRole.SELLER, ActorRole.ADMIN},
    OrderEvent.BUYER_CONFIRMED_SERVICE: {ActorRole.BUYER, ActorRole.ADMIN},
    OrderEvent.CANCEL: {ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN, ActorRole.SYSTEM},
    OrderEvent.SELLER_DROPOFF_EXPIRED: {ActorRole.SYSTEM, ActorRole.ADMIN},
    OrderEvent.BUYER_PICKUP_EXPIRED: {ActorRole.SYSTEM, ActorRole.ADMIN},
    OrderEvent.SERVICE_AUTO_RELEASE: {ActorRole.SYSTEM, ActorRole.ADMIN},
}

SELLER_DROPOFF_TIMEOUT_REASON = "seller dropoff timeout"
BUYER_PICKUP_TIMEOUT_REASON = "buyer pickup timeout"

_NOT_YET_AVAILABLE = {
    OrderEvent.SELLER_MARKED_READY: "Order is not awaiting seller drop-off",
    OrderEvent.BUYER_CONFIRMED_RECEIPT: "Order is not yet ready to be confirmed as received",
    OrderEvent.SELLER_CONFIRMED_SERVICE: "Service booking is not awaiting seller confirmation",
    OrderEvent.BUYER_CONFIRMED_SERVICE: "Service is not yet available to confirm",
    OrderEvent.PAYMENT_CONFIRMED: "Order is not awaiting payment",
    OrderEvent.PAYMENT_FAILED: "Order is not awaiting payment",
    OrderEvent.PAYMENT_EXPIRED: "Order is not awaiting payment",
}


def event_targets(event: str) -> set[str]:
    targets = set()
    for target in TRANSITIONS.get(event, {}).values():
        if target == FULFILMENT:
            targets |= FULFILMENT_TARGETS
        else:
            targets.add(target)
    return targets


@dataclass(frozen=True)
class Actor:
    role: str = ActorRole.SYSTEM
    id: int | None = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(ActorRole.SYSTEM, None)

    @classmethod
    def parse(cls, actor) -> "Actor":
        if isinstance(actor, Actor):
            return actor
        if isinstance(actor, dict):
            role = str(actor.get("role") or actor.get("type") or ActorRole.SYSTEM).strip().lower()
            actor_id_raw = actor.get("id")
            try:
                actor_id = int(actor_id_raw) if actor_id_raw is not None else None
            except (TypeError, ValueError):
                actor_id = None
            return cls(role, actor_id)
        return cls.system()


@dataclass(frozen=True)
class NotificationIntent:
    recipient_role: str
    order_id: int | None
    template: str
    recipient_id: int | None = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "recipient_role": self.recipient_role,
            "recipient_id": self.recipient_id,
            "order_id": self.order_id,
            "template": self.template,
            "data": dict(self.data or {}),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "NotificationIntent":
        return cls(
            recipient_role=str(payload.get("recipient_role") or ""),
            recipient_id=payload.get("recipient_id"),
            order_id=payload.get("order_id"),
            template=str(payload.get("template") or ""),
            data=dict(payload.get("data") or {}),
        )


@dataclass(frozen=True)
class TransitionPolicy:
    commission_rate: object = "0.09"
    seller_dropoff_hours: int = 48
    buyer_pickup_hours: int = 48
    service_release_hours: int = 24
    payment_expiry_hours: int = 24


@dataclass(frozen=True)
class OrderSnapshot:
    """Immutable view of an order; the state machine reads only this."""

    id: int
    order_number: str
    buyer_id: int
    seller_id: int
    status: str
    payment_status: str
    total_amount: int
    currency: str = "KES"
    product_types: frozenset = frozenset({ProductType.PHYSICAL})
    seller_has_shop: bool = False
    seller_dropoff_deadline: datetime | None = None
    buyer_pickup_deadline: datetime | None = None
    booking_date: datetime | None = None
    created_at: datetime | None = None
    platform_fee: int | None = None
    seller_payout: int | None = None

    @classmethod
    def from_order(cls, order) -> "OrderSnapshot":
        types = frozenset(
            (item.product_type or ProductType.PHYSICAL).strip().lower() for item in (order.items or [])
        )
        return cls(
            id=int(order.id),
            order_number=order.order_number or "",
            buyer_id=int(order.buyer_id),
            seller_id=int(order.seller_id),
            status=(order.status or OrderStatus.PENDING).strip().upper(),
            payment_status=(order.payment_status or PaymentStatus.PENDING).strip().lower(),
            total_amount=int(order.total_amount or 0),
            currency=order.currency or "KES",
            product_types=types or frozenset({ProductType.PHYSICAL}),
            seller_has_shop=bool(order.seller_has_shop),
            seller_dropoff_deadline=order.seller_dropoff_deadline,
            buyer_pickup_deadline=order.buyer_pickup_deadline,
            booking_date=order.booking_date,
            created_at=order.created_at,
            platform_fee=int(order.platform_fee) if order.platform_fee is not None else None,
            seller_payout=int(order.seller_payout) if order.seller_payout is not None else None,
        )

    @property
    def has_physical(self) -> bool:
        return ProductType.PHYSICAL in self.product_types

    @property
    def is_service(self) -> bool:
        return not self.has_physical and ProductType.SERVICE in self.product_types

    @property
    def is_digital_only(self) -> bool:
        return self.product_types == frozenset({ProductType.DIGITAL})


@dataclass
class TransitionResult:
    order_id: int
    event: str
    from_status: str
    to_status: str
    changed: bool = True
    updates: dict = field(default_factory=dict)
    ledger: list = field(default_factory=list)
    notifications: list = field(default_factory=list)
    reason: str = ""

    @classmethod
    def noop(cls, snapshot: OrderSnapshot, event: str) -> "TransitionResult":
        return cls(
            order_id=snapshot.id,
            event=event,
            from_status=snapshot.status,
            to_status=snapshot.status,
            changed=False,
        )

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "event": self.event,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "changed": bool(self.changed),
            "reason": self.reason,
            "ledger": [intent.to_dict() for intent in self.ledger],
            "notifications": [intent.to_dict() for intent in self.notifications],
        }


def fulfilment_status(snapshot: OrderSnapshot) -> str:
    if snapshot.has_physical:
        if snapshot.seller_has_shop:
            return OrderStatus.COLLECTION_PENDING
        return OrderStatus.DELIVERY_PENDING
    if snapshot.is_service:
        return OrderStatus.SERVICE_PENDING
    return OrderStatus.COMPLETED


def _authorize(snapshot: OrderSnapshot, event: str, actor: Actor) -> None:
    allowed = EVENT_ACTORS.get(event, set())
    if actor.role not in allowed:
        raise AuthorizationError(
            f"{actor.role} may not perform {event}",
            details={"order_id": snapshot.id, "event": event},
        )
    if actor.role == ActorRole.BUYER and actor.id != snapshot.buyer_id:
        raise AuthorizationError("Only the buyer on this order can do that", details={"order_id": snapshot.id})
    if actor.role == ActorRole.SELLER and actor.id != snapshot.seller_id:
        raise AuthorizationError("Only the seller on this order can do that", details={"order_id": snapshot.id})


def _base_data(snapshot: OrderSnapshot, to_status: str) -> dict:
    return {
        "order_number": snapshot.order_number,
        "total_amount": snapshot.total_amount,
        "currency": snapshot.currency,
        "status": to_status,
    }


def _notify(snapshot: OrderSnapshot, role: str, template: str, data: dict) -> NotificationIntent:
    recipient_id = None
    if role == "buyer":
        recipient_id = snapshot.buyer_id
    elif role == "seller":
        recipient_id = snapshot.seller_id
    return NotificationIntent(
        recipient_role=role,
        recipient_id=recipient_id,
        order_id=snapshot.id,
        template=template,
        data=dict(data),
    )


def _split(snapshot: OrderSnapshot, policy: TransitionPolicy) -> tuple[int, int]:
    if snapshot.seller_payout is not None and snapshot.platform_fee is not None:
        return int(snapshot.seller_payout), int(snapshot.platform_fee)
    return split_minor(int(snapshot.total_amount), policy.commission_rate)


def _release_intents(snapshot: OrderSnapshot, payout: int) -> list[LedgerIntent]:
    ref = f"order:{snapshot.id}"
    return [
        LedgerIntent("debit", seller_held(snapshot.seller_id), payout, "escrow_release", ref),
        LedgerIntent("credit", seller_available(snapshot.seller_id), payout, "escrow_release", ref),
    ]


def _plan_payment_confirmed(result, snapshot, policy, now):
    rate = clamp_rate(policy.commission_rate)
    payout, fee = split_minor(int(snapshot.total_amount), rate)
    target = fulfilment_status(snapshot)
    ref = f"order:{snapshot.id}"
    result.to_status = target
    result.updates.update(
        payment_status=PaymentStatus.PAID,
        paid_at=now,
        commission_rate=rate,
        platform_fee=fee,
        seller_payout=payout,
    )
    data = _base_data(snapshot, target)
    data.update(seller_payout=payout, platform_fee=fee)

    if target == OrderStatus.COMPLETED:
        result.updates["completed_at"] = now
        result.ledger += [
            LedgerIntent("credit", seller_available(snapshot.seller_id), payout, "digital_sale", ref),
            LedgerIntent("credit", platform_fees(), fee, "platform_fee", ref),
        ]
        result.notifications += [
            _notify(snapshot, "buyer", "digital_order_ready", data),
            _notify(snapshot, "seller", "digital_sale_completed", data),
        ]
        return

    result.ledger += [
        LedgerIntent("credit", seller_held(snapshot.seller_id), payout, "escrow_hold", ref),
        LedgerIntent("credit", platform_fees(), fee, "platform_fee", ref),
    ]
    if target == OrderStatus.DELIVERY_PENDING:
        deadline = now + timedelta(hours=int(policy.seller_dropoff_hours))
        result.updates["seller_dropoff_deadline"] = deadline
        data["seller_dropoff_deadline"] = deadline.isoformat()
        result.notifications += [
            _notify(snapshot, "buyer", "order_paid_buyer", data),
            _notify(snapshot, "seller", "new_order_seller", data),
            _notify(snapshot, "logistics", "new_order_logistics", data),
        ]
    elif target == OrderStatus.COLLECTION_PENDING:
        result.notifications += [
            _notify(snapshot, "buyer", "order_ready_for_collection", data),
            _notify(snapshot, "seller", "new_collection_order_seller", data),
        ]
    else:
        result.notifications += [
            _notify(snapshot, "buyer", "service_booked_buyer", data),
            _notify(snapshot, "seller", "new_service_booking_seller", data),
        ]


def _plan_completion(result, snapshot, policy, now):
    payout, fee = _split(snapshot, policy)
    result.updates["completed_at"] = now
    result.ledger += _release_intents(snapshot, payout)
    data = _base_data(snapshot, OrderStatus.COMPLETED)
    data.update(seller_payout=payout, platform_fee=fee)
    if result.event == OrderEvent.SERVICE_AUTO_RELEASE:
        data["auto_released"] = True
    result.notifications += [
        _notify(snapshot, "buyer", "order_completed_buyer", data),
        _notify(snapshot, "seller", "payout_released", data),
    ]


def _cancel_initiator(event: str, actor: Actor) -> str:
    if event == OrderEvent.SELLER_DROPOFF_EXPIRED:
        return "seller_timeout"
    if event == OrderEvent.BUYER_PICKUP_EXPIRED:
        return "buyer_timeout"
    return actor.role


def _plan_cancellation(result, snapshot, policy, now, actor, reason):
    initiator = _cancel_initiator(result.event, actor)
    if result.event == OrderEvent.SELLER_DROPOFF_EXPIRED:
        reason = SELLER_DROPOFF_TIMEOUT_REASON
    elif result.event == OrderEvent.BUYER_PICKUP_EXPIRED:
        reason = BUYER_PICKUP_TIMEOUT_REASON
    system_initiated = actor.role == ActorRole.SYSTEM or initiator in ("seller_timeout", "buyer_timeout")

    result.reason = (reason or "").strip()
    result.updates.update(cancelled_at=now, cancelled_by=actor.role)
    if system_initiated:
        result.updates["auto_cancelled_reason"] = result.reason or "cancelled by system"

    data = _base_data(snapshot, OrderStatus.CANCELLED)
    data.update(cancelled_by=initiator, reason=result.reason)

    if snapshot.payment_status == PaymentStatus.PAID:
        payout, fee = _split(snapshot, policy)
        ref = f"order:{snapshot.id}"
        result.updates["payment_status"] = PaymentStatus.REVERSED
        result.ledger += [
            LedgerIntent("debit", seller_held(snapshot.seller_id), payout, "escrow_reversal", ref),
            LedgerIntent("debit", platform_fees(), fee, "platform_fee_reversal", ref),
            LedgerIntent("credit", buyer_refunds(snapshot.buyer_id), int(snapshot.total_amount), "order_refund", ref),
        ]
        data["refund_amount"] = int(snapshot.total_amount)

    result.notifications += [
        _notify(snapshot, "buyer", "order_cancelled_buyer", data),
        _notify(snapshot, "seller", "order_cancelled_seller", data),
    ]
    if snapshot.has_physical and snapshot.payment_status == PaymentStatus.PAID:
        logistics = dict(data)
        logistics["do_not_process"] = True
        result.notifications.append(_notify(snapshot, "logistics", "order_cancelled_logistics", logistics))


def _check_guards(snapshot: OrderSnapshot, event: str, policy: TransitionPolicy, now: datetime) -> None:
    if event == OrderEvent.PAYMENT_CONFIRMED:
        if snapshot.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise GuardViolation(
                "Order payment is not pending",
                details={"order_id": snapshot.id, "payment_status": snapshot.payment_status},
            )
        if snapshot.total_amount <= 0:
            raise GuardViolation("Order total must be positive", details={"order_id": snapshot.id})
    elif event == OrderEvent.SELLER_MARKED_READY:
        deadline = snapshot.seller_dropoff_deadline
        if deadline is not None and now > deadline:
            raise GuardViolation(
                "The drop-off deadline for this order has passed",
                details={"order_id": snapshot.id, "deadline": deadline.isoformat()},
            )
    elif event == OrderEvent.SELLER_DROPOFF_EXPIRED:
        deadline = snapshot.seller_dropoff_deadline
        if deadline is None or not now > deadline:
            raise GuardViolation("Seller drop-off deadline has not elapsed", details={"order_id": snapshot.id})
    elif event == OrderEvent.BUYER_PICKUP_EXPIRED:
        deadline = snapshot.buyer_pickup_deadline
        if deadline is None or not now > deadline:
            raise GuardViolation("Buyer pickup deadline has not elapsed", details={"order_id": snapshot.id})
    elif event == OrderEvent.SERVICE_AUTO_RELEASE:
        booking = snapshot.booking_date
        if booking is None or not now > booking + timedelta(hours=int(policy.service_release_hours)):
            raise GuardViolation("Service release window has not elapsed", details={"order_id": snapshot.id})
    elif event == OrderEvent.PAYMENT_EXPIRED:
        created = snapshot.created_at
        if created is None or not now > created + timedelta(hours=int(policy.payment_expiry_hours)):
            raise GuardViolation("Payment window has not elapsed", details={"order_id": snapshot.id})


def plan(
    snapshot: OrderSnapshot,
    event: str,
    *,
    actor=None,
    now: datetime | None = None,
    policy: TransitionPolicy | None = None,
    reason: str = "",
) -> TransitionResult:
    """Decide a transition without touching storage.

    Raises InvalidTransition from terminal states, AuthorizationError for the
    wrong actor and GuardViolation for events that are not available yet.
    Replaying an event whose target is already the current status returns a
    result with ``changed=False`` and no effects.
    """
    now = now or datetime.utcnow()
    policy = policy or TransitionPolicy()
    actor = Actor.parse(actor)
    event = (event or "").strip().upper()
    current = snapshot.status

    if event not in TRANSITIONS:
        raise GuardViolation(f"unknown order event {event!r}", details={"order_id": snapshot.id})
    if current in OrderStatus.TERMINAL:
        raise InvalidTransition(
            f"Order is already {current.lower()}",
            details={"order_id": snapshot.id, "status": current, "event": event},
        )

    _authorize(snapshot, event, actor)

    edges = TRANSITIONS[event]
    if current not in edges:
        if current in event_targets(event):
            return TransitionResult.noop(snapshot, event)
        raise GuardViolation(
            _NOT_YET_AVAILABLE.get(event, "This action is not available for the order right now"),
            details={"order_id": snapshot.id, "status": current, "event": event},
        )

    _check_guards(snapshot, event, policy, now)

    result = TransitionResult(
        order_id=snapshot.id,
        event=event,
        from_status=current,
        to_status=edges[current],
    )

    if event == OrderEvent.PAYMENT_CONFIRMED:
        _plan_payment_confirmed(result, snapshot, policy, now)
    elif event == OrderEvent.PAYMENT_FAILED:
        result.updates["payment_status"] = PaymentStatus.FAILED
        result.notifications.append(
            _notify(snapshot, "buyer", "payment_failed", _base_data(snapshot, OrderStatus.PENDING))
        )
    elif event == OrderEvent.PAYMENT_EXPIRED:
        result.reason = "payment window elapsed"
        result.updates["payment_status"] = PaymentStatus.FAILED
        result.notifications.append(
            _notify(snapshot, "buyer", "payment_expired", _base_data(snapshot, OrderStatus.FAILED))
        )
    elif event == OrderEvent.SELLER_MARKED_READY:
        deadline = now + timedelta(hours=int(policy.buyer_pickup_hours))
        result.updates.update(ready_for_pickup_at=now, buyer_pickup_deadline=deadline)
        data = _base_data(snapshot, result.to_status)
        data["buyer_pickup_deadline"] = deadline.isoformat()
        result.notifications += [
            _notify(snapshot, "buyer", "order_ready_for_pickup", data),
            _notify(snapshot, "seller", "dropoff_confirmed", data),
        ]
    elif event == OrderEvent.SELLER_CONFIRMED_SERVICE:
        result.notifications.append(
            _notify(snapshot, "buyer", "service_confirmed", _base_data(snapshot, result.to_status))
        )
    elif result.to_status == OrderStatus.COMPLETED:
        _plan_completion(result, snapshot, policy, now)
    elif result.to_status == OrderStatus.CANCELLED:
        _plan_cancellation(result, snapshot, policy, now, actor, reason)

    result.updates["status"] = result.to_status
    return result
