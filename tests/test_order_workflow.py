from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.exc import IntegrityError

from byblos.errors import AuthorizationError, GuardViolation, InvalidTransition, ValidationError
from byblos.extensions import db
from byblos.models import Notification, Order, OrderTransition
from byblos.services.escrow_ledger import EscrowLedger, buyer_refunds, platform_fees, seller_available, seller_held
from byblos.services.order_state_machine import OrderEvent, OrderStatus, PaymentStatus
from byblos.services.order_workflow import (
    bound_transaction_time,
    cancel_order,
    confirm_receipt,
    confirm_service_booking,
    confirm_service_delivered,
    create_order,
    execute_transition,
    mark_ready_for_pickup,
    timeout_statements,
)
from tests.support import T0, AppTestMixin, physical_order, service_order


def pay(order, now=None):
    return execute_transition(
        order,
        OrderEvent.PAYMENT_CONFIRMED,
        actor={"role": "system"},
        idempotency_key=f"payment:test:{order.id}",
        now=now,
    )


class CreateOrderTestCase(AppTestMixin, unittest.TestCase):
    def test_totals_come_from_items(self):
        order = create_order(
            buyer_id=1,
            seller_id=2,
            items=[
                {"name": "Kikoi", "unit_price": 120000, "quantity": 2},
                {"name": "Sandals", "unit_price": 45000},
            ],
            shipping_address={"city": "Mombasa"},
        )
        self.assertEqual(order.total_amount, 285000)
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)
        self.assertTrue(order.order_number.startswith("BYB-"))
        self.assertEqual([item.name for item in order.items], ["Kikoi", "Sandals"])
        self.assertEqual(order.shipping_address, {"city": "Mombasa"})

    def test_rejects_bad_input(self):
        cases = [
            dict(items=[]),
            dict(items=[{"name": "", "unit_price": 100}], shipping_address={"city": "x"}),
            dict(items=[{"name": "A", "unit_price": 10.5}], shipping_address={"city": "x"}),
            dict(items=[{"name": "A", "unit_price": 100, "quantity": 0}], shipping_address={"city": "x"}),
            dict(items=[{"name": "A", "unit_price": 100, "product_type": "crypto"}], shipping_address={"city": "x"}),
            dict(items=[{"name": "A", "unit_price": 100}]),
            dict(items=[{"name": "A", "unit_price": 100, "product_type": "service"}]),
        ]
        for case in cases:
            with self.assertRaises(ValidationError, msg=repr(case)):
                create_order(buyer_id=1, seller_id=2, **case)
        self.assertEqual(Order.query.count(), 0)

    def test_shop_pickup_does_not_need_an_address(self):
        order = physical_order(seller_has_shop=True)
        self.assertIsNotNone(order.id)


class PhysicalLifecycleTestCase(AppTestMixin, unittest.TestCase):
    def test_delivery_flow_moves_money_from_held_to_available(self):
        order = physical_order()
        pay(order)
        ledger = EscrowLedger()
        self.assertEqual(order.status, OrderStatus.DELIVERY_PENDING)
        self.assertEqual(order.seller_dropoff_deadline - order.paid_at, timedelta(hours=48))
        self.assertEqual(ledger.balance(seller_held(22)), 135000)
        self.assertEqual(ledger.balance(platform_fees()), 15000)

        mark_ready_for_pickup(order, seller_id=22)
        self.assertEqual(order.status, OrderStatus.DELIVERY_COMPLETE)
        self.assertIsNotNone(order.buyer_pickup_deadline)

        confirm_receipt(order, buyer_id=11)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(ledger.balance(seller_held(22)), 0)
        self.assertEqual(ledger.balance(seller_available(22)), 135000)
        self.assertEqual(ledger.balance(platform_fees()), 15000)

        events = [row.event for row in OrderTransition.query.order_by(OrderTransition.id.asc())]
        self.assertEqual(
            events,
            [OrderEvent.PAYMENT_CONFIRMED, OrderEvent.SELLER_MARKED_READY, OrderEvent.BUYER_CONFIRMED_RECEIPT],
        )
        self.assertGreater(Notification.query.count(), 0)

    def test_collection_order_completes_on_receipt(self):
        order = physical_order(seller_has_shop=True)
        pay(order)
        self.assertEqual(order.status, OrderStatus.COLLECTION_PENDING)
        confirm_receipt(order, buyer_id=11)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 135000)

    def test_cancel_refunds_buyer_and_reverses_fee(self):
        order = physical_order()
        pay(order)
        cancel_order(order, actor={"role": "buyer", "id": 11}, reason="found it cheaper")

        ledger = EscrowLedger()
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.payment_status, PaymentStatus.REVERSED)
        self.assertEqual(order.cancelled_by, "buyer")
        self.assertEqual(ledger.balance(seller_held(22)), 0)
        self.assertEqual(ledger.balance(platform_fees()), 0)
        self.assertEqual(ledger.balance(buyer_refunds(11)), 150000)
        logistics = Notification.query.filter_by(recipient_role="logistics", template="order_cancelled_logistics").count()
        self.assertEqual(logistics, 1)

        with self.assertRaises(InvalidTransition):
            confirm_receipt(order, buyer_id=11)

    def test_wrong_buyer_changes_nothing(self):
        order = physical_order()
        pay(order)
        mark_ready_for_pickup(order, seller_id=22)
        with self.assertRaises(AuthorizationError):
            confirm_receipt(order, buyer_id=999)
        db.session.refresh(order)
        self.assertEqual(order.status, OrderStatus.DELIVERY_COMPLETE)

    def test_repeated_idempotency_key_is_a_noop(self):
        order = physical_order()
        first = pay(order)
        second = pay(order)
        self.assertTrue(first.changed)
        self.assertFalse(second.changed)
        self.assertEqual(OrderTransition.query.count(), 1)
        self.assertEqual(EscrowLedger().balance(seller_held(22)), 135000)

    def test_uncommitted_transition_leaves_dispatch_to_caller(self):
        order = physical_order()
        result = execute_transition(
            order, OrderEvent.PAYMENT_CONFIRMED, actor={"role": "system"}, now=T0, commit=False, dispatch=False
        )
        self.assertEqual(len(result.notifications), 3)
        self.assertEqual(Notification.query.count(), 0)
        db.session.rollback()
        self.assertEqual(db.session.get(Order, order.id).status, OrderStatus.PENDING)


class TransactionBoundaryTestCase(AppTestMixin, unittest.TestCase):
    def _ready_order(self):
        order = physical_order()
        pay(order)
        mark_ready_for_pickup(order, seller_id=22)
        return order

    def test_user_action_is_retried_after_unique_conflict(self):
        order = self._ready_order()
        original = EscrowLedger.apply_all
        calls = []

        def flaky(ledger, intents):
            calls.append(len(intents))
            if len(calls) == 1:
                raise IntegrityError("INSERT INTO ledger_accounts", {}, Exception("UNIQUE constraint failed"))
            return original(ledger, intents)

        with patch.object(EscrowLedger, "apply_all", flaky):
            confirm_receipt(order, buyer_id=11)

        self.assertEqual(len(calls), 2)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        ledger = EscrowLedger()
        self.assertEqual(ledger.balance(seller_held(22)), 0)
        self.assertEqual(ledger.balance(seller_available(22)), 135000)
        self.assertEqual(OrderTransition.query.filter_by(event=OrderEvent.BUYER_CONFIRMED_RECEIPT).count(), 1)

    def test_retries_are_bounded(self):
        order = self._ready_order()
        conflict = IntegrityError("INSERT INTO ledger_accounts", {}, Exception("UNIQUE constraint failed"))
        with patch.object(EscrowLedger, "apply_all", side_effect=conflict) as apply_all:
            with self.assertRaises(IntegrityError):
                confirm_receipt(order, buyer_id=11)
        self.assertEqual(apply_all.call_count, 3)
        db.session.refresh(order)
        self.assertEqual(order.status, OrderStatus.DELIVERY_COMPLETE)

    def test_timeouts_only_apply_to_postgres(self):
        self.assertEqual(
            timeout_statements("postgresql", 5000),
            ["SET LOCAL statement_timeout = 5000", "SET LOCAL lock_timeout = 5000"],
        )
        self.assertEqual(timeout_statements("sqlite", 5000), [])
        self.assertEqual(timeout_statements("postgresql", 0), [])
        bound_transaction_time(5000)


class ServiceLifecycleTestCase(AppTestMixin, unittest.TestCase):
    def test_confirm_then_deliver(self):
        order = service_order(booking_date=T0 + timedelta(days=2))
        pay(order)
        self.assertEqual(order.status, OrderStatus.SERVICE_PENDING)
        confirm_service_booking(order, seller_id=22)
        self.assertEqual(order.status, OrderStatus.CONFIRMED)
        confirm_service_delivered(order, buyer_id=11)
        self.assertEqual(order.status, OrderStatus.COMPLETED)
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 72000)

    def test_receipt_confirmation_does_not_apply_to_services(self):
        order = service_order(booking_date=T0 + timedelta(days=2))
        pay(order)
        with self.assertRaises(GuardViolation):
            confirm_receipt(order, buyer_id=11)


if __name__ == "__main__":
    unittest.main()
