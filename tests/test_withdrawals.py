from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

import requests

from byblos.errors import InsufficientBalance, InvalidAmount, ValidationError
from byblos.extensions import db
from byblos.models import AuditEvent, Notification, WithdrawalRequest
from byblos.services.escrow_ledger import EscrowLedger, account_key, platform_fees, seller_available
from byblos.services.withdrawal_service import reconcile_stuck_withdrawals, request_withdrawal
from tests.support import AppTestMixin


def fund(account: str, amount: int) -> None:
    EscrowLedger().credit(account, amount, "seed")
    db.session.commit()


class RequestWithdrawalTestCase(AppTestMixin, unittest.TestCase):
    def test_seller_withdrawal_debits_balance(self):
        fund(seller_available(22), 300000)
        req = request_withdrawal(amount=120000, mpesa_number="+254 712 345 678", seller_id=22)

        self.assertEqual(req.status, "processing")
        self.assertEqual(req.mpesa_number, "254712345678")
        self.assertTrue(req.provider_reference.startswith("MOCK-"))
        self.assertEqual(req.debited_amount, 120000)
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 180000)

    def test_insufficient_balance_creates_nothing(self):
        fund(seller_available(22), 5000)
        with self.assertRaises(InsufficientBalance):
            request_withdrawal(amount=10000, mpesa_number="0712345678", seller_id=22)
        self.assertEqual(WithdrawalRequest.query.count(), 0)
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 5000)

    def test_owner_must_be_exactly_one_party(self):
        with self.assertRaises(ValidationError):
            request_withdrawal(amount=10000, mpesa_number="0712345678")
        with self.assertRaises(ValidationError):
            request_withdrawal(amount=10000, mpesa_number="0712345678", seller_id=22, organizer_id=5)

    def test_amount_limits(self):
        fund(seller_available(22), 50_000_000)
        for amount in (999, 15_000_001, 1500.0):
            with self.assertRaises(InvalidAmount, msg=repr(amount)):
                request_withdrawal(amount=amount, mpesa_number="0712345678", seller_id=22)

    def test_phone_number_is_validated(self):
        fund(seller_available(22), 50000)
        with self.assertRaises(ValidationError):
            request_withdrawal(amount=10000, mpesa_number="12345", seller_id=22)

    def test_event_withdrawal_is_grossed_up(self):
        event_account = account_key("event", 9, "available")
        fund(event_account, 200000)
        req = request_withdrawal(amount=94000, mpesa_number="0712345678", organizer_id=5, event_id=9)

        self.assertEqual(req.debited_amount, 100000)
        self.assertEqual(EscrowLedger().balance(event_account), 100000)
        self.assertEqual(EscrowLedger().balance(platform_fees()), 6000)

    def test_provider_failure_refunds_and_notifies(self):
        self.app.config["MOCK_PAYOUT_FORCE_FAIL"] = True
        fund(seller_available(22), 300000)
        req = request_withdrawal(amount=120000, mpesa_number="0712345678", seller_id=22)

        self.assertEqual(req.status, "failed")
        self.assertIn("MOCK_PAYOUT_FAILED", req.failure_reason)
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 300000)
        note = Notification.query.filter_by(template="withdrawal_failed").one()
        self.assertEqual(note.recipient_id, 22)

    def test_event_withdrawal_failure_reverses_fee(self):
        self.app.config["MOCK_PAYOUT_FORCE_FAIL"] = True
        event_account = account_key("event", 9, "available")
        fund(event_account, 200000)
        request_withdrawal(amount=94000, mpesa_number="0712345678", organizer_id=5, event_id=9)

        self.assertEqual(EscrowLedger().balance(event_account), 200000)
        self.assertEqual(EscrowLedger().balance(platform_fees()), 0)

    def test_network_error_is_treated_as_failure(self):
        fund(seller_available(22), 300000)
        with patch(
            "byblos.integrations.payouts.mock_provider.MockPayoutsProvider.send_payout",
            side_effect=requests.ConnectionError("timed out"),
        ):
            req = request_withdrawal(amount=120000, mpesa_number="0712345678", seller_id=22)
        self.assertEqual(req.status, "failed")
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 300000)


class StuckWithdrawalTestCase(AppTestMixin, unittest.TestCase):
    def test_old_processing_withdrawals_are_flagged_once(self):
        fund(seller_available(22), 300000)
        with_ref = request_withdrawal(amount=10000, mpesa_number="0712345678", seller_id=22)
        without_ref = request_withdrawal(amount=10000, mpesa_number="0712345678", seller_id=22)
        fresh = request_withdrawal(amount=10000, mpesa_number="0712345678", seller_id=22)

        three_hours_ago = datetime.utcnow() - timedelta(hours=3)
        with_ref.created_at = three_hours_ago
        without_ref.created_at = three_hours_ago
        without_ref.provider_reference = None
        db.session.commit()

        counters = reconcile_stuck_withdrawals(hours_ago=2)
        self.assertEqual(counters["scanned"], 2)
        self.assertEqual(counters["needs_manual_review"], 1)
        self.assertEqual(counters["no_provider_reference"], 1)

        reconcile_stuck_withdrawals(hours_ago=2)
        self.assertEqual(AuditEvent.query.filter_by(event_type="withdrawal_stuck").count(), 2)
        self.assertEqual(db.session.get(WithdrawalRequest, fresh.id).status, "processing")


if __name__ == "__main__":
    unittest.main()
