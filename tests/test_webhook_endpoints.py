from __future__ import annotations

import unittest

from byblos.extensions import db
from byblos.models import AuditEvent, WebhookEvent, WithdrawalRequest
from byblos.services.escrow_ledger import EscrowLedger, seller_available, seller_held
from byblos.services.payment_reconciler import record_payment_intent
from byblos.services.withdrawal_service import request_withdrawal
from tests.support import AppTestMixin, build_test_app, physical_order


class PaymentWebhookTestCase(AppTestMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.order = physical_order()
        record_payment_intent(self.order)

    def post(self, body, **kwargs):
        return self.client.post("/api/payments/webhook", json=body, **kwargs)

    def test_success_webhook_processes_once(self):
        body = {"data": {"transaction_reference": "PAYD-77", "api_ref": self.order.order_number, "status": "SUCCESS"}}
        res = self.post(body)
        self.assertEqual(res.status_code, 200)
        payload = res.get_json()
        self.assertEqual(payload["outcome"], "processed")
        self.assertEqual(payload["order_status"], "DELIVERY_PENDING")
        self.assertEqual(EscrowLedger().balance(seller_held(22)), 135000)

        again = self.post(body)
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.get_json()["outcome"], "duplicate")
        self.assertEqual(EscrowLedger().balance(seller_held(22)), 135000)

        events = WebhookEvent.query.order_by(WebhookEvent.id.asc()).all()
        self.assertEqual([e.outcome for e in events], ["processed", "duplicate"])
        self.assertEqual(events[0].reference, "PAYD-77")
        self.assertEqual(events[0].provider_status, "SUCCESS")
        self.assertEqual(events[0].payload_hash, events[1].payload_hash)
        self.assertTrue(res.headers.get("X-Request-Id"))

    def test_unmatched_reference_is_acknowledged_and_flagged(self):
        res = self.post({"transaction_reference": "GHOST-1", "status": "SUCCESS"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["outcome"], "flagged")

        event = WebhookEvent.query.one()
        self.assertEqual(event.outcome, "unmatched")
        audit = AuditEvent.query.filter_by(event_type="payment_webhook_unmatched").one()
        self.assertEqual(audit.subject_id, "GHOST-1")
        self.assertEqual(audit.severity, "WARN")

    def test_unknown_source_is_forbidden(self):
        res = self.post(
            {"transaction_reference": "PAYD-1", "status": "SUCCESS"},
            environ_base={"REMOTE_ADDR": "203.0.113.9"},
        )
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "IP_NOT_ALLOWED")
        self.assertEqual(WebhookEvent.query.count(), 0)

    def test_malformed_body(self):
        res = self.client.post("/api/payments/webhook", data="status=ok", content_type="application/x-www-form-urlencoded")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "UNSUPPORTED_CONTENT_TYPE")

        res = self.post({"status": "SUCCESS"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "MISSING_REFERENCE")


class RateLimitedWebhookTestCase(AppTestMixin, unittest.TestCase):
    app_overrides = {"WEBHOOK_RATE_LIMIT": 2, "WEBHOOK_RATE_WINDOW_SECONDS": 60}

    def test_third_request_in_window_is_throttled(self):
        body = {"transaction_reference": "GHOST-9", "status": "SUCCESS"}
        for _ in range(2):
            self.assertEqual(self.client.post("/api/payments/webhook", json=body).status_code, 200)
        res = self.client.post("/api/payments/webhook", json=body)
        self.assertEqual(res.status_code, 429)
        self.assertEqual(res.get_json()["error"], "RATE_LIMITED")
        self.assertGreaterEqual(int(res.headers["Retry-After"]), 1)


class ProductionAllowlistTestCase(unittest.TestCase):
    def test_missing_allowlist_fails_closed(self):
        app = build_test_app(
            BYBLOS_ENV="production",
            SECRET_KEY="a-long-production-secret-value",
            PAYD_ALLOWED_IPS=None,
        )
        with app.app_context():
            db.create_all()
            res = app.test_client().post("/api/payments/webhook", json={"transaction_reference": "PAYD-1"})
            db.session.remove()
            db.drop_all()
        self.assertEqual(res.status_code, 503)
        self.assertEqual(res.get_json()["error"], "ALLOWLIST_NOT_CONFIGURED")

    def test_weak_secret_refuses_to_boot_in_production(self):
        with self.assertRaises(RuntimeError):
            build_test_app(BYBLOS_ENV="production", SECRET_KEY="short")


class WithdrawalCallbackTestCase(AppTestMixin, unittest.TestCase):
    def setUp(self):
        super().setUp()
        EscrowLedger().credit(seller_available(22), 500000, "seed")
        db.session.commit()
        self.req = request_withdrawal(amount=100000, mpesa_number="0712345678", seller_id=22)
        self.reference = self.req.provider_reference

    def post(self, body):
        return self.client.post("/api/payments/withdrawal-callback", json=body)

    def test_failed_payout_returns_funds(self):
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 400000)
        res = self.post({"correlator_id": self.reference, "status": "FAILED", "status_description": "Insufficient float"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["outcome"], "processed")
        self.assertEqual(res.get_json()["status"], "failed")

        req = db.session.get(WithdrawalRequest, self.req.id)
        self.assertEqual(req.failure_reason, "Insufficient float")
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 500000)

        again = self.post({"correlator_id": self.reference, "status": "FAILED"})
        self.assertEqual(again.get_json()["outcome"], "already_processed")
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 500000)

    def test_completed_payout(self):
        res = self.post({"data": {"correlator_id": self.reference, "status": "SUCCESS"}})
        self.assertEqual(res.get_json()["status"], "completed")
        self.assertEqual(EscrowLedger().balance(seller_available(22)), 400000)
        self.assertEqual(WebhookEvent.query.filter_by(kind="withdrawal").one().outcome, "processed")

    def test_unknown_reference_is_flagged(self):
        res = self.post({"correlator_id": "NOT-OURS", "status": "SUCCESS"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["outcome"], "flagged")
        self.assertEqual(AuditEvent.query.filter_by(event_type="withdrawal_callback_unmatched").count(), 1)

    def test_unrecognized_status_is_ignored(self):
        res = self.post({"correlator_id": self.reference, "status": "QUEUED"})
        self.assertEqual(res.get_json()["outcome"], "ignored")
        self.assertEqual(db.session.get(WithdrawalRequest, self.req.id).status, "processing")


if __name__ == "__main__":
    unittest.main()
