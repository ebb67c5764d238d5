from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

from flask import Flask, g

from byblos.utils import observability
from byblos.utils.observability import _before_send_scrub, init_sentry, mask_phone, tag_request
from tests.support import AppTestMixin


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        app.config["SENTRY_DSN"] = ""
        init_sentry(app)
        self.assertIsNone(observability._sentry)

    def test_scrubs_credentials_before_send(self):
        event = {"request": {"headers": {"Authorization": "Basic abc", "Content-Type": "application/json"}}}
        scrubbed = _before_send_scrub(event, None)
        self.assertEqual(scrubbed["request"]["headers"]["Authorization"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["headers"]["Content-Type"], "application/json")

    def test_masks_phone_numbers_in_payloads(self):
        event = {
            "request": {
                "headers": {},
                "data": {"phone_number": "254712345678", "items": [{"msisdn": "0712345678"}], "amount": 1500},
            }
        }
        data = _before_send_scrub(event, None)["request"]["data"]
        self.assertEqual(data["phone_number"], "***5678")
        self.assertEqual(data["items"][0]["msisdn"], "***5678")
        self.assertEqual(data["amount"], 1500)

    def test_mask_phone(self):
        self.assertEqual(mask_phone("+254 712 345 678"), "***5678")
        self.assertEqual(mask_phone("12"), "****")
        self.assertEqual(mask_phone(None), "****")


class RequestTagsTestCase(unittest.TestCase):
    def setUp(self):
        self.app = Flask(__name__)

    def test_known_tags_reach_the_request(self):
        with self.app.test_request_context("/api/payments/webhook"):
            tag_request(webhook_kind="payment", reference="PAYD-TX-1", order_id=None, card_number="4111")
            self.assertEqual(g.log_tags, {"webhook_kind": "payment", "reference": "PAYD-TX-1"})
            tag_request(outcome="applied")
            self.assertEqual(g.log_tags["outcome"], "applied")

    def test_tags_are_forwarded_to_sentry(self):
        sentry = MagicMock()
        with patch.object(observability, "_sentry", sentry):
            tag_request(payment_id=7)
        sentry.set_tag.assert_called_once_with("byblos.payment_id", "7")


class RequestIdHeadersTestCase(AppTestMixin, unittest.TestCase):
    def test_generates_request_id_when_missing(self):
        res = self.client.get("/api/health")
        self.assertTrue((res.headers.get("X-Request-Id") or "").strip())

    def test_propagates_incoming_request_id(self):
        res = self.client.get("/api/health", headers={"X-Request-Id": "trace-abc"})
        self.assertEqual(res.headers.get("X-Request-Id"), "trace-abc")

    def test_health_reports_payment_provider(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.get_json()["payments"]["kind"], "payments")


if __name__ == "__main__":
    unittest.main()
