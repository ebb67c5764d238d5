from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

from byblos.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from byblos.integrations.payouts.factory import build_payouts_provider, payout_health
from byblos.integrations.payouts.mock_provider import MockPayoutsProvider
from byblos.integrations.payouts.payd_provider import PaydPayoutsProvider, local_phone


def response(status_code: int, body: dict) -> MagicMock:
    res = MagicMock()
    res.status_code = status_code
    res.content = b"{}"
    res.json.return_value = body
    return res


class PayoutsFactoryTestCase(unittest.TestCase):
    def test_mock_is_default(self):
        self.assertIsInstance(build_payouts_provider({}), MockPayoutsProvider)

    def test_payd_requires_credentials(self):
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payouts_provider({"PAYOUT_PROVIDER": "payd", "PAYD_USERNAME": "byblos"})
        self.assertEqual(
            payout_health({"PAYOUT_PROVIDER": "payd"})["missing"],
            ["PAYD_USERNAME", "PAYD_PASSWORD"],
        )

    def test_disabled_and_unknown(self):
        with self.assertRaises(IntegrationDisabledError):
            build_payouts_provider({"PAYOUT_PROVIDER": "disabled"})
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payouts_provider({"PAYOUT_PROVIDER": "carrier-pigeon"})


class PaydPayoutsProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = PaydPayoutsProvider(base_url="https://payd.test/api/v2/", username="u", password="p")

    def test_local_phone(self):
        self.assertEqual(local_phone("254712345678"), "0712345678")
        self.assertEqual(local_phone("712345678"), "0712345678")

    def test_sends_major_units_and_returns_correlator(self):
        body = {"success": True, "message": "queued", "data": {"correlator_id": "PAYD-W-1", "status": "PROCESSING"}}
        with patch("byblos.integrations.payouts.payd_provider.requests.post", return_value=response(200, body)) as post:
            result = self.provider.send_payout(
                amount_minor=150050, phone_number="254712345678", narration="Byblos withdrawal 1"
            )
        self.assertEqual(result.reference, "PAYD-W-1")
        self.assertEqual(result.status, "processing")
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://payd.test/api/v2/withdrawal")
        self.assertEqual(kwargs["json"]["amount"], 1500.5)
        self.assertEqual(kwargs["json"]["phone_number"], "0712345678")
        self.assertEqual(kwargs["auth"], ("u", "p"))

    def test_provider_rejection_raises(self):
        body = {"success": False, "message": "Insufficient float"}
        with patch("byblos.integrations.payouts.payd_provider.requests.post", return_value=response(200, body)):
            with self.assertRaises(RuntimeError) as ctx:
                self.provider.send_payout(amount_minor=1000, phone_number="0712345678", narration="x")
        self.assertIn("Insufficient float", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
