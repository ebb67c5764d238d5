from __future__ import annotations

import secrets

from byblos.integrations.payouts.base import PayoutResult, PayoutsProvider


class MockPayoutsProvider(PayoutsProvider):
    name = "mock"

    def __init__(self, *, force_fail: bool = False):
        self.force_fail = bool(force_fail)

    def send_payout(self, *, amount_minor: int, phone_number: str, narration: str, callback_url: str = "") -> PayoutResult:
        if self.force_fail:
            raise RuntimeError("MOCK_PAYOUT_FAILED:forced failure")
        reference = f"MOCK-{secrets.token_hex(6).upper()}"
        return PayoutResult(
            ok=True,
            reference=reference,
            status="processing",
            message="accepted",
            raw={
                "correlator_id": reference,
                "amount": int(amount_minor),
                "phone_number": phone_number,
                "narration": narration,
            },
        )
