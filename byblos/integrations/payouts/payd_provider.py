from __future__ import annotations

import re

import requests

from byblos.integrations.payouts.base import PayoutResult, PayoutsProvider
from byblos.services.fees import minor_to_major


def local_phone(value: str) -> str:
    """Payd expects the 10 digit 07XXXXXXXX form."""
    digits = re.sub(r"\D", "", value or "")
    if digits.startswith("254") and len(digits) == 12:
        return "0" + digits[3:]
    if len(digits) == 9:
        return "0" + digits
    return digits


class PaydPayoutsProvider(PayoutsProvider):
    name = "payd"

    def __init__(self, *, base_url: str, username: str, password: str, timeout: int = 25):
        self.base_url = (base_url or "").rstrip("/")
        self.username = username
        self.password = password
        self.timeout = int(timeout)

    def send_payout(self, *, amount_minor: int, phone_number: str, narration: str, callback_url: str = "") -> PayoutResult:
        payload = {
            "phone_number": local_phone(phone_number),
            "amount": float(minor_to_major(int(amount_minor))),
            "narration": narration,
            "callback_url": callback_url,
            "channel": "MPESA",
            "currency": "KES",
        }
        r = requests.post(
            f"{self.base_url}/withdrawal",
            json=payload,
            auth=(self.username, self.password),
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        j = r.json() if r.content else {}
        if not isinstance(j, dict):
            j = {"payload": j}
        if r.status_code < 200 or r.status_code >= 300 or j.get("success") is False:
            msg = str(j.get("message") or f"HTTP {r.status_code}").strip()
            raise RuntimeError(f"PAYD_PAYOUT_FAILED:{msg}")
        data = j.get("data") if isinstance(j.get("data"), dict) else j
        reference = str(data.get("correlator_id") or data.get("transaction_id") or "").strip()
        return PayoutResult(
            ok=True,
            reference=reference,
            status=str(data.get("status") or "processing").strip().lower(),
            message=str(j.get("message") or "").strip(),
            raw=j,
        )
