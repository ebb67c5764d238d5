from __future__ import annotations

from urllib.parse import quote

import requests

from byblos.integrations.payments.base import PaymentStatusResult, PaymentsProvider


class PaydPaymentsProvider(PaymentsProvider):
    name = "payd"

    def __init__(self, *, base_url: str, username: str, password: str, timeout: int = 10):
        self.base_url = (base_url or "").rstrip("/")
        self.username = username
        self.password = password
        self.timeout = int(timeout)

    def query_payment_status(self, reference: str) -> PaymentStatusResult:
        r = requests.get(
            f"{self.base_url}/status/{quote(str(reference), safe='')}",
            auth=(self.username, self.password),
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        j = r.json() if r.content else {}
        if not isinstance(j, dict):
            j = {"payload": j}
        if r.status_code == 404:
            return PaymentStatusResult(ok=False, reference=reference, message="not found", raw=j)
        if r.status_code < 200 or r.status_code >= 300:
            msg = str(j.get("message") or f"HTTP {r.status_code}").strip()
            raise RuntimeError(f"PAYD_STATUS_FAILED:{msg}")
        data = j.get("data") if isinstance(j.get("data"), dict) else j
        return PaymentStatusResult(
            ok=True,
            reference=str(data.get("transaction_reference") or reference).strip(),
            status=str(data.get("status") or data.get("result_code") or "").strip().upper(),
            message=str(j.get("message") or data.get("remarks") or "").strip(),
            raw=data,
        )
