from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentStatusResult:
    ok: bool
    reference: str = ""
    status: str = ""
    message: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def query_payment_status(self, reference: str) -> PaymentStatusResult:
        raise NotImplementedError
