from __future__ import annotations

from byblos.integrations.payments.base import PaymentStatusResult, PaymentsProvider


class MockPaymentsProvider(PaymentsProvider):
    """Answers status queries from a fixed table; unknown references stay pending."""

    name = "mock"

    def __init__(self, *, statuses: dict | None = None, default_status: str = "PENDING"):
        self.statuses = dict(statuses or {})
        self.default_status = (default_status or "PENDING").strip().upper()

    def query_payment_status(self, reference: str) -> PaymentStatusResult:
        status = str(self.statuses.get(reference, self.default_status)).strip().upper()
        return PaymentStatusResult(
            ok=True,
            reference=reference,
            status=status,
            message="mock",
            raw={"transaction_reference": reference, "status": status},
        )
