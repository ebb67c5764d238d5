from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PayoutResult:
    ok: bool
    reference: str = ""
    status: str = ""
    message: str = ""
    raw: dict | None = None


class PayoutsProvider:
    name = "unknown"

    def send_payout(self, *, amount_minor: int, phone_number: str, narration: str, callback_url: str = "") -> PayoutResult:
        raise NotImplementedError
