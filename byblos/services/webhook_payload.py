from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True)
class FieldStrategy:
    """Reads one named field from a webhook payload."""

    field: str

    @property
    def name(self) -> str:
        return f"field:{self.field}"

    def extract(self, payload: dict) -> str | None:
        if not isinstance(payload, dict):
            return None
        value = payload.get(self.field)
        if value is None or isinstance(value, (dict, list, bool)):
            return None
        text = str(value).strip()
        return text or None


# Tried in order; the first strategy that yields a value wins for display,
# every yielded value is a lookup candidate.
PAYMENT_REFERENCE_STRATEGIES = (
    FieldStrategy("transaction_reference"),
    FieldStrategy("correlator_id"),
    FieldStrategy("transaction_id"),
    FieldStrategy("reference"),
    FieldStrategy("tracking_id"),
    FieldStrategy("invoice_id"),
    FieldStrategy("api_ref"),
)

WITHDRAWAL_REFERENCE_STRATEGIES = (
    FieldStrategy("correlator_id"),
    FieldStrategy("transaction_id"),
    FieldStrategy("reference"),
    FieldStrategy("original_reference"),
)

STATUS_STRATEGIES = (
    FieldStrategy("status"),
    FieldStrategy("state"),
    FieldStrategy("result_code"),
    FieldStrategy("transaction_status"),
)

TIMESTAMP_STRATEGIES = (
    FieldStrategy("timestamp"),
    FieldStrategy("created_at"),
    FieldStrategy("time"),
)

MOBILE_STRATEGIES = (
    FieldStrategy("phone_number"),
    FieldStrategy("msisdn"),
    FieldStrategy("account_number"),
    FieldStrategy("mobile_number"),
)


def unwrap_payload(body) -> dict:
    if not isinstance(body, dict):
        return {}
    data = body.get("data")
    if isinstance(data, dict) and data:
        return data
    return body


def first_value(payload: dict, strategies) -> tuple[str, str] | None:
    for strategy in strategies:
        value = strategy.extract(payload)
        if value is not None:
            return strategy.field, value
    return None


def candidate_values(payload: dict, strategies) -> list[str]:
    seen = []
    for strategy in strategies:
        value = strategy.extract(payload)
        if value is not None and value not in seen:
            seen.append(value)
    return seen


def parse_timestamp(value) -> datetime | None:
    """Parse epoch seconds, epoch millis or ISO-8601 into naive UTC."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"\d+(\.\d+)?", text):
        seconds = float(text)
        if seconds > 1e12:
            seconds = seconds / 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_mobile(value) -> str | None:
    """Kenyan mobile numbers in 2547XXXXXXXX form."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if digits.startswith("0") and len(digits) == 10:
        return "254" + digits[1:]
    if digits.startswith("254") and len(digits) == 12:
        return digits
    if len(digits) == 9 and digits[0] in ("7", "1"):
        return "254" + digits
    return None
