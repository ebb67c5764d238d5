from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from byblos.errors import InvalidAmount

CENT = Decimal("0.01")
UNIT = Decimal("1")
DEFAULT_COMMISSION_RATE = Decimal("0.09")


def _parse_amount(amount) -> Decimal:
    if isinstance(amount, bool) or amount is None:
        raise InvalidAmount("amount must be a number", details={"amount": repr(amount)})
    try:
        parsed = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount("amount must be a number", details={"amount": repr(amount)})
    if not parsed.is_finite():
        raise InvalidAmount("amount must be finite", details={"amount": repr(amount)})
    if parsed < 0:
        raise InvalidAmount("amount must not be negative", details={"amount": str(parsed)})
    return parsed


def clamp_rate(rate) -> Decimal:
    if isinstance(rate, bool) or rate is None:
        return Decimal("0")
    try:
        parsed = Decimal(str(rate).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not parsed.is_finite() or parsed < 0:
        return Decimal("0")
    if parsed > 1:
        return Decimal("1")
    return parsed


def _parse_money(amount) -> Decimal:
    parsed = _parse_amount(amount)
    if parsed != parsed.quantize(CENT, rounding=ROUND_HALF_UP):
        raise InvalidAmount("amount has more than 2 decimal places", details={"amount": str(parsed)})
    return parsed.quantize(CENT)


def platform_fee(amount, rate) -> Decimal:
    """Platform commission on ``amount`` rounded half-up to the cent.

    Amounts finer than a cent are rejected, so fee and payout always add back
    up to the amount.
    """
    base = _parse_money(amount)
    return (base * clamp_rate(rate)).quantize(CENT, rounding=ROUND_HALF_UP)


def seller_payout(amount, rate) -> Decimal:
    """What the seller keeps; always ``amount - platform_fee(amount, rate)``."""
    base = _parse_money(amount)
    return (base - platform_fee(base, rate)).quantize(CENT, rounding=ROUND_HALF_UP)


def split_minor(amount_minor, rate) -> tuple[int, int]:
    """Split an integer minor-unit amount into ``(seller_payout, platform_fee)``."""
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise InvalidAmount("amount_minor must be an integer", details={"amount": repr(amount_minor)})
    if amount_minor < 0:
        raise InvalidAmount("amount_minor must not be negative", details={"amount": amount_minor})
    fee = int((Decimal(amount_minor) * clamp_rate(rate)).quantize(UNIT, rounding=ROUND_HALF_UP))
    return amount_minor - fee, fee


def gross_up_minor(net_minor: int, fee_rate) -> int:
    """Gross amount whose fee-deducted value equals ``net_minor``."""
    rate = clamp_rate(fee_rate)
    if rate >= 1:
        raise InvalidAmount("fee rate must be below 1 to gross up", details={"rate": str(rate)})
    gross = Decimal(int(net_minor)) / (Decimal("1") - rate)
    return int(gross.quantize(UNIT, rounding=ROUND_HALF_UP))


def major_to_minor(amount) -> int:
    return int((_parse_amount(amount) * Decimal("100")).quantize(UNIT, rounding=ROUND_HALF_UP))


def minor_to_major(minor: int) -> Decimal:
    return (Decimal(int(minor or 0)) / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
