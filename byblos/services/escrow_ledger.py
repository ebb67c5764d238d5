from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from byblos.errors import InsufficientBalance, InvalidAmount, ValidationError
from byblos.extensions import db
from byblos.models import LedgerAccount, LedgerEntry


class LedgerBucket:
    AVAILABLE = "available"
    HELD = "held"
    REFUNDS = "refunds"
    FEES = "fees"

    ALL = {AVAILABLE, HELD, REFUNDS, FEES}


OWNER_TYPES = {"seller", "buyer", "organizer", "event", "platform"}
PLATFORM_OWNER_ID = 0


def account_key(owner_type: str, owner_id: int, bucket: str = LedgerBucket.AVAILABLE) -> str:
    return f"{(owner_type or '').strip().lower()}:{int(owner_id)}:{(bucket or '').strip().lower()}"


def parse_account(key: str) -> tuple[str, int, str]:
    parts = (key or "").strip().lower().split(":")
    if len(parts) != 3:
        raise ValidationError(f"invalid ledger account {key!r}")
    owner_type, owner_raw, bucket = parts
    if owner_type not in OWNER_TYPES or bucket not in LedgerBucket.ALL:
        raise ValidationError(f"invalid ledger account {key!r}")
    try:
        owner_id = int(owner_raw)
    except ValueError:
        raise ValidationError(f"invalid ledger account {key!r}")
    return owner_type, owner_id, bucket


def seller_available(seller_id: int) -> str:
    return account_key("seller", seller_id, LedgerBucket.AVAILABLE)


def seller_held(seller_id: int) -> str:
    return account_key("seller", seller_id, LedgerBucket.HELD)


def buyer_refunds(buyer_id: int) -> str:
    return account_key("buyer", buyer_id, LedgerBucket.REFUNDS)


def platform_fees() -> str:
    return account_key("platform", PLATFORM_OWNER_ID, LedgerBucket.FEES)


@dataclass(frozen=True)
class LedgerIntent:
    """A requested ledger movement, applied by the caller inside its transaction."""

    op: str  # credit | debit
    account: str
    amount: int
    reason: str
    reference: str = ""

    def to_dict(self) -> dict:
        return {
            "op": self.op,
            "account": self.account,
            "amount": int(self.amount),
            "reason": self.reason,
            "reference": self.reference,
        }


def _validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("ledger amounts are integer minor units", details={"amount": repr(amount)})
    if amount <= 0:
        raise InvalidAmount("ledger amounts must be positive", details={"amount": amount})
    return amount


class EscrowLedger:
    """Materialized balances plus an append-only entry log.

    Nothing here commits; every mutation joins the caller's unit of work.
    """

    def __init__(self, session=None):
        self.session = session or db.session

    def get_account(self, account: str, *, create: bool = True) -> LedgerAccount | None:
        owner_type, owner_id, bucket = parse_account(account)
        query = self.session.query(LedgerAccount).filter_by(owner_type=owner_type, owner_id=owner_id, bucket=bucket)
        row = query.first()
        if row is None and create:
            row = LedgerAccount(owner_type=owner_type, owner_id=owner_id, bucket=bucket, balance=0)
            try:
                with self.session.begin_nested():
                    self.session.add(row)
                    self.session.flush()
            except IntegrityError:
                # Another transaction opened the same account first.
                row = query.first()
                if row is None:
                    raise
        return row

    def balance(self, account: str) -> int:
        row = self.get_account(account, create=False)
        return int(row.balance or 0) if row is not None else 0

    def _post(self, row: LedgerAccount, signed_amount: int, reason: str, reference: str) -> LedgerEntry:
        row.balance = int(row.balance or 0) + signed_amount
        row.updated_at = datetime.utcnow()
        entry = LedgerEntry(
            account_id=int(row.id),
            amount=signed_amount,
            reason=(reason or "adjustment")[:64],
            reference=(reference or "")[:128] or None,
            balance_after=int(row.balance),
        )
        self.session.add(row)
        self.session.add(entry)
        return entry

    def credit(self, account: str, amount: int, reason: str, *, reference: str = "") -> LedgerEntry:
        value = _validate_amount(amount)
        row = self.get_account(account)
        return self._post(row, value, reason, reference)

    def debit(self, account: str, amount: int, reason: str, *, reference: str = "") -> LedgerEntry:
        value = _validate_amount(amount)
        row = self.get_account(account)
        current = int(row.balance or 0)
        if value > current:
            raise InsufficientBalance(
                "Insufficient balance",
                details={"account": account, "balance": current, "requested": value},
            )
        return self._post(row, -value, reason, reference)

    def apply(self, intent: LedgerIntent) -> LedgerEntry | None:
        if int(intent.amount) == 0:
            return None
        if intent.op == "credit":
            return self.credit(intent.account, int(intent.amount), intent.reason, reference=intent.reference)
        if intent.op == "debit":
            return self.debit(intent.account, int(intent.amount), intent.reason, reference=intent.reference)
        raise ValidationError(f"unknown ledger op {intent.op!r}")

    def apply_all(self, intents) -> list[LedgerEntry]:
        entries = []
        for intent in intents or []:
            entry = self.apply(intent)
            if entry is not None:
                entries.append(entry)
        return entries


def recompute_balances(*, tolerance: int = 0) -> dict:
    """Compare materialized balances with the sum of their entries."""
    accounts = LedgerAccount.query.order_by(LedgerAccount.id.asc()).all()
    drift_items = []
    for account in accounts:
        computed = (
            db.session.query(db.func.coalesce(db.func.sum(LedgerEntry.amount), 0))
            .filter(LedgerEntry.account_id == int(account.id))
            .scalar()
        )
        stored = int(account.balance or 0)
        drift = stored - int(computed or 0)
        if abs(drift) > int(tolerance):
            drift_items.append(
                {
                    "account": account.key,
                    "stored_balance": stored,
                    "computed_balance": int(computed or 0),
                    "drift": drift,
                }
            )
    return {
        "ok": not drift_items,
        "scope": "escrow_ledger",
        "account_count": len(accounts),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }
