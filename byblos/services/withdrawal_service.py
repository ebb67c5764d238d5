from __future__ import annotations

import json
from datetime import datetime, timedelta

import requests
from flask import current_app

from byblos.errors import InvalidAmount, ValidationError
from byblos.extensions import db
from byblos.integrations.payouts.factory import build_payouts_provider
from byblos.models import WithdrawalRequest
from byblos.services.escrow_ledger import EscrowLedger, LedgerBucket, account_key, platform_fees
from byblos.services.fees import gross_up_minor
from byblos.services.notification_service import dispatch_notifications
from byblos.services.order_state_machine import NotificationIntent
from byblos.services.webhook_payload import (
    STATUS_STRATEGIES,
    WITHDRAWAL_REFERENCE_STRATEGIES,
    candidate_values,
    first_value,
    normalize_mobile,
    unwrap_payload,
)
from byblos.utils.audit import record_audit


class WithdrawalStatus:
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = {COMPLETED, FAILED}


_CALLBACK_STATUS = {
    "SUCCESS": WithdrawalStatus.COMPLETED,
    "COMPLETED": WithdrawalStatus.COMPLETED,
    "0": WithdrawalStatus.COMPLETED,
    "FAILED": WithdrawalStatus.FAILED,
    "REJECTED": WithdrawalStatus.FAILED,
    "FAILURE": WithdrawalStatus.FAILED,
}


def withdrawal_account(req: WithdrawalRequest) -> str:
    if req.seller_id is not None:
        return account_key("seller", req.seller_id, LedgerBucket.AVAILABLE)
    if req.event_id is not None:
        return account_key("event", req.event_id, LedgerBucket.AVAILABLE)
    return account_key("organizer", req.organizer_id, LedgerBucket.AVAILABLE)


def _owner_recipient(req: WithdrawalRequest) -> tuple[str, int | None]:
    if req.seller_id is not None:
        return "seller", int(req.seller_id)
    return "organizer", int(req.organizer_id) if req.organizer_id is not None else None


def _notify(req: WithdrawalRequest, template: str) -> NotificationIntent:
    role, recipient_id = _owner_recipient(req)
    return NotificationIntent(
        recipient_role=role,
        recipient_id=recipient_id,
        order_id=None,
        template=template,
        data={
            "withdrawal_id": int(req.id),
            "amount": int(req.amount or 0),
            "currency": "KES",
            "failure_reason": req.failure_reason or "",
        },
    )


def _validate_owner(seller_id, organizer_id, event_id) -> None:
    if seller_id is not None and (organizer_id is not None or event_id is not None):
        raise ValidationError("A withdrawal belongs to a seller or an organizer, not both")
    if seller_id is None and organizer_id is None:
        raise ValidationError("seller_id or organizer_id is required")


def _validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("amount must be an integer in minor units", details={"amount": repr(amount)})
    cfg = current_app.config
    minimum = int(cfg.get("WITHDRAWAL_MIN_AMOUNT", 1000))
    maximum = int(cfg.get("WITHDRAWAL_MAX_AMOUNT", 15_000_000))
    if amount < minimum or amount > maximum:
        raise InvalidAmount(
            "Withdrawal amount is outside the allowed range",
            details={"amount": amount, "min": minimum, "max": maximum},
        )
    return amount


def _reverse_debit(ledger: EscrowLedger, req: WithdrawalRequest) -> None:
    ref = f"withdrawal:{req.id}"
    ledger.credit(withdrawal_account(req), int(req.debited_amount), "withdrawal_reversal", reference=ref)
    fee = int(req.debited_amount) - int(req.amount)
    if fee > 0:
        ledger.debit(platform_fees(), fee, "withdrawal_fee_reversal", reference=ref)


def request_withdrawal(
    *,
    amount: int,
    mpesa_number: str,
    seller_id: int | None = None,
    organizer_id: int | None = None,
    event_id: int | None = None,
) -> WithdrawalRequest:
    """Debit the owner's balance and ask the payout provider to send ``amount``.

    Event withdrawals debit the gross amount so the fee comes out of the
    event balance, not the payout.
    """
    _validate_owner(seller_id, organizer_id, event_id)
    value = _validate_amount(amount)
    phone = normalize_mobile(mpesa_number)
    if not phone:
        raise ValidationError("A valid M-Pesa number is required", details={"mpesa_number": mpesa_number})

    debited = value
    if event_id is not None:
        debited = gross_up_minor(value, current_app.config.get("EVENT_WITHDRAWAL_FEE_RATE", "0.06"))

    ledger = EscrowLedger()
    req = WithdrawalRequest(
        seller_id=seller_id,
        organizer_id=organizer_id,
        event_id=event_id,
        amount=value,
        debited_amount=debited,
        mpesa_number=phone,
        status=WithdrawalStatus.PROCESSING,
    )
    try:
        db.session.add(req)
        db.session.flush()
        ref = f"withdrawal:{req.id}"
        ledger.debit(withdrawal_account(req), debited, "withdrawal", reference=ref)
        if debited > value:
            ledger.credit(platform_fees(), debited - value, "withdrawal_fee", reference=ref)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    try:
        provider = build_payouts_provider(current_app.config)
        result = provider.send_payout(
            amount_minor=value,
            phone_number=phone,
            narration=f"Byblos withdrawal {req.id}",
            callback_url=current_app.config.get("PAYD_PAYOUT_CALLBACK_URL") or "",
        )
    except (RuntimeError, requests.RequestException) as exc:
        # Integration errors subclass RuntimeError.
        _fail_withdrawal(req, f"{type(exc).__name__}: {exc}")
        db.session.commit()
        dispatch_notifications([_notify(req, "withdrawal_failed")])
        current_app.logger.warning(
            json.dumps({"event": "withdrawal_payout_failed", "withdrawal_id": int(req.id), "error": str(exc)[:300]})
        )
        return req

    req.provider_reference = (result.reference or "").strip()[:128] or None
    db.session.add(req)
    db.session.commit()
    current_app.logger.info(
        json.dumps(
            {
                "event": "withdrawal_requested",
                "withdrawal_id": int(req.id),
                "owner": req.owner_type,
                "amount": value,
                "debited": debited,
                "provider_reference": req.provider_reference or "",
            }
        )
    )
    return req


def _fail_withdrawal(req: WithdrawalRequest, reason: str) -> None:
    req.status = WithdrawalStatus.FAILED
    req.failure_reason = (reason or "Unknown provider error")[:500]
    req.processed_at = datetime.utcnow()
    _reverse_debit(EscrowLedger(), req)
    db.session.add(req)


def _failure_reason(payload: dict) -> str:
    for key in ("status_description", "message"):
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return "Unknown provider error"


def handle_withdrawal_callback(body: dict) -> dict:
    payload = unwrap_payload(body)
    references = candidate_values(payload, WITHDRAWAL_REFERENCE_STRATEGIES)
    if not references:
        raise ValidationError("Callback carries no withdrawal reference")
    found_status = first_value(payload, STATUS_STRATEGIES)
    raw_status = found_status[1] if found_status else ""
    state = _CALLBACK_STATUS.get(raw_status.strip().upper())

    req = WithdrawalRequest.query.filter(WithdrawalRequest.provider_reference.in_(references)).first()
    if req is None:
        record_audit(
            "withdrawal_callback_unmatched",
            subject_type="withdrawal",
            subject_id=references[0],
            severity="WARN",
            dedupe_key=f"withdrawal_unmatched:{references[0]}:{raw_status}",
            metadata={"references": references, "status": raw_status},
        )
        db.session.commit()
        return {"ok": True, "outcome": "flagged", "reference": references[0]}

    outcome = {"ok": True, "reference": references[0], "withdrawal_id": int(req.id)}
    if req.status in WithdrawalStatus.TERMINAL:
        outcome.update(outcome="already_processed", status=req.status)
        return outcome
    if state is None:
        outcome.update(outcome="ignored", status=req.status, provider_status=raw_status)
        return outcome

    try:
        if state == WithdrawalStatus.COMPLETED:
            req.status = WithdrawalStatus.COMPLETED
            req.processed_at = datetime.utcnow()
            db.session.add(req)
            template = "withdrawal_completed"
        else:
            _fail_withdrawal(req, _failure_reason(payload))
            template = "withdrawal_failed"
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    dispatch_notifications([_notify(req, template)])
    current_app.logger.info(
        json.dumps(
            {
                "event": "withdrawal_callback",
                "withdrawal_id": int(req.id),
                "status": req.status,
                "provider_status": raw_status,
            }
        )
    )
    outcome.update(outcome="processed", status=req.status)
    return outcome


def reconcile_stuck_withdrawals(*, hours_ago: int = 2, max_age_hours: int = 48, limit: int = 500) -> dict:
    """Flag withdrawals that never heard back from the provider."""
    now = datetime.utcnow()
    newest = now - timedelta(hours=max(0, int(hours_ago)))
    oldest = now - timedelta(hours=max(int(hours_ago), int(max_age_hours)))
    rows = (
        WithdrawalRequest.query.filter(
            WithdrawalRequest.status == WithdrawalStatus.PROCESSING,
            WithdrawalRequest.created_at <= newest,
            WithdrawalRequest.created_at >= oldest,
        )
        .order_by(WithdrawalRequest.created_at.asc())
        .limit(max(1, int(limit)))
        .all()
    )
    counters = {"ok": True, "scanned": len(rows), "no_provider_reference": 0, "needs_manual_review": 0}
    for req in rows:
        flag = "needs_manual_review" if req.provider_reference else "no_provider_reference"
        counters[flag] += 1
        record_audit(
            "withdrawal_stuck",
            subject_type="withdrawal",
            subject_id=req.id,
            severity="WARN",
            dedupe_key=f"withdrawal_stuck:{req.id}:{flag}",
            metadata={
                "flag": flag,
                "owner": req.owner_type,
                "amount": int(req.amount or 0),
                "age_minutes": int((now - req.created_at).total_seconds() // 60),
            },
        )
    db.session.commit()
    return counters
