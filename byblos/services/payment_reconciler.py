from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

import requests
from flask import current_app
from sqlalchemy import func

from byblos.errors import (
    GuardViolation,
    InvalidAmount,
    InvalidTransition,
    MarketplaceError,
    UnmatchedPayment,
    ValidationError,
)
from byblos.extensions import db
from byblos.integrations.payments.factory import build_payments_provider
from byblos.models import Order, Payment
from byblos.services.escrow_ledger import EscrowLedger, buyer_refunds
from byblos.services.fees import major_to_minor
from byblos.services.notification_service import dispatch_notifications
from byblos.services.order_state_machine import Actor, OrderEvent, OrderStatus
from byblos.services.order_workflow import bound_transaction_time, execute_transition, run_with_retry
from byblos.services.webhook_payload import (
    MOBILE_STRATEGIES,
    PAYMENT_REFERENCE_STRATEGIES,
    STATUS_STRATEGIES,
    candidate_values,
    first_value,
    normalize_mobile,
    unwrap_payload,
)
from byblos.utils.audit import record_audit
from byblos.utils.job_runs import record_job_run


class PaymentState:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = {COMPLETED, FAILED}


class ReconcileOutcome:
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FLAGGED = "flagged"
    PENDING = "pending"
    IGNORED = "ignored"


_STATUS_MAP = {
    "COMPLETED": PaymentState.COMPLETED,
    "COMPLETE": PaymentState.COMPLETED,
    "PAID": PaymentState.COMPLETED,
    "SUCCESS": PaymentState.COMPLETED,
    "SUCCESSFUL": PaymentState.COMPLETED,
    "0": PaymentState.COMPLETED,
    "FAILED": PaymentState.FAILED,
    "FAILURE": PaymentState.FAILED,
    "REJECTED": PaymentState.FAILED,
    "CANCELLED": PaymentState.FAILED,
    "DECLINED": PaymentState.FAILED,
    "PROCESSING": PaymentState.PENDING,
    "IN_PROGRESS": PaymentState.PENDING,
    "PENDING": PaymentState.PENDING,
}


def normalize_status(raw) -> str | None:
    if raw is None:
        return None
    return _STATUS_MAP.get(str(raw).strip().upper())


@dataclass
class ReconciliationResult:
    outcome: str
    reference: str = ""
    provider_status: str = ""
    payment_id: int | None = None
    order_id: int | None = None
    payment_status: str = ""
    order_status: str = ""
    matched_by: str = ""
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "outcome": self.outcome,
            "reference": self.reference,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "payment_status": self.payment_status,
            "order_status": self.order_status,
            "matched_by": self.matched_by,
            "message": self.message,
        }


def record_payment_intent(
    order: Order,
    *,
    provider_reference: str | None = None,
    api_ref: str | None = None,
    mobile_number: str | None = None,
    provider: str = "payd",
    commit: bool = True,
) -> Payment:
    """Store the pending payment a checkout started, before any webhook arrives."""
    if order is None:
        raise ValidationError("order required")
    payment = Payment(
        order_id=int(order.id),
        provider=provider,
        provider_reference=(provider_reference or "").strip() or None,
        api_ref=(api_ref or order.order_number or "").strip() or None,
        status=PaymentState.PENDING,
        amount=int(order.total_amount or 0),
        currency=order.currency or "KES",
        mobile_number=normalize_mobile(mobile_number) or (mobile_number or None),
    )
    db.session.add(payment)
    db.session.flush()
    if commit:
        db.session.commit()
    return payment


class PaymentReconciler:
    """Applies provider payment notifications to payments and their orders."""

    def __init__(
        self,
        *,
        fuzzy_enabled: bool = False,
        fuzzy_window_minutes: int = 30,
        max_attempts: int = 3,
        statement_timeout_ms: int = 0,
        clock=None,
    ):
        self.fuzzy_enabled = bool(fuzzy_enabled)
        self.fuzzy_window = timedelta(minutes=max(1, int(fuzzy_window_minutes)))
        self.max_attempts = max(1, int(max_attempts))
        self.statement_timeout_ms = max(0, int(statement_timeout_ms or 0))
        self._clock = clock or datetime.utcnow

    @classmethod
    def from_config(cls, config) -> "PaymentReconciler":
        return cls(
            fuzzy_enabled=bool(config.get("PAYMENT_FUZZY_MATCH_ENABLED", False)),
            fuzzy_window_minutes=int(config.get("PAYMENT_FUZZY_WINDOW_MINUTES", 30)),
            max_attempts=int(config.get("RECONCILE_MAX_ATTEMPTS", 3)),
            statement_timeout_ms=int(config.get("WEBHOOK_STATEMENT_TIMEOUT_MS", 0) or 0),
        )

    def find_payment(self, references: list[str], payload: dict | None = None) -> tuple[Payment | None, str]:
        for ref in references:
            payment = Payment.query.filter(Payment.provider_reference == ref).first()
            if payment is not None:
                return payment, "provider_reference"
        for ref in references:
            payment = Payment.query.filter(func.lower(Payment.api_ref) == ref.lower()).first()
            if payment is not None:
                return payment, "api_ref"
        for ref in references:
            digits = re.sub(r"\D", "", ref)
            if not digits or digits == ref:
                continue
            payment = Payment.query.filter(Payment.api_ref == digits).first()
            if payment is not None:
                return payment, "api_ref_digits"
        if self.fuzzy_enabled and payload:
            payment = self._fuzzy_match(payload)
            if payment is not None:
                return payment, "fuzzy"
        return None, ""

    def _fuzzy_match(self, payload: dict) -> Payment | None:
        found = first_value(payload, MOBILE_STRATEGIES)
        mobile = normalize_mobile(found[1]) if found else None
        if not mobile or payload.get("amount") is None:
            return None
        try:
            amount = major_to_minor(payload.get("amount"))
        except InvalidAmount:
            return None
        since = self._clock() - self.fuzzy_window
        rows = (
            Payment.query.filter(
                Payment.status == PaymentState.PENDING,
                Payment.amount == amount,
                Payment.created_at >= since,
            )
            .order_by(Payment.created_at.desc())
            .limit(50)
            .all()
        )
        matches = [row for row in rows if normalize_mobile(row.mobile_number) == mobile]
        if len(matches) != 1:
            if len(matches) > 1:
                current_app.logger.warning(
                    "payment_fuzzy_match_ambiguous mobile_suffix=%s amount=%s candidates=%s",
                    mobile[-4:],
                    amount,
                    len(matches),
                )
            return None
        return matches[0]

    def reconcile(self, body: dict) -> ReconciliationResult:
        payload = unwrap_payload(body)
        references = candidate_values(payload, PAYMENT_REFERENCE_STRATEGIES)
        if not references:
            raise ValidationError("Payload carries no transaction reference")
        found_status = first_value(payload, STATUS_STRATEGIES)
        raw_status = found_status[1] if found_status else ""

        return run_with_retry(
            lambda: self._reconcile_once(payload, references, raw_status),
            attempts=self.max_attempts,
            label="payment_reconcile",
            context={"reference": references[0]},
        )

    def _reconcile_once(self, payload: dict, references: list[str], raw_status: str) -> ReconciliationResult:
        bound_transaction_time(self.statement_timeout_ms)
        payment, matched_by = self.find_payment(references, payload)
        if payment is None:
            raise UnmatchedPayment(
                "No payment matches this notification",
                details={"references": references, "status": raw_status},
            )

        result = ReconciliationResult(
            outcome=ReconcileOutcome.PROCESSED,
            reference=references[0],
            provider_status=raw_status,
            payment_id=int(payment.id),
            order_id=int(payment.order_id) if payment.order_id is not None else None,
            payment_status=payment.status or "",
            matched_by=matched_by,
        )

        if matched_by == "fuzzy":
            return self._flag_fuzzy(payment, payload, result)

        if payment.status in PaymentState.TERMINAL:
            result.outcome = ReconcileOutcome.DUPLICATE
            result.message = "Payment already processed"
            result.order_status = self._order_status(payment)
            return result

        state = normalize_status(raw_status)
        if state is None:
            result.outcome = ReconcileOutcome.IGNORED
            result.message = f"Unrecognized provider status {raw_status!r}"
            current_app.logger.info("payment_webhook_status_ignored payment_id=%s status=%s", payment.id, raw_status)
            return result
        if state == PaymentState.PENDING:
            result.outcome = ReconcileOutcome.PENDING
            result.message = "Payment still processing"
            return result

        return self._apply(payment, payload, state, result)

    def _order_status(self, payment: Payment) -> str:
        if payment.order_id is None:
            return ""
        order = db.session.get(Order, int(payment.order_id))
        return order.status if order is not None else ""

    def _flag_fuzzy(self, payment: Payment, payload: dict, result: ReconciliationResult) -> ReconciliationResult:
        payment.needs_review = True
        payment.merge_metadata({"fuzzy_match": {"reference": result.reference, "payload": payload}})
        db.session.add(payment)
        record_audit(
            "payment_fuzzy_match",
            subject_type="payment",
            subject_id=payment.id,
            severity="WARN",
            dedupe_key=f"payment_fuzzy:{payment.id}:{result.reference}",
            metadata={"reference": result.reference, "status": result.provider_status},
        )
        db.session.commit()
        result.outcome = ReconcileOutcome.FLAGGED
        result.message = "Matched by mobile number and amount; held for review"
        return result

    def _flag_unapplied(self, payment, order, state, result, code, message) -> None:
        payment.needs_review = True
        payment.merge_metadata({"order_conflict": message})
        refund = 0
        if state == PaymentState.COMPLETED and int(payment.amount or 0) > 0:
            refund = int(payment.amount)
            EscrowLedger().credit(
                buyer_refunds(int(order.buyer_id)),
                refund,
                "unapplied_payment",
                reference=f"payment:{payment.id}",
            )
        record_audit(
            "payment_order_conflict",
            subject_type="payment",
            subject_id=payment.id,
            severity="WARN",
            dedupe_key=f"payment_conflict:{payment.id}",
            metadata={"order_id": order.id, "order_status": order.status, "error": code, "refunded": refund},
        )
        result.outcome = ReconcileOutcome.FLAGGED
        result.message = message

    def _apply(self, payment: Payment, payload: dict, state: str, result: ReconciliationResult) -> ReconciliationResult:
        now = self._clock()
        payment.status = state
        payment.processed_at = now
        if not payment.provider_reference:
            taken = Payment.query.filter(Payment.provider_reference == result.reference).first()
            if taken is None:
                payment.provider_reference = result.reference
        payment.merge_metadata({"last_webhook": payload})
        db.session.add(payment)

        transition = None
        order = db.session.get(Order, int(payment.order_id)) if payment.order_id is not None else None
        if order is not None:
            event = OrderEvent.PAYMENT_CONFIRMED if state == PaymentState.COMPLETED else OrderEvent.PAYMENT_FAILED
            try:
                transition = execute_transition(
                    order,
                    event,
                    actor=Actor.system(),
                    idempotency_key=f"payment:{payment.id}:{state}",
                    now=now,
                    commit=False,
                    dispatch=False,
                )
            except (InvalidTransition, GuardViolation) as exc:
                # Money moved for an order that can no longer take it.
                self._flag_unapplied(payment, order, state, result, exc.code, exc.message)
            else:
                if state == PaymentState.COMPLETED and not transition.changed:
                    # The order was already paid by an earlier attempt.
                    self._flag_unapplied(
                        payment, order, state, result, "ALREADY_PAID", "Order was already paid by another payment"
                    )

        db.session.commit()
        if transition is not None and transition.notifications:
            dispatch_notifications(transition.notifications)

        result.payment_status = payment.status
        result.order_status = order.status if order is not None else ""
        current_app.logger.info(
            json.dumps(
                {
                    "event": "payment_reconciled",
                    "payment_id": int(payment.id),
                    "order_id": result.order_id,
                    "reference": result.reference,
                    "matched_by": result.matched_by,
                    "payment_status": result.payment_status,
                    "order_status": result.order_status,
                    "outcome": result.outcome,
                }
            )
        )
        return result


def redrive_pending_payments(*, lookback_hours: int = 24, limit: int = 200) -> dict:
    """Push completed payments whose order is still PENDING back through confirmation."""
    since = datetime.utcnow() - timedelta(hours=max(1, int(lookback_hours)))
    rows = (
        db.session.query(Payment, Order)
        .join(Order, Order.id == Payment.order_id)
        .filter(
            Payment.status == PaymentState.COMPLETED,
            Payment.processed_at >= since,
            Order.status == OrderStatus.PENDING,
        )
        .order_by(Payment.processed_at.asc())
        .limit(max(1, int(limit)))
        .all()
    )
    counters = {"ok": True, "scanned": len(rows), "redriven": 0, "skipped": 0, "errors": 0}
    for payment, order in rows:
        try:
            result = execute_transition(
                order,
                OrderEvent.PAYMENT_CONFIRMED,
                actor=Actor.system(),
                idempotency_key=f"payment:{payment.id}:completed",
            )
            if result.changed:
                counters["redriven"] += 1
            else:
                counters["skipped"] += 1
        except (InvalidTransition, GuardViolation):
            counters["skipped"] += 1
        except Exception:
            db.session.rollback()
            counters["errors"] += 1
            current_app.logger.exception("payment_redrive_failed payment_id=%s order_id=%s", payment.id, order.id)
    counters["ok"] = counters["errors"] == 0
    return counters


def poll_pending_payments(
    provider=None,
    *,
    older_than_minutes: int | None = None,
    limit: int = 100,
    now: datetime | None = None,
) -> dict:
    """Ask the provider about pending payments whose webhook never arrived.

    Each answer goes through ``PaymentReconciler.reconcile`` exactly like a
    webhook body, so idempotency and ledger effects are shared.
    """
    cfg = current_app.config
    started_at = datetime.utcnow()
    now = now or started_at
    if older_than_minutes is None:
        older_than_minutes = int(cfg.get("PAYMENT_POLL_AFTER_MINUTES", 10))
    provider = provider or build_payments_provider(cfg)
    reconciler = PaymentReconciler.from_config(cfg)
    cutoff = now - timedelta(minutes=max(1, int(older_than_minutes)))

    rows = (
        Payment.query.filter(
            Payment.status == PaymentState.PENDING,
            Payment.provider_reference.isnot(None),
            Payment.needs_review.is_(False),
            Payment.created_at <= cutoff,
        )
        .order_by(Payment.created_at.asc())
        .limit(max(1, int(limit)))
        .all()
    )
    counters = {"ok": True, "scanned": len(rows), "resolved": 0, "pending": 0, "flagged": 0, "errors": 0}
    for reference, payment_id in [(row.provider_reference, int(row.id)) for row in rows]:
        try:
            status = provider.query_payment_status(reference)
        except (requests.RequestException, RuntimeError, ValueError) as exc:
            counters["errors"] += 1
            current_app.logger.warning(
                json.dumps({"event": "payment_poll_failed", "payment_id": payment_id, "error": str(exc)[:200]})
            )
            continue
        if not status.ok or not status.status:
            counters["pending"] += 1
            continue
        body = {"transaction_reference": reference, "status": status.status, "source": "status_poll"}
        try:
            result = reconciler.reconcile(body)
        except MarketplaceError as exc:
            db.session.rollback()
            counters["errors"] += 1
            current_app.logger.warning(
                json.dumps({"event": "payment_poll_rejected", "payment_id": payment_id, "error": exc.code})
            )
            continue
        except Exception:
            db.session.rollback()
            counters["errors"] += 1
            current_app.logger.exception("payment_poll_reconcile_failed payment_id=%s", payment_id)
            continue
        if result.outcome == ReconcileOutcome.PROCESSED:
            counters["resolved"] += 1
        elif result.outcome == ReconcileOutcome.FLAGGED:
            counters["flagged"] += 1
        else:
            counters["pending"] += 1

    counters["ok"] = counters["errors"] == 0
    current_app.logger.info(json.dumps({"event": "payment_poll", **counters}))
    record_job_run(
        job_name="payment_status_poll",
        ok=counters["ok"],
        started_at=started_at,
        counters=counters,
        error=None if counters["ok"] else f"errors={counters['errors']}",
    )
    return counters
