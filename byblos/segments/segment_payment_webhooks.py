from __future__ import annotations

import hashlib
import json

from flask import Blueprint, current_app, jsonify, request

from byblos.errors import MarketplaceError, UnmatchedPayment
from byblos.extensions import db
from byblos.models import WebhookEvent
from byblos.services.order_workflow import bound_transaction_time
from byblos.services.payment_reconciler import PaymentReconciler
from byblos.services.webhook_payload import STATUS_STRATEGIES, WITHDRAWAL_REFERENCE_STRATEGIES, first_value
from byblos.services.withdrawal_service import handle_withdrawal_callback
from byblos.utils.audit import record_audit
from byblos.utils.observability import get_request_id, tag_request

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")

GATE_EXTENSION = "byblos_webhook_gate"


def _gate():
    return current_app.extensions[GATE_EXTENSION]


def _rejected(decision):
    response = jsonify(decision.to_dict())
    response.status_code = int(decision.status)
    if decision.retry_after:
        response.headers["Retry-After"] = str(int(decision.retry_after))
    return response


def _record_event(kind: str, decision, *, outcome: str, error: str | None = None) -> None:
    tag_request(webhook_kind=kind, reference=decision.reference, outcome=outcome)
    raw = request.get_data(cache=True) or b""
    found = first_value(decision.payload, STATUS_STRATEGIES)
    row = WebhookEvent(
        kind=kind,
        provider="payd",
        reference=(decision.reference or "")[:128] or None,
        provider_status=(found[1] if found else "")[:40] or None,
        outcome=outcome[:32],
        source_ip=(decision.client_ip or "")[:64] or None,
        request_id=get_request_id()[:64] or None,
        payload_hash=hashlib.sha256(raw).hexdigest(),
        payload_json=raw.decode("utf-8", errors="replace")[:20000],
        error=(error or "")[:2000] or None,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("webhook_event_record_failed kind=%s reference=%s", kind, decision.reference)


@payments_bp.post("/webhook")
def payment_webhook():
    decision = _gate().authorize(request)
    if not decision.ok:
        return _rejected(decision)

    body = request.get_json(silent=True) or {}
    reconciler = PaymentReconciler.from_config(current_app.config)
    try:
        result = reconciler.reconcile(body)
    except UnmatchedPayment as exc:
        db.session.rollback()
        record_audit(
            "payment_webhook_unmatched",
            subject_type="payment_reference",
            subject_id=decision.reference,
            severity="WARN",
            metadata=exc.details,
        )
        _record_event("payment", decision, outcome="unmatched", error=exc.message)
        current_app.logger.warning(
            json.dumps({"event": "payment_webhook_unmatched", "reference": decision.reference, "ip": decision.client_ip})
        )
        return jsonify({"ok": True, "outcome": "flagged", "reference": decision.reference, "message": exc.message}), 200
    except MarketplaceError as exc:
        db.session.rollback()
        _record_event("payment", decision, outcome="rejected", error=f"{exc.code}: {exc.message}")
        raise
    except Exception as exc:
        db.session.rollback()
        _record_event("payment", decision, outcome="error", error=f"{type(exc).__name__}: {exc}")
        raise

    tag_request(payment_id=result.payment_id, order_id=result.order_id)
    _record_event("payment", decision, outcome=result.outcome)
    return jsonify(result.to_dict()), 200


@payments_bp.post("/withdrawal-callback")
def withdrawal_callback():
    decision = _gate().authorize(
        request,
        reference_strategies=WITHDRAWAL_REFERENCE_STRATEGIES,
        scope="withdrawal",
    )
    if not decision.ok:
        return _rejected(decision)

    body = request.get_json(silent=True) or {}
    try:
        bound_transaction_time(int(current_app.config.get("WEBHOOK_STATEMENT_TIMEOUT_MS", 0) or 0))
        outcome = handle_withdrawal_callback(body)
    except MarketplaceError as exc:
        db.session.rollback()
        _record_event("withdrawal", decision, outcome="rejected", error=f"{exc.code}: {exc.message}")
        raise
    except Exception as exc:
        db.session.rollback()
        _record_event("withdrawal", decision, outcome="error", error=f"{type(exc).__name__}: {exc}")
        raise

    tag_request(withdrawal_id=outcome.get("withdrawal_id"))
    _record_event("withdrawal", decision, outcome=str(outcome.get("outcome") or "processed"))
    return jsonify(outcome), 200
