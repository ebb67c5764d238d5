from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from flask import current_app
from sqlalchemy.exc import IntegrityError

from byblos.extensions import db
from byblos.models import AuditEvent
from byblos.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def record_audit(
    event_type: str,
    *,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    dedupe_key: str | None = None,
    metadata: dict | None = None,
) -> AuditEvent | None:
    """Write an audit row inside a savepoint.

    A failed audit write rolls back only its savepoint; the caller's
    transaction carries on.
    """
    key = (dedupe_key or "").strip()[:180] or None
    if key:
        existing = AuditEvent.query.filter_by(dedupe_key=key).first()
        if existing:
            return existing

    event = AuditEvent(
        event_type=(event_type or "unknown").strip()[:80],
        subject_type=(subject_type or "").strip()[:40] or None,
        subject_id=str(subject_id)[:120] if subject_id is not None else None,
        request_id=get_request_id()[:80] or None,
        dedupe_key=key,
        severity=(severity or "INFO").strip().upper()[:16] or "INFO",
        metadata_json=json.dumps(_safe_value(metadata or {}), separators=(",", ":")),
    )
    try:
        with db.session.begin_nested():
            db.session.add(event)
            db.session.flush()
    except IntegrityError:
        current_app.logger.info("audit_event_deduped type=%s key=%s", event_type, key)
        return AuditEvent.query.filter_by(dedupe_key=key).first() if key else None
    current_app.logger.info(
        json.dumps(
            {
                "event": "audit",
                "type": event.event_type,
                "subject": f"{event.subject_type or ''}:{event.subject_id or ''}",
                "severity": event.severity,
            }
        )
    )
    return event
