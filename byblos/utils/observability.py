from __future__ import annotations

import hashlib
import json
import time
import uuid
from datetime import datetime

from flask import g, has_request_context, request

_SCRUBBED_HEADERS = ("authorization", "x-api-key", "cookie", "set-cookie")
# M-Pesa numbers arrive in provider payloads; they never leave the service unmasked.
_SCRUBBED_FIELDS = ("phone_number", "mobile_number", "msisdn", "phone", "account_number")
_TAG_KEYS = ("webhook_kind", "reference", "payment_id", "order_id", "withdrawal_id", "outcome")

_sentry = None


def _hash_ip(ip: str, salt: str) -> str:
    raw = f"{salt}:{ip or ''}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def mask_phone(value) -> str:
    digits = "".join(ch for ch in str(value or "") if ch.isdigit())
    if len(digits) <= 4:
        return "****"
    return f"***{digits[-4:]}"


def get_request_id() -> str:
    if not has_request_context():
        return ""
    return getattr(g, "request_id", "") or ""


def tag_request(**fields) -> None:
    """Attach payment context to the access log line and the Sentry scope."""
    tags = {key: value for key, value in fields.items() if key in _TAG_KEYS and value not in (None, "")}
    if not tags:
        return
    if has_request_context():
        current = getattr(g, "log_tags", None) or {}
        current.update(tags)
        g.log_tags = current
    if _sentry is not None:
        for key, value in tags.items():
            _sentry.set_tag(f"byblos.{key}", str(value)[:200])


def init_sentry(app) -> None:
    global _sentry
    dsn = (app.config.get("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        try:
            traces_rate = float(app.config.get("SENTRY_TRACES_SAMPLE_RATE") or 0.0)
        except (TypeError, ValueError):
            traces_rate = 0.0

        sentry_sdk.init(
            dsn=dsn,
            environment=app.config.get("BYBLOS_ENV") or "dev",
            release=app.config.get("SENTRY_RELEASE") or "unknown",
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            traces_sample_rate=max(0.0, min(traces_rate, 1.0)),
            before_send=_before_send_scrub,
        )
        _sentry = sentry_sdk
        app.logger.info("sentry_enabled env=%s", app.config.get("BYBLOS_ENV"))
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def _scrub_fields(value):
    if isinstance(value, dict):
        return {
            key: mask_phone(item) if str(key).lower() in _SCRUBBED_FIELDS else _scrub_fields(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_scrub_fields(item) for item in value]
    return value


def _before_send_scrub(event, hint):
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for key in list(headers.keys()):
        if key.lower() in _SCRUBBED_HEADERS:
            headers[key] = "[REDACTED]"
    req["headers"] = headers
    if isinstance(req.get("data"), (dict, list)):
        req["data"] = _scrub_fields(req["data"])
    event["request"] = req
    return event


def install_request_observers(app) -> None:
    @app.before_request
    def _request_observer_begin():
        rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        g.request_id = rid
        g.request_started_at = time.perf_counter()
        g.log_tags = {}
        if _sentry is not None:
            _sentry.set_tag("request_id", rid)

    @app.after_request
    def _request_observer_end(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        response.headers["X-Request-Id"] = rid
        started = getattr(g, "request_started_at", None)
        payload = {
            "event": "http_request",
            "ts": datetime.utcnow().isoformat(),
            "request_id": rid,
            "path": request.path,
            "method": request.method,
            "status": int(response.status_code),
            "latency_ms": round((time.perf_counter() - float(started)) * 1000.0, 2) if started is not None else None,
            "ip_hash": _hash_ip(request.remote_addr or "", app.config.get("SECRET_KEY", "byblos")),
        }
        payload.update(getattr(g, "log_tags", None) or {})
        app.logger.info(json.dumps(payload, default=str))
        return response
