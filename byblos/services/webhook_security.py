from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from byblos.services.webhook_payload import (
    PAYMENT_REFERENCE_STRATEGIES,
    TIMESTAMP_STRATEGIES,
    first_value,
    parse_timestamp,
    unwrap_payload,
)
from byblos.utils.rate_limit import CounterStore, resolve_client_ip

_MAPPED_PREFIX = "::ffff:"


@dataclass
class GateDecision:
    ok: bool
    status: int = 200
    reason: str = ""
    message: str = ""
    client_ip: str = ""
    retry_after: int = 0
    payload: dict = field(default_factory=dict)
    reference: str = ""
    warnings: list = field(default_factory=list)

    def to_dict(self) -> dict:
        body = {
            "ok": bool(self.ok),
            "error": self.reason,
            "message": self.message,
            "status": int(self.status),
        }
        if self.retry_after:
            body["retry_after"] = int(self.retry_after)
        return body


def parse_allowlist(raw) -> list[str] | None:
    """None means unset; an empty list means set but unusable."""
    if raw is None:
        return None
    if isinstance(raw, (list, tuple, set)):
        entries = [str(item).strip() for item in raw]
    else:
        entries = [part.strip() for part in str(raw).split(",")]
    return [entry for entry in entries if entry]


def _strip_mapped(ip: str) -> str:
    value = (ip or "").strip().lower()
    if value.startswith(_MAPPED_PREFIX):
        return value[len(_MAPPED_PREFIX):]
    return value


def _wildcard_pattern(entry: str):
    segments = entry.split(".")
    if not any(seg in ("x", "X", "*") for seg in segments):
        return None
    parts = [r"\d{1,3}" if seg in ("x", "X", "*") else re.escape(seg) for seg in segments]
    return re.compile(r"\.".join(parts))


def ip_allowed(ip: str, allowlist: list[str]) -> bool:
    candidate = _strip_mapped(ip)
    if not candidate:
        return False
    for entry in allowlist:
        normalized = _strip_mapped(entry)
        if candidate == normalized:
            return True
        pattern = _wildcard_pattern(normalized)
        if pattern is not None and pattern.fullmatch(candidate):
            return True
    return False


class WebhookSecurityGate:
    """Allowlist, rate limit, payload shape and staleness checks for provider callbacks."""

    def __init__(
        self,
        *,
        counter_store: CounterStore,
        allowed_ips=None,
        production: bool = False,
        limit: int = 100,
        window_seconds: int = 60,
        stale_seconds: int = 300,
        trust_proxy: bool = False,
        clock=None,
    ):
        self.counter_store = counter_store
        self.allowlist = parse_allowlist(allowed_ips)
        self.production = bool(production)
        self.limit = max(1, int(limit))
        self.window_seconds = max(1, int(window_seconds))
        self.stale_seconds = max(1, int(stale_seconds))
        self.trust_proxy = bool(trust_proxy)
        self._clock = clock or time.time

    @classmethod
    def from_config(cls, config, counter_store: CounterStore) -> "WebhookSecurityGate":
        return cls(
            counter_store=counter_store,
            allowed_ips=config.get("PAYD_ALLOWED_IPS"),
            production=(config.get("BYBLOS_ENV") or "").strip().lower() in ("prod", "production"),
            limit=int(config.get("WEBHOOK_RATE_LIMIT", 100)),
            window_seconds=int(config.get("WEBHOOK_RATE_WINDOW_SECONDS", 60)),
            stale_seconds=int(config.get("WEBHOOK_STALE_SECONDS", 300)),
            trust_proxy=bool(config.get("TRUST_PROXY_HEADERS", False)),
        )

    def _log(self, level: str, payload: dict) -> None:
        payload.setdefault("event", "webhook_gate")
        getattr(current_app.logger, level)(json.dumps(payload, default=str))

    def _reject(self, status: int, reason: str, message: str, ip: str, **extra) -> GateDecision:
        decision = GateDecision(ok=False, status=status, reason=reason, message=message, client_ip=ip, **extra)
        self._log("warning", {"outcome": "rejected", "reason": reason, "status": status, "ip": ip})
        return decision

    def check_rate(self, ip: str, scope: str = "webhook") -> tuple[bool, int]:
        return self.counter_store.hit(
            f"{scope}:{ip}",
            limit=self.limit,
            window_seconds=self.window_seconds,
        )

    def check_ip(self, ip: str) -> GateDecision | None:
        if self.allowlist is None:
            if self.production:
                return self._reject(
                    503,
                    "ALLOWLIST_NOT_CONFIGURED",
                    "Webhook source allowlist is not configured",
                    ip,
                )
            self._log("warning", {"outcome": "allowlist_missing", "ip": ip})
            return None
        if not self.allowlist:
            return self._reject(503, "ALLOWLIST_EMPTY", "Webhook source allowlist is empty", ip)
        if not ip_allowed(ip, self.allowlist):
            return self._reject(403, "IP_NOT_ALLOWED", "Source address is not allowed", ip)
        return None

    def _check_staleness(self, request, payload: dict, decision: GateDecision) -> None:
        found = first_value(payload, TIMESTAMP_STRATEGIES)
        raw = found[1] if found else request.headers.get("X-Webhook-Timestamp")
        sent_at = parse_timestamp(raw)
        if sent_at is None:
            return
        now = datetime.utcfromtimestamp(self._clock())
        age = now - sent_at
        if age > timedelta(seconds=self.stale_seconds):
            decision.warnings.append("stale")
            self._log(
                "warning",
                {
                    "outcome": "stale_webhook",
                    "ip": decision.client_ip,
                    "reference": decision.reference,
                    "age_seconds": int(age.total_seconds()),
                },
            )

    def authorize(self, request, *, reference_strategies=PAYMENT_REFERENCE_STRATEGIES, scope: str = "webhook") -> GateDecision:
        ip = resolve_client_ip(request, trusted_proxy=self.trust_proxy)

        allowed, retry_after = self.check_rate(ip, scope)
        if not allowed:
            return self._reject(
                429,
                "RATE_LIMITED",
                "Too many requests. Please retry later.",
                ip,
                retry_after=int(retry_after),
            )

        rejected = self.check_ip(ip)
        if rejected is not None:
            return rejected

        content_type = (request.content_type or "").lower()
        if "application/json" not in content_type:
            return self._reject(400, "UNSUPPORTED_CONTENT_TYPE", "Content-Type must be application/json", ip)
        if not request.get_data(cache=True):
            return self._reject(400, "EMPTY_BODY", "Request body is empty", ip)
        body = request.get_json(silent=True)
        if not isinstance(body, dict) or not body:
            return self._reject(400, "INVALID_JSON", "Request body must be a JSON object", ip)
        payload = unwrap_payload(body)
        found = first_value(payload, reference_strategies)
        if found is None:
            return self._reject(400, "MISSING_REFERENCE", "Payload carries no transaction reference", ip)

        decision = GateDecision(ok=True, client_ip=ip, payload=payload, reference=found[1])
        self._check_staleness(request, payload, decision)
        return decision
