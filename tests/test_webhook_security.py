from __future__ import annotations

import calendar
import json
import unittest

import redis
from flask import request

from byblos.services.webhook_payload import WITHDRAWAL_REFERENCE_STRATEGIES
from byblos.services.webhook_security import WebhookSecurityGate, ip_allowed, parse_allowlist
from byblos.utils.rate_limit import MemoryCounterStore, RedisCounterStore, build_counter_store
from tests.support import T0, build_test_app

T0_EPOCH = calendar.timegm(T0.timetuple())
GOOD_BODY = {"transaction_reference": "PAYD-1", "status": "SUCCESS"}


class FakeClock:
    def __init__(self, now: float):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now


class BrokenRedis:
    def incr(self, key):
        raise redis.ConnectionError("connection refused")

    def expire(self, key, seconds):
        raise redis.ConnectionError("connection refused")


class CountingRedis:
    def __init__(self):
        self.counts = {}
        self.expiries = {}

    def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def expire(self, key, seconds):
        self.expiries[key] = seconds


class AllowlistTestCase(unittest.TestCase):
    def test_unset_and_empty_are_different(self):
        self.assertIsNone(parse_allowlist(None))
        self.assertEqual(parse_allowlist(""), [])
        self.assertEqual(parse_allowlist(" , "), [])
        self.assertEqual(parse_allowlist("1.2.3.4, 5.6.7.8"), ["1.2.3.4", "5.6.7.8"])

    def test_matching_rules(self):
        self.assertTrue(ip_allowed("10.0.0.5", ["10.0.0.5"]))
        self.assertTrue(ip_allowed("::ffff:10.0.0.5", ["10.0.0.5"]))
        self.assertTrue(ip_allowed("10.0.0.5", ["::ffff:10.0.0.5"]))
        self.assertTrue(ip_allowed("41.90.12.7", ["41.90.x.x"]))
        self.assertTrue(ip_allowed("41.90.12.7", ["41.90.*.X"]))
        self.assertFalse(ip_allowed("41.91.12.7", ["41.90.x.x"]))
        self.assertFalse(ip_allowed("10.0.0.50", ["10.0.0.5"]))
        self.assertFalse(ip_allowed("", ["10.0.0.5"]))


class GateTestCase(unittest.TestCase):
    def setUp(self):
        self.app = build_test_app()
        self.clock = FakeClock(T0_EPOCH)

    def gate(self, **kwargs):
        options = dict(
            counter_store=MemoryCounterStore(clock=self.clock),
            allowed_ips="127.0.0.1",
            production=True,
            limit=100,
            window_seconds=60,
            clock=self.clock,
        )
        options.update(kwargs)
        return WebhookSecurityGate(**options)

    def authorize(self, gate, body=GOOD_BODY, *, ip="127.0.0.1", content_type="application/json", headers=None, **kwargs):
        data = body if isinstance(body, str) else json.dumps(body)
        with self.app.test_request_context(
            "/api/payments/webhook",
            method="POST",
            data=data,
            content_type=content_type,
            headers=headers or {},
            environ_base={"REMOTE_ADDR": ip},
        ):
            return gate.authorize(request, **kwargs)

    def test_allowed_request_passes(self):
        decision = self.authorize(self.gate())
        self.assertTrue(decision.ok)
        self.assertEqual(decision.reference, "PAYD-1")
        self.assertEqual(decision.client_ip, "127.0.0.1")
        self.assertEqual(decision.warnings, [])

    def test_unset_allowlist_fails_closed_in_production(self):
        decision = self.authorize(self.gate(allowed_ips=None))
        self.assertFalse(decision.ok)
        self.assertEqual(decision.status, 503)
        self.assertEqual(decision.reason, "ALLOWLIST_NOT_CONFIGURED")

    def test_unset_allowlist_is_allowed_outside_production(self):
        decision = self.authorize(self.gate(allowed_ips=None, production=False), ip="198.51.100.7")
        self.assertTrue(decision.ok)

    def test_empty_allowlist_fails_closed_everywhere(self):
        for production in (True, False):
            decision = self.authorize(self.gate(allowed_ips="", production=production))
            self.assertEqual(decision.status, 503)
            self.assertEqual(decision.reason, "ALLOWLIST_EMPTY")

    def test_unknown_source_is_forbidden(self):
        decision = self.authorize(self.gate(allowed_ips="41.90.x.x"), ip="198.51.100.7")
        self.assertEqual(decision.status, 403)
        self.assertEqual(decision.reason, "IP_NOT_ALLOWED")

    def test_ipv4_mapped_source(self):
        decision = self.authorize(self.gate(allowed_ips="10.0.0.5"), ip="::ffff:10.0.0.5")
        self.assertTrue(decision.ok)

    def test_forwarded_for_is_only_used_behind_trusted_proxy(self):
        headers = {"X-Forwarded-For": "41.90.3.4, 10.0.0.1"}
        untrusted = self.authorize(self.gate(allowed_ips="41.90.x.x"), ip="10.0.0.1", headers=headers)
        self.assertEqual(untrusted.status, 403)
        trusted = self.authorize(self.gate(allowed_ips="41.90.x.x", trust_proxy=True), ip="10.0.0.1", headers=headers)
        self.assertTrue(trusted.ok)
        self.assertEqual(trusted.client_ip, "41.90.3.4")

    def test_malformed_bodies(self):
        gate = self.gate()
        cases = [
            (dict(body=GOOD_BODY, content_type="text/plain"), "UNSUPPORTED_CONTENT_TYPE"),
            (dict(body=""), "EMPTY_BODY"),
            (dict(body="{not json"), "INVALID_JSON"),
            (dict(body="[1, 2]"), "INVALID_JSON"),
            (dict(body={}), "INVALID_JSON"),
            (dict(body={"status": "SUCCESS"}), "MISSING_REFERENCE"),
        ]
        for kwargs, reason in cases:
            decision = self.authorize(gate, **kwargs)
            self.assertEqual(decision.status, 400, reason)
            self.assertEqual(decision.reason, reason)

    def test_withdrawal_references(self):
        gate = self.gate()
        payment_only = self.authorize(gate, {"transaction_reference": "X"}, reference_strategies=WITHDRAWAL_REFERENCE_STRATEGIES)
        self.assertEqual(payment_only.reason, "MISSING_REFERENCE")
        decision = self.authorize(gate, {"correlator_id": "W-9"}, reference_strategies=WITHDRAWAL_REFERENCE_STRATEGIES)
        self.assertEqual(decision.reference, "W-9")

    def test_rate_limit_applies_per_source(self):
        gate = self.gate(limit=2, window_seconds=60)
        self.assertTrue(self.authorize(gate).ok)
        self.assertTrue(self.authorize(gate).ok)
        blocked = self.authorize(gate)
        self.assertEqual(blocked.status, 429)
        self.assertEqual(blocked.retry_after, 60)
        self.assertEqual(blocked.to_dict()["retry_after"], 60)

        self.assertTrue(self.authorize(gate, ip="127.0.0.1", scope="withdrawal").ok)

        self.clock.now += 61
        self.assertTrue(self.authorize(gate).ok)

    def test_rate_limit_counts_rejected_sources(self):
        gate = self.gate(limit=1)
        self.assertEqual(self.authorize(gate, ip="198.51.100.7").status, 403)
        self.assertEqual(self.authorize(gate, ip="198.51.100.7").status, 429)

    def test_stale_payload_is_accepted_with_warning(self):
        gate = self.gate()
        body = dict(GOOD_BODY, timestamp="2026-03-01T08:50:00Z")
        decision = self.authorize(gate, body)
        self.assertTrue(decision.ok)
        self.assertEqual(decision.warnings, ["stale"])

        fresh = self.authorize(gate, dict(GOOD_BODY, timestamp=str(T0_EPOCH - 30)))
        self.assertEqual(fresh.warnings, [])

    def test_stale_header_fallback(self):
        decision = self.authorize(self.gate(), headers={"X-Webhook-Timestamp": str((T0_EPOCH - 900) * 1000)})
        self.assertEqual(decision.warnings, ["stale"])

    def test_from_config(self):
        gate = WebhookSecurityGate.from_config(
            {"BYBLOS_ENV": "production", "PAYD_ALLOWED_IPS": "1.2.3.4", "WEBHOOK_RATE_LIMIT": 5},
            MemoryCounterStore(),
        )
        self.assertTrue(gate.production)
        self.assertEqual(gate.allowlist, ["1.2.3.4"])
        self.assertEqual(gate.limit, 5)


class CounterStoreTestCase(unittest.TestCase):
    def test_memory_store_evicts_idle_keys(self):
        clock = FakeClock(1000)
        store = MemoryCounterStore(cleanup_interval_seconds=30, clock=clock)
        store.hit("webhook:a", limit=5, window_seconds=10)
        store.hit("webhook:b", limit=5, window_seconds=10)
        self.assertEqual(store.stats()["tracked_keys"], 2)

        clock.now += 31
        store.hit("webhook:c", limit=5, window_seconds=10)
        self.assertEqual(store.stats()["tracked_keys"], 1)
        self.assertEqual(store.stats()["hits"], 3)

    def test_redis_store_uses_fixed_windows(self):
        client = CountingRedis()
        store = RedisCounterStore(client, clock=FakeClock(1200))
        self.assertEqual(store.hit("webhook:x", limit=1, window_seconds=60), (True, 0))
        self.assertEqual(store.hit("webhook:x", limit=1, window_seconds=60), (False, 60))
        self.assertEqual(list(client.expiries.values()), [61])

    def test_redis_errors_fall_back_to_memory(self):
        fallback = MemoryCounterStore()
        store = RedisCounterStore(BrokenRedis(), fallback=fallback)
        self.assertEqual(store.hit("webhook:x", limit=1, window_seconds=60), (True, 0))
        allowed, retry_after = store.hit("webhook:x", limit=1, window_seconds=60)
        self.assertFalse(allowed)
        self.assertGreater(retry_after, 0)
        stats = store.stats()
        self.assertEqual(stats["redis_errors"], 2)
        self.assertEqual(stats["fallback"]["blocked"], 1)

    def test_build_counter_store_without_url(self):
        self.assertIsInstance(build_counter_store(None), MemoryCounterStore)
        self.assertIsInstance(build_counter_store("redis://localhost:6399/0"), RedisCounterStore)


if __name__ == "__main__":
    unittest.main()
