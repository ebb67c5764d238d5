from __future__ import annotations

import unittest

from byblos.celery_app import create_celery_app
from byblos.tasks.common import retry_countdown
from tests.support import build_test_app


class CeleryAppTestCase(unittest.TestCase):
    def setUp(self):
        self.flask_app = build_test_app(
            CELERY_BROKER_URL="memory://",
            CELERY_RESULT_BACKEND="cache+memory://",
            DEADLINE_SWEEP_INTERVAL_SECONDS=600,
        )
        self.celery = create_celery_app(self.flask_app)

    def test_beat_schedule(self):
        schedule = self.celery.conf.beat_schedule
        self.assertEqual(
            set(schedule),
            {"order-deadline-sweep", "pending-payment-redrive", "pending-payment-poll", "stuck-withdrawal-reconcile"},
        )
        self.assertEqual(schedule["order-deadline-sweep"]["task"], "byblos.tasks.order_tasks.run_deadline_sweep")
        self.assertEqual(schedule["order-deadline-sweep"]["schedule"], 600.0)
        self.assertEqual(schedule["stuck-withdrawal-reconcile"]["schedule"], 3600.0)
        self.assertEqual(schedule["pending-payment-poll"]["task"], "byblos.tasks.order_tasks.poll_pending_payments")

    def test_json_only_serialization(self):
        self.assertEqual(self.celery.conf.task_serializer, "json")
        self.assertEqual(list(self.celery.conf.accept_content), ["json"])
        self.assertTrue(self.celery.conf.task_acks_late)

    def test_retry_backoff_is_capped(self):
        self.assertEqual(retry_countdown(0), 5)
        self.assertEqual(retry_countdown(1), 10)
        self.assertEqual(retry_countdown(4), 80)
        self.assertEqual(retry_countdown(12), 900)


if __name__ == "__main__":
    unittest.main()
