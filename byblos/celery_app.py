from __future__ import annotations

import json
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry


_SIGNALS_BOUND = False


def _interval(config, key: str, default: int, minimum: int = 30) -> float:
    try:
        value = int(config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return float(max(minimum, value))


def _extract_trace_id(args, kwargs) -> str:
    if isinstance(kwargs, dict):
        trace_id = str(kwargs.get("trace_id") or "").strip()
        if trace_id:
            return trace_id
    if isinstance(args, (list, tuple)):
        for item in args:
            if isinstance(item, str) and item.strip().startswith("trace_"):
                return item.strip()
    return ""


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_failure",
            "task_name": getattr(sender, "name", "") if sender is not None else "",
            "task_id": str(task_id or ""),
            "trace_id": _extract_trace_id(args, kwargs),
            "exception": str(exception or ""),
            "timestamp": datetime.utcnow().isoformat(),
        }
        if einfo is not None:
            payload["einfo"] = str(einfo)
        flask_app.logger.error(json.dumps(payload))

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_retry",
            "task_name": str(getattr(request, "task", "") or ""),
            "task_id": str(getattr(request, "id", "") or ""),
            "trace_id": _extract_trace_id(getattr(request, "args", None), getattr(request, "kwargs", None)),
            "reason": str(reason or ""),
            "retry_count": int(getattr(request, "retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
        }
        flask_app.logger.warning(json.dumps(payload))

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    cfg = flask_app.config
    broker = cfg.get("CELERY_BROKER_URL") or "redis://localhost:6379/0"
    backend = cfg.get("CELERY_RESULT_BACKEND") or broker
    celery = Celery(flask_app.import_name, broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule={
            "order-deadline-sweep": {
                "task": "byblos.tasks.order_tasks.run_deadline_sweep",
                "schedule": _interval(cfg, "DEADLINE_SWEEP_INTERVAL_SECONDS", 1800),
            },
            "pending-payment-redrive": {
                "task": "byblos.tasks.order_tasks.redrive_pending_payments",
                "schedule": _interval(cfg, "PAYMENT_REDRIVE_INTERVAL_SECONDS", 300),
            },
            "pending-payment-poll": {
                "task": "byblos.tasks.order_tasks.poll_pending_payments",
                "schedule": _interval(cfg, "PAYMENT_POLL_INTERVAL_SECONDS", 300),
            },
            "stuck-withdrawal-reconcile": {
                "task": "byblos.tasks.order_tasks.reconcile_stuck_withdrawals",
                "schedule": _interval(cfg, "WITHDRAWAL_RECONCILE_INTERVAL_SECONDS", 3600),
            },
        },
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["byblos.tasks.notification_tasks", "byblos.tasks.order_tasks"], related_name=None)
    _bind_task_observers(flask_app)
    return celery
