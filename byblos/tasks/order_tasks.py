from __future__ import annotations

import time

from celery import shared_task

from byblos.jobs.deadline_scheduler import run_deadline_sweep
from byblos.services.payment_reconciler import poll_pending_payments, redrive_pending_payments
from byblos.services.withdrawal_service import reconcile_stuck_withdrawals
from byblos.tasks.common import retry_countdown, task_log


def _run_with_retry(task, task_name: str, job, *, trace_id: str, **kwargs) -> dict:
    started = time.perf_counter()
    try:
        result = job(**kwargs)
    except Exception as exc:
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = retry_countdown(int(task.request.retries or 0))
            task_log(
                task_name,
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                detail=str(exc),
                countdown=countdown,
            )
            raise task.retry(exc=exc, countdown=countdown)
        task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise
    task_log(
        task_name,
        status="ok" if bool(result.get("ok")) else "failed",
        started_at=started,
        trace_id=trace_id,
        **kwargs,
    )
    return result


@shared_task(
    bind=True,
    name="byblos.tasks.order_tasks.run_deadline_sweep",
    max_retries=3,
)
def run_deadline_sweep_task(self, *, limit: int = 500, trace_id: str = ""):
    return _run_with_retry(self, "run_deadline_sweep", run_deadline_sweep, trace_id=trace_id, limit=int(limit))


@shared_task(
    bind=True,
    name="byblos.tasks.order_tasks.redrive_pending_payments",
    max_retries=3,
)
def redrive_pending_payments_task(self, *, lookback_hours: int = 24, trace_id: str = ""):
    return _run_with_retry(
        self,
        "redrive_pending_payments",
        redrive_pending_payments,
        trace_id=trace_id,
        lookback_hours=int(lookback_hours),
    )


@shared_task(
    bind=True,
    name="byblos.tasks.order_tasks.reconcile_stuck_withdrawals",
    max_retries=3,
)
def reconcile_stuck_withdrawals_task(self, *, hours_ago: int = 2, trace_id: str = ""):
    return _run_with_retry(
        self,
        "reconcile_stuck_withdrawals",
        reconcile_stuck_withdrawals,
        trace_id=trace_id,
        hours_ago=int(hours_ago),
    )


@shared_task(
    bind=True,
    name="byblos.tasks.order_tasks.poll_pending_payments",
    max_retries=3,
)
def poll_pending_payments_task(self, *, limit: int = 100, trace_id: str = ""):
    return _run_with_retry(self, "poll_pending_payments", poll_pending_payments, trace_id=trace_id, limit=int(limit))
