from __future__ import annotations

import time

from celery import shared_task

from byblos.services.notification_service import deliver_notification
from byblos.tasks.common import retry_countdown, task_log


@shared_task(
    bind=True,
    name="byblos.tasks.notification_tasks.dispatch_notification",
    max_retries=5,
)
def dispatch_notification_task(self, *, intent: dict, trace_id: str = ""):
    started = time.perf_counter()
    template = str((intent or {}).get("template") or "")
    order_id = (intent or {}).get("order_id")
    try:
        row = deliver_notification(intent or {})
    except Exception as exc:
        row = None
        failure = f"{type(exc).__name__}: {exc}"
    else:
        if row is None:
            task_log("dispatch_notification", status="skipped", started_at=started, trace_id=trace_id, template=template)
            return {"ok": True, "skipped": True}
        if row.status == "sent":
            task_log(
                "dispatch_notification",
                status="ok",
                started_at=started,
                trace_id=trace_id,
                template=template,
                order_id=order_id,
                notification_id=int(row.id),
            )
            return {"ok": True, "notification_id": int(row.id)}
        failure = row.error or "notification_failed"

    if int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = retry_countdown(int(self.request.retries or 0))
        task_log(
            "dispatch_notification",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            template=template,
            order_id=order_id,
            detail=failure,
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(failure), countdown=countdown)
    # Delivery is fire-and-forget for the order flow; give up quietly.
    task_log(
        "dispatch_notification",
        status="failed",
        started_at=started,
        trace_id=trace_id,
        template=template,
        order_id=order_id,
        detail=failure,
    )
    return {"ok": False, "error": failure}
