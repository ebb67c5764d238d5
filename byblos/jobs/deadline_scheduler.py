from __future__ import annotations

import json
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from byblos.errors import GuardViolation, InvalidTransition
from byblos.extensions import db
from byblos.models import Order
from byblos.services.order_state_machine import Actor, OrderEvent, OrderStatus
from byblos.services.order_workflow import execute_transition
from byblos.utils.job_runs import record_job_run


def _now():
    return datetime.utcnow()


def _due_orders(now: datetime, limit: int) -> list[tuple[Order, str]]:
    release_hours = int(current_app.config.get("SERVICE_RELEASE_HOURS", 24))
    expiry_hours = int(current_app.config.get("PAYMENT_EXPIRY_HOURS", 24))
    due: list[tuple[Order, str]] = []

    dropoff = (
        Order.query.filter(
            Order.status == OrderStatus.DELIVERY_PENDING,
            Order.seller_dropoff_deadline.isnot(None),
            Order.seller_dropoff_deadline < now,
            Order.auto_cancelled_reason.is_(None),
        )
        .order_by(Order.seller_dropoff_deadline.asc())
        .limit(int(limit))
        .all()
    )
    due += [(order, OrderEvent.SELLER_DROPOFF_EXPIRED) for order in dropoff]

    pickup = (
        Order.query.filter(
            Order.status == OrderStatus.DELIVERY_COMPLETE,
            Order.buyer_pickup_deadline.isnot(None),
            Order.buyer_pickup_deadline < now,
            Order.auto_cancelled_reason.is_(None),
        )
        .order_by(Order.buyer_pickup_deadline.asc())
        .limit(int(limit))
        .all()
    )
    due += [(order, OrderEvent.BUYER_PICKUP_EXPIRED) for order in pickup]

    services = (
        Order.query.filter(
            Order.status.in_([OrderStatus.SERVICE_PENDING, OrderStatus.CONFIRMED]),
            Order.booking_date.isnot(None),
            Order.booking_date < now - timedelta(hours=release_hours),
        )
        .order_by(Order.booking_date.asc())
        .limit(int(limit))
        .all()
    )
    due += [(order, OrderEvent.SERVICE_AUTO_RELEASE) for order in services]

    unpaid = (
        Order.query.filter(
            Order.status == OrderStatus.PENDING,
            Order.created_at < now - timedelta(hours=expiry_hours),
        )
        .order_by(Order.created_at.asc())
        .limit(int(limit))
        .all()
    )
    due += [(order, OrderEvent.PAYMENT_EXPIRED) for order in unpaid]
    return due


def run_deadline_sweep(*, limit: int = 500, now: datetime | None = None) -> dict:
    """Drive orders with elapsed deadlines through the state machine.

    Rows another worker or a user already moved are counted as skipped;
    the terminal-state check and the order version are the only dedup.
    """
    started_at = _now()
    now = now or started_at
    processed = 0
    cancelled = 0
    released = 0
    expired = 0
    skipped = 0
    errors = 0

    for order, event in _due_orders(now, limit):
        processed += 1
        order_id = int(order.id)
        try:
            db.session.refresh(order)
            result = execute_transition(
                order,
                event,
                actor=Actor.system(),
                now=now,
                idempotency_key=f"{event.lower()}:{order_id}",
            )
        except (InvalidTransition, GuardViolation):
            skipped += 1
            continue
        except StaleDataError:
            db.session.rollback()
            skipped += 1
            continue
        except Exception:
            db.session.rollback()
            errors += 1
            current_app.logger.exception("deadline_sweep_order_failed order_id=%s event=%s", order_id, event)
            continue

        if not result.changed:
            skipped += 1
        elif result.to_status == OrderStatus.CANCELLED:
            cancelled += 1
        elif result.to_status == OrderStatus.FAILED:
            expired += 1
        else:
            released += 1

    result = {
        "ok": errors == 0,
        "processed": processed,
        "cancelled": cancelled,
        "released": released,
        "expired": expired,
        "skipped": skipped,
        "errors": errors,
        "ts": _now().isoformat(),
    }
    current_app.logger.info(json.dumps({"event": "deadline_sweep", **result}))
    record_job_run(
        job_name="deadline_scheduler",
        ok=errors == 0,
        started_at=started_at,
        counters=result,
        error=None if errors == 0 else f"errors={errors}",
    )
    return result


def run_once(*, limit: int = 500) -> dict:
    """Standalone entry point for cron and smoke scripts."""
    from byblos import create_app

    app = create_app()
    with app.app_context():
        return run_deadline_sweep(limit=limit)
