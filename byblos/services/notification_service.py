from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from byblos.extensions import db
from byblos.integrations.common import IntegrationDisabledError
from byblos.integrations.messaging.factory import build_messaging_provider
from byblos.models import Notification
from byblos.services.fees import minor_to_major
from byblos.utils.observability import get_request_id

TEMPLATES = {
    "order_paid_buyer": "Payment received for order {order_number}. The seller has until {seller_dropoff_deadline} to drop it off.",
    "new_order_seller": "New order {order_number}: please drop off the items before {seller_dropoff_deadline}.",
    "new_order_logistics": "Order {order_number} is paid and will be dropped off by the seller.",
    "order_ready_for_collection": "Order {order_number} is paid. Collect it from the seller's shop.",
    "new_collection_order_seller": "New order {order_number} will be collected from your shop.",
    "service_booked_buyer": "Your booking {order_number} is paid and awaiting the seller's confirmation.",
    "new_service_booking_seller": "New service booking {order_number}. Please confirm it.",
    "service_confirmed": "The seller confirmed your booking {order_number}.",
    "digital_order_ready": "Order {order_number} is complete. Your download is ready.",
    "digital_sale_completed": "Digital sale {order_number} completed. {seller_payout_display} added to your balance.",
    "payment_failed": "Payment for order {order_number} failed. No money was taken; you can try paying again.",
    "payment_expired": "Order {order_number} was closed because no payment arrived in time.",
    "order_ready_for_pickup": "Order {order_number} is ready for pickup. Collect it before {buyer_pickup_deadline}.",
    "dropoff_confirmed": "Drop-off confirmed for order {order_number}.",
    "order_completed_buyer": "Order {order_number} is complete. Thank you for shopping.",
    "payout_released": "Order {order_number} is complete. {seller_payout_display} is now available to withdraw.",
    "order_cancelled_logistics": "Order {order_number} was cancelled. Do not process this package.",
    "withdrawal_completed": "Your withdrawal of {amount_display} has been sent.",
    "withdrawal_failed": "Your withdrawal of {amount_display} failed and was returned to your balance.",
}

_CANCELLED_MESSAGES = {
    "buyer": {
        "buyer": "You cancelled order {order_number}. {refund_display} was added to your refund balance.",
        "seller": "The buyer cancelled order {order_number}.",
    },
    "seller": {
        "buyer": "The seller cancelled order {order_number}. {refund_display} was added to your refund balance.",
        "seller": "You cancelled order {order_number}.",
    },
    "admin": {
        "buyer": "Order {order_number} was cancelled by support. {refund_display} was added to your refund balance.",
        "seller": "Order {order_number} was cancelled by support.",
    },
    "system": {
        "buyer": "Order {order_number} was cancelled. {refund_display} was added to your refund balance.",
        "seller": "Order {order_number} was cancelled automatically.",
    },
    "seller_timeout": {
        "buyer": "Order {order_number} was cancelled because the seller did not drop it off in time. {refund_display} was refunded.",
        "seller": "Order {order_number} was cancelled because it was not dropped off before the deadline.",
    },
    "buyer_timeout": {
        "buyer": "Order {order_number} was cancelled because it was not picked up in time. {refund_display} was refunded.",
        "seller": "Order {order_number} was cancelled because the buyer did not pick it up in time.",
    },
}


_DISPLAY_FIELDS = {
    "seller_payout": "seller_payout_display",
    "amount": "amount_display",
    "refund_amount": "refund_display",
    "total_amount": "total_display",
}


class _Defaults(dict):
    def __missing__(self, key):
        return ""


def render_message(template: str, data: dict | None) -> str:
    values = _Defaults(data or {})
    currency = values.get("currency") or "KES"
    for field, display in _DISPLAY_FIELDS.items():
        if values.get(field) not in (None, ""):
            values[display] = f"{currency} {minor_to_major(int(values[field]))}"
    if template in ("order_cancelled_buyer", "order_cancelled_seller"):
        initiator = values.get("cancelled_by") or "system"
        role = "buyer" if template.endswith("_buyer") else "seller"
        fmt = _CANCELLED_MESSAGES.get(initiator, _CANCELLED_MESSAGES["system"])[role]
    else:
        fmt = TEMPLATES.get(template) or "Update on order {order_number}: {status}."
    return fmt.format_map(values).strip()


def deliver_notification(payload: dict) -> Notification | None:
    """Send one notification and record the outcome. Returns None when disabled."""
    template = str(payload.get("template") or "")
    role = str(payload.get("recipient_role") or "")
    data = dict(payload.get("data") or {})
    try:
        provider = build_messaging_provider(current_app.config)
    except IntegrationDisabledError:
        current_app.logger.info("notification_skipped_disabled template=%s", template)
        return None

    message = render_message(template, data)
    row = Notification(
        order_id=payload.get("order_id"),
        recipient_role=role[:16],
        recipient_id=payload.get("recipient_id"),
        template=template[:64],
        channel=provider.channel,
        provider=provider.name,
        status="queued",
        data_json=json.dumps(data, default=str),
    )
    result = provider.send(
        recipient_role=role,
        recipient_id=payload.get("recipient_id"),
        message=message,
        reference=f"order:{payload.get('order_id')}:{template}",
    )
    if result.ok:
        row.status = "sent"
        row.sent_at = datetime.utcnow()
        row.provider_ref = result.provider_ref or None
    else:
        row.status = "failed"
        row.error = f"{result.code}:{result.message}"[:1000]
    try:
        db.session.add(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return row


def dispatch_notifications(intents) -> int:
    """Hand intents to the delivery channel. Never raises."""
    queued = 0
    use_queue = bool(current_app.config.get("NOTIFICATIONS_QUEUE", True))
    for intent in intents or []:
        payload = intent.to_dict() if hasattr(intent, "to_dict") else dict(intent)
        try:
            if use_queue:
                from byblos.tasks.notification_tasks import dispatch_notification_task

                dispatch_notification_task.delay(intent=payload, trace_id=get_request_id())
            else:
                row = deliver_notification(payload)
                if row is not None and row.status == "failed":
                    current_app.logger.warning(
                        json.dumps(
                            {
                                "event": "notification_failed",
                                "template": payload.get("template"),
                                "order_id": payload.get("order_id"),
                                "error": row.error or "",
                            }
                        )
                    )
            queued += 1
        except Exception as exc:
            current_app.logger.warning(
                json.dumps(
                    {
                        "event": "notification_dispatch_failed",
                        "template": payload.get("template"),
                        "order_id": payload.get("order_id"),
                        "recipient_role": payload.get("recipient_role"),
                        "error": f"{type(exc).__name__}: {exc}",
                    }
                )
            )
    return queued
