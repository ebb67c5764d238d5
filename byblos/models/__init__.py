from byblos.models.order import Order, OrderItem
from byblos.models.payment import Payment
from byblos.models.withdrawal_request import WithdrawalRequest
from byblos.models.ledger import LedgerAccount, LedgerEntry
from byblos.models.order_transition import OrderTransition
from byblos.models.webhook_event import WebhookEvent
from byblos.models.job_run import JobRun
from byblos.models.notification import Notification
from byblos.models.audit_event import AuditEvent

__all__ = [
    "Order",
    "OrderItem",
    "Payment",
    "WithdrawalRequest",
    "LedgerAccount",
    "LedgerEntry",
    "OrderTransition",
    "WebhookEvent",
    "JobRun",
    "Notification",
    "AuditEvent",
]
