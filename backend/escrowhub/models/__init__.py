from .user import User
from .order import Order
from .order_item import OrderItem
from .escrow_record import EscrowRecord
from .escrow_transition import EscrowTransition
from .custody import PickupTransaction, DeliveryTransaction
from .order_event import OrderEvent
from .payment_callback import PaymentCallback
from .notification import Notification
from .platform_event import PlatformEvent
from .idempotency_key import IdempotencyKey
from .job_run import JobRun
from .reconciliation_report import ReconciliationReport

__all__ = [
    "User",
    "Order",
    "OrderItem",
    "EscrowRecord",
    "EscrowTransition",
    "PickupTransaction",
    "DeliveryTransaction",
    "OrderEvent",
    "PaymentCallback",
    "Notification",
    "PlatformEvent",
    "IdempotencyKey",
    "JobRun",
    "ReconciliationReport",
]
