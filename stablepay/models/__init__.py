"""ORM models package."""
from .audit import AuditLog
from .base import Base
from .merchant import Merchant, MerchantStatus, SettlementSchedule
from .payment import Currency, Network, Payment, PaymentStatus
from .scheduler_lock import SchedulerLock
from .settlement import Settlement, SettlementPayment, SettlementStatus
from .transaction import ChainTransaction, TransactionStatus
from .webhook import WebhookDelivery, WebhookDeliveryStatus

__all__ = [
    "AuditLog",
    "Base",
    "ChainTransaction",
    "Currency",
    "Merchant",
    "MerchantStatus",
    "Network",
    "Payment",
    "PaymentStatus",
    "SchedulerLock",
    "Settlement",
    "SettlementPayment",
    "SettlementSchedule",
    "SettlementStatus",
    "TransactionStatus",
    "WebhookDelivery",
    "WebhookDeliveryStatus",
]
