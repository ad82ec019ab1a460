"""Schema package exports."""
from .payment import FeeEstimateRead, PaymentCreate, PaymentRead, PaymentStatusRead
from .settlement import ChainEvent, ChainEventResult, ScheduleRunRead, SettlementRead

__all__ = [
    "ChainEvent",
    "ChainEventResult",
    "FeeEstimateRead",
    "PaymentCreate",
    "PaymentRead",
    "PaymentStatusRead",
    "ScheduleRunRead",
    "SettlementRead",
]
