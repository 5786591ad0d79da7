# payments/__init__.py
from payments.models import (
    Buyer,
    IntentStatus,
    PaymentIntent,
    Purchase,
    PurchaseStatus,
)
from payments.events import (
    EventType,
    InMemoryEventBus,
)

__all__ = [
    "Buyer",
    "IntentStatus",
    "PaymentIntent",
    "Purchase",
    "PurchaseStatus",
    "EventType",
    "InMemoryEventBus",
]
