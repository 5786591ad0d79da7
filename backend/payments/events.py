"""
Payment Events
==============
Typed events published on every terminal payment transition, and the
in-process bus that delivers them.

Subscribers (coupon usage recording, cache invalidation hooks) register
for event types and get every matching event after the state change has
been persisted.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field, computed_field

from schemas.base import utcnow


# =============================================================================
# EVENT TYPES
# =============================================================================

class EventType(str, Enum):
    PAYMENT_SESSION_CREATED = "payment.session_created"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_ABANDONED = "payment.abandoned"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_LATE_SUCCESS = "payment.late_success"


class BaseEvent(BaseModel):
    """Base event schema - all events inherit from this"""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    version: str = "1.0"
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: str  # transaction id
    source: str
    payload: dict = Field(default_factory=dict)

    @computed_field
    @property
    def routing_key(self) -> str:
        return self.event_type.value


class PaymentEventPayload(BaseModel):
    transaction_id: str
    owner_key: str
    cart_item_ids: list[str] = Field(default_factory=list)
    total_amount: Decimal
    applied_coupon_codes: list[str] = Field(default_factory=list)
    reason: Optional[str] = None


def payment_event(event_type: EventType, payload: PaymentEventPayload, source: str) -> BaseEvent:
    return BaseEvent(
        event_type=event_type,
        correlation_id=payload.transaction_id,
        source=source,
        payload=payload.model_dump(mode="json"),
    )


# =============================================================================
# EVENT BUS
# =============================================================================

EventHandler = Callable[[BaseEvent], Any]


class IEventBus(ABC):
    """Publish/subscribe interface"""

    @abstractmethod
    async def publish(self, event: BaseEvent) -> bool:
        pass

    @abstractmethod
    async def subscribe(self, event_types: list[EventType], handler: EventHandler) -> str:
        """Subscribe to events, return subscription ID"""
        pass

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> bool:
        pass


class InMemoryEventBus(IEventBus):
    """
    In-process bus. Handlers run in subscription order; a failing handler
    is logged and does not stop the others. Only the last `history_size`
    published events are kept for inspection.
    """

    def __init__(self, history_size: int = 256):
        self._handlers: dict[EventType, list[tuple[str, EventHandler]]] = defaultdict(list)
        self._events: deque[BaseEvent] = deque(maxlen=history_size)
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="event_bus")

    async def publish(self, event: BaseEvent) -> bool:
        async with self._lock:
            self._events.append(event)
            handlers = list(self._handlers.get(event.event_type, []))

        for sub_id, handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                self._logger.error("handler_error",
                                   event_type=event.event_type.value,
                                   subscription_id=sub_id,
                                   error=str(e))

        self._logger.info("event_published",
                          event_type=event.event_type.value,
                          event_id=event.event_id,
                          transaction_id=event.correlation_id,
                          handlers_notified=len(handlers))
        return True

    async def subscribe(self, event_types: list[EventType], handler: EventHandler) -> str:
        subscription_id = str(uuid.uuid4())

        async with self._lock:
            for event_type in event_types:
                self._handlers[event_type].append((subscription_id, handler))

        self._logger.info("subscribed",
                          subscription_id=subscription_id,
                          event_types=[et.value for et in event_types])
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        removed = False
        async with self._lock:
            for event_type in list(self._handlers.keys()):
                kept = [(sid, h) for sid, h in self._handlers[event_type] if sid != subscription_id]
                removed = removed or len(kept) != len(self._handlers[event_type])
                self._handlers[event_type] = kept

        self._logger.info("unsubscribed", subscription_id=subscription_id)
        return removed

    # Testing utilities
    def get_published_events(self, event_type: Optional[EventType] = None) -> list[BaseEvent]:
        if event_type is None:
            return list(self._events)
        return [e for e in self._events if e.event_type == event_type]

    def clear_events(self):
        self._events.clear()
