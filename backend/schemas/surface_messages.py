# schemas/surface_messages.py
# ============================================================================
# Embedded payment surface -> page messages
# ============================================================================
# The surface posts two kinds of messages on a channel that other things
# also write to:
#
#   {"event": "submit_process", "value": true}
#   {"type": "payment_complete", "status": "success"|"failure"|"cancel",
#    "providerTransactionId": ..., "providerSessionId": ...}
#
# Raw JSON strings are parsed first. Anything that does not match one of
# the two shapes is dropped before it reaches a handler.
# ============================================================================

import asyncio
import json
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Optional, Union

import structlog
from pydantic import TypeAdapter, ValidationError

from schemas.base import ApiModel


logger = structlog.get_logger().bind(component="surface_channel")


class SurfaceStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCEL = "cancel"


class SubmitProcessMessage(ApiModel):
    """The buyer pressed pay inside the surface."""
    event: Literal["submit_process"]
    value: Literal[True]


class PaymentCompleteMessage(ApiModel):
    """The surface finished, one way or another."""
    type: Literal["payment_complete", "payplus_payment_complete"]
    status: SurfaceStatus
    provider_transaction_id: Optional[str] = None
    provider_session_id: Optional[str] = None


SurfaceMessage = Union[SubmitProcessMessage, PaymentCompleteMessage]

_surface_adapter = TypeAdapter(SurfaceMessage)


def parse_surface_message(raw: Any) -> Optional[SurfaceMessage]:
    """Typed message, or None for anything that is not ours."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, dict):
        return None
    try:
        return _surface_adapter.validate_python(raw)
    except ValidationError:
        return None


# ============================================================================
# CHANNEL
# ============================================================================

class SurfaceSubscription:
    """One listener's view of the channel. Yields typed messages only."""

    def __init__(self, channel: "SurfaceChannel", subscription_id: str):
        self.channel = channel
        self.id = subscription_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _deliver(self, raw: Any) -> None:
        self._queue.put_nowait(raw)

    async def next_message(self) -> SurfaceMessage:
        while True:
            raw = await self._queue.get()
            message = parse_surface_message(raw)
            if message is not None:
                return message
            logger.debug("surface_message_ignored", subscription_id=self.id)

    def __aiter__(self):
        return self

    async def __anext__(self) -> SurfaceMessage:
        if self.closed:
            raise StopAsyncIteration
        return await self.next_message()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.channel.unsubscribe(self.id)


class SurfaceChannel:
    """
    Cross-context message channel. Anything may post to it; each
    subscription gets its own copy of every message.
    """

    def __init__(self):
        self._subscriptions: dict[str, SurfaceSubscription] = {}

    def post(self, raw: Any) -> int:
        for subscription in list(self._subscriptions.values()):
            subscription._deliver(raw)
        return len(self._subscriptions)

    def subscribe(self) -> SurfaceSubscription:
        subscription = SurfaceSubscription(self, str(uuid.uuid4()))
        self._subscriptions[subscription.id] = subscription
        logger.debug("surface_subscribed", subscription_id=subscription.id)
        return subscription

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self._subscriptions.pop(subscription_id, None) is not None
        if removed:
            logger.debug("surface_unsubscribed", subscription_id=subscription_id)
        return removed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


# ============================================================================
# DISPATCHER
# ============================================================================

MessageHandler = Callable[[Any], Awaitable[Any]]


class SurfaceMessageDispatcher:
    """Routes typed surface messages to one handler per message type."""

    def __init__(self):
        self._handlers: dict[type, MessageHandler] = {}

    def register(self, message_type: type):
        """Decorator to register handler for a message type"""
        def decorator(handler: MessageHandler):
            self._handlers[message_type] = handler
            return handler
        return decorator

    async def dispatch(self, message: SurfaceMessage) -> Any:
        handler = self._handlers.get(type(message))
        if handler is None:
            return None
        return await handler(message)

    async def run(
        self,
        subscription: SurfaceSubscription,
        until: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Dispatch messages until a handler result satisfies `until`."""
        async for message in subscription:
            result = await self.dispatch(message)
            if until is not None and until(result):
                return result
        return None
