import asyncio
from decimal import Decimal

from payments.events import EventType, InMemoryEventBus, PaymentEventPayload, payment_event


def event(transaction_id, event_type=EventType.PAYMENT_CONFIRMED):
    payload = PaymentEventPayload(transaction_id=transaction_id, owner_key="user:user-1", total_amount=Decimal("10"))
    return payment_event(event_type, payload, source="test")


def test_history_is_bounded():
    bus = InMemoryEventBus(history_size=2)

    async def scenario():
        for tid in ("txn-1", "txn-2", "txn-3"):
            await bus.publish(event(tid))

    asyncio.run(scenario())
    assert [e.correlation_id for e in bus.get_published_events()] == ["txn-2", "txn-3"]


def test_failing_handler_does_not_stop_the_others():
    bus = InMemoryEventBus()
    seen = []

    async def broken(e):
        raise RuntimeError("handler down")

    async def recorder(e):
        seen.append(e.correlation_id)

    async def scenario():
        await bus.subscribe([EventType.PAYMENT_CONFIRMED], broken)
        await bus.subscribe([EventType.PAYMENT_CONFIRMED], recorder)
        return await bus.publish(event("txn-1"))

    assert asyncio.run(scenario()) is True
    assert seen == ["txn-1"]


def test_unsubscribed_handler_is_not_called():
    bus = InMemoryEventBus()
    seen = []

    async def recorder(e):
        seen.append(e.event_type)

    async def scenario():
        sub_id = await bus.subscribe([EventType.PAYMENT_FAILED], recorder)
        await bus.publish(event("txn-1", EventType.PAYMENT_FAILED))
        removed = await bus.unsubscribe(sub_id)
        await bus.publish(event("txn-2", EventType.PAYMENT_FAILED))
        return removed

    assert asyncio.run(scenario()) is True
    assert seen == [EventType.PAYMENT_FAILED]
