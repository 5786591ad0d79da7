import asyncio
from datetime import timedelta

import pytest

from conftest import FakeProvider, make_services, seed_cart
from payments.models import IntentStatus
from schemas.base import utcnow
from tasks.abandonment import get_sweep_stats, reset_sweep_stats, run_sweep_cycle


@pytest.fixture(autouse=True)
def clean_stats():
    reset_sweep_stats()
    yield
    reset_sweep_stats()


async def open_intent(services, buyer, price):
    rows = await seed_cart(services, buyer, price)
    result = await services.orchestrator.create_session(buyer, [rows[0].id])
    return result.transaction_id


def test_fresh_intents_are_left_alone(services, buyer):
    async def scenario():
        tid = await open_intent(services, buyer, "10")
        results = await run_sweep_cycle(services.reconciler, timeout_minutes=30)
        return results, await services.intents.get(tid)

    results, intent = asyncio.run(scenario())
    assert results == {}
    assert intent.status == IntentStatus.PENDING


def test_stale_intents_are_closed(services, buyer, provider):
    async def scenario():
        tid = await open_intent(services, buyer, "10")
        later = utcnow() + timedelta(minutes=31)
        results = await run_sweep_cycle(services.reconciler, now=later, timeout_minutes=30)
        return tid, results, await services.intents.get(tid)

    tid, results, intent = asyncio.run(scenario())
    assert results == {"abandoned": [tid]}
    assert intent.status == IntentStatus.ABANDONED
    # polled once before closing
    assert provider.status_calls == 1


def test_sweep_respects_batch_limit(services, buyer):
    async def scenario():
        for price in ("10", "20", "30"):
            await open_intent(services, buyer, price)
        later = utcnow() + timedelta(hours=1)
        return await run_sweep_cycle(services.reconciler, now=later, timeout_minutes=30, limit=2)

    results = asyncio.run(scenario())
    assert len(results["abandoned"]) == 2


def test_stats_accumulate(services, buyer):
    async def scenario():
        await open_intent(services, buyer, "10")
        later = utcnow() + timedelta(hours=1)
        await run_sweep_cycle(services.reconciler, now=later, timeout_minutes=30)
        await run_sweep_cycle(services.reconciler, now=later, timeout_minutes=30)
        return await get_sweep_stats(services.reconciler)

    stats = asyncio.run(scenario())
    assert stats["cycles"] == 2
    assert stats["processed"] == 1
    assert stats["closed"] == {"abandoned": 1}
    assert stats["errors"] == 0
    assert stats["currently_stale"] == 0


class FlakyStatusProvider(FakeProvider):
    """Status lookups for `broken` transactions raise."""

    def __init__(self):
        super().__init__()
        self.broken = set()

    async def fetch_session_status(self, intent):
        if intent.transaction_id in self.broken:
            raise RuntimeError("unexpected provider response")
        return await super().fetch_session_status(intent)


def test_one_broken_intent_does_not_stop_the_cycle(buyer):
    provider = FlakyStatusProvider()
    services = make_services(provider)

    async def scenario():
        first = await open_intent(services, buyer, "10")
        second = await open_intent(services, buyer, "20")
        provider.broken.add(first)
        later = utcnow() + timedelta(hours=1)
        results = await run_sweep_cycle(services.reconciler, now=later, timeout_minutes=30)
        return first, second, results, await services.intents.get(first), await get_sweep_stats()

    first, second, results, stuck, stats = asyncio.run(scenario())
    assert results == {"abandoned": [second]}
    assert stuck.status == IntentStatus.PENDING
    assert stats["errors"] == 1
    assert stats["processed"] == 2
