import asyncio
from decimal import Decimal

import httpx
import pytest

from api.server import create_app
from client.api_client import CheckoutApiClient
from client.checkout_flow import CheckoutFlow, CheckoutOutcomeKind
from conftest import coupon, seed_cart
from errors import (
    CartValidationError,
    CouponRejectedError,
    PurchaseStateConflictError,
    TransactionNotFoundError,
)
from payments.models import AuditEventType, IntentStatus, PurchaseStatus, ReportedOutcome
from payments.providers import SessionStatus
from schemas.surface_messages import SurfaceChannel, parse_surface_message
from storage.entity_cache import EntityCache
from storage.purchase_store import PurchaseStore


SUBMIT = {"event": "submit_process", "value": True}


def complete(status):
    return {"type": "payment_complete", "status": status}


def api_client(services, buyer):
    app = create_app(services, start_sweeper=False)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://checkout.test")
    return CheckoutApiClient(buyer, client=http)


async def run_checkout(services, buyer, *messages, timeout=2.0, store=None):
    """Start a checkout, post `messages` on the surface channel, return the outcome."""
    rows = await seed_cart(services, buyer, "30")
    channel = SurfaceChannel()
    async with api_client(services, buyer) as api:
        flow = CheckoutFlow(api, channel, store)
        await flow.start([rows[0].id])

        waiter = asyncio.create_task(flow.wait_for_outcome(timeout=timeout))
        while channel.subscriber_count == 0:
            await asyncio.sleep(0)
        for message in messages:
            channel.post(message)

        outcome = await waiter
        intent = await services.intents.get(flow.transaction_id)
        return outcome, intent, channel


def test_submit_then_success_is_paid(services, buyer):
    outcome, intent, channel = asyncio.run(run_checkout(services, buyer, SUBMIT, complete("success")))

    assert outcome.kind == CheckoutOutcomeKind.PAID
    assert outcome.intent_status == "paid"
    assert intent.status == IntentStatus.PAID
    assert intent.submitted_at is not None
    assert channel.subscriber_count == 0


def test_confirmation_call_is_sent_on_submit(services, buyer):
    async def scenario():
        outcome, intent, _ = await run_checkout(services, buyer, SUBMIT, complete("success"))
        return await services.audit_log.get_by_correlation_id(intent.transaction_id)

    audit = asyncio.run(scenario())
    assert AuditEventType.CLIENT_CONFIRMATION in [e.event_type for e in audit]


def test_failure_is_shown_but_intent_stays_open(services, buyer):
    outcome, intent, _ = asyncio.run(run_checkout(services, buyer, SUBMIT, complete("failure")))

    assert outcome.kind == CheckoutOutcomeKind.FAILED
    assert intent.status == IntentStatus.PENDING
    assert intent.reported_outcome == ReportedOutcome.FAILED


def test_cancel_inside_surface(services, buyer):
    outcome, intent, _ = asyncio.run(run_checkout(services, buyer, complete("cancel")))

    assert outcome.kind == CheckoutOutcomeKind.CANCELLED_BY_USER
    assert "cart" in outcome.message
    assert intent.status == IntentStatus.PENDING


def test_foreign_messages_do_not_end_the_wait(services, buyer):
    outcome, _, _ = asyncio.run(run_checkout(
        services, buyer, {"type": "resize"}, "hello", complete("success")))

    assert outcome.kind == CheckoutOutcomeKind.PAID


def test_silence_without_submission_is_abandoned(services, buyer):
    outcome, intent, _ = asyncio.run(run_checkout(services, buyer, timeout=0.2))

    assert outcome.kind == CheckoutOutcomeKind.ABANDONED
    # the server still owns the decision; the sweeper closes it later
    assert intent.status == IntentStatus.PENDING


def test_silence_after_submission_is_unknown(services, buyer):
    outcome, _, _ = asyncio.run(run_checkout(services, buyer, SUBMIT, timeout=0.2))

    assert outcome.kind == CheckoutOutcomeKind.UNKNOWN


def test_silence_resolved_by_provider_poll(services, buyer, provider):
    provider.status = SessionStatus.PAID
    outcome, intent, _ = asyncio.run(run_checkout(services, buyer, SUBMIT, timeout=0.2))

    assert outcome.kind == CheckoutOutcomeKind.PAID
    assert intent.status == IntentStatus.PAID


def test_surface_success_on_closed_intent_is_unknown(services, buyer):
    async def scenario():
        rows = await seed_cart(services, buyer, "30")
        channel = SurfaceChannel()
        async with api_client(services, buyer) as api:
            flow = CheckoutFlow(api, channel)
            await flow.start([rows[0].id])
            await services.reconciler.expire(flow.transaction_id)
            return await flow._on_complete(parse_surface_message(complete("success")))

    outcome = asyncio.run(scenario())
    assert outcome.kind == CheckoutOutcomeKind.UNKNOWN
    assert outcome.intent_status == "abandoned"


def test_start_invalidates_cached_cart(services, buyer):
    async def scenario():
        rows = await seed_cart(services, buyer, "30")
        store = PurchaseStore(services.purchases, services.catalog, EntityCache(ttl_seconds=300, max_entries=10))
        before = await store.cart_items(buyer)
        async with api_client(services, buyer) as api:
            await CheckoutFlow(api, SurfaceChannel(), store).start([rows[0].id])
        after = await store.cart_items(buyer)
        return before, after

    before, after = asyncio.run(scenario())
    assert len(before) == 1
    assert after == []


def test_api_client_raises_typed_errors(services, buyer):
    async def scenario():
        await services.coupons.save(coupon("save10", "10"))
        rows = await seed_cart(services, buyer, "30")
        async with api_client(services, buyer) as api:
            with pytest.raises(CartValidationError) as empty:
                await api.create_intent([])
            with pytest.raises(CouponRejectedError) as rejected:
                await api.apply_coupon("nope", [{"id": "r1", "paymentAmount": "10"}])
            with pytest.raises(TransactionNotFoundError):
                await api.transaction_status("TXN-nope")

            await api.create_intent([rows[0].id])
            with pytest.raises(PurchaseStateConflictError) as conflict:
                await api.remove_purchase(rows[0].id)
            confirmed = await api.confirm("TXN-nope")
        return empty.value, rejected.value, conflict.value, confirmed

    empty, rejected, conflict, confirmed = asyncio.run(scenario())
    assert empty.reason == "empty_cart"
    assert rejected.reason == "not_found"
    assert rejected.code == "nope"
    assert conflict.current_status == "pending"
    assert confirmed is False


def test_api_client_reads(services, buyer):
    async def scenario():
        await services.coupons.save(coupon("save10", "10"))
        rows = await seed_cart(services, buyer, "30", "20")
        async with api_client(services, buyer) as api:
            applied = await api.apply_coupon("save10", cart_total=Decimal("50"))
            session = await api.create_intent([rows[0].id])
            pending = await api.list_purchases([PurchaseStatus.PENDING])
            cart = await api.list_purchases([PurchaseStatus.CART])
            checked = await api.check_pending_payments()
        return applied, session, pending, cart, checked

    applied, session, pending, cart, checked = asyncio.run(scenario())
    assert applied.final_amount == Decimal("45.00")
    assert [p.transaction_id for p in pending] == [session.transaction_id]
    assert len(cart) == 1
    assert checked[0]["transactionId"] == session.transaction_id


@pytest.mark.parametrize("status,kind", [
    ("success", CheckoutOutcomeKind.PAID),
    ("failure", CheckoutOutcomeKind.FAILED),
    ("cancel", CheckoutOutcomeKind.CANCELLED_BY_USER),
])
def test_provider_prefixed_completion(services, buyer, status, kind):
    message = {"type": "payplus_payment_complete", "status": status}
    outcome, _, _ = asyncio.run(run_checkout(services, buyer, message))

    assert outcome.kind == kind
