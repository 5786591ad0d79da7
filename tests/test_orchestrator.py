import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import FakeProvider, coupon, make_services, seed_cart
from errors import CartValidationError, CouponRejectedError, PurchaseStateConflictError, SessionCreationError
from payments.events import EventType
from payments.models import AuditEventType, Buyer, IntentStatus, PurchaseStatus


FAR_FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)


def test_session_moves_rows_to_pending(services, buyer, provider):
    async def scenario():
        rows = await seed_cart(services, buyer, "60.00", "40.00")
        result = await services.orchestrator.create_session(buyer, [r.id for r in rows])
        return rows, result, await services.purchases.get_many([r.id for r in rows])

    rows, result, stored = asyncio.run(scenario())

    assert result.status == IntentStatus.PENDING
    assert result.payment_url == "https://pay.example/sess_1"
    assert result.total_amount == Decimal("100.00")
    assert result.reused is False
    assert provider.sessions == [result.transaction_id]
    for row in stored:
        assert row.payment_status == PurchaseStatus.PENDING
        assert row.transaction_id == result.transaction_id
    assert services.bus.get_published_events(EventType.PAYMENT_SESSION_CREATED)


def test_coupon_discount_is_allocated_across_rows(services, buyer):
    async def scenario():
        await services.coupons.save(coupon("save10", "10"))
        rows = await seed_cart(services, buyer, "60.00", "40.00")
        result = await services.orchestrator.create_session(buyer, [r.id for r in rows], ["save10"])
        stored = await services.purchases.get_many([r.id for r in rows])
        intent = await services.intents.get(result.transaction_id)
        return result, stored, intent

    result, stored, intent = asyncio.run(scenario())

    assert result.applied_coupons == ["SAVE10"]
    assert result.discount_amount == Decimal("10.00")
    assert [r.payment_amount for r in stored] == [Decimal("54.00"), Decimal("36.00")]
    assert all(r.original_price is not None for r in stored)
    assert stored[0].coupon_codes == ["SAVE10"]
    assert intent.line_amounts == {stored[0].id: Decimal("54.00"), stored[1].id: Decimal("36.00")}


def test_empty_cart_is_rejected(services, buyer):
    with pytest.raises(CartValidationError) as exc:
        asyncio.run(services.orchestrator.create_session(buyer, []))
    assert exc.value.reason == "empty_cart"


def test_unowned_row_looks_missing(services, buyer):
    async def scenario():
        rows = await seed_cart(services, Buyer(user_id="user-2"), "10")
        await services.orchestrator.create_session(buyer, [rows[0].id])

    with pytest.raises(CartValidationError) as exc:
        asyncio.run(scenario())
    assert exc.value.reason == "cart_item_not_found"


def test_rows_of_different_buyers_are_rejected(services, buyer, guest):
    async def scenario():
        mine = await seed_cart(services, buyer, "10")
        theirs = await seed_cart(services, guest, "10")
        await services.orchestrator.create_session(buyer, [mine[0].id, theirs[0].id])

    with pytest.raises(CartValidationError) as exc:
        asyncio.run(scenario())
    assert exc.value.reason == "mixed_owner"


def test_row_no_longer_in_cart_conflicts(services, buyer):
    async def scenario():
        rows = await seed_cart(services, buyer, "10", "20")
        await services.purchases.compare_and_set_status([rows[1].id], PurchaseStatus.CART, PurchaseStatus.PENDING)
        await services.orchestrator.create_session(buyer, [r.id for r in rows])

    with pytest.raises(PurchaseStateConflictError) as exc:
        asyncio.run(scenario())
    assert exc.value.status_code == 409


def test_rejected_coupon_aborts_checkout(services, buyer, provider):
    async def scenario():
        await services.coupons.save(coupon("off", "10", is_active=False))
        rows = await seed_cart(services, buyer, "10")
        with pytest.raises(CouponRejectedError) as exc:
            await services.orchestrator.create_session(buyer, [rows[0].id], ["off"])
        return exc.value, await services.purchases.get(rows[0].id)

    error, row = asyncio.run(scenario())
    assert error.reason == "inactive"
    assert row.payment_status == PurchaseStatus.CART
    assert provider.sessions == []


def test_double_click_creates_one_session():
    provider = FakeProvider(delay=0.01)
    services = make_services(provider)
    buyer = Buyer(user_id="user-1")

    async def scenario():
        rows = await seed_cart(services, buyer, "25")
        ids = [rows[0].id]
        return await asyncio.gather(
            services.orchestrator.create_session(buyer, ids),
            services.orchestrator.create_session(buyer, ids),
        )

    first, second = asyncio.run(scenario())

    assert first.transaction_id == second.transaction_id
    assert len(provider.sessions) == 1
    assert sorted([first.reused, second.reused]) == [False, True]


def test_provider_failure_fails_intent_and_keeps_cart():
    provider = FakeProvider(fail=True)
    services = make_services(provider)
    buyer = Buyer(user_id="user-1")

    async def scenario():
        rows = await seed_cart(services, buyer, "25")
        with pytest.raises(SessionCreationError):
            await services.orchestrator.create_session(buyer, [rows[0].id])

        failed = await services.intents.list_stale(older_than=FAR_FUTURE, limit=10)
        row = await services.purchases.get(rows[0].id)

        provider.fail = False
        retry = await services.orchestrator.create_session(buyer, [rows[0].id])
        audit = await services.audit_log.get_by_correlation_id(retry.transaction_id)
        return failed, row, retry, audit

    failed, row, retry, audit = asyncio.run(scenario())

    # the failed intent is no longer active
    assert failed == []
    assert row.payment_status == PurchaseStatus.CART
    assert retry.status == IntentStatus.PENDING
    assert retry.reused is False
    assert AuditEventType.SESSION_CREATED in [e.event_type for e in audit]


def test_guest_checkout(services, guest):
    async def scenario():
        rows = await seed_cart(services, guest, "15")
        result = await services.orchestrator.create_session(guest, [rows[0].id])
        return await services.intents.get(result.transaction_id)

    intent = asyncio.run(scenario())
    assert intent.guest_identifier == "guest-abc"
    assert intent.owner_key == "guest:guest-abc"


class BrokenProvider(FakeProvider):
    """Raises `error` from the first session request only."""

    def __init__(self, error: BaseException):
        super().__init__()
        self.error = error
        self.attempted = []

    async def create_session(self, intent, rows):
        self.attempted.append(intent.transaction_id)
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        return await super().create_session(intent, rows)


def test_unexpected_provider_error_does_not_strand_the_cart():
    provider = BrokenProvider(KeyError("page_request_uid"))
    services = make_services(provider)
    buyer = Buyer(user_id="user-1")

    async def scenario():
        rows = await seed_cart(services, buyer, "25")
        with pytest.raises(SessionCreationError) as exc:
            await services.orchestrator.create_session(buyer, [rows[0].id])
        first = await services.intents.get(provider.attempted[0])
        retry = await services.orchestrator.create_session(buyer, [rows[0].id])
        return exc.value, first, retry

    error, first, retry = asyncio.run(scenario())

    assert error.reason == "provider_error"
    assert isinstance(error.__cause__, KeyError)
    assert first.status == IntentStatus.FAILED
    assert first.failure_reason == "provider_error"
    assert retry.reused is False
    assert retry.transaction_id != first.transaction_id
    assert retry.status == IntentStatus.PENDING
    assert retry.payment_url is not None


def test_cancelled_session_request_fails_the_intent():
    provider = BrokenProvider(asyncio.CancelledError())
    services = make_services(provider)
    buyer = Buyer(user_id="user-1")

    async def scenario():
        rows = await seed_cart(services, buyer, "25")
        with pytest.raises(asyncio.CancelledError):
            await services.orchestrator.create_session(buyer, [rows[0].id])
        return await services.intents.get(provider.attempted[0])

    assert asyncio.run(scenario()).status == IntentStatus.FAILED


def test_cart_locks_are_released(buyer):
    services = make_services(FakeProvider(delay=0.01))

    async def scenario():
        rows = await seed_cart(services, buyer, "10")
        await asyncio.gather(
            services.orchestrator.create_session(buyer, [rows[0].id]),
            services.orchestrator.create_session(buyer, [rows[0].id]),
        )
        return dict(services.orchestrator._cart_locks)

    assert asyncio.run(scenario()) == {}
