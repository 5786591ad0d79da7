import asyncio
from decimal import Decimal

import pytest

from conftest import coupon
from coupons.models import CouponVisibility, DiscountType, TargetingType
from coupons.service import CouponService
from errors import CouponRejectedError
from payments.events import EventType, InMemoryEventBus, PaymentEventPayload, payment_event
from storage.repositories import InMemoryCouponRepository


LINES = [
    {"id": "r1", "purchasableType": "course", "purchasableId": "c-1", "paymentAmount": "80.00"},
    {"id": "r2", "purchasableType": "ebook", "purchasableId": "e-1", "paymentAmount": "20.00"},
]


def service(*coupons, resolver=None):
    return CouponService(InMemoryCouponRepository(coupons), segment_resolver=resolver)


def test_apply_coupon_returns_discount_and_final_amount():
    svc = service(coupon("save10", "10", priority_level=7))
    result = asyncio.run(svc.apply_coupon(" save10 ", LINES))

    assert result.coupon_code == "SAVE10"
    assert result.discount_amount == Decimal("10.00")
    assert result.discount_type == DiscountType.PERCENTAGE
    assert result.priority == 7
    assert result.final_amount == Decimal("90.00")
    assert result.to_wire()["finalAmount"] == "90.00"


def test_apply_coupon_with_cart_total_only():
    svc = service(coupon("five", "5", kind=DiscountType.FIXED_AMOUNT))
    result = asyncio.run(svc.apply_coupon("five", [], cart_total=Decimal("12.50")))

    assert result.final_amount == Decimal("7.50")


def test_unknown_code_is_not_found():
    with pytest.raises(CouponRejectedError) as exc:
        asyncio.run(service().apply_coupon("nope", LINES))

    assert exc.value.reason == "not_found"
    assert exc.value.status_code == 422


def test_ineligible_coupon_raises_specific_reason():
    svc = service(coupon("big", minimum_amount=Decimal("500")))
    with pytest.raises(CouponRejectedError) as exc:
        asyncio.run(svc.apply_coupon("big", LINES))

    assert exc.value.reason == "below_minimum"
    assert exc.value.code == "BIG"


def test_segments_from_resolver_are_used():
    async def resolver(user_id):
        return ["student"] if user_id == "u-student" else []

    svc = service(coupon("students", "25", targeting_type=TargetingType.USER_SEGMENT, user_segments=["student"]),
                  resolver=resolver)

    result = asyncio.run(svc.apply_coupon("students", LINES, user_id="u-student"))
    assert result.final_amount == Decimal("75.00")

    with pytest.raises(CouponRejectedError) as exc:
        asyncio.run(svc.apply_coupon("students", LINES, user_id="u-other"))
    assert exc.value.reason == "targeting_mismatch"


def test_applicable_coupons_lists_public_only_best_first():
    svc = service(
        coupon("small", "5", visibility=CouponVisibility.PUBLIC),
        coupon("large", "30", visibility=CouponVisibility.PUBLIC),
        coupon("hidden", "90", visibility=CouponVisibility.SECRET),
        coupon("ebooks", "50", visibility=CouponVisibility.PUBLIC,
               targeting_type=TargetingType.PRODUCT_TYPE, targeting_criteria="ebook"),
        coupon("too_big", "10", visibility=CouponVisibility.PUBLIC, minimum_amount=Decimal("1000")),
    )
    results = asyncio.run(svc.applicable_coupons(LINES))

    assert [r.coupon_code for r in results] == ["EBOOKS", "LARGE", "SMALL"]
    best = asyncio.run(svc.best_coupon(LINES))
    assert best.coupon_code == "EBOOKS"


def test_best_coupon_none_when_nothing_applies():
    assert asyncio.run(service().best_coupon(LINES)) is None


def test_validate_stacking_fails_with_first_rejection():
    svc = service(
        coupon("ok", "10", can_stack=True),
        coupon("expired_one", "10", can_stack=True, is_active=False),
    )
    with pytest.raises(CouponRejectedError) as exc:
        asyncio.run(svc.validate_stacking(["ok", "expired_one"], LINES))
    assert exc.value.reason == "inactive"

    with pytest.raises(CouponRejectedError) as exc:
        asyncio.run(svc.validate_stacking(["ok", "missing"], LINES))
    assert exc.value.reason == "not_found"


def test_validate_stacking_returns_breakdown():
    svc = service(coupon("a", "10", can_stack=True), coupon("b", "5", kind=DiscountType.FIXED_AMOUNT, can_stack=True))
    breakdown = asyncio.run(svc.validate_stacking(["a", "b"], LINES))

    assert breakdown.applied_coupons == ["A", "B"]
    assert breakdown.total == Decimal("85.00")


def test_usage_is_recorded_once_per_confirmed_payment():
    async def scenario():
        repo = InMemoryCouponRepository([coupon("once", usage_limit=1)])
        svc = CouponService(repo)
        bus = InMemoryEventBus()
        await svc.attach(bus)

        confirmed = payment_event(
            EventType.PAYMENT_CONFIRMED,
            PaymentEventPayload(transaction_id="TXN-1", owner_key="user:u", total_amount=Decimal("90"),
                                applied_coupon_codes=["ONCE"]),
            source="test",
        )
        abandoned = payment_event(
            EventType.PAYMENT_ABANDONED,
            PaymentEventPayload(transaction_id="TXN-2", owner_key="user:u", total_amount=Decimal("90"),
                                applied_coupon_codes=["ONCE"]),
            source="test",
        )
        await bus.publish(abandoned)
        after_abandon = (await repo.get_by_code("once")).usage_count
        await bus.publish(confirmed)
        after_confirm = (await repo.get_by_code("once")).usage_count
        counted_again = await svc.record_usage(["once"], "TXN-3")
        return after_abandon, after_confirm, counted_again, (await repo.get_by_code("once")).usage_count

    after_abandon, after_confirm, counted_again, final = asyncio.run(scenario())

    assert after_abandon == 0
    assert after_confirm == 1
    # limit reached: not counted past it
    assert counted_again == []
    assert final == 1
