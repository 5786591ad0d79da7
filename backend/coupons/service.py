"""
Coupon Service
==============
Coupon operations behind the /coupons endpoints, plus usage recording.

Pricing itself lives in coupons.discount_ledger; this module loads coupons,
builds the eligibility context and turns rejections into
CouponRejectedError.

Usage counts are only bumped from the payment.confirmed event, so a coupon
is counted once per paid checkout and never for abandoned ones.
"""

from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

import structlog

from coupons.discount_ledger import compute_total
from coupons.models import (
    CartLine,
    DiscountBreakdown,
    DiscountType,
    EligibilityContext,
    RejectionReason,
    normalize_code,
)
from errors import CouponRejectedError
from payments.events import BaseEvent, EventType, IEventBus
from schemas.base import ApiModel
from storage.repositories import ICouponRepository


SegmentResolver = Callable[[str], Awaitable[list[str]]]


class CouponApplication(ApiModel):
    """Result of applying one coupon to a cart."""
    coupon_code: str
    discount_amount: Decimal
    discount_type: DiscountType
    discount_value: Decimal
    priority: int
    can_stack: bool
    final_amount: Decimal


def to_cart_lines(cart_items: Iterable[Any]) -> list[CartLine]:
    """Accept CartLine objects or camelCase/snake_case dicts."""
    return [
        item if isinstance(item, CartLine) else CartLine.model_validate(item)
        for item in cart_items
    ]


class CouponService:

    def __init__(
        self,
        coupons: ICouponRepository,
        segment_resolver: Optional[SegmentResolver] = None,
    ):
        self.coupons = coupons
        self._segment_resolver = segment_resolver
        self._logger = structlog.get_logger().bind(component="coupon_service")

    async def build_context(self, user_id: Optional[str] = None,
                            user_segments: Optional[Sequence[str]] = None) -> EligibilityContext:
        segments = list(user_segments or [])
        if user_id and self._segment_resolver is not None:
            segments.extend(await self._segment_resolver(user_id))
        return EligibilityContext(user_id=user_id, user_segments=sorted(set(segments)))

    # -------------------------------------------------------------------------
    # single coupon
    # -------------------------------------------------------------------------

    async def apply_coupon(
        self,
        code: str,
        cart_items: Iterable[Any],
        cart_total: Optional[Decimal] = None,
        user_id: Optional[str] = None,
        user_segments: Optional[Sequence[str]] = None,
    ) -> CouponApplication:
        code = normalize_code(code)
        coupon = await self.coupons.get_by_code(code)
        if coupon is None:
            self._logger.info("coupon_rejected", code=code, reason=RejectionReason.NOT_FOUND.value)
            raise CouponRejectedError(code, RejectionReason.NOT_FOUND.value, f"Coupon {code} not found")

        lines = to_cart_lines(cart_items)
        if not lines and cart_total is not None:
            lines = [CartLine(payment_amount=cart_total)]

        context = await self.build_context(user_id, user_segments)
        breakdown = compute_total(lines, [coupon], context)

        reason = breakdown.rejection_for(code)
        if reason is not None:
            self._logger.info("coupon_rejected", code=code, reason=reason.value, user_id=user_id)
            raise CouponRejectedError(code, reason.value)

        applied = breakdown.discounts[0]
        self._logger.info("coupon_applied", code=code, discount=str(applied.amount), user_id=user_id)
        return CouponApplication(
            coupon_code=code,
            discount_amount=applied.amount,
            discount_type=applied.discount_type,
            discount_value=applied.discount_value,
            priority=applied.priority_level,
            can_stack=applied.can_stack,
            final_amount=breakdown.total,
        )

    async def applicable_coupons(
        self,
        cart_items: Iterable[Any],
        user_id: Optional[str] = None,
        user_segments: Optional[Sequence[str]] = None,
    ) -> list[CouponApplication]:
        """Public coupons this cart qualifies for, largest discount first."""
        lines = to_cart_lines(cart_items)
        context = await self.build_context(user_id, user_segments)

        results: list[CouponApplication] = []
        for coupon in await self.coupons.list_public():
            breakdown = compute_total(lines, [coupon], context)
            if not breakdown.discounts:
                continue
            applied = breakdown.discounts[0]
            results.append(CouponApplication(
                coupon_code=coupon.code,
                discount_amount=applied.amount,
                discount_type=applied.discount_type,
                discount_value=applied.discount_value,
                priority=applied.priority_level,
                can_stack=applied.can_stack,
                final_amount=breakdown.total,
            ))

        results.sort(key=lambda r: (-r.discount_amount, -r.priority, r.coupon_code))
        return results

    async def best_coupon(
        self,
        cart_items: Iterable[Any],
        user_id: Optional[str] = None,
        user_segments: Optional[Sequence[str]] = None,
    ) -> Optional[CouponApplication]:
        applicable = await self.applicable_coupons(cart_items, user_id, user_segments)
        return applicable[0] if applicable else None

    # -------------------------------------------------------------------------
    # coupon sets
    # -------------------------------------------------------------------------

    async def validate_stacking(
        self,
        codes: Iterable[str],
        cart_items: Iterable[Any],
        user_id: Optional[str] = None,
        user_segments: Optional[Sequence[str]] = None,
    ) -> DiscountBreakdown:
        """
        Price a cart with a set of codes. Any rejected code fails the whole
        set; a partially applied set is never returned.
        """
        lines = to_cart_lines(cart_items)
        candidates = []
        for code in codes:
            coupon = await self.coupons.get_by_code(code)
            if coupon is None:
                code = normalize_code(code)
                raise CouponRejectedError(code, RejectionReason.NOT_FOUND.value, f"Coupon {code} not found")
            candidates.append(coupon)

        context = await self.build_context(user_id, user_segments)
        breakdown = compute_total(lines, candidates, context)

        if breakdown.rejections:
            first = breakdown.rejections[0]
            self._logger.info("coupon_set_rejected", code=first.code, reason=first.reason.value)
            raise CouponRejectedError(first.code, first.reason.value)
        return breakdown

    # -------------------------------------------------------------------------
    # usage
    # -------------------------------------------------------------------------

    async def record_usage(self, codes: Iterable[str], transaction_id: Optional[str] = None) -> list[str]:
        """Increment usage for each code. Returns the codes actually counted."""
        counted = []
        for code in dict.fromkeys(normalize_code(c) for c in codes):
            if await self.coupons.increment_usage(code):
                counted.append(code)
            else:
                # limit reached by a concurrent checkout after pricing
                self._logger.warning("coupon_usage_not_recorded", code=code, transaction_id=transaction_id)
        if counted:
            self._logger.info("coupon_usage_recorded", codes=counted, transaction_id=transaction_id)
        return counted

    async def on_payment_confirmed(self, event: BaseEvent) -> None:
        codes = event.payload.get("applied_coupon_codes") or []
        if codes:
            await self.record_usage(codes, transaction_id=event.correlation_id)

    async def attach(self, bus: IEventBus) -> str:
        return await bus.subscribe([EventType.PAYMENT_CONFIRMED], self.on_payment_confirmed)
