"""
Discount Ledger
===============
Pure pricing functions: subtotal, per-coupon eligibility, stacking/priority
resolution and the clamped total.

Stacking rule:
- Eligible coupons are ordered by priority_level (desc), ties by code.
- If the first one cannot stack, it is the only one applied.
- Otherwise it is applied together with every following stackable coupon,
  stopping at the first non-stackable one (which is ignored).

Percentages stack ADDITIVELY: every percentage coupon is computed against
the original subtotal, never against an already-discounted amount.
Two 10% coupons on 100 take 20 off (total 80), not 19 (total 81).

Nothing here touches storage. Usage counts are incremented elsewhere, and
only once a purchase is paid.
"""

from decimal import Decimal
from typing import Iterable, Optional, Sequence

from coupons.models import (
    AppliedDiscount,
    CartLine,
    Coupon,
    CouponRejection,
    DiscountBreakdown,
    DiscountType,
    EligibilityContext,
    RejectionReason,
    TargetingType,
)
from schemas.base import ZERO, money


HUNDRED = Decimal("100")


def compute_subtotal(cart_items: Iterable[CartLine]) -> Decimal:
    return money(sum((item.payment_amount for item in cart_items), ZERO))


def matches_targeting(coupon: Coupon, cart_items: Sequence[CartLine], context: EligibilityContext) -> bool:
    """True when the coupon's targeting applies to this cart and buyer."""
    if coupon.targeting_type == TargetingType.GENERAL:
        return True

    if coupon.targeting_type == TargetingType.PRODUCT_TYPE:
        wanted = set(coupon.targets)
        return any(item.purchasable_type in wanted for item in cart_items)

    if coupon.targeting_type == TargetingType.PRODUCT_ID:
        wanted = set(coupon.targets)
        return any(
            item.purchasable_id in wanted or (item.product_id is not None and item.product_id in wanted)
            for item in cart_items
        )

    if coupon.targeting_type == TargetingType.USER_SEGMENT:
        return bool(set(coupon.user_segments) & set(context.user_segments))

    return False


def check_eligibility(
    coupon: Coupon,
    cart_items: Sequence[CartLine],
    subtotal: Decimal,
    context: EligibilityContext,
) -> Optional[RejectionReason]:
    """
    Return the reason the coupon cannot be used, or None if it can.

    Expiry is checked first: a coupon past valid_until is rejected as
    `expired` whatever its is_active flag says.
    """
    now = context.now
    if coupon.valid_until is not None and coupon.valid_until < now:
        return RejectionReason.EXPIRED
    if coupon.valid_from is not None and coupon.valid_from > now:
        return RejectionReason.NOT_YET_VALID
    if not coupon.is_active:
        return RejectionReason.INACTIVE
    if not coupon.has_usage_left:
        return RejectionReason.USAGE_EXCEEDED
    if not matches_targeting(coupon, cart_items, context):
        return RejectionReason.TARGETING_MISMATCH
    if coupon.minimum_amount is not None and subtotal < coupon.minimum_amount:
        return RejectionReason.BELOW_MINIMUM
    return None


def discount_amount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    """Discount for one coupon, always computed against the original subtotal."""
    if coupon.discount_type == DiscountType.PERCENTAGE:
        return money(coupon.discount_value / HUNDRED * subtotal)
    return money(coupon.discount_value)


def resolve_stack(eligible: Sequence[Coupon]) -> list[Coupon]:
    """Pick which of the eligible coupons actually apply."""
    ordered = sorted(eligible, key=lambda c: (-c.priority_level, c.code))
    if not ordered:
        return []

    head = ordered[0]
    if not head.can_stack:
        return [head]

    applied = [head]
    for coupon in ordered[1:]:
        if not coupon.can_stack:
            break
        applied.append(coupon)
    return applied


def compute_total(
    cart_items: Sequence[CartLine],
    candidate_coupons: Sequence[Coupon],
    context: Optional[EligibilityContext] = None,
) -> DiscountBreakdown:
    """
    Price a cart.

    Every candidate either shows up in `discounts` or in `rejections` with a
    specific reason, except eligible coupons dropped by the stacking rule,
    which are simply not applied.
    """
    context = context or EligibilityContext()
    subtotal = compute_subtotal(cart_items)

    eligible: list[Coupon] = []
    rejections: list[CouponRejection] = []
    seen: set[str] = set()

    for coupon in candidate_coupons:
        if coupon.code in seen:
            rejections.append(CouponRejection(code=coupon.code, reason=RejectionReason.ALREADY_APPLIED))
            continue
        seen.add(coupon.code)

        reason = check_eligibility(coupon, cart_items, subtotal, context)
        if reason is not None:
            rejections.append(CouponRejection(code=coupon.code, reason=reason))
        else:
            eligible.append(coupon)

    discounts = [
        AppliedDiscount(
            code=coupon.code,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            priority_level=coupon.priority_level,
            can_stack=coupon.can_stack,
            amount=discount_amount(coupon, subtotal),
        )
        for coupon in resolve_stack(eligible)
    ]

    total_discount = sum((d.amount for d in discounts), ZERO)
    total = max(ZERO, money(subtotal - total_discount))

    return DiscountBreakdown(
        subtotal=subtotal,
        discounts=discounts,
        total=total,
        rejections=rejections,
    )


def allocate_total(cart_items: Sequence[CartLine], total: Decimal) -> dict[str, Decimal]:
    """
    Split the charged total across rows in proportion to their prices.

    Rounding leftovers land on the last row so the shares always sum to
    `total` exactly.
    """
    total = money(total)
    items = [item for item in cart_items if item.id is not None]
    if not items:
        return {}

    subtotal = compute_subtotal(items)
    shares: dict[str, Decimal] = {}
    allocated = ZERO

    for index, item in enumerate(items):
        if index == len(items) - 1:
            share = money(total - allocated)
        elif subtotal == ZERO:
            share = ZERO
        else:
            share = money(total * item.payment_amount / subtotal)
        shares[item.id] = share
        allocated += share

    return shares
