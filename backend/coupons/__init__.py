# coupons/__init__.py
from coupons.models import (
    Coupon,
    CartLine,
    DiscountBreakdown,
    DiscountType,
    RejectionReason,
    TargetingType,
)
from coupons.discount_ledger import (
    allocate_total,
    compute_total,
)

__all__ = [
    "Coupon",
    "CartLine",
    "DiscountBreakdown",
    "DiscountType",
    "RejectionReason",
    "TargetingType",
    "allocate_total",
    "compute_total",
]
