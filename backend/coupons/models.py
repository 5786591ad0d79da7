# coupons/models.py
# ============================================================================
# Coupon domain models
# ============================================================================

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from pydantic import Field, computed_field, field_validator, model_validator

from schemas.base import ApiModel, ZERO, as_utc, money, utcnow


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class TargetingType(str, Enum):
    GENERAL = "general"
    PRODUCT_TYPE = "product_type"
    PRODUCT_ID = "product_id"
    USER_SEGMENT = "user_segment"


class CouponVisibility(str, Enum):
    PUBLIC = "public"    # offered as a suggestion at checkout
    SECRET = "secret"    # only applies when the code is typed in


class RejectionReason(str, Enum):
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    INACTIVE = "inactive"
    USAGE_EXCEEDED = "usage_exceeded"
    TARGETING_MISMATCH = "targeting_mismatch"
    BELOW_MINIMUM = "below_minimum"
    NOT_FOUND = "not_found"
    ALREADY_APPLIED = "already_applied"


class Coupon(ApiModel):
    """A discount rule."""
    code: str
    name: Optional[str] = None
    description: Optional[str] = None

    discount_type: DiscountType
    discount_value: Decimal = Field(gt=0)
    minimum_amount: Optional[Decimal] = None

    targeting_type: TargetingType = TargetingType.GENERAL
    targeting_criteria: Optional[Union[str, list[str]]] = None
    user_segments: list[str] = Field(default_factory=list)
    visibility: CouponVisibility = CouponVisibility.SECRET

    priority_level: int = 5  # higher = applied first
    can_stack: bool = False

    usage_limit: Optional[int] = Field(default=None, ge=1)
    usage_count: int = Field(default=0, ge=0)

    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return normalize_code(v)

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @model_validator(mode="after")
    def _percentage_bound(self) -> "Coupon":
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self

    @property
    def targets(self) -> list[str]:
        if self.targeting_criteria is None:
            return []
        if isinstance(self.targeting_criteria, str):
            return [self.targeting_criteria]
        return list(self.targeting_criteria)

    @computed_field
    @property
    def has_usage_left(self) -> bool:
        return self.usage_limit is None or self.usage_count < self.usage_limit


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class CartLine(ApiModel):
    """The slice of a cart row the discount engine reads."""
    id: Optional[str] = None
    purchasable_type: Optional[str] = None
    purchasable_id: Optional[str] = None
    product_id: Optional[str] = None
    payment_amount: Decimal = ZERO

    @field_validator("payment_amount", mode="before")
    @classmethod
    def _amount(cls, v):
        return money(v or 0)


class EligibilityContext(ApiModel):
    """Who is buying, and when. Segments come from the user directory."""
    user_id: Optional[str] = None
    user_segments: list[str] = Field(default_factory=list)
    now: datetime = Field(default_factory=utcnow)

    @field_validator("now")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class CouponRejection(ApiModel):
    code: str
    reason: RejectionReason


class AppliedDiscount(ApiModel):
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    priority_level: int
    can_stack: bool
    amount: Decimal


class DiscountBreakdown(ApiModel):
    subtotal: Decimal
    discounts: list[AppliedDiscount] = Field(default_factory=list)
    total: Decimal
    rejections: list[CouponRejection] = Field(default_factory=list)

    @computed_field
    @property
    def discount_total(self) -> Decimal:
        return money(sum((d.amount for d in self.discounts), ZERO))

    @computed_field
    @property
    def applied_coupons(self) -> list[str]:
        return [d.code for d in self.discounts]

    def rejection_for(self, code: str) -> Optional[RejectionReason]:
        code = normalize_code(code)
        for rejection in self.rejections:
            if rejection.code == code:
                return rejection.reason
        return None
