# errors.py
# ============================================================================
# CART CHECKOUT SERVICE - ERROR TAXONOMY
# ============================================================================
# Every error carries a machine-readable `reason` that the API returns
# verbatim, so callers can show a specific message instead of a generic one.
# ============================================================================

from typing import Optional


class CheckoutError(Exception):
    """Base class for all checkout errors."""

    status_code: int = 400
    default_reason: str = "checkout_error"

    def __init__(self, message: str, reason: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"reason": self.reason, "message": self.message}


# --- Validation errors -------------------------------------------------------

class CouponRejectedError(CheckoutError):
    """A coupon failed eligibility. `reason` is the specific rejection."""

    status_code = 422
    default_reason = "coupon_rejected"

    def __init__(self, code: str, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Coupon {code} rejected: {reason}", reason=reason)
        self.code = code


class CartValidationError(CheckoutError):
    status_code = 422
    default_reason = "invalid_cart"


# --- Session creation --------------------------------------------------------

class SessionCreationError(CheckoutError):
    """Provider unreachable or rejected the request. Safe to retry."""

    status_code = 502
    default_reason = "provider_error"


# --- Reconciliation path -----------------------------------------------------

class TransactionNotFoundError(CheckoutError):
    status_code = 404
    default_reason = "transaction_not_found"


class CallbackVerificationError(CheckoutError):
    status_code = 400
    default_reason = "invalid_callback"


# --- Concurrency violations ----------------------------------------------------

class PurchaseStateConflictError(CheckoutError):
    """Operation not allowed in the row's current state."""

    status_code = 409
    default_reason = "state_conflict"

    def __init__(self, message: str = "Operation not allowed in current state",
                 current_status: Optional[str] = None, entity_id: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.current_status:
            data["current_status"] = self.current_status
        return data


class InvalidTransitionError(PurchaseStateConflictError):
    default_reason = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Transition {current} -> {target} is not allowed",
            current_status=current,
        )
        self.target = target
