"""
Payment Domain Models
=====================
Purchase rows, payment intents, audit entries and the status machine that
both of them move through.

Purchase rows:
    cart -> pending -> {paid, failed, cancelled, abandoned}
    paid -> refunded

Payment intents add one state in front, `created`, which only exists while
the provider call is in flight:
    created -> {pending, paid, failed}

Nothing ever leaves `paid` except to `refunded`.
"""

import hashlib
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import Field, computed_field, field_validator, model_validator

from coupons.models import CartLine
from errors import InvalidTransitionError
from schemas.base import ApiModel, ZERO, money, utcnow


# =============================================================================
# ENUMS
# =============================================================================

class PurchaseStatus(str, Enum):
    CART = "cart"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


class IntentStatus(str, Enum):
    CREATED = "created"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


class Environment(str, Enum):
    TEST = "test"
    PRODUCTION = "production"


class SignalSource(str, Enum):
    SURFACE = "surface"            # message from the embedded payment page
    CALLBACK = "callback"          # provider server-to-server notification
    CONFIRMATION = "confirmation"  # best-effort client confirm call
    POLL = "poll"                  # provider status lookup
    SWEEPER = "sweeper"
    CLIENT = "client"


class ReportedOutcome(str, Enum):
    FAILED = "failed"
    CANCELLED = "cancelled"


# failed outranks cancelled when both get reported
OUTCOME_STRENGTH = {
    ReportedOutcome.CANCELLED: 1,
    ReportedOutcome.FAILED: 2,
}


class FinalizeOutcome(str, Enum):
    FINALIZED = "finalized"
    ALREADY_FINALIZED = "already_finalized"
    LATE_SUCCESS = "late_success"


class AuditEventType(str, Enum):
    INTENT_CREATED = "intent.created"
    SESSION_CREATED = "session.created"
    SESSION_REUSED = "session.reused"
    SESSION_FAILED = "session.failed"
    SIGNAL_RECEIVED = "signal.received"
    PAYMENT_SUBMITTED = "payment.submitted"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_ABANDONED = "payment.abandoned"
    PAYMENT_REFUNDED = "payment.refunded"
    LATE_SUCCESS = "payment.late_success"
    CLIENT_CONFIRMATION = "client.confirmation"
    CALLBACK_IGNORED = "callback.ignored"
    CART_RESTORED = "cart.restored"


# =============================================================================
# STATUS MACHINE
# =============================================================================

ALLOWED_TRANSITIONS: dict[PurchaseStatus, frozenset] = {
    PurchaseStatus.CART: frozenset({PurchaseStatus.PENDING}),
    PurchaseStatus.PENDING: frozenset({
        PurchaseStatus.PAID,
        PurchaseStatus.FAILED,
        PurchaseStatus.CANCELLED,
        PurchaseStatus.ABANDONED,
    }),
    PurchaseStatus.PAID: frozenset({PurchaseStatus.REFUNDED}),
    PurchaseStatus.FAILED: frozenset(),
    PurchaseStatus.CANCELLED: frozenset(),
    PurchaseStatus.ABANDONED: frozenset(),
    PurchaseStatus.REFUNDED: frozenset(),
}

INTENT_TRANSITIONS: dict[IntentStatus, frozenset] = {
    IntentStatus.CREATED: frozenset({
        IntentStatus.PENDING,
        IntentStatus.PAID,
        IntentStatus.FAILED,
    }),
    IntentStatus.PENDING: frozenset({
        IntentStatus.PAID,
        IntentStatus.FAILED,
        IntentStatus.CANCELLED,
        IntentStatus.ABANDONED,
    }),
    IntentStatus.PAID: frozenset({IntentStatus.REFUNDED}),
    IntentStatus.FAILED: frozenset(),
    IntentStatus.CANCELLED: frozenset(),
    IntentStatus.ABANDONED: frozenset(),
    IntentStatus.REFUNDED: frozenset(),
}

ACTIVE_INTENT_STATUSES = frozenset({IntentStatus.CREATED, IntentStatus.PENDING})

# where the rows land when an intent closes without payment
ROW_STATUS_FOR_INTENT = {
    IntentStatus.PAID: PurchaseStatus.PAID,
    IntentStatus.FAILED: PurchaseStatus.FAILED,
    IntentStatus.CANCELLED: PurchaseStatus.CANCELLED,
    IntentStatus.ABANDONED: PurchaseStatus.ABANDONED,
    IntentStatus.REFUNDED: PurchaseStatus.REFUNDED,
}


def can_transition(current: Enum, target: Enum) -> bool:
    table = INTENT_TRANSITIONS if isinstance(current, IntentStatus) else ALLOWED_TRANSITIONS
    return target in table.get(current, frozenset())


def ensure_transition(current: Enum, target: Enum) -> None:
    """Raise InvalidTransitionError unless current -> target is a legal edge."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


# =============================================================================
# IDENTIFIERS
# =============================================================================

def new_transaction_id() -> str:
    return f"TXN-{uuid.uuid4().hex}"


def compute_fingerprint(owner_key: str, cart_item_ids: list[str], total_amount: Decimal) -> str:
    """Idempotency key for one checkout of one distinct cart."""
    raw = f"{owner_key}|{','.join(sorted(set(cart_item_ids)))}|{money(total_amount)}"
    return hashlib.sha256(raw.encode()).hexdigest()


# =============================================================================
# DOMAIN MODELS
# =============================================================================

class Buyer(ApiModel):
    """The acting buyer: a signed-in user or a guest, never both."""
    user_id: Optional[str] = None
    guest_identifier: Optional[str] = None
    segments: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_identity(self) -> "Buyer":
        if bool(self.user_id) == bool(self.guest_identifier):
            raise ValueError("exactly one of user_id or guest_identifier is required")
        return self

    @property
    def key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"guest:{self.guest_identifier}"

    def owner_fields(self) -> dict:
        return {"buyer_user_id": self.user_id, "guest_identifier": self.guest_identifier}

    def owns(self, purchase: "Purchase") -> bool:
        if self.user_id:
            return purchase.buyer_user_id == self.user_id
        return purchase.guest_identifier == self.guest_identifier


class Purchase(ApiModel):
    """One row per item a buyer is checking out (or has bought)."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    buyer_user_id: Optional[str] = None
    guest_identifier: Optional[str] = None

    purchasable_type: Optional[str] = None
    purchasable_id: Optional[str] = None
    product_id: Optional[str] = None  # legacy rows point straight at a product

    payment_amount: Decimal = ZERO
    original_price: Optional[Decimal] = None
    discount_amount: Decimal = ZERO
    coupon_codes: list[str] = Field(default_factory=list)

    payment_status: PurchaseStatus = PurchaseStatus.CART
    metadata: dict = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("payment_amount", "discount_amount", mode="before")
    @classmethod
    def _money(cls, v):
        return money(v or 0)

    @field_validator("original_price", mode="before")
    @classmethod
    def _optional_money(cls, v):
        return None if v is None else money(v)

    @model_validator(mode="after")
    def _one_owner(self) -> "Purchase":
        if bool(self.buyer_user_id) == bool(self.guest_identifier):
            raise ValueError("exactly one of buyer_user_id or guest_identifier is required")
        if self.original_price is None:
            self.original_price = self.payment_amount
        return self

    @property
    def owner_key(self) -> str:
        if self.buyer_user_id:
            return f"user:{self.buyer_user_id}"
        return f"guest:{self.guest_identifier}"

    @property
    def transaction_id(self) -> Optional[str]:
        return self.metadata.get("transactionId")

    def as_cart_line(self) -> CartLine:
        return CartLine(
            id=self.id,
            purchasable_type=self.purchasable_type,
            purchasable_id=self.purchasable_id,
            product_id=self.product_id,
            payment_amount=self.payment_amount,
        )

    def clone_to_cart(self) -> "Purchase":
        """Fresh cart row for the same item at its list price."""
        metadata = {k: v for k, v in self.metadata.items() if k == "productTitle"}
        return Purchase(
            buyer_user_id=self.buyer_user_id,
            guest_identifier=self.guest_identifier,
            purchasable_type=self.purchasable_type,
            purchasable_id=self.purchasable_id,
            product_id=self.product_id,
            payment_amount=self.original_price,
            original_price=self.original_price,
            metadata=metadata,
        )


class Product(ApiModel):
    """Catalog entry a purchase row points at."""
    id: str
    purchasable_type: Optional[str] = None
    purchasable_id: Optional[str] = None
    title: str
    price: Decimal = ZERO
    metadata: dict = Field(default_factory=dict)

    @field_validator("price", mode="before")
    @classmethod
    def _money(cls, v):
        return money(v or 0)


class SignalRecord(ApiModel):
    source: SignalSource
    kind: str  # submit, success, failure, cancel, refund, confirm
    received_at: datetime = Field(default_factory=utcnow)
    detail: dict = Field(default_factory=dict)


class PaymentIntent(ApiModel):
    """
    Server-side record of one checkout attempt, correlated by transaction_id.
    Holds the authoritative snapshot of what is being charged.
    """
    transaction_id: str = Field(default_factory=new_transaction_id)

    buyer_user_id: Optional[str] = None
    guest_identifier: Optional[str] = None

    cart_item_ids: list[str]
    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    total_amount: Decimal
    applied_coupon_codes: list[str] = Field(default_factory=list)
    line_amounts: dict[str, Decimal] = Field(default_factory=dict)
    environment: Environment = Environment.TEST
    fingerprint: str

    status: IntentStatus = IntentStatus.CREATED
    provider: Optional[str] = None
    provider_session_id: Optional[str] = None
    payment_url: Optional[str] = None
    provider_transaction_id: Optional[str] = None

    reported_outcome: Optional[ReportedOutcome] = None
    failure_reason: Optional[str] = None
    signals: list[SignalRecord] = Field(default_factory=list)
    restored_cart_item_ids: list[str] = Field(default_factory=list)

    submitted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    version: int = 1  # bumped on every write

    @field_validator("subtotal", "discount_amount", "total_amount", mode="before")
    @classmethod
    def _money(cls, v):
        return money(v or 0)

    @computed_field
    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_INTENT_STATUSES

    @property
    def owner_key(self) -> str:
        if self.buyer_user_id:
            return f"user:{self.buyer_user_id}"
        return f"guest:{self.guest_identifier}"

    def transition_to(self, new_status: IntentStatus, **updates) -> "PaymentIntent":
        """Immutable state transition; raises on an illegal edge."""
        ensure_transition(self.status, new_status)
        return self.model_copy(update={
            **updates,
            "status": new_status,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })


# newest entries kept per intent
MAX_SIGNALS = 50


def append_signal(signals: list[SignalRecord], signal: SignalRecord) -> list[SignalRecord]:
    """
    Signal history with `signal` added. A provider retry of an event that is
    already recorded is dropped, and only the newest MAX_SIGNALS are kept.
    """
    event_id = signal.detail.get("event_id")
    if event_id and any(s.kind == signal.kind and s.detail.get("event_id") == event_id for s in signals):
        return list(signals)
    return [*signals, signal][-MAX_SIGNALS:]


def merge_outcome(current: Optional[ReportedOutcome], new: Optional[ReportedOutcome]) -> Optional[ReportedOutcome]:
    """Keep the stronger of two reported non-success outcomes."""
    if new is None:
        return current
    if current is None:
        return new
    return new if OUTCOME_STRENGTH[new] > OUTCOME_STRENGTH[current] else current


class FinalizeResult(ApiModel):
    transaction_id: str
    outcome: FinalizeOutcome
    status: IntentStatus
    settled_item_ids: list[str] = Field(default_factory=list)


class AuditLogEntry(ApiModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "intent", "purchase", "callback"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "callback", "surface", "client", "sweeper"
