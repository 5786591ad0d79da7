"""
Persistence Interfaces + In-Memory Implementations
===================================================
Every state change goes through a compare-and-set write: the caller names
the status it expects, and the write only happens if the stored row still
has it. Losers get a falsy result back and must not act on it.

The in-memory implementations hold one asyncio.Lock per store, so each
check-then-set runs without another coroutine interleaving. The PostgreSQL
implementations in storage/postgres.py do the same with
`UPDATE ... WHERE status = $n`.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from coupons.models import Coupon, CouponVisibility, normalize_code
from payments.models import (
    ACTIVE_INTENT_STATUSES,
    AuditLogEntry,
    Buyer,
    IntentStatus,
    PaymentIntent,
    Product,
    Purchase,
    PurchaseStatus,
    ReportedOutcome,
    SignalRecord,
    ensure_transition,
    append_signal,
    merge_outcome,
)
from schemas.base import money, utcnow


# =============================================================================
# INTERFACES
# =============================================================================

class IPurchaseSource(ABC):
    """One buyer's purchase rows: reads, cart adds and cart removals."""

    @abstractmethod
    async def get(self, purchase_id: str) -> Optional[Purchase]:
        pass

    @abstractmethod
    async def list_by_owner(self, buyer: Buyer, statuses: Optional[Iterable[PurchaseStatus]] = None) -> list[Purchase]:
        pass

    @abstractmethod
    async def create(self, purchase: Purchase) -> Purchase:
        pass

    @abstractmethod
    async def delete_if_status(self, purchase_id: str, expected: PurchaseStatus) -> bool:
        pass


class IPurchaseRepository(IPurchaseSource):
    """Purchase rows (cart items and bought items)"""

    @abstractmethod
    async def get_many(self, purchase_ids: Iterable[str]) -> list[Purchase]:
        pass

    @abstractmethod
    async def list_by_transaction(self, transaction_id: str) -> list[Purchase]:
        pass

    @abstractmethod
    async def update(self, purchase_id: str, **fields) -> Optional[Purchase]:
        """Update non-status fields."""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        purchase_ids: Iterable[str],
        expected: PurchaseStatus,
        new: PurchaseStatus,
        *,
        all_or_nothing: bool = True,
        amounts: Optional[dict[str, Decimal]] = None,
        metadata: Optional[dict] = None,
        coupon_codes: Optional[list[str]] = None,
    ) -> list[str]:
        """
        Move rows from `expected` to `new`. Returns the ids actually moved.

        With all_or_nothing, either every listed row is in `expected` and all
        move, or nothing changes and [] is returned.
        """
        pass


class IPaymentIntentRepository(ABC):
    """Payment intents keyed by transaction_id"""

    @abstractmethod
    async def insert_if_no_active(self, intent: PaymentIntent) -> tuple[PaymentIntent, bool]:
        """
        Insert unless an active intent with the same fingerprint exists.
        Returns (stored_intent, created).
        """
        pass

    @abstractmethod
    async def get(self, transaction_id: str) -> Optional[PaymentIntent]:
        pass

    @abstractmethod
    async def get_by_provider_reference(self, reference: str) -> Optional[PaymentIntent]:
        """Look up by provider session id or provider transaction id."""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: Iterable[IntentStatus],
        new: IntentStatus,
        **fields,
    ) -> Optional[PaymentIntent]:
        """Returns the updated intent, or None when the status did not match."""
        pass

    @abstractmethod
    async def record_signal(
        self,
        transaction_id: str,
        signal: SignalRecord,
        *,
        reported_outcome: Optional[ReportedOutcome] = None,
        submitted_at: Optional[datetime] = None,
        provider_transaction_id: Optional[str] = None,
    ) -> Optional[PaymentIntent]:
        """Append to the signal history. Never changes status."""
        pass

    @abstractmethod
    async def update(self, transaction_id: str, **fields) -> Optional[PaymentIntent]:
        """Update non-status fields."""
        pass

    @abstractmethod
    async def list_stale(self, older_than: datetime, limit: int = 50) -> list[PaymentIntent]:
        """Active intents created before `older_than`, oldest first."""
        pass

    @abstractmethod
    async def list_active_by_owner(self, owner_key: str) -> list[PaymentIntent]:
        pass


class ICouponRepository(ABC):

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def list_public(self) -> list[Coupon]:
        pass

    @abstractmethod
    async def save(self, coupon: Coupon) -> Coupon:
        pass

    @abstractmethod
    async def increment_usage(self, code: str) -> bool:
        """Bump usage_count unless the limit is already reached."""
        pass


class IProductSource(ABC):

    @abstractmethod
    async def get_by_entity(self, purchasable_type: str, purchasable_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_by_id(self, product_id: str) -> Optional[Product]:
        pass


class IProductCatalog(IProductSource):

    @abstractmethod
    async def save(self, product: Product) -> Product:
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryPurchaseRepository(IPurchaseRepository):

    def __init__(self):
        self._rows: dict[str, Purchase] = {}
        self._lock = asyncio.Lock()

    async def get(self, purchase_id: str) -> Optional[Purchase]:
        async with self._lock:
            return self._rows.get(purchase_id)

    async def get_many(self, purchase_ids: Iterable[str]) -> list[Purchase]:
        async with self._lock:
            return [self._rows[i] for i in purchase_ids if i in self._rows]

    async def list_by_owner(self, buyer: Buyer, statuses: Optional[Iterable[PurchaseStatus]] = None) -> list[Purchase]:
        wanted = set(statuses) if statuses else None
        async with self._lock:
            rows = [
                p for p in self._rows.values()
                if buyer.owns(p) and (wanted is None or p.payment_status in wanted)
            ]
        return sorted(rows, key=lambda p: p.created_at, reverse=True)

    async def list_by_transaction(self, transaction_id: str) -> list[Purchase]:
        async with self._lock:
            return [p for p in self._rows.values() if p.transaction_id == transaction_id]

    async def create(self, purchase: Purchase) -> Purchase:
        async with self._lock:
            self._rows[purchase.id] = purchase
            return purchase

    async def update(self, purchase_id: str, **fields) -> Optional[Purchase]:
        fields.pop("payment_status", None)
        async with self._lock:
            current = self._rows.get(purchase_id)
            if current is None:
                return None
            updated = current.model_copy(update={**fields, "updated_at": utcnow()})
            self._rows[purchase_id] = updated
            return updated

    async def delete_if_status(self, purchase_id: str, expected: PurchaseStatus) -> bool:
        async with self._lock:
            current = self._rows.get(purchase_id)
            if current is None or current.payment_status != expected:
                return False
            del self._rows[purchase_id]
            return True

    async def compare_and_set_status(
        self,
        purchase_ids: Iterable[str],
        expected: PurchaseStatus,
        new: PurchaseStatus,
        *,
        all_or_nothing: bool = True,
        amounts: Optional[dict[str, Decimal]] = None,
        metadata: Optional[dict] = None,
        coupon_codes: Optional[list[str]] = None,
    ) -> list[str]:
        ensure_transition(expected, new)
        ids = list(dict.fromkeys(purchase_ids))
        amounts = amounts or {}

        async with self._lock:
            matching = [
                i for i in ids
                if i in self._rows and self._rows[i].payment_status == expected
            ]
            if all_or_nothing and len(matching) != len(ids):
                return []

            now = utcnow()
            for purchase_id in matching:
                row = self._rows[purchase_id]
                update = {"payment_status": new, "updated_at": now}
                if purchase_id in amounts:
                    amount = money(amounts[purchase_id])
                    update["payment_amount"] = amount
                    update["discount_amount"] = money(row.original_price - amount)
                if metadata:
                    update["metadata"] = {**row.metadata, **metadata}
                if coupon_codes is not None:
                    update["coupon_codes"] = list(coupon_codes)
                self._rows[purchase_id] = row.model_copy(update=update)
            return matching


class InMemoryPaymentIntentRepository(IPaymentIntentRepository):

    def __init__(self):
        self._intents: dict[str, PaymentIntent] = {}
        self._lock = asyncio.Lock()

    async def insert_if_no_active(self, intent: PaymentIntent) -> tuple[PaymentIntent, bool]:
        async with self._lock:
            for existing in self._intents.values():
                if existing.fingerprint == intent.fingerprint and existing.status in ACTIVE_INTENT_STATUSES:
                    return existing, False
            self._intents[intent.transaction_id] = intent
            return intent, True

    async def get(self, transaction_id: str) -> Optional[PaymentIntent]:
        async with self._lock:
            return self._intents.get(transaction_id)

    async def get_by_provider_reference(self, reference: str) -> Optional[PaymentIntent]:
        if not reference:
            return None
        async with self._lock:
            for intent in self._intents.values():
                if reference in (intent.provider_session_id, intent.provider_transaction_id):
                    return intent
            return None

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: Iterable[IntentStatus],
        new: IntentStatus,
        **fields,
    ) -> Optional[PaymentIntent]:
        expected = set(expected)
        async with self._lock:
            current = self._intents.get(transaction_id)
            if current is None or current.status not in expected:
                return None
            updated = current.transition_to(new, **fields)
            self._intents[transaction_id] = updated
            return updated

    async def record_signal(
        self,
        transaction_id: str,
        signal: SignalRecord,
        *,
        reported_outcome: Optional[ReportedOutcome] = None,
        submitted_at: Optional[datetime] = None,
        provider_transaction_id: Optional[str] = None,
    ) -> Optional[PaymentIntent]:
        async with self._lock:
            current = self._intents.get(transaction_id)
            if current is None:
                return None
            update = {
                "signals": append_signal(current.signals, signal),
                "reported_outcome": merge_outcome(current.reported_outcome, reported_outcome),
                "updated_at": utcnow(),
                "version": current.version + 1,
            }
            if submitted_at and current.submitted_at is None:
                update["submitted_at"] = submitted_at
            if provider_transaction_id and current.provider_transaction_id is None:
                update["provider_transaction_id"] = provider_transaction_id
            updated = current.model_copy(update=update)
            self._intents[transaction_id] = updated
            return updated

    async def update(self, transaction_id: str, **fields) -> Optional[PaymentIntent]:
        fields.pop("status", None)
        async with self._lock:
            current = self._intents.get(transaction_id)
            if current is None:
                return None
            updated = current.model_copy(update={
                **fields,
                "updated_at": utcnow(),
                "version": current.version + 1,
            })
            self._intents[transaction_id] = updated
            return updated

    async def list_stale(self, older_than: datetime, limit: int = 50) -> list[PaymentIntent]:
        async with self._lock:
            stale = [
                i for i in self._intents.values()
                if i.status in ACTIVE_INTENT_STATUSES and i.created_at < older_than
            ]
        stale.sort(key=lambda i: i.created_at)
        return stale[:limit]

    async def list_active_by_owner(self, owner_key: str) -> list[PaymentIntent]:
        async with self._lock:
            return [
                i for i in self._intents.values()
                if i.owner_key == owner_key and i.status in ACTIVE_INTENT_STATUSES
            ]


class InMemoryCouponRepository(ICouponRepository):

    def __init__(self, coupons: Optional[Iterable[Coupon]] = None):
        self._coupons: dict[str, Coupon] = {c.code: c for c in (coupons or [])}
        self._lock = asyncio.Lock()

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        async with self._lock:
            return self._coupons.get(normalize_code(code))

    async def list_public(self) -> list[Coupon]:
        async with self._lock:
            return [c for c in self._coupons.values() if c.visibility == CouponVisibility.PUBLIC]

    async def save(self, coupon: Coupon) -> Coupon:
        async with self._lock:
            self._coupons[coupon.code] = coupon
            return coupon

    async def increment_usage(self, code: str) -> bool:
        async with self._lock:
            coupon = self._coupons.get(normalize_code(code))
            if coupon is None or not coupon.has_usage_left:
                return False
            self._coupons[coupon.code] = coupon.model_copy(update={"usage_count": coupon.usage_count + 1})
            return True


class InMemoryProductCatalog(IProductCatalog):

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self._products: dict[str, Product] = {}
        self._lock = asyncio.Lock()
        for product in products or []:
            self._products[product.id] = product

    async def get_by_entity(self, purchasable_type: str, purchasable_id: str) -> Optional[Product]:
        async with self._lock:
            for product in self._products.values():
                if product.purchasable_type == purchasable_type and product.purchasable_id == purchasable_id:
                    return product
            return None

    async def get_by_id(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self._products.get(product_id)

    async def save(self, product: Product) -> Product:
        async with self._lock:
            self._products[product.id] = product
            return product


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))
