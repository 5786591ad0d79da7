"""
Payment Session Orchestrator
============================
Turns a buyer's cart rows into one payment intent and one hosted provider
session.

Flow:
1. Load and validate the rows (owned by the buyer, all in `cart`).
2. Price the cart server-side; any rejected coupon aborts the checkout.
3. Insert the intent in `created`, unless an active intent for the same
   cart fingerprint exists, in which case that one is returned.
4. Call the provider. Failure fails the intent and leaves the rows alone.
5. Move the intent to `pending`, then the rows `cart -> pending`
   all-or-nothing, stamped with the transaction id and charged amounts.

Double clicks are serialized by an in-process lock per cart; across
processes the repository's conditional insert (a partial unique index in
PostgreSQL) keeps one active intent per fingerprint.
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Iterable, Optional

from coupons.discount_ledger import allocate_total
from coupons.models import normalize_code
from coupons.service import CouponService
from errors import CartValidationError, CheckoutError, PurchaseStateConflictError, SessionCreationError
from payments.audit import AuditedComponent
from payments.events import EventType, IEventBus, PaymentEventPayload, payment_event
from payments.models import (
    ACTIVE_INTENT_STATUSES,
    AuditEventType,
    Buyer,
    Environment,
    IntentStatus,
    PaymentIntent,
    Purchase,
    PurchaseStatus,
    compute_fingerprint,
)
from payments.providers import IPaymentProvider
from schemas.base import ApiModel
from storage.repositories import IAuditLog, IPaymentIntentRepository, IPurchaseRepository


class SessionResult(ApiModel):
    transaction_id: str
    payment_url: Optional[str] = None
    total_amount: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    applied_coupons: list[str]
    status: IntentStatus
    reused: bool = False

    @classmethod
    def from_intent(cls, intent: PaymentIntent, reused: bool = False) -> "SessionResult":
        return cls(
            transaction_id=intent.transaction_id,
            payment_url=intent.payment_url,
            total_amount=intent.total_amount,
            subtotal=intent.subtotal,
            discount_amount=intent.discount_amount,
            applied_coupons=intent.applied_coupon_codes,
            status=intent.status,
            reused=reused,
        )


class PaymentSessionOrchestrator(AuditedComponent):

    component = "payment_orchestrator"

    def __init__(
        self,
        purchases: IPurchaseRepository,
        intents: IPaymentIntentRepository,
        provider: IPaymentProvider,
        coupon_service: CouponService,
        audit_log: IAuditLog,
        event_bus: Optional[IEventBus] = None,
    ):
        super().__init__(audit_log)
        self.purchases = purchases
        self.intents = intents
        self.provider = provider
        self.coupons = coupon_service
        self.bus = event_bus

        # key -> (lock, holders + waiters); dropped when nobody uses it
        self._cart_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _cart_lock(self, key: str) -> AsyncIterator[None]:
        lock, users = self._cart_locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._cart_locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            _, users = self._cart_locks[key]
            if users <= 1:
                del self._cart_locks[key]
            else:
                self._cart_locks[key] = (lock, users - 1)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    async def _load_rows(self, buyer: Buyer, cart_item_ids: list[str]) -> list[Purchase]:
        if not cart_item_ids:
            raise CartValidationError("Cart is empty", reason="empty_cart")

        rows = await self.purchases.get_many(cart_item_ids)
        found = {row.id for row in rows}
        missing = [i for i in cart_item_ids if i not in found]
        if missing:
            raise CartValidationError(f"Cart items not found: {', '.join(missing)}", reason="cart_item_not_found")

        if len({row.owner_key for row in rows}) > 1:
            raise CartValidationError("Cart items belong to different buyers", reason="mixed_owner")

        if not all(buyer.owns(row) for row in rows):
            # never reveal that somebody else's row exists
            raise CartValidationError("Cart items not found", reason="cart_item_not_found")

        by_id = {row.id: row for row in rows}
        return [by_id[i] for i in cart_item_ids]

    async def _existing_checkout(self, rows: list[Purchase]) -> Optional[PaymentIntent]:
        """The active intent these rows were already checked out under, if any."""
        transaction_ids = {row.transaction_id for row in rows}
        if len(transaction_ids) != 1 or None in transaction_ids:
            return None
        if any(row.payment_status != PurchaseStatus.PENDING for row in rows):
            return None

        intent = await self.intents.get(transaction_ids.pop())
        if intent is None or intent.status not in ACTIVE_INTENT_STATUSES:
            return None
        if set(intent.cart_item_ids) != {row.id for row in rows}:
            return None
        return intent

    async def _fail_created(self, intent: PaymentIntent, error: BaseException) -> None:
        """Move an intent whose provider call blew up `created -> failed`."""
        message = error.message if isinstance(error, CheckoutError) else repr(error)
        failed = await self.intents.compare_and_set_status(
            intent.transaction_id, {IntentStatus.CREATED}, IntentStatus.FAILED,
            failure_reason="provider_error",
        )
        await self._emit_audit(
            AuditEventType.SESSION_FAILED, "intent", intent.transaction_id, intent.transaction_id,
            previous_state={"status": IntentStatus.CREATED.value},
            new_state={"status": IntentStatus.FAILED.value} if failed else None,
            metadata={"error": message, "error_type": type(error).__name__},
        )
        self._get_logger(intent.transaction_id).error(
            "session_creation_failed", error=message, error_type=type(error).__name__,
        )

    # =========================================================================
    # SESSION CREATION
    # =========================================================================

    async def create_session(
        self,
        buyer: Buyer,
        cart_item_ids: Iterable[str],
        applied_coupon_codes: Iterable[str] = (),
        environment: Environment | str = Environment.TEST,
    ) -> SessionResult:
        """
        Create (or reuse) the payment session for a cart.

        Raises CartValidationError, CouponRejectedError,
        PurchaseStateConflictError or SessionCreationError.
        """
        ids = list(dict.fromkeys(cart_item_ids))
        codes = list(dict.fromkeys(normalize_code(c) for c in applied_coupon_codes if c))
        environment = Environment(environment)

        async with self._cart_lock(f"{buyer.key}|{','.join(sorted(ids))}"):
            return await self._create_session_locked(buyer, ids, codes, environment)

    async def _create_session_locked(
        self,
        buyer: Buyer,
        ids: list[str],
        codes: list[str],
        environment: Environment,
    ) -> SessionResult:
        log = self._get_logger().bind(owner=buyer.key)
        rows = await self._load_rows(buyer, ids)

        existing = await self._existing_checkout(rows)
        if existing is not None:
            log.info("session_reused", transaction_id=existing.transaction_id, via="pending_rows")
            return SessionResult.from_intent(existing, reused=True)

        blocked = [row for row in rows if row.payment_status != PurchaseStatus.CART]
        if blocked:
            raise PurchaseStateConflictError(
                current_status=blocked[0].payment_status.value,
                entity_id=blocked[0].id,
            )

        lines = [row.as_cart_line() for row in rows]
        breakdown = await self.coupons.validate_stacking(codes, lines, buyer.user_id, buyer.segments)
        line_amounts = allocate_total(lines, breakdown.total)

        intent = PaymentIntent(
            **buyer.owner_fields(),
            cart_item_ids=ids,
            subtotal=breakdown.subtotal,
            discount_amount=breakdown.discount_total,
            total_amount=breakdown.total,
            applied_coupon_codes=breakdown.applied_coupons,
            line_amounts=line_amounts,
            environment=environment,
            fingerprint=compute_fingerprint(buyer.key, ids, breakdown.total),
            provider=self.provider.name,
        )

        stored, created = await self.intents.insert_if_no_active(intent)
        log = log.bind(transaction_id=stored.transaction_id)
        if not created:
            log.info("session_reused", status=stored.status.value, via="fingerprint")
            await self._emit_audit(
                AuditEventType.SESSION_REUSED, "intent", stored.transaction_id, stored.transaction_id,
                metadata={"fingerprint": stored.fingerprint},
                actor="client",
            )
            return SessionResult.from_intent(stored, reused=True)

        await self._emit_audit(
            AuditEventType.INTENT_CREATED, "intent", intent.transaction_id, intent.transaction_id,
            new_state={"status": intent.status.value, "total_amount": str(intent.total_amount)},
            metadata={"cart_item_ids": ids, "coupons": intent.applied_coupon_codes},
            actor="client",
        )
        log.info("intent_created",
                 total=str(intent.total_amount),
                 subtotal=str(intent.subtotal),
                 coupons=intent.applied_coupon_codes,
                 items=len(ids))

        try:
            session = await self.provider.create_session(intent, rows)
        except BaseException as e:
            # a `created` intent counts as active and would block every retry
            await self._fail_created(intent, e)
            if isinstance(e, CheckoutError) or not isinstance(e, Exception):
                raise
            raise SessionCreationError(f"Payment provider error: {type(e).__name__}") from e

        pending = await self.intents.compare_and_set_status(
            intent.transaction_id, {IntentStatus.CREATED}, IntentStatus.PENDING,
            provider_session_id=session.session_id,
            payment_url=session.payment_url,
        )
        if pending is None:
            # settled while the provider call was in flight
            current = await self.intents.get(intent.transaction_id)
            log.warning("intent_moved_during_session_creation", status=current.status.value)
            return SessionResult.from_intent(current)

        moved = await self.purchases.compare_and_set_status(
            ids, PurchaseStatus.CART, PurchaseStatus.PENDING,
            all_or_nothing=True,
            amounts=line_amounts,
            metadata={"transactionId": intent.transaction_id},
            coupon_codes=intent.applied_coupon_codes,
        )
        if not moved:
            failed = await self.intents.compare_and_set_status(
                intent.transaction_id, {IntentStatus.PENDING}, IntentStatus.FAILED,
                failure_reason="cart_changed",
            )
            if failed is not None:
                log.warning("cart_changed_during_checkout")
                raise PurchaseStateConflictError("Cart changed during checkout", entity_id=intent.transaction_id)
            # a success signal beat us to it and already settled the rows
            current = await self.intents.get(intent.transaction_id)
            return SessionResult.from_intent(current)

        await self._emit_audit(
            AuditEventType.SESSION_CREATED, "intent", intent.transaction_id, intent.transaction_id,
            previous_state={"status": IntentStatus.CREATED.value},
            new_state={"status": IntentStatus.PENDING.value, "provider_session_id": session.session_id},
            metadata={"provider": self.provider.name, "environment": environment.value},
        )
        if self.bus is not None:
            await self.bus.publish(payment_event(
                EventType.PAYMENT_SESSION_CREATED,
                PaymentEventPayload(
                    transaction_id=intent.transaction_id,
                    owner_key=buyer.key,
                    cart_item_ids=ids,
                    total_amount=intent.total_amount,
                    applied_coupon_codes=intent.applied_coupon_codes,
                ),
                source=self.component,
            ))

        log.info("session_created", provider_session_id=session.session_id)
        return SessionResult.from_intent(pending)
