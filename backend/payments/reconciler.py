"""
Completion Reconciler
=====================
Single consumer for every "how did the payment go" signal:

- the embedded payment surface (submit_process / payment_complete messages)
- provider callbacks (server to server)
- the client's best-effort confirmation call (telemetry only)
- provider status polls (sweeper, or transaction-status?refresh=true)

Success from any source goes through finalize(), a compare-and-set on the
persisted intent (`created|pending -> paid`). Exactly one caller wins; only
the winner settles the rows and publishes payment.confirmed.

Failure and cancel reports never close an intent on their own. They are
recorded as `reported_outcome` and the intent stays `pending`, so a late
success can still land. When the timeout passes, expire() classifies it:
reported failure -> failed, provider-reported cancel -> cancelled,
anything else -> abandoned.
"""

from typing import Awaitable, Callable, Optional

from config import Settings, settings as default_settings
from errors import CheckoutError, InvalidTransitionError, TransactionNotFoundError
from payments.audit import AuditedComponent
from payments.events import EventType, IEventBus, PaymentEventPayload, payment_event
from payments.models import (
    ACTIVE_INTENT_STATUSES,
    AuditEventType,
    FinalizeOutcome,
    FinalizeResult,
    IntentStatus,
    PaymentIntent,
    PurchaseStatus,
    ReportedOutcome,
    ROW_STATUS_FOR_INTENT,
    SignalRecord,
    SignalSource,
)
from payments.providers import CallbackStatus, IPaymentProvider, ProviderCallback, ProviderStatus, SessionStatus
from schemas.base import utcnow
from schemas.surface_messages import (
    PaymentCompleteMessage,
    SubmitProcessMessage,
    SurfaceMessage,
    SurfaceStatus,
)
from storage.repositories import IAuditLog, IPaymentIntentRepository, IPurchaseRepository


CLOSED_EVENT_TYPES = {
    IntentStatus.FAILED: (EventType.PAYMENT_FAILED, AuditEventType.PAYMENT_FAILED),
    IntentStatus.CANCELLED: (EventType.PAYMENT_CANCELLED, AuditEventType.PAYMENT_CANCELLED),
    IntentStatus.ABANDONED: (EventType.PAYMENT_ABANDONED, AuditEventType.PAYMENT_ABANDONED),
}


# =============================================================================
# CALLBACK ROUTER
# =============================================================================

CallbackHandler = Callable[[ProviderCallback, PaymentIntent], Awaitable[dict]]


class CallbackRouter:
    """Routes verified provider callbacks by status."""

    def __init__(self):
        self._handlers: dict[CallbackStatus, CallbackHandler] = {}

    def register(self, status: CallbackStatus):
        """Decorator to register handler for a callback status"""
        def decorator(handler: CallbackHandler):
            self._handlers[status] = handler
            return handler
        return decorator

    async def route(self, callback: ProviderCallback, intent: PaymentIntent) -> Optional[dict]:
        handler = self._handlers.get(callback.status)
        if handler is None:
            return None
        return await handler(callback, intent)

    @property
    def supported_statuses(self) -> list[CallbackStatus]:
        return list(self._handlers.keys())


# =============================================================================
# RECONCILER
# =============================================================================

class CompletionReconciler(AuditedComponent):

    component = "completion_reconciler"

    def __init__(
        self,
        purchases: IPurchaseRepository,
        intents: IPaymentIntentRepository,
        provider: IPaymentProvider,
        audit_log: IAuditLog,
        event_bus: Optional[IEventBus] = None,
        config: Optional[Settings] = None,
    ):
        super().__init__(audit_log)
        self.purchases = purchases
        self.intents = intents
        self.provider = provider
        self.bus = event_bus
        self.config = config or default_settings

        self.router = CallbackRouter()
        self._register_handlers()

    async def _require(self, transaction_id: str) -> PaymentIntent:
        intent = await self.intents.get(transaction_id)
        if intent is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return intent

    async def _publish(self, event_type: EventType, intent: PaymentIntent, source: SignalSource,
                       reason: Optional[str] = None) -> None:
        if self.bus is None:
            return
        await self.bus.publish(payment_event(
            event_type,
            PaymentEventPayload(
                transaction_id=intent.transaction_id,
                owner_key=intent.owner_key,
                cart_item_ids=intent.cart_item_ids,
                total_amount=intent.total_amount,
                applied_coupon_codes=intent.applied_coupon_codes,
                reason=reason,
            ),
            source=source.value,
        ))

    # =========================================================================
    # SIGNAL RECORDING
    # =========================================================================

    async def record_submission(self, transaction_id: str, source: SignalSource = SignalSource.SURFACE) -> PaymentIntent:
        """The buyer pressed pay inside the surface. Status stays pending."""
        await self._require(transaction_id)
        intent = await self.intents.record_signal(
            transaction_id,
            SignalRecord(source=source, kind="submit"),
            submitted_at=utcnow(),
        )
        log = self._get_logger(transaction_id)

        if intent.status != IntentStatus.PENDING:
            log.warning("submission_on_non_pending_intent", status=intent.status.value, source=source.value)
        else:
            rows = await self.purchases.get_many(intent.cart_item_ids)
            off = [r.id for r in rows if r.payment_status != PurchaseStatus.PENDING]
            if off:
                log.warning("submission_rows_not_pending", purchase_ids=off)

        await self._emit_audit(
            AuditEventType.PAYMENT_SUBMITTED, "intent", transaction_id, transaction_id,
            metadata={"source": source.value},
            actor=source.value,
        )
        log.info("payment_submitted", source=source.value)
        return intent

    async def update_status(self, transaction_id: str, status: str) -> PaymentIntent:
        """Client status report. Only `pending` (submission detected) is accepted."""
        if status != IntentStatus.PENDING.value:
            raise CheckoutError(f"Clients may only report 'pending', got '{status}'",
                                reason="invalid_status", status_code=422)
        return await self.record_submission(transaction_id, source=SignalSource.CLIENT)

    async def record_outcome(
        self,
        transaction_id: str,
        source: SignalSource,
        kind: str,
        outcome: Optional[ReportedOutcome],
        detail: Optional[dict] = None,
        provider_transaction_id: Optional[str] = None,
    ) -> PaymentIntent:
        """Record a non-success report. The intent stays open."""
        intent = await self.intents.record_signal(
            transaction_id,
            SignalRecord(source=source, kind=kind, detail=detail or {}),
            reported_outcome=outcome,
            provider_transaction_id=provider_transaction_id,
        )
        if intent is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

        self._get_logger(transaction_id).info(
            "outcome_reported",
            source=source.value,
            kind=kind,
            reported_outcome=intent.reported_outcome.value if intent.reported_outcome else None,
            status=intent.status.value,
        )
        await self._emit_audit(
            AuditEventType.SIGNAL_RECEIVED, "intent", transaction_id, transaction_id,
            metadata={"source": source.value, "kind": kind},
            actor=source.value,
        )
        return intent

    async def record_client_confirmation(self, transaction_id: str) -> None:
        """Best-effort confirm call from the client. Logged and audited only."""
        intent = await self.intents.record_signal(
            transaction_id,
            SignalRecord(source=SignalSource.CONFIRMATION, kind="confirm"),
        )
        if intent is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        await self._emit_audit(
            AuditEventType.CLIENT_CONFIRMATION, "intent", transaction_id, transaction_id,
            metadata={"status_at_confirmation": intent.status.value},
            actor="client",
        )
        self._get_logger(transaction_id).info("client_confirmation_received", status=intent.status.value)

    # =========================================================================
    # SURFACE MESSAGES
    # =========================================================================

    async def handle_surface_message(self, transaction_id: str, message: SurfaceMessage) -> dict:
        if isinstance(message, SubmitProcessMessage):
            intent = await self.record_submission(transaction_id, SignalSource.SURFACE)
            return {"status": "recorded", "intentStatus": intent.status.value}

        if isinstance(message, PaymentCompleteMessage):
            detail = {"provider_session_id": message.provider_session_id} if message.provider_session_id else {}

            if message.status == SurfaceStatus.SUCCESS:
                result = await self.finalize(
                    transaction_id, SignalSource.SURFACE,
                    provider_transaction_id=message.provider_transaction_id,
                )
                return {"status": result.outcome.value, "intentStatus": result.status.value}

            if message.status == SurfaceStatus.FAILURE:
                outcome = ReportedOutcome.FAILED
            else:
                # user closed or cancelled inside the surface: no outcome hint,
                # the intent ends up abandoned unless something else arrives
                outcome = None
            intent = await self.record_outcome(
                transaction_id, SignalSource.SURFACE, message.status.value, outcome,
                detail=detail, provider_transaction_id=message.provider_transaction_id,
            )
            return {"status": "recorded", "intentStatus": intent.status.value}

        return {"status": "ignored"}

    # =========================================================================
    # PROVIDER CALLBACKS
    # =========================================================================

    async def _find_intent(self, callback: ProviderCallback) -> Optional[PaymentIntent]:
        if callback.transaction_id:
            intent = await self.intents.get(callback.transaction_id)
            if intent is not None:
                return intent
        for reference in (callback.provider_session_id, callback.provider_transaction_id):
            if reference:
                intent = await self.intents.get_by_provider_reference(reference)
                if intent is not None:
                    return intent
        return None

    async def handle_provider_callback(self, callback: ProviderCallback) -> dict:
        """
        Apply a verified provider callback. Unknown transactions are logged
        and ignored; repeated callbacks are no-ops.
        """
        intent = await self._find_intent(callback)
        if intent is None:
            self._base_logger.bind(component=self.component).warning(
                "callback_unknown_transaction",
                status=callback.status.value,
                transaction_id=callback.transaction_id,
                provider_session_id=callback.provider_session_id,
                provider_transaction_id=callback.provider_transaction_id,
            )
            return {"status": "ignored", "reason": "transaction_not_found"}

        self._get_logger(intent.transaction_id).info(
            "callback_received",
            status=callback.status.value,
            event_id=callback.event_id,
            raw_type=callback.raw_type,
        )
        result = await self.router.route(callback, intent)
        if result is None:
            return {"status": "ignored", "reason": "unhandled_status"}
        return {"transactionId": intent.transaction_id, **result}

    def _register_handlers(self):
        """Register all callback handlers"""

        def _detail(callback: ProviderCallback) -> dict:
            detail = {"event_id": callback.event_id, "raw_type": callback.raw_type}
            if callback.amount is not None:
                detail["amount"] = str(callback.amount)
            return {k: v for k, v in detail.items() if v is not None}

        @self.router.register(CallbackStatus.SUCCESS)
        async def handle_success(callback: ProviderCallback, intent: PaymentIntent) -> dict:
            if callback.amount is not None and callback.amount != intent.total_amount:
                self._get_logger(intent.transaction_id).warning(
                    "callback_amount_mismatch",
                    expected=str(intent.total_amount),
                    received=str(callback.amount),
                )
            result = await self.finalize(
                intent.transaction_id, SignalSource.CALLBACK,
                provider_transaction_id=callback.provider_transaction_id,
                detail=_detail(callback),
            )
            return {"status": result.outcome.value, "intentStatus": result.status.value}

        @self.router.register(CallbackStatus.FAILURE)
        async def handle_failure(callback: ProviderCallback, intent: PaymentIntent) -> dict:
            updated = await self.record_outcome(
                intent.transaction_id, SignalSource.CALLBACK, "failure", ReportedOutcome.FAILED,
                detail=_detail(callback), provider_transaction_id=callback.provider_transaction_id,
            )
            return {"status": "recorded", "intentStatus": updated.status.value}

        @self.router.register(CallbackStatus.CANCELLED)
        async def handle_cancelled(callback: ProviderCallback, intent: PaymentIntent) -> dict:
            updated = await self.record_outcome(
                intent.transaction_id, SignalSource.CALLBACK, "cancel", ReportedOutcome.CANCELLED,
                detail=_detail(callback), provider_transaction_id=callback.provider_transaction_id,
            )
            return {"status": "recorded", "intentStatus": updated.status.value}

        @self.router.register(CallbackStatus.EXPIRED)
        async def handle_expired(callback: ProviderCallback, intent: PaymentIntent) -> dict:
            await self.record_outcome(
                intent.transaction_id, SignalSource.CALLBACK, "expired", None, detail=_detail(callback),
            )
            # the provider session is gone, so nothing can succeed any more
            closed = await self.expire(intent.transaction_id, poll=False)
            return {"status": "closed", "intentStatus": closed.status.value}

        @self.router.register(CallbackStatus.REFUNDED)
        async def handle_refund(callback: ProviderCallback, intent: PaymentIntent) -> dict:
            refunded = await self.refund(intent.transaction_id, SignalSource.CALLBACK)
            return {"status": "refunded", "intentStatus": refunded.status.value}

    # =========================================================================
    # FINALIZE ONCE
    # =========================================================================

    async def finalize(
        self,
        transaction_id: str,
        source: SignalSource,
        provider_transaction_id: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> FinalizeResult:
        """
        Mark the intent paid. Safe to call any number of times from any
        source; only the first successful compare-and-set settles the rows.
        """
        log = self._get_logger(transaction_id).bind(source=source.value)
        intent = await self.intents.record_signal(
            transaction_id,
            SignalRecord(source=source, kind="success", detail=detail or {}),
            provider_transaction_id=provider_transaction_id,
        )
        if intent is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

        previous = intent.status
        won = await self.intents.compare_and_set_status(
            transaction_id, ACTIVE_INTENT_STATUSES, IntentStatus.PAID,
            paid_at=utcnow(),
        )

        if won is None:
            current = await self._require(transaction_id)
            if current.status in (IntentStatus.PAID, IntentStatus.REFUNDED):
                log.info("finalize_noop", status=current.status.value)
                return FinalizeResult(
                    transaction_id=transaction_id,
                    outcome=FinalizeOutcome.ALREADY_FINALIZED,
                    status=current.status,
                )

            # success after the intent was already closed: never regress,
            # but somebody has to look at it
            log.critical("late_success",
                         status=current.status.value,
                         provider_transaction_id=provider_transaction_id or current.provider_transaction_id)
            await self._emit_audit(
                AuditEventType.LATE_SUCCESS, "intent", transaction_id, transaction_id,
                previous_state={"status": current.status.value},
                metadata={
                    "requires_manual_intervention": True,
                    "source": source.value,
                    "provider_transaction_id": provider_transaction_id or current.provider_transaction_id,
                },
                actor=source.value,
            )
            await self._publish(EventType.PAYMENT_LATE_SUCCESS, current, source, reason="late_success")
            return FinalizeResult(
                transaction_id=transaction_id,
                outcome=FinalizeOutcome.LATE_SUCCESS,
                status=current.status,
            )

        settled = await self._settle_rows(won)
        await self._emit_audit(
            AuditEventType.PAYMENT_CONFIRMED, "intent", transaction_id, transaction_id,
            previous_state={"status": previous.value},
            new_state={"status": IntentStatus.PAID.value, "settled_item_ids": settled},
            metadata={"source": source.value, "provider_transaction_id": won.provider_transaction_id},
            actor=source.value,
        )
        await self._publish(EventType.PAYMENT_CONFIRMED, won, source)
        log.info("finalize_won", settled=len(settled), total=str(won.total_amount))

        return FinalizeResult(
            transaction_id=transaction_id,
            outcome=FinalizeOutcome.FINALIZED,
            status=IntentStatus.PAID,
            settled_item_ids=settled,
        )

    async def _settle_rows(self, intent: PaymentIntent) -> list[str]:
        ids = intent.cart_item_ids
        # rows can still be in `cart` if success landed before session
        # creation finished moving them
        await self.purchases.compare_and_set_status(
            ids, PurchaseStatus.CART, PurchaseStatus.PENDING,
            all_or_nothing=False,
            amounts=intent.line_amounts,
            metadata={"transactionId": intent.transaction_id},
            coupon_codes=intent.applied_coupon_codes,
        )
        settled = await self.purchases.compare_and_set_status(
            ids, PurchaseStatus.PENDING, PurchaseStatus.PAID,
            all_or_nothing=False,
            metadata={"transactionUid": intent.provider_transaction_id or intent.transaction_id},
        )
        if len(settled) != len(ids):
            self._get_logger(intent.transaction_id).error(
                "rows_not_settled",
                expected=ids,
                settled=settled,
            )
        return settled

    # =========================================================================
    # POLL / TIMEOUT
    # =========================================================================

    async def poll_provider(self, transaction_id: str) -> ProviderStatus:
        """Ask the provider how the session went; a paid answer finalizes."""
        intent = await self._require(transaction_id)
        if intent.status not in ACTIVE_INTENT_STATUSES:
            return ProviderStatus(status=SessionStatus.UNKNOWN, detail={"intent_status": intent.status.value})

        status = await self.provider.fetch_session_status(intent)
        self._get_logger(transaction_id).info("provider_polled", provider_status=status.status.value)

        if status.status == SessionStatus.PAID:
            await self.finalize(transaction_id, SignalSource.POLL,
                                provider_transaction_id=status.provider_transaction_id)
        elif status.status == SessionStatus.FAILED:
            await self.record_outcome(transaction_id, SignalSource.POLL, "failure", ReportedOutcome.FAILED,
                                      detail=status.detail,
                                      provider_transaction_id=status.provider_transaction_id)
        return status

    async def expire(self, transaction_id: str, poll: bool = True) -> PaymentIntent:
        """
        Close an intent whose timeout has passed. Polls the provider first so
        a payment that did go through is finalized rather than abandoned.
        """
        intent = await self._require(transaction_id)
        log = self._get_logger(transaction_id)

        if intent.status == IntentStatus.CREATED:
            # the provider call never finished
            failed = await self.intents.compare_and_set_status(
                transaction_id, {IntentStatus.CREATED}, IntentStatus.FAILED,
                failure_reason="session_not_created",
            )
            if failed is not None:
                log.warning("stale_intent_failed", reason="session_not_created")
                return failed
            return await self._require(transaction_id)

        if intent.status != IntentStatus.PENDING:
            return intent

        if poll:
            await self.poll_provider(transaction_id)
            intent = await self._require(transaction_id)
            if intent.status != IntentStatus.PENDING:
                return intent

        if intent.reported_outcome == ReportedOutcome.FAILED:
            target, reason = IntentStatus.FAILED, "payment_failed"
        elif intent.reported_outcome == ReportedOutcome.CANCELLED:
            target, reason = IntentStatus.CANCELLED, "cancelled_by_provider"
        else:
            target, reason = IntentStatus.ABANDONED, "timeout"

        closed = await self.intents.compare_and_set_status(
            transaction_id, {IntentStatus.PENDING}, target,
            failure_reason=reason,
        )
        if closed is None:
            # something else closed or paid it in the meantime
            return await self._require(transaction_id)

        row_target = ROW_STATUS_FOR_INTENT[target]
        closed_rows = await self.purchases.compare_and_set_status(
            closed.cart_item_ids, PurchaseStatus.PENDING, row_target,
            all_or_nothing=False,
        )

        if self.config.RESTORE_CART_ON_CLOSE and closed_rows:
            closed = await self._restore_cart(closed, closed_rows)

        event_type, audit_type = CLOSED_EVENT_TYPES[target]
        await self._emit_audit(
            audit_type, "intent", transaction_id, transaction_id,
            previous_state={"status": IntentStatus.PENDING.value},
            new_state={"status": target.value, "rows": closed_rows},
            metadata={"reason": reason, "restored": closed.restored_cart_item_ids},
            actor="sweeper",
        )
        await self._publish(event_type, closed, SignalSource.SWEEPER, reason=reason)
        log.info("intent_closed", status=target.value, reason=reason, rows=len(closed_rows))
        return closed

    async def _restore_cart(self, intent: PaymentIntent, row_ids: list[str]) -> PaymentIntent:
        """Put the closed items back in the buyer's cart at full price."""
        restored = []
        for row in await self.purchases.get_many(row_ids):
            clone = await self.purchases.create(row.clone_to_cart())
            restored.append(clone.id)

        updated = await self.intents.update(intent.transaction_id, restored_cart_item_ids=restored)
        await self._emit_audit(
            AuditEventType.CART_RESTORED, "intent", intent.transaction_id, intent.transaction_id,
            new_state={"restored_cart_item_ids": restored},
        )
        return updated or intent

    async def check_pending_for_owner(self, owner_key: str) -> list[dict]:
        """Poll every open intent of one buyer (the "check pending payments" action)."""
        results = []
        for intent in await self.intents.list_active_by_owner(owner_key):
            status = await self.poll_provider(intent.transaction_id)
            current = await self._require(intent.transaction_id)
            results.append({
                "transactionId": intent.transaction_id,
                "providerStatus": status.status.value,
                "status": current.status.value,
            })
        return results

    # =========================================================================
    # REFUND
    # =========================================================================

    async def refund(self, transaction_id: str, source: SignalSource = SignalSource.CALLBACK) -> PaymentIntent:
        intent = await self._require(transaction_id)
        refunded = await self.intents.compare_and_set_status(
            transaction_id, {IntentStatus.PAID}, IntentStatus.REFUNDED,
        )
        if refunded is None:
            current = await self._require(transaction_id)
            if current.status == IntentStatus.REFUNDED:
                return current
            raise InvalidTransitionError(current.status.value, IntentStatus.REFUNDED.value)

        rows = await self.purchases.compare_and_set_status(
            intent.cart_item_ids, PurchaseStatus.PAID, PurchaseStatus.REFUNDED,
            all_or_nothing=False,
        )
        await self._emit_audit(
            AuditEventType.PAYMENT_REFUNDED, "intent", transaction_id, transaction_id,
            previous_state={"status": IntentStatus.PAID.value},
            new_state={"status": IntentStatus.REFUNDED.value, "rows": rows},
            actor=source.value,
        )
        await self._publish(EventType.PAYMENT_REFUNDED, refunded, source)
        self._get_logger(transaction_id).info("payment_refunded", rows=len(rows))
        return refunded
