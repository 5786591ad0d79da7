"""
Checkout Flow
=============
Buyer-side driver for one checkout: create the session, listen to the
embedded surface, relay what it says, and turn the result into something
the page can show.

The flow never decides that a payment succeeded. It relays surface
messages to the server, where the reconciler owns that decision, and maps
the server's answer to an outcome kind:

    paid               the server finalized (or had already finalized)
    cancelled_by_user  the buyer cancelled inside the surface
    failed             the surface reported a failed charge
    unknown            we couldn't tell; the buyer should check again
    abandoned          nothing came back in time; the cart is preserved
"""

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Iterable, Optional

import httpx
import structlog

from client.api_client import CheckoutApiClient
from client.remote_store import build_client_store
from errors import CheckoutError
from payments.models import Environment, IntentStatus, Purchase
from payments.orchestrator import SessionResult
from schemas.base import ApiModel
from schemas.surface_messages import (
    PaymentCompleteMessage,
    SubmitProcessMessage,
    SurfaceChannel,
    SurfaceMessageDispatcher,
    SurfaceStatus,
    SurfaceSubscription,
)
from storage.purchase_store import PurchaseStore


logger = structlog.get_logger().bind(component="checkout_flow")


class CheckoutOutcomeKind(str, Enum):
    PAID = "paid"
    CANCELLED_BY_USER = "cancelled_by_user"
    FAILED = "failed"
    UNKNOWN = "unknown"
    ABANDONED = "abandoned"


USER_MESSAGES = {
    CheckoutOutcomeKind.PAID: "Payment received. Thank you!",
    CheckoutOutcomeKind.CANCELLED_BY_USER: "Payment cancelled. Your cart is still here.",
    CheckoutOutcomeKind.FAILED: "The payment did not go through. Please try another card.",
    CheckoutOutcomeKind.UNKNOWN: "We couldn't confirm your payment yet. Please check again in a moment.",
    CheckoutOutcomeKind.ABANDONED: "The payment window closed. Your cart has been kept.",
}

# server-side intent status -> what the buyer sees
STATUS_OUTCOMES = {
    IntentStatus.PAID.value: CheckoutOutcomeKind.PAID,
    IntentStatus.REFUNDED.value: CheckoutOutcomeKind.PAID,
    IntentStatus.FAILED.value: CheckoutOutcomeKind.FAILED,
    IntentStatus.CANCELLED.value: CheckoutOutcomeKind.CANCELLED_BY_USER,
    IntentStatus.ABANDONED.value: CheckoutOutcomeKind.ABANDONED,
}


class CheckoutOutcome(ApiModel):
    kind: CheckoutOutcomeKind
    transaction_id: str
    message: str
    intent_status: Optional[str] = None

    @classmethod
    def of(cls, kind: CheckoutOutcomeKind, transaction_id: str,
           intent_status: Optional[str] = None) -> "CheckoutOutcome":
        return cls(kind=kind, transaction_id=transaction_id,
                   message=USER_MESSAGES[kind], intent_status=intent_status)


class CheckoutFlow:

    def __init__(
        self,
        api: CheckoutApiClient,
        channel: SurfaceChannel,
        store: Optional[PurchaseStore] = None,
    ):
        self.api = api
        self.channel = channel
        # cached view of the buyer's rows; every local mutation invalidates it
        self.store = store if store is not None else build_client_store(api)
        self.session: Optional[SessionResult] = None
        self.submitted = False
        self._confirmations: set[asyncio.Task] = set()

        self.dispatcher = SurfaceMessageDispatcher()
        self.dispatcher.register(SubmitProcessMessage)(self._on_submit)
        self.dispatcher.register(PaymentCompleteMessage)(self._on_complete)

    @property
    def transaction_id(self) -> str:
        if self.session is None:
            raise RuntimeError("checkout not started")
        return self.session.transaction_id

    def _invalidate(self) -> None:
        self.store.invalidate_owner(self.api.buyer)

    async def cart_items(self) -> list[Purchase]:
        return await self.store.cart_items(self.api.buyer)

    async def remove_item(self, purchase_id: str) -> None:
        """Remove a cart row; rows already checked out raise PurchaseStateConflictError."""
        await self.store.remove_from_cart(self.api.buyer, purchase_id)

    async def start(
        self,
        cart_item_ids: Iterable[str],
        applied_coupons: Iterable[str] = (),
        environment: Environment | str = Environment.TEST,
    ) -> SessionResult:
        """Create (or reuse) the payment session. Errors propagate."""
        self.session = await self.api.create_intent(cart_item_ids, applied_coupons, environment)
        self.submitted = False
        # the rows moved cart -> pending on the server
        self._invalidate()
        logger.info("checkout_started",
                    transaction_id=self.session.transaction_id,
                    reused=self.session.reused,
                    total=str(self.session.total_amount))
        return self.session

    # -------------------------------------------------------------------------
    # listening
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def listen(self) -> AsyncIterator[SurfaceSubscription]:
        """Subscribe to the surface channel; always unsubscribes on exit."""
        subscription = self.channel.subscribe()
        try:
            yield subscription
        finally:
            subscription.close()
            if self._confirmations:
                await asyncio.gather(*self._confirmations)

    async def wait_for_outcome(self, timeout: Optional[float] = None) -> CheckoutOutcome:
        """Listen until the surface reports completion, or until `timeout`."""
        transaction_id = self.transaction_id
        async with self.listen() as subscription:
            try:
                return await asyncio.wait_for(
                    self.dispatcher.run(subscription, until=lambda r: isinstance(r, CheckoutOutcome)),
                    timeout,
                )
            except asyncio.TimeoutError:
                logger.info("surface_silent", transaction_id=transaction_id, submitted=self.submitted)
                return await self.resolve_from_server(refresh=True)

    async def resolve_from_server(self, refresh: bool = False) -> CheckoutOutcome:
        """Ask the server how the transaction ended (poll the provider if refresh)."""
        transaction_id = self.transaction_id
        try:
            body = await self.api.transaction_status(transaction_id, refresh=refresh)
        except (httpx.HTTPError, CheckoutError) as e:
            logger.warning("status_lookup_failed", transaction_id=transaction_id, error=str(e))
            return CheckoutOutcome.of(CheckoutOutcomeKind.UNKNOWN, transaction_id)
        finally:
            self._invalidate()

        status = body.get("status")
        kind = STATUS_OUTCOMES.get(status)
        if kind is None:
            # still open: the sweeper will close it; the cart is kept
            kind = CheckoutOutcomeKind.UNKNOWN if self.submitted else CheckoutOutcomeKind.ABANDONED
        return CheckoutOutcome.of(kind, transaction_id, status)

    # -------------------------------------------------------------------------
    # surface handlers
    # -------------------------------------------------------------------------

    async def _on_submit(self, message: SubmitProcessMessage) -> None:
        transaction_id = self.transaction_id
        self.submitted = True

        task = asyncio.create_task(self.api.confirm(transaction_id))
        self._confirmations.add(task)
        task.add_done_callback(self._confirmations.discard)

        try:
            await self.api.update_status(transaction_id, IntentStatus.PENDING.value)
        except (httpx.HTTPError, CheckoutError) as e:
            # the server keeps its own record; the surface carries on
            logger.warning("status_update_failed", transaction_id=transaction_id, error=str(e))
        logger.info("payment_submitted", transaction_id=transaction_id)
        return None

    async def _on_complete(self, message: PaymentCompleteMessage) -> CheckoutOutcome:
        transaction_id = self.transaction_id
        try:
            result = await self.api.report_surface_event(transaction_id, message.to_wire())
        except (httpx.HTTPError, CheckoutError) as e:
            logger.warning("surface_report_failed", transaction_id=transaction_id,
                           status=message.status.value, error=str(e))
            result = None
        finally:
            self._invalidate()

        intent_status = result.get("intentStatus") if result else None

        if message.status == SurfaceStatus.SUCCESS:
            if intent_status in (IntentStatus.PAID.value, IntentStatus.REFUNDED.value):
                kind = CheckoutOutcomeKind.PAID
            else:
                kind = CheckoutOutcomeKind.UNKNOWN
        elif message.status == SurfaceStatus.FAILURE:
            kind = CheckoutOutcomeKind.FAILED
        else:
            kind = CheckoutOutcomeKind.CANCELLED_BY_USER

        logger.info("checkout_outcome",
                    transaction_id=transaction_id,
                    kind=kind.value,
                    surface_status=message.status.value,
                    intent_status=intent_status)
        return CheckoutOutcome.of(kind, transaction_id, intent_status)
