# api/server.py
# ============================================================================
# CART CHECKOUT SERVICE - FASTAPI SERVER
# ============================================================================
# Payment intents, surface/callback signals, coupons and purchase rows.
# The acting buyer comes from X-User-Id / X-Guest-Id headers.
# ============================================================================

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import Field

from config import Settings, settings as default_settings
from coupons.models import CartLine
from coupons.service import CouponService
from database import close_database, init_database
from errors import CallbackVerificationError, CartValidationError, CheckoutError, TransactionNotFoundError
from payments.events import IEventBus, InMemoryEventBus
from payments.models import (
    ACTIVE_INTENT_STATUSES,
    Buyer,
    Environment,
    IntentStatus,
    PaymentIntent,
    PurchaseStatus,
)
from payments.orchestrator import PaymentSessionOrchestrator
from payments.providers import IPaymentProvider, build_provider
from payments.reconciler import CompletionReconciler
from schemas.base import ApiModel, utcnow
from schemas.surface_messages import parse_surface_message
from storage.purchase_store import PurchaseStore
from storage.repositories import (
    IAuditLog,
    ICouponRepository,
    IPaymentIntentRepository,
    IProductCatalog,
    IPurchaseRepository,
    InMemoryAuditLog,
    InMemoryCouponRepository,
    InMemoryPaymentIntentRepository,
    InMemoryProductCatalog,
    InMemoryPurchaseRepository,
)
from tasks.abandonment import abandonment_loop, get_sweep_stats

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger("checkout.server")

VERSION = "1.0.0"


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class CheckoutServices:
    """Everything the endpoints need, built once per app."""
    config: Settings
    purchases: IPurchaseRepository
    intents: IPaymentIntentRepository
    coupons: ICouponRepository
    catalog: IProductCatalog
    audit_log: IAuditLog
    bus: IEventBus
    provider: IPaymentProvider
    coupon_service: CouponService
    orchestrator: PaymentSessionOrchestrator
    reconciler: CompletionReconciler
    store: PurchaseStore
    backend: str = "memory"


def build_services(
    config: Optional[Settings] = None,
    provider: Optional[IPaymentProvider] = None,
    backend: Optional[str] = None,
) -> CheckoutServices:
    config = config or default_settings
    backend = backend or config.STORAGE_BACKEND

    if backend == "postgres":
        from storage.postgres import (
            PostgresAuditLog,
            PostgresCouponRepository,
            PostgresPaymentIntentRepository,
            PostgresProductCatalog,
            PostgresPurchaseRepository,
        )
        purchases = PostgresPurchaseRepository()
        intents = PostgresPaymentIntentRepository()
        coupons = PostgresCouponRepository()
        catalog = PostgresProductCatalog()
        audit_log = PostgresAuditLog()
    else:
        purchases = InMemoryPurchaseRepository()
        intents = InMemoryPaymentIntentRepository()
        coupons = InMemoryCouponRepository()
        catalog = InMemoryProductCatalog()
        audit_log = InMemoryAuditLog()

    bus = InMemoryEventBus()
    provider = provider or build_provider(config)
    coupon_service = CouponService(coupons)

    return CheckoutServices(
        config=config,
        purchases=purchases,
        intents=intents,
        coupons=coupons,
        catalog=catalog,
        audit_log=audit_log,
        bus=bus,
        provider=provider,
        coupon_service=coupon_service,
        orchestrator=PaymentSessionOrchestrator(purchases, intents, provider, coupon_service, audit_log, bus),
        reconciler=CompletionReconciler(purchases, intents, provider, audit_log, bus, config),
        # server side reads straight through; caching is the client's concern
        store=PurchaseStore(purchases, catalog, cache=None),
        backend=backend,
    )


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class IntentRequest(ApiModel):
    cart_item_ids: list[str] = Field(default_factory=list)
    applied_coupons: list[str] = Field(default_factory=list)
    environment: Environment = Environment.TEST


class StatusUpdateRequest(ApiModel):
    transaction_id: str
    status: str


class CouponApplyRequest(ApiModel):
    code: str = Field(..., min_length=1)
    cart_items: list[CartLine] = Field(default_factory=list)
    cart_total: Optional[Decimal] = None
    user_id: Optional[str] = None


class ApplicableCouponsRequest(ApiModel):
    cart_items: list[CartLine] = Field(default_factory=list)
    user_id: Optional[str] = None


class StackingRequest(ApiModel):
    codes: list[str] = Field(default_factory=list)
    cart_items: list[CartLine] = Field(default_factory=list)
    user_id: Optional[str] = None


class AddToCartRequest(ApiModel):
    """Identifies a catalog item; the price always comes from the catalog."""
    purchasable_type: Optional[str] = None
    purchasable_id: Optional[str] = None
    product_id: Optional[str] = None


class TransactionStatusResponse(ApiModel):
    transaction_id: str
    status: IntentStatus
    total_amount: Decimal
    payment_url: Optional[str] = None
    reported_outcome: Optional[str] = None
    failure_reason: Optional[str] = None
    cart_item_ids: list[str]
    restored_cart_item_ids: list[str] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    @classmethod
    def from_intent(cls, intent: PaymentIntent) -> "TransactionStatusResponse":
        return cls(
            transaction_id=intent.transaction_id,
            status=intent.status,
            total_amount=intent.total_amount,
            payment_url=intent.payment_url,
            reported_outcome=intent.reported_outcome.value if intent.reported_outcome else None,
            failure_reason=intent.failure_reason,
            cart_item_ids=intent.cart_item_ids,
            restored_cart_item_ids=intent.restored_cart_item_ids,
            submitted_at=intent.submitted_at,
            paid_at=intent.paid_at,
        )


class HealthResponse(ApiModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str
    provider: str
    sweep: dict[str, Any]


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_services(request: Request) -> CheckoutServices:
    return request.app.state.services


def get_buyer(
    x_user_id: Optional[str] = Header(default=None),
    x_guest_id: Optional[str] = Header(default=None),
    x_user_segments: Optional[str] = Header(default=None),
) -> Buyer:
    segments = [s.strip() for s in (x_user_segments or "").split(",") if s.strip()]
    if x_user_id:
        return Buyer(user_id=x_user_id, segments=segments)
    if x_guest_id:
        return Buyer(guest_identifier=x_guest_id, segments=segments)
    raise CheckoutError("Missing buyer identity", reason="missing_identity", status_code=401)


async def _owned_intent(services: CheckoutServices, buyer: Buyer, transaction_id: str) -> PaymentIntent:
    intent = await services.intents.get(transaction_id)
    if intent is None or intent.owner_key != buyer.key:
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
    return intent


# ============================================================================
# FASTAPI APP
# ============================================================================

def create_app(
    services: Optional[CheckoutServices] = None,
    start_sweeper: Optional[bool] = None,
) -> FastAPI:
    services = services or build_services()
    if start_sweeper is None:
        start_sweeper = services.config.SWEEP_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("Starting checkout service (backend=%s, provider=%s)",
                    services.backend, services.provider.name)
        if services.backend == "postgres":
            await init_database()

        subscription_id = await services.coupon_service.attach(services.bus)

        sweeper = None
        if start_sweeper:
            sweeper = asyncio.create_task(abandonment_loop(services.reconciler))

        yield

        logger.info("Shutting down checkout service")
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        await services.bus.unsubscribe(subscription_id)
        await services.provider.close()
        if services.backend == "postgres":
            await close_database()

    app = FastAPI(
        title="Cart Checkout Service",
        description="Cart pricing, payment sessions and payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.started_at = utcnow()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[services.config.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        logger.info("%s %s -> %s (%s)", request.method, request.url.path, exc.status_code, exc.reason)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    # ------------------------------------------------------------------------
    # HEALTH
    # ------------------------------------------------------------------------

    @app.get("/health")
    async def health_check(services: CheckoutServices = Depends(get_services)):
        """Health check endpoint."""
        uptime = (utcnow() - app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            storage_backend=services.backend,
            provider=services.provider.name,
            sweep=await get_sweep_stats(),
        ).to_wire()

    # ------------------------------------------------------------------------
    # PAYMENTS
    # ------------------------------------------------------------------------

    @app.post("/payments/intent")
    async def create_intent(
        body: IntentRequest,
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        """Create (or reuse) the payment session for a cart."""
        result = await services.orchestrator.create_session(
            buyer, body.cart_item_ids, body.applied_coupons, body.environment,
        )
        logger.info("Payment intent %s for %s (reused=%s)", result.transaction_id, buyer.key, result.reused)
        return result.to_wire()

    @app.post("/payments/confirm/{transaction_id}", status_code=202)
    async def confirm_payment(
        transaction_id: str,
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        """Best-effort submission notice from the client. Never changes state."""
        await _owned_intent(services, buyer, transaction_id)
        await services.reconciler.record_client_confirmation(transaction_id)
        return {"status": "accepted", "transactionId": transaction_id}

    @app.post("/payments/update-status")
    async def update_status(
        body: StatusUpdateRequest,
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        await _owned_intent(services, buyer, body.transaction_id)
        intent = await services.reconciler.update_status(body.transaction_id, body.status)
        return {"transactionId": intent.transaction_id, "status": intent.status.value}

    @app.post("/payments/surface-event/{transaction_id}")
    async def surface_event(
        transaction_id: str,
        request: Request,
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        """Relay of a raw embedded-surface message."""
        message = parse_surface_message(await request.body())
        if message is None:
            return {"status": "ignored"}
        await _owned_intent(services, buyer, transaction_id)
        result = await services.reconciler.handle_surface_message(transaction_id, message)
        return {"transactionId": transaction_id, **result}

    @app.post("/payments/callback/{provider_name}")
    async def provider_callback(
        provider_name: str,
        request: Request,
        services: CheckoutServices = Depends(get_services),
    ):
        """Server-to-server provider notification. Idempotent."""
        if provider_name != services.provider.name:
            raise CheckoutError(f"Unknown provider {provider_name}", reason="unknown_provider", status_code=404)

        body = await request.body()
        try:
            callback = await services.provider.parse_callback(body, request.headers)
        except CallbackVerificationError as e:
            if e.reason == "unhandled_event":
                return {"status": "ignored", "reason": e.reason}
            logger.warning("Rejected %s callback: %s", provider_name, e.message)
            raise

        return await services.reconciler.handle_provider_callback(callback)

    @app.get("/payments/transaction-status/{transaction_id}")
    async def transaction_status(
        transaction_id: str,
        refresh: bool = Query(default=False),
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        intent = await _owned_intent(services, buyer, transaction_id)
        if refresh and intent.status in ACTIVE_INTENT_STATUSES:
            await services.reconciler.poll_provider(transaction_id)
            intent = await _owned_intent(services, buyer, transaction_id)
        return TransactionStatusResponse.from_intent(intent).to_wire()

    @app.post("/payments/check-pending-payments")
    async def check_pending_payments(
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        """Poll the provider for every open checkout of this buyer."""
        results = await services.reconciler.check_pending_for_owner(buyer.key)
        return {"results": results}

    # ------------------------------------------------------------------------
    # COUPONS
    # ------------------------------------------------------------------------

    @app.post("/coupons/apply")
    async def apply_coupon(
        body: CouponApplyRequest,
        x_user_segments: Optional[str] = Header(default=None),
        services: CheckoutServices = Depends(get_services),
    ):
        segments = [s.strip() for s in (x_user_segments or "").split(",") if s.strip()]
        result = await services.coupon_service.apply_coupon(
            body.code, body.cart_items, body.cart_total, body.user_id, segments,
        )
        return result.to_wire()

    @app.post("/coupons/applicable")
    async def applicable_coupons(
        body: ApplicableCouponsRequest,
        x_user_segments: Optional[str] = Header(default=None),
        services: CheckoutServices = Depends(get_services),
    ):
        segments = [s.strip() for s in (x_user_segments or "").split(",") if s.strip()]
        results = await services.coupon_service.applicable_coupons(body.cart_items, body.user_id, segments)
        return {"coupons": [r.to_wire() for r in results]}

    @app.post("/coupons/validate-stacking")
    async def validate_stacking(
        body: StackingRequest,
        x_user_segments: Optional[str] = Header(default=None),
        services: CheckoutServices = Depends(get_services),
    ):
        segments = [s.strip() for s in (x_user_segments or "").split(",") if s.strip()]
        breakdown = await services.coupon_service.validate_stacking(
            body.codes, body.cart_items, body.user_id, segments,
        )
        return breakdown.to_wire()

    # ------------------------------------------------------------------------
    # PURCHASES
    # ------------------------------------------------------------------------

    @app.get("/purchases")
    async def list_purchases(
        status: Optional[list[PurchaseStatus]] = Query(default=None),
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        rows = await services.store.list_purchases(buyer, status)
        return {"purchases": [row.to_wire() for row in rows]}

    @app.post("/purchases", status_code=201)
    async def add_to_cart(
        body: AddToCartRequest,
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        row = await services.store.add_to_cart(
            buyer, body.purchasable_type, body.purchasable_id, body.product_id,
        )
        return row.to_wire()

    @app.get("/purchases/{purchase_id}")
    async def get_purchase(
        purchase_id: str,
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        row = await services.purchases.get(purchase_id)
        if row is None or not buyer.owns(row):
            raise CartValidationError("Purchase not found", reason="purchase_not_found", status_code=404)
        return row.to_wire()

    @app.delete("/purchases/{purchase_id}", status_code=204)
    async def remove_from_cart(
        purchase_id: str,
        buyer: Buyer = Depends(get_buyer),
        services: CheckoutServices = Depends(get_services),
    ):
        await services.store.remove_from_cart(buyer, purchase_id)
        return Response(status_code=204)

    # ------------------------------------------------------------------------
    # CATALOG
    # ------------------------------------------------------------------------

    @app.get("/products/{purchasable_type}/{purchasable_id}")
    async def get_product_by_entity(
        purchasable_type: str,
        purchasable_id: str,
        services: CheckoutServices = Depends(get_services),
    ):
        product = await services.catalog.get_by_entity(purchasable_type, purchasable_id)
        if product is None:
            raise CartValidationError("Product not found", reason="product_not_found", status_code=404)
        return product.to_wire()

    @app.get("/products/{product_id}")
    async def get_product_by_id(
        product_id: str,
        services: CheckoutServices = Depends(get_services),
    ):
        product = await services.catalog.get_by_id(product_id)
        if product is None:
            raise CartValidationError("Product not found", reason="product_not_found", status_code=404)
        return product.to_wire()

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV", "development") == "development",
        log_level="info"
    )
