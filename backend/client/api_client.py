"""
Checkout API Client
===================
httpx client the buyer-side context uses to talk to the checkout API.

Error responses (`{"error": {"reason", "message"}}`) are raised as the
matching CheckoutError subclass so callers can branch on `reason`.
Transport errors propagate as httpx.HTTPError, except from confirm(),
which is fire-and-forget.
"""

from decimal import Decimal
from typing import Any, Iterable, Optional

import httpx
import structlog

from config import Settings, settings as default_settings
from coupons.service import CouponApplication
from errors import (
    CartValidationError,
    CheckoutError,
    CouponRejectedError,
    PurchaseStateConflictError,
    SessionCreationError,
    TransactionNotFoundError,
)
from payments.models import Buyer, Environment, Product, Purchase, PurchaseStatus
from payments.orchestrator import SessionResult


logger = structlog.get_logger().bind(component="checkout_api_client")


def _error_from_response(response: httpx.Response, coupon_code: Optional[str] = None) -> CheckoutError:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        error = {}
    reason = error.get("reason")
    message = error.get("message") or f"HTTP {response.status_code}"

    if coupon_code is not None and response.status_code == 422:
        return CouponRejectedError(coupon_code, reason or "coupon_rejected", message)
    if response.status_code == 409:
        exc = PurchaseStateConflictError(message, current_status=error.get("current_status"))
        exc.reason = reason or exc.reason
        return exc
    if response.status_code == 404 and reason == "transaction_not_found":
        return TransactionNotFoundError(message)
    if response.status_code == 502:
        return SessionCreationError(message, reason=reason)
    if response.status_code == 422:
        return CartValidationError(message, reason=reason)
    return CheckoutError(message, reason=reason, status_code=response.status_code)


class CheckoutApiClient:
    """One client per buyer context."""

    def __init__(
        self,
        buyer: Buyer,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        self.buyer = buyer
        self._client = client or httpx.AsyncClient(
            base_url=base_url or config.API_BASE_URL,
            timeout=timeout or config.API_TIMEOUT_SECONDS,
        )
        self._client.headers.update(self._identity_headers())

    def _identity_headers(self) -> dict:
        if self.buyer.user_id:
            headers = {"X-User-Id": self.buyer.user_id}
        else:
            headers = {"X-Guest-Id": self.buyer.guest_identifier}
        if self.buyer.segments:
            headers["X-User-Segments"] = ",".join(self.buyer.segments)
        return headers

    async def close(self):
        """Close HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "CheckoutApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(self, method: str, url: str, coupon_code: Optional[str] = None, **kwargs) -> Any:
        response = await self._client.request(method, url, **kwargs)
        if response.status_code >= 400:
            raise _error_from_response(response, coupon_code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # -------------------------------------------------------------------------
    # payments
    # -------------------------------------------------------------------------

    async def create_intent(
        self,
        cart_item_ids: Iterable[str],
        applied_coupons: Iterable[str] = (),
        environment: Environment | str = Environment.TEST,
    ) -> SessionResult:
        body = await self._request("POST", "/payments/intent", json={
            "cartItemIds": list(cart_item_ids),
            "appliedCoupons": list(applied_coupons),
            "environment": Environment(environment).value,
        })
        return SessionResult.model_validate(body)

    async def confirm(self, transaction_id: str) -> bool:
        """Best-effort notification that a submission was seen. Never raises."""
        try:
            await self._request("POST", f"/payments/confirm/{transaction_id}")
            return True
        except (httpx.HTTPError, CheckoutError) as e:
            logger.warning("confirmation_call_failed", transaction_id=transaction_id, error=str(e))
            return False

    async def update_status(self, transaction_id: str, status: str = "pending") -> dict:
        return await self._request("POST", "/payments/update-status", json={
            "transactionId": transaction_id,
            "status": status,
        })

    async def report_surface_event(self, transaction_id: str, message: Any) -> dict:
        """Relay a raw surface message to the server."""
        return await self._request("POST", f"/payments/surface-event/{transaction_id}", json=message)

    async def transaction_status(self, transaction_id: str, refresh: bool = False) -> dict:
        params = {"refresh": "true"} if refresh else None
        return await self._request("GET", f"/payments/transaction-status/{transaction_id}", params=params)

    async def check_pending_payments(self) -> list[dict]:
        body = await self._request("POST", "/payments/check-pending-payments")
        return body.get("results", [])

    # -------------------------------------------------------------------------
    # coupons
    # -------------------------------------------------------------------------

    async def apply_coupon(
        self,
        code: str,
        cart_items: Iterable[Any] = (),
        cart_total: Optional[Decimal] = None,
    ) -> CouponApplication:
        items = [i.to_wire() if hasattr(i, "to_wire") else i for i in cart_items]
        body = await self._request("POST", "/coupons/apply", coupon_code=code, json={
            "code": code,
            "cartItems": items,
            "cartTotal": str(cart_total) if cart_total is not None else None,
            "userId": self.buyer.user_id,
        })
        return CouponApplication.model_validate(body)

    # -------------------------------------------------------------------------
    # purchases
    # -------------------------------------------------------------------------

    async def list_purchases(self, statuses: Optional[Iterable[PurchaseStatus]] = None) -> list[Purchase]:
        params = {"status": [PurchaseStatus(s).value for s in statuses]} if statuses else None
        body = await self._request("GET", "/purchases", params=params)
        return [Purchase.model_validate(row) for row in body.get("purchases", [])]

    async def get_purchase(self, purchase_id: str) -> Purchase:
        body = await self._request("GET", f"/purchases/{purchase_id}")
        return Purchase.model_validate(body)

    async def add_purchase(
        self,
        purchasable_type: Optional[str] = None,
        purchasable_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Purchase:
        body = await self._request("POST", "/purchases", json={
            "purchasableType": purchasable_type,
            "purchasableId": purchasable_id,
            "productId": product_id,
        })
        return Purchase.model_validate(body)

    async def remove_purchase(self, purchase_id: str) -> None:
        await self._request("DELETE", f"/purchases/{purchase_id}")

    # -------------------------------------------------------------------------
    # catalog
    # -------------------------------------------------------------------------

    async def get_product(self, purchasable_type: str, purchasable_id: str) -> Product:
        body = await self._request("GET", f"/products/{purchasable_type}/{purchasable_id}")
        return Product.model_validate(body)

    async def get_product_by_id(self, product_id: str) -> Product:
        body = await self._request("GET", f"/products/{product_id}")
        return Product.model_validate(body)
