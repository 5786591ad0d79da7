"""
Payment Provider Adapters
=========================
One interface, two providers:

- PayPlusProvider: hosted payment page embedded in the checkout page.
  Sessions via POST /PaymentPages/generateLink, status via
  POST /PaymentPages/ipn, callbacks signed with base64(HMAC-SHA256(body)).
- StripeProvider: Stripe Checkout Sessions, webhooks verified with
  stripe.Webhook.construct_event.

Adapters translate provider payloads into ProviderCallback / ProviderStatus
and wrap transport errors in SessionCreationError. They never touch
persisted state.
"""

import asyncio
import base64
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional

import httpx
import stripe
import structlog
from pydantic import BaseModel, Field

from config import Settings, settings as default_settings
from errors import CallbackVerificationError, SessionCreationError
from payments.models import Environment, PaymentIntent, Purchase
from schemas.base import money, utcnow


# =============================================================================
# PROVIDER-NEUTRAL MODELS
# =============================================================================

class CallbackStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class SessionStatus(str, Enum):
    PAID = "paid"
    OPEN = "open"
    FAILED = "failed"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class ProviderSession(BaseModel):
    session_id: str
    payment_url: str


class ProviderCallback(BaseModel):
    """A verified provider notification."""
    status: CallbackStatus
    event_id: Optional[str] = None
    transaction_id: Optional[str] = None  # ours, echoed back by the provider
    provider_session_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    raw_type: Optional[str] = None


class ProviderStatus(BaseModel):
    status: SessionStatus
    provider_transaction_id: Optional[str] = None
    detail: dict = Field(default_factory=dict)


class IPaymentProvider(ABC):
    """Payment provider interface"""

    name: str = "provider"

    @abstractmethod
    async def create_session(self, intent: PaymentIntent, rows: list[Purchase]) -> ProviderSession:
        """Open a hosted payment session. Raises SessionCreationError."""
        pass

    @abstractmethod
    async def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> ProviderCallback:
        """Verify and parse a callback. Raises CallbackVerificationError."""
        pass

    @abstractmethod
    async def fetch_session_status(self, intent: PaymentIntent) -> ProviderStatus:
        pass

    async def close(self) -> None:
        pass


def _title(row: Purchase) -> str:
    return row.metadata.get("productTitle") or row.purchasable_type or "Item"


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


# =============================================================================
# PAYPLUS
# =============================================================================

PAYPLUS_SUCCESS_CODE = "000"
PAYPLUS_CANCEL_STATUSES = {"cancelled", "canceled", "cancel"}


class PayPlusProvider(IPaymentProvider):
    """PayPlus hosted payment pages over httpx."""

    name = "payplus"

    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_settings
        self._client = client or httpx.AsyncClient(timeout=self.config.PAYPLUS_TIMEOUT_SECONDS)
        self._logger = structlog.get_logger().bind(component="payplus_provider")

    def _base_url(self, environment: Environment) -> str:
        if environment == Environment.PRODUCTION:
            return self.config.PAYPLUS_PRODUCTION_URL
        return self.config.PAYPLUS_TEST_URL

    def _headers(self) -> dict:
        return {
            "api-key": self.config.PAYPLUS_API_KEY,
            "secret-key": self.config.PAYPLUS_SECRET_KEY,
            "Content-Type": "application/json",
        }

    async def close(self) -> None:
        await self._client.aclose()

    async def create_session(self, intent: PaymentIntent, rows: list[Purchase]) -> ProviderSession:
        log = self._logger.bind(transaction_id=intent.transaction_id)
        payload = {
            "payment_page_uid": self.config.PAYPLUS_PAGE_UID,
            "amount": float(intent.total_amount),
            "currency_code": "ILS",
            "charge_method": 1,
            "more_info": intent.transaction_id,
            "refURL_success": f"{self.config.FRONTEND_URL}/payment/success?transaction_id={intent.transaction_id}",
            "refURL_failure": f"{self.config.FRONTEND_URL}/payment/failure?transaction_id={intent.transaction_id}",
            "refURL_callback": f"{self.config.CALLBACK_BASE_URL}/payments/callback/payplus",
            "send_failure_callback": True,
            "items": [
                {
                    "name": _title(row),
                    "quantity": 1,
                    "price": float(intent.line_amounts.get(row.id, row.payment_amount)),
                }
                for row in rows
            ],
        }

        try:
            response = await self._client.post(
                f"{self._base_url(intent.environment)}/PaymentPages/generateLink",
                json=payload,
                headers=self._headers(),
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            log.error("payplus_session_failed", error=str(e), error_type=type(e).__name__)
            raise SessionCreationError(f"PayPlus request failed: {e}")
        except ValueError as e:
            log.error("payplus_session_failed", error="invalid JSON response")
            raise SessionCreationError(f"PayPlus returned an invalid response: {e}")

        if not isinstance(body, dict):
            log.error("payplus_session_failed", error="unexpected response shape")
            raise SessionCreationError("PayPlus returned an unexpected response")
        results = _as_dict(body.get("results"))
        data = _as_dict(body.get("data"))
        if (results.get("status") != "success"
                or not data.get("payment_page_link") or not data.get("page_request_uid")):
            log.error("payplus_session_rejected", results=results)
            raise SessionCreationError(results.get("description") or "PayPlus rejected the payment page request")

        log.info("payplus_session_created", page_request_uid=data.get("page_request_uid"))
        return ProviderSession(
            session_id=data["page_request_uid"],
            payment_url=data["payment_page_link"],
        )

    def _verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        secret = self.config.PAYPLUS_SECRET_KEY
        if not secret:
            # unsigned callbacks could mark anything paid
            self._logger.error("payplus_secret_missing")
            raise CallbackVerificationError("PayPlus secret key is not configured")
        received = headers.get("hash") or headers.get("Hash")
        if not received:
            raise CallbackVerificationError("Missing callback signature")
        expected = base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()
        if not hmac.compare_digest(expected, received):
            raise CallbackVerificationError("Invalid callback signature")

    async def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> ProviderCallback:
        self._verify_signature(body, headers)
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            raise CallbackVerificationError("Callback body is not JSON")
        if not isinstance(data, dict):
            raise CallbackVerificationError("Callback body is not an object")

        transaction = _as_dict(data.get("transaction")) or data
        transaction_type = str(data.get("transaction_type") or transaction.get("type") or "").lower()
        status_code = str(transaction.get("status_code") or data.get("status_code") or "")
        status_text = str(transaction.get("status") or data.get("status") or "").lower()

        if transaction_type == "refund":
            status = CallbackStatus.REFUNDED
        elif status_text in PAYPLUS_CANCEL_STATUSES:
            status = CallbackStatus.CANCELLED
        elif status_code == PAYPLUS_SUCCESS_CODE:
            status = CallbackStatus.SUCCESS
        else:
            status = CallbackStatus.FAILURE

        amount = transaction.get("amount")
        return ProviderCallback(
            status=status,
            event_id=transaction.get("uid"),
            transaction_id=transaction.get("more_info") or data.get("more_info"),
            provider_session_id=transaction.get("payment_page_request_uid") or data.get("page_request_uid"),
            provider_transaction_id=transaction.get("uid"),
            amount=money(amount) if amount is not None else None,
            raw_type=transaction_type or None,
        )

    async def fetch_session_status(self, intent: PaymentIntent) -> ProviderStatus:
        if not intent.provider_session_id:
            return ProviderStatus(status=SessionStatus.UNKNOWN)

        log = self._logger.bind(transaction_id=intent.transaction_id)
        try:
            response = await self._client.post(
                f"{self._base_url(intent.environment)}/PaymentPages/ipn",
                json={"payment_request_uid": intent.provider_session_id, "related_transaction": True},
                headers=self._headers(),
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("payplus_status_unavailable", error=str(e))
            return ProviderStatus(status=SessionStatus.UNKNOWN)

        if not isinstance(body, dict):
            log.warning("payplus_status_unavailable", error="unexpected response shape")
            return ProviderStatus(status=SessionStatus.UNKNOWN)

        data = _as_dict(body.get("data"))
        status_code = str(data.get("status_code") or "")
        if status_code == PAYPLUS_SUCCESS_CODE:
            status = SessionStatus.PAID
        elif status_code:
            status = SessionStatus.FAILED
        else:
            status = SessionStatus.OPEN
        return ProviderStatus(
            status=status,
            provider_transaction_id=data.get("transaction_uid"),
            detail={"status_code": status_code} if status_code else {},
        )


# =============================================================================
# STRIPE
# =============================================================================

class StripeProvider(IPaymentProvider):
    """Stripe Checkout Sessions. SDK calls run in a worker thread."""

    name = "stripe"

    def __init__(self, config: Optional[Settings] = None, stripe_client=stripe):
        self.config = config or default_settings
        self._stripe = stripe_client
        self._logger = structlog.get_logger().bind(component="stripe_provider")

    async def create_session(self, intent: PaymentIntent, rows: list[Purchase]) -> ProviderSession:
        log = self._logger.bind(transaction_id=intent.transaction_id)
        currency = self.config.STRIPE_CURRENCY
        expires_at = utcnow() + timedelta(minutes=max(self.config.PAYMENT_TIMEOUT_MINUTES, 30))

        line_items = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": _title(row)},
                    "unit_amount": int(money(intent.line_amounts.get(row.id, row.payment_amount)) * 100),
                },
                "quantity": 1,
            }
            for row in rows
        ]

        try:
            session = await asyncio.to_thread(
                self._stripe.checkout.Session.create,
                api_key=self.config.STRIPE_SECRET_KEY,
                mode="payment",
                line_items=line_items,
                client_reference_id=intent.transaction_id,
                success_url=f"{self.config.FRONTEND_URL}/payment/success?transaction_id={intent.transaction_id}",
                cancel_url=f"{self.config.FRONTEND_URL}/payment/cancel?transaction_id={intent.transaction_id}",
                expires_at=int(expires_at.timestamp()),
                metadata={"transaction_id": intent.transaction_id},
                idempotency_key=f"checkout_{intent.transaction_id}",
            )
        except stripe.StripeError as e:
            log.error("stripe_session_failed", error=str(e), error_type=type(e).__name__)
            raise SessionCreationError(f"Stripe request failed: {e}")

        log.info("stripe_session_created", stripe_session_id=session.id)
        return ProviderSession(session_id=session.id, payment_url=session.url)

    async def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> ProviderCallback:
        signature = headers.get("stripe-signature") or headers.get("Stripe-Signature") or ""
        if not self.config.STRIPE_WEBHOOK_SECRET:
            self._logger.error("stripe_webhook_secret_missing")
            raise CallbackVerificationError("Stripe webhook secret is not configured")
        try:
            event = self._stripe.Webhook.construct_event(body, signature, self.config.STRIPE_WEBHOOK_SECRET)
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise CallbackVerificationError("Invalid webhook signature")
        except ValueError as e:
            self._logger.warning("webhook_parse_error", error=str(e))
            raise CallbackVerificationError("Invalid webhook payload")

        event_type = event["type"]
        obj = event["data"]["object"]
        metadata = obj.get("metadata") or {}

        if event_type == "charge.refunded":
            return ProviderCallback(
                status=CallbackStatus.REFUNDED,
                event_id=event["id"],
                transaction_id=metadata.get("transaction_id"),
                provider_transaction_id=obj.get("payment_intent"),
                raw_type=event_type,
            )

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            status = CallbackStatus.SUCCESS if obj.get("payment_status") == "paid" else CallbackStatus.FAILURE
            if event_type == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
                # delayed payment method; the async_payment_* event settles it
                status = None
        elif event_type == "checkout.session.async_payment_failed":
            status = CallbackStatus.FAILURE
        elif event_type == "checkout.session.expired":
            status = CallbackStatus.EXPIRED
        else:
            raise CallbackVerificationError(f"Unhandled event type {event_type}", reason="unhandled_event")

        if status is None:
            raise CallbackVerificationError("Payment not settled yet", reason="unhandled_event")

        amount = obj.get("amount_total")
        return ProviderCallback(
            status=status,
            event_id=event["id"],
            transaction_id=metadata.get("transaction_id") or obj.get("client_reference_id"),
            provider_session_id=obj.get("id"),
            provider_transaction_id=obj.get("payment_intent"),
            amount=money(Decimal(amount) / 100) if amount is not None else None,
            raw_type=event_type,
        )

    async def fetch_session_status(self, intent: PaymentIntent) -> ProviderStatus:
        if not intent.provider_session_id:
            return ProviderStatus(status=SessionStatus.UNKNOWN)
        try:
            session = await asyncio.to_thread(
                self._stripe.checkout.Session.retrieve,
                intent.provider_session_id,
                api_key=self.config.STRIPE_SECRET_KEY,
            )
        except stripe.StripeError as e:
            self._logger.warning("stripe_status_unavailable", transaction_id=intent.transaction_id, error=str(e))
            return ProviderStatus(status=SessionStatus.UNKNOWN)

        if session.get("payment_status") == "paid":
            status = SessionStatus.PAID
        elif session.get("status") == "expired":
            status = SessionStatus.EXPIRED
        elif session.get("status") == "open":
            status = SessionStatus.OPEN
        else:
            status = SessionStatus.UNKNOWN
        return ProviderStatus(status=status, provider_transaction_id=session.get("payment_intent"))


def build_provider(config: Optional[Settings] = None) -> IPaymentProvider:
    config = config or default_settings
    if config.PAYMENT_PROVIDER == "stripe":
        return StripeProvider(config)
    return PayPlusProvider(config)
