import asyncio
import json
from decimal import Decimal
from typing import Optional

import pytest

from api.server import CheckoutServices, build_services
from config import Settings
from coupons.models import Coupon, DiscountType
from errors import CallbackVerificationError, SessionCreationError
from payments.models import Buyer, PaymentIntent, Purchase
from payments.providers import (
    IPaymentProvider,
    ProviderCallback,
    ProviderSession,
    ProviderStatus,
    SessionStatus,
)


class SettingsForTests(Settings):
    PAYMENT_PROVIDER = "fake"
    STORAGE_BACKEND = "memory"
    SWEEP_ENABLED = False
    RESTORE_CART_ON_CLOSE = True
    PAYMENT_TIMEOUT_MINUTES = 30


class FakeProvider(IPaymentProvider):
    """In-process provider. Callbacks are JSON ProviderCallback bodies."""

    name = "fake"

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.sessions: list[str] = []
        self.status = SessionStatus.OPEN
        self.status_transaction_id: Optional[str] = None
        self.status_calls = 0
        self.closed = False

    async def create_session(self, intent: PaymentIntent, rows: list[Purchase]) -> ProviderSession:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise SessionCreationError("provider unavailable")
        self.sessions.append(intent.transaction_id)
        session_id = f"sess_{len(self.sessions)}"
        return ProviderSession(session_id=session_id, payment_url=f"https://pay.example/{session_id}")

    async def parse_callback(self, body: bytes, headers) -> ProviderCallback:
        if headers.get("x-fake-signature") != "valid":
            raise CallbackVerificationError("Invalid callback signature")
        return ProviderCallback.model_validate(json.loads(body))

    async def fetch_session_status(self, intent: PaymentIntent) -> ProviderStatus:
        self.status_calls += 1
        return ProviderStatus(status=self.status, provider_transaction_id=self.status_transaction_id)

    async def close(self) -> None:
        self.closed = True


def make_services(provider: Optional[FakeProvider] = None, **overrides) -> CheckoutServices:
    config = type("Overridden", (SettingsForTests,), overrides)() if overrides else SettingsForTests()
    return build_services(config=config, provider=provider or FakeProvider(), backend="memory")


async def seed_cart(services: CheckoutServices, buyer: Buyer, *prices) -> list[Purchase]:
    rows = []
    for index, price in enumerate(prices, start=1):
        row = Purchase(
            **buyer.owner_fields(),
            purchasable_type="course",
            purchasable_id=f"course-{index}",
            payment_amount=Decimal(str(price)),
            metadata={"productTitle": f"Course {index}"},
        )
        rows.append(await services.purchases.create(row))
    return rows


def coupon(code: str, value="10", kind=DiscountType.PERCENTAGE, **fields) -> Coupon:
    return Coupon(code=code, discount_type=kind, discount_value=Decimal(str(value)), **fields)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(provider):
    return make_services(provider)


@pytest.fixture
def buyer():
    return Buyer(user_id="user-1")


@pytest.fixture
def guest():
    return Buyer(guest_identifier="guest-abc")
