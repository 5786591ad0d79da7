import asyncio
import base64
import hashlib
import hmac
import json
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe

from conftest import SettingsForTests
from errors import CallbackVerificationError, SessionCreationError
from payments.models import PaymentIntent, Purchase
from payments.providers import (
    CallbackStatus,
    PayPlusProvider,
    SessionStatus,
    StripeProvider,
)


class ProviderSettings(SettingsForTests):
    PAYPLUS_API_KEY = "api-key"
    PAYPLUS_SECRET_KEY = "secret"
    PAYPLUS_PAGE_UID = "page-1"
    PAYPLUS_TEST_URL = "https://payplus.test/api"
    STRIPE_SECRET_KEY = "sk_test_key"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    STRIPE_CURRENCY = "usd"


ROW = Purchase(id="r1", buyer_user_id="u-1", purchasable_type="course", purchasable_id="c-1",
               payment_amount=Decimal("100"), metadata={"productTitle": "Python 101"})


def intent(**fields):
    defaults = dict(buyer_user_id="u-1", cart_item_ids=["r1"], total_amount=Decimal("90"),
                    line_amounts={"r1": Decimal("90")}, fingerprint="fp")
    return PaymentIntent(**{**defaults, **fields})


def sign(body: bytes, secret="secret") -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def payplus(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PayPlusProvider(ProviderSettings(), client=client)


# =============================================================================
# PAYPLUS
# =============================================================================

def test_payplus_generates_payment_link():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers["api-key"]
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={
            "results": {"status": "success"},
            "data": {"page_request_uid": "pr-1", "payment_page_link": "https://payplus.test/pay/pr-1"},
        })

    pending = intent()
    session = asyncio.run(payplus(handler).create_session(pending, [ROW]))

    assert session.session_id == "pr-1"
    assert session.payment_url == "https://payplus.test/pay/pr-1"
    assert seen["url"] == "https://payplus.test/api/PaymentPages/generateLink"
    assert seen["api_key"] == "api-key"
    assert seen["payload"]["more_info"] == pending.transaction_id
    assert seen["payload"]["amount"] == 90.0
    assert seen["payload"]["items"] == [{"name": "Python 101", "quantity": 1, "price": 90.0}]


def test_payplus_rejection_raises():
    def handler(request):
        return httpx.Response(200, json={"results": {"status": "error", "description": "page uid invalid"}})

    with pytest.raises(SessionCreationError) as exc:
        asyncio.run(payplus(handler).create_session(intent(), [ROW]))
    assert exc.value.message == "page uid invalid"
    assert exc.value.status_code == 502


def test_payplus_http_error_raises():
    def handler(request):
        return httpx.Response(503, text="maintenance")

    with pytest.raises(SessionCreationError):
        asyncio.run(payplus(handler).create_session(intent(), [ROW]))


def test_payplus_callback_success():
    body = json.dumps({"transaction": {
        "status_code": "000",
        "more_info": "TXN-1",
        "uid": "pp-1",
        "amount": 90,
        "payment_page_request_uid": "pr-1",
    }}).encode()

    callback = asyncio.run(payplus(None).parse_callback(body, {"hash": sign(body)}))

    assert callback.status == CallbackStatus.SUCCESS
    assert callback.transaction_id == "TXN-1"
    assert callback.provider_transaction_id == "pp-1"
    assert callback.provider_session_id == "pr-1"
    assert callback.amount == Decimal("90.00")


def test_payplus_callback_status_mapping():
    cases = [
        ({"transaction": {"status_code": "004", "more_info": "T"}}, CallbackStatus.FAILURE),
        ({"transaction": {"status": "cancelled", "more_info": "T"}}, CallbackStatus.CANCELLED),
        ({"transaction_type": "refund", "transaction": {"status_code": "000", "more_info": "T"}},
         CallbackStatus.REFUNDED),
    ]
    provider = payplus(None)
    for payload, expected in cases:
        body = json.dumps(payload).encode()
        assert asyncio.run(provider.parse_callback(body, {"hash": sign(body)})).status == expected


def test_payplus_callback_signature_is_required():
    body = b'{"transaction": {"status_code": "000"}}'
    provider = payplus(None)

    with pytest.raises(CallbackVerificationError):
        asyncio.run(provider.parse_callback(body, {}))
    with pytest.raises(CallbackVerificationError):
        asyncio.run(provider.parse_callback(body, {"hash": sign(body, secret="other")}))


class UnsignedSettings(ProviderSettings):
    PAYPLUS_SECRET_KEY = ""


def test_payplus_callbacks_are_refused_without_a_secret():
    provider = PayPlusProvider(UnsignedSettings(), client=httpx.AsyncClient(transport=httpx.MockTransport(None)))
    body = json.dumps({"transaction": {"status_code": "000", "more_info": "TXN-1"}}).encode()

    for headers in ({}, {"hash": sign(body)}, {"hash": sign(body, secret="")}):
        with pytest.raises(CallbackVerificationError) as exc:
            asyncio.run(provider.parse_callback(body, headers))
        assert exc.value.reason == "invalid_callback"


def test_payplus_unexpected_link_response():
    answers = iter([
        [],
        {"results": {"status": "success"}, "data": {"payment_page_link": "https://payplus.test/pay"}},
        {"results": "ok", "data": "nothing"},
    ])

    def handler(request):
        return httpx.Response(200, json=next(answers))

    provider = payplus(handler)
    for _ in range(3):
        with pytest.raises(SessionCreationError):
            asyncio.run(provider.create_session(intent(), [ROW]))


def test_payplus_status_lookup_tolerates_odd_bodies():
    answers = iter([["not", "an", "object"], {"data": "none"}])

    def handler(request):
        return httpx.Response(200, json=next(answers))

    provider = payplus(handler)
    listed = asyncio.run(provider.fetch_session_status(intent(provider_session_id="pr-1")))
    scalar = asyncio.run(provider.fetch_session_status(intent(provider_session_id="pr-1")))

    assert listed.status == SessionStatus.UNKNOWN
    assert scalar.status == SessionStatus.OPEN


def test_payplus_status_lookup():
    answers = iter([
        {"data": {"status_code": "000", "transaction_uid": "pp-9"}},
        {"data": {}},
    ])

    def handler(request):
        assert json.loads(request.content)["payment_request_uid"] == "pr-1"
        return httpx.Response(200, json=next(answers))

    provider = payplus(handler)
    paid = asyncio.run(provider.fetch_session_status(intent(provider_session_id="pr-1")))
    still_open = asyncio.run(provider.fetch_session_status(intent(provider_session_id="pr-1")))
    no_session = asyncio.run(provider.fetch_session_status(intent()))

    assert paid.status == SessionStatus.PAID
    assert paid.provider_transaction_id == "pp-9"
    assert still_open.status == SessionStatus.OPEN
    assert no_session.status == SessionStatus.UNKNOWN


# =============================================================================
# STRIPE
# =============================================================================

class FakeStripe:
    """Stands in for the stripe module: checkout.Session and Webhook only."""

    def __init__(self, fail=False, session=None):
        self.fail = fail
        self.created = []
        self.session = session or {"payment_status": "unpaid", "status": "open"}
        self.checkout = SimpleNamespace(Session=SimpleNamespace(create=self._create, retrieve=self._retrieve))
        self.Webhook = SimpleNamespace(construct_event=self._construct_event)

    def _create(self, **params):
        if self.fail:
            raise stripe.APIConnectionError("network down")
        self.created.append(params)
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1")

    def _retrieve(self, session_id, **params):
        return self.session

    def _construct_event(self, payload, signature, secret):
        if signature != "t=1,v1=good" or secret != "whsec_test":
            raise stripe.SignatureVerificationError("No signatures found", signature)
        return json.loads(payload)


def stripe_event(event_type, **obj):
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode()


def stripe_provider(fake):
    return StripeProvider(ProviderSettings(), stripe_client=fake)


def test_stripe_session_creation():
    fake = FakeStripe()
    pending = intent()
    session = asyncio.run(stripe_provider(fake).create_session(pending, [ROW]))

    assert session.session_id == "cs_test_1"
    params = fake.created[0]
    assert params["client_reference_id"] == pending.transaction_id
    assert params["metadata"] == {"transaction_id": pending.transaction_id}
    assert params["line_items"][0]["price_data"]["unit_amount"] == 9000
    assert params["line_items"][0]["price_data"]["currency"] == "usd"
    assert params["idempotency_key"] == f"checkout_{pending.transaction_id}"


def test_stripe_error_becomes_session_error():
    with pytest.raises(SessionCreationError):
        asyncio.run(stripe_provider(FakeStripe(fail=True)).create_session(intent(), [ROW]))


def test_stripe_completed_paid_session():
    body = stripe_event("checkout.session.completed", id="cs_test_1", payment_status="paid",
                        amount_total=9000, payment_intent="pi_1", metadata={"transaction_id": "TXN-1"})
    callback = asyncio.run(stripe_provider(FakeStripe()).parse_callback(body, {"stripe-signature": "t=1,v1=good"}))

    assert callback.status == CallbackStatus.SUCCESS
    assert callback.transaction_id == "TXN-1"
    assert callback.provider_session_id == "cs_test_1"
    assert callback.amount == Decimal("90.00")


def test_stripe_event_mapping():
    provider = stripe_provider(FakeStripe())
    headers = {"stripe-signature": "t=1,v1=good"}

    expired = asyncio.run(provider.parse_callback(
        stripe_event("checkout.session.expired", id="cs_1", client_reference_id="TXN-2"), headers))
    assert expired.status == CallbackStatus.EXPIRED
    assert expired.transaction_id == "TXN-2"

    failed = asyncio.run(provider.parse_callback(
        stripe_event("checkout.session.async_payment_failed", id="cs_1"), headers))
    assert failed.status == CallbackStatus.FAILURE

    refunded = asyncio.run(provider.parse_callback(
        stripe_event("charge.refunded", payment_intent="pi_1", metadata={"transaction_id": "TXN-3"}), headers))
    assert refunded.status == CallbackStatus.REFUNDED


def test_stripe_unsettled_and_unknown_events_are_unhandled():
    provider = stripe_provider(FakeStripe())
    headers = {"stripe-signature": "t=1,v1=good"}

    for body in (
        stripe_event("checkout.session.completed", id="cs_1", payment_status="unpaid"),
        stripe_event("customer.created", id="cus_1"),
    ):
        with pytest.raises(CallbackVerificationError) as exc:
            asyncio.run(provider.parse_callback(body, headers))
        assert exc.value.reason == "unhandled_event"


def test_stripe_bad_signature():
    body = stripe_event("checkout.session.completed", id="cs_1", payment_status="paid")

    with pytest.raises(CallbackVerificationError) as exc:
        asyncio.run(stripe_provider(FakeStripe()).parse_callback(body, {"stripe-signature": "forged"}))
    assert exc.value.reason == "invalid_callback"


def test_stripe_webhooks_are_refused_without_a_secret():
    class NoWebhookSecret(ProviderSettings):
        STRIPE_WEBHOOK_SECRET = ""

    fake = FakeStripe()
    fake.Webhook = SimpleNamespace(construct_event=lambda payload, signature, secret: json.loads(payload))
    provider = StripeProvider(NoWebhookSecret(), stripe_client=fake)
    body = stripe_event("checkout.session.completed", id="cs_1", payment_status="paid")

    with pytest.raises(CallbackVerificationError):
        asyncio.run(provider.parse_callback(body, {"stripe-signature": "t=1,v1=good"}))


def test_stripe_status_lookup():
    fake = FakeStripe(session={"payment_status": "paid", "status": "complete", "payment_intent": "pi_7"})
    status = asyncio.run(stripe_provider(fake).fetch_session_status(intent(provider_session_id="cs_1")))

    assert status.status == SessionStatus.PAID
    assert status.provider_transaction_id == "pi_7"

    fake.session = {"payment_status": "unpaid", "status": "expired"}
    expired = asyncio.run(stripe_provider(fake).fetch_session_status(intent(provider_session_id="cs_1")))
    assert expired.status == SessionStatus.EXPIRED
