import asyncio
from decimal import Decimal

import httpx
import pytest

from api.server import create_app
from client.api_client import CheckoutApiClient
from client.checkout_flow import CheckoutFlow
from client.remote_store import build_client_store
from conftest import seed_cart
from errors import CartValidationError, PurchaseStateConflictError
from payments.models import Buyer, Product, PurchaseStatus
from schemas.surface_messages import SurfaceChannel
from storage.purchase_store import product_key, purchases_key


def api_client(services, buyer):
    app = create_app(services, start_sweeper=False)
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://checkout.test")
    return CheckoutApiClient(buyer, client=http)


@pytest.fixture
def catalog(services):
    product = Product(id="prod-1", purchasable_type="course", purchasable_id="c-1", title="Python 101",
                      price=Decimal("60"))
    asyncio.run(services.catalog.save(product))
    return product


def test_cart_reads_are_cached(services, buyer):
    async def scenario():
        rows = await seed_cart(services, buyer, "10")
        async with api_client(services, buyer) as api:
            store = build_client_store(api)
            first = await store.cart_items(buyer)
            cached = purchases_key(buyer.key) in store.cache
            # a server-side change stays invisible until invalidated
            await seed_cart(services, buyer, "20", "30")
            second = await store.cart_items(buyer)
            store.invalidate_owner(buyer)
            third = await store.cart_items(buyer)
        return rows, first, cached, second, third

    rows, first, cached, second, third = asyncio.run(scenario())
    assert [r.id for r in first] == [rows[0].id]
    assert cached
    assert [r.id for r in second] == [rows[0].id]
    assert len(third) == 3


def test_removal_over_http_invalidates_the_owner(services, buyer):
    async def scenario():
        rows = await seed_cart(services, buyer, "10", "20")
        async with api_client(services, buyer) as api:
            store = build_client_store(api)
            await store.cart_items(buyer)
            await store.remove_from_cart(buyer, rows[0].id)
            cached = purchases_key(buyer.key) in store.cache
            remaining = await store.cart_items(buyer)
        return rows, cached, remaining, await services.purchases.get(rows[0].id)

    rows, cached, remaining, deleted = asyncio.run(scenario())
    assert not cached
    assert [r.id for r in remaining] == [rows[1].id]
    assert deleted is None


def test_checked_out_row_cannot_be_removed_over_http(services, buyer):
    async def scenario():
        rows = await seed_cart(services, buyer, "10")
        await services.orchestrator.create_session(buyer, [rows[0].id])
        async with api_client(services, buyer) as api:
            store = build_client_store(api)
            with pytest.raises(PurchaseStateConflictError):
                await store.remove_from_cart(buyer, rows[0].id)
            with pytest.raises(CartValidationError) as missing:
                await store.remove_from_cart(buyer, "no-such-row")
        return missing.value, await services.purchases.get(rows[0].id)

    missing, row = asyncio.run(scenario())
    assert missing.reason == "cart_item_not_found"
    assert row.payment_status == PurchaseStatus.PENDING


def test_other_buyers_rows_are_refused(services, buyer):
    async def scenario():
        async with api_client(services, buyer) as api:
            store = build_client_store(api)
            with pytest.raises(ValueError):
                await store.cart_items(Buyer(user_id="user-2"))

    asyncio.run(scenario())


def test_add_over_http_uses_catalog_price(services, buyer, catalog):
    async def scenario():
        async with api_client(services, buyer) as api:
            store = build_client_store(api)
            await store.cart_items(buyer)
            row = await store.add_to_cart(buyer, "course", "c-1")
            cached = purchases_key(buyer.key) in store.cache
            with pytest.raises(CartValidationError) as duplicate:
                await store.add_to_cart(buyer, "course", "c-1")
            with pytest.raises(CartValidationError) as unknown:
                await store.add_to_cart(buyer, "course", "c-404")
        return row, cached, duplicate.value, unknown.value

    row, cached, duplicate, unknown = asyncio.run(scenario())
    assert row.payment_amount == Decimal("60.00")
    assert row.metadata["productTitle"] == "Python 101"
    assert not cached
    assert duplicate.reason == "already_in_cart"
    assert unknown.reason == "product_not_found"


def test_products_are_cached(services, buyer, catalog):
    async def scenario():
        async with api_client(services, buyer) as api:
            store = build_client_store(api)
            product = await store.get_product("course", "c-1")
            by_id = await store.get_product(product_id="prod-1")
            missing = await store.get_product("course", "c-404")
            return product, by_id, missing, product_key("course", "c-1") in store.cache

    product, by_id, missing, cached = asyncio.run(scenario())
    assert product.price == Decimal("60.00")
    assert by_id.id == "prod-1"
    assert missing is None
    assert cached


def test_checkout_flow_builds_a_cached_store(services, buyer):
    async def scenario():
        rows = await seed_cart(services, buyer, "10", "20")
        async with api_client(services, buyer) as api:
            flow = CheckoutFlow(api, SurfaceChannel())
            before = await flow.cart_items()
            await flow.remove_item(rows[0].id)
            after = await flow.cart_items()
            return flow.store.cache is not None, before, after

    has_cache, before, after = asyncio.run(scenario())
    assert has_cache
    assert len(before) == 2
    assert len(after) == 1
