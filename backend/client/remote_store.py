"""
Remote Purchase Sources
=======================
Purchase and product sources backed by the checkout API, so the buyer-side
context can put a PurchaseStore (and its EntityCache) in front of HTTP.

Reads go through the store's cache; adds and removals go to the API and
the store invalidates `purchases:<owner>` before returning.
"""

from typing import Iterable, Optional

from client.api_client import CheckoutApiClient
from config import Settings, settings as default_settings
from errors import CheckoutError, PurchaseStateConflictError
from payments.models import Buyer, Product, Purchase, PurchaseStatus
from storage.entity_cache import EntityCache
from storage.purchase_store import PurchaseStore
from storage.repositories import IProductSource, IPurchaseSource


def _not_found(error: CheckoutError) -> bool:
    return error.status_code == 404


class HttpPurchaseSource(IPurchaseSource):
    """The API client's own buyer's rows."""

    def __init__(self, api: CheckoutApiClient):
        self.api = api

    def _check_owner(self, buyer: Buyer) -> None:
        if buyer.key != self.api.buyer.key:
            raise ValueError(f"client acts for {self.api.buyer.key}, not {buyer.key}")

    async def get(self, purchase_id: str) -> Optional[Purchase]:
        try:
            return await self.api.get_purchase(purchase_id)
        except CheckoutError as e:
            if _not_found(e):
                return None
            raise

    async def list_by_owner(self, buyer: Buyer, statuses: Optional[Iterable[PurchaseStatus]] = None) -> list[Purchase]:
        self._check_owner(buyer)
        return await self.api.list_purchases(statuses)

    async def create(self, purchase: Purchase) -> Purchase:
        # the server prices the row from its catalog
        return await self.api.add_purchase(purchase.purchasable_type, purchase.purchasable_id, purchase.product_id)

    async def delete_if_status(self, purchase_id: str, expected: PurchaseStatus) -> bool:
        if expected != PurchaseStatus.CART:
            raise ValueError("only cart rows can be removed")
        try:
            await self.api.remove_purchase(purchase_id)
        except PurchaseStateConflictError:
            return False
        except CheckoutError as e:
            if _not_found(e):
                return False
            raise
        return True


class HttpProductSource(IProductSource):

    def __init__(self, api: CheckoutApiClient):
        self.api = api

    async def get_by_entity(self, purchasable_type: str, purchasable_id: str) -> Optional[Product]:
        try:
            return await self.api.get_product(purchasable_type, purchasable_id)
        except CheckoutError as e:
            if _not_found(e):
                return None
            raise

    async def get_by_id(self, product_id: str) -> Optional[Product]:
        try:
            return await self.api.get_product_by_id(product_id)
        except CheckoutError as e:
            if _not_found(e):
                return None
            raise


def build_client_store(
    api: CheckoutApiClient,
    cache: Optional[EntityCache] = None,
    config: Optional[Settings] = None,
) -> PurchaseStore:
    """PurchaseStore over the API with a fresh per-context EntityCache."""
    config = config or default_settings
    if cache is None:
        cache = EntityCache(ttl_seconds=config.CACHE_TTL_SECONDS, max_entries=config.CACHE_MAX_ENTRIES)
    return PurchaseStore(HttpPurchaseSource(api), HttpProductSource(api), cache)
