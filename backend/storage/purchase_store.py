"""
Purchase Store
==============
Cached read path + mutation path for a buyer's purchase rows and the
products they point at.

Cache keys:
    purchases:<owner_key>        every row the buyer owns
    product:<type>:<id>          product behind a purchasable entity
    product:id:<product_id>      legacy rows that point straight at a product

Every mutation invalidates the affected keys before returning. A read that
was already in flight when the mutation landed does not write its (older)
result back into the cache.
"""

from typing import Iterable, Optional

import structlog

from errors import CartValidationError, PurchaseStateConflictError
from payments.models import Buyer, Product, Purchase, PurchaseStatus
from storage.entity_cache import MISS, EntityCache
from storage.repositories import IProductSource, IPurchaseRepository, IPurchaseSource


def purchases_key(owner_key: str) -> str:
    return f"purchases:{owner_key}"


def product_key(purchasable_type: str, purchasable_id: str) -> str:
    return f"product:{purchasable_type}:{purchasable_id}"


def legacy_product_key(product_id: str) -> str:
    return f"product:id:{product_id}"


class PurchaseStore:
    """
    Glue between the purchase/product sources and an EntityCache.
    The sources are the repositories on the server (cache=None reads straight
    through) or the HTTP-backed ones in client.remote_store on the buyer side.
    """

    def __init__(
        self,
        purchases: IPurchaseSource,
        catalog: IProductSource,
        cache: Optional[EntityCache] = None,
    ):
        self.purchases = purchases
        self.catalog = catalog
        self.cache = cache
        self._generations: dict[str, int] = {}
        self._logger = structlog.get_logger().bind(component="purchase_store")

    # -------------------------------------------------------------------------
    # cache plumbing
    # -------------------------------------------------------------------------

    def _cached(self, key: str):
        if self.cache is None:
            return MISS
        return self.cache.get(key)

    def _store(self, key: str, value, generation: int) -> None:
        if self.cache is None or value is None:
            return
        if self._generations.get(key, 0) != generation:
            # invalidated while the fetch was in flight
            return
        self.cache.put(key, value)

    def _invalidate(self, key: str) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1
        if self.cache is not None:
            self.cache.invalidate(key)

    def invalidate_owner(self, owner: Buyer | str) -> None:
        owner_key = owner.key if isinstance(owner, Buyer) else owner
        self._invalidate(purchases_key(owner_key))

    def invalidate_product(self, purchasable_type: Optional[str], purchasable_id: Optional[str],
                           product_id: Optional[str] = None) -> None:
        if purchasable_type and purchasable_id:
            self._invalidate(product_key(purchasable_type, purchasable_id))
        if product_id:
            self._invalidate(legacy_product_key(product_id))

    # -------------------------------------------------------------------------
    # reads
    # -------------------------------------------------------------------------

    async def list_purchases(
        self,
        buyer: Buyer,
        statuses: Optional[Iterable[PurchaseStatus]] = None,
    ) -> list[Purchase]:
        key = purchases_key(buyer.key)
        rows = self._cached(key)
        if rows is MISS:
            generation = self._generations.get(key, 0)
            rows = await self.purchases.list_by_owner(buyer)
            self._store(key, rows, generation)

        if statuses:
            wanted = set(statuses)
            return [p for p in rows if p.payment_status in wanted]
        return list(rows)

    async def cart_items(self, buyer: Buyer) -> list[Purchase]:
        return await self.list_purchases(buyer, [PurchaseStatus.CART])

    async def pending_items(self, buyer: Buyer) -> list[Purchase]:
        return await self.list_purchases(buyer, [PurchaseStatus.PENDING])

    async def get_product(
        self,
        purchasable_type: Optional[str] = None,
        purchasable_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Optional[Product]:
        """
        Resolve the product behind an entity. Rows from before entity typing
        only carry product_id, so fall back to a direct id lookup.
        """
        if purchasable_type and purchasable_id:
            key = product_key(purchasable_type, purchasable_id)
            product = self._cached(key)
            if product is not MISS:
                return product
            generation = self._generations.get(key, 0)
            product = await self.catalog.get_by_entity(purchasable_type, purchasable_id)
            if product is not None:
                self._store(key, product, generation)
                return product

        fallback_id = product_id or purchasable_id
        if not fallback_id:
            return None

        key = legacy_product_key(fallback_id)
        product = self._cached(key)
        if product is not MISS:
            return product
        generation = self._generations.get(key, 0)
        product = await self.catalog.get_by_id(fallback_id)
        if product is not None:
            self._logger.debug("product_legacy_fallback", product_id=fallback_id)
        self._store(key, product, generation)
        return product

    async def product_for(self, purchase: Purchase) -> Optional[Product]:
        return await self.get_product(purchase.purchasable_type, purchase.purchasable_id, purchase.product_id)

    # -------------------------------------------------------------------------
    # mutations
    # -------------------------------------------------------------------------

    async def add_to_cart(
        self,
        buyer: Buyer,
        purchasable_type: Optional[str] = None,
        purchasable_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Purchase:
        """Add a catalog item to the cart. The row is always priced from the catalog."""
        if not ((purchasable_type and purchasable_id) or product_id):
            raise CartValidationError("Nothing to add", reason="invalid_item")

        product = await self.get_product(purchasable_type, purchasable_id, product_id)
        if product is None:
            raise CartValidationError("Product not found", reason="product_not_found")

        existing = await self.purchases.list_by_owner(buyer, [PurchaseStatus.CART, PurchaseStatus.PENDING])
        for row in existing:
            same_entity = (purchasable_type and row.purchasable_type == purchasable_type
                           and row.purchasable_id == purchasable_id)
            same_product = product_id and not purchasable_type and row.product_id == product_id
            if same_entity or same_product:
                raise CartValidationError("Item already in cart", reason="already_in_cart")

        purchase = Purchase(
            **buyer.owner_fields(),
            purchasable_type=purchasable_type,
            purchasable_id=purchasable_id,
            product_id=product_id or product.id,
            payment_amount=product.price,
            metadata={"productTitle": product.title},
        )
        created = await self.purchases.create(purchase)
        self.invalidate_owner(buyer)
        self._logger.info("cart_item_added", purchase_id=created.id, owner=buyer.key)
        return created

    async def remove_from_cart(self, buyer: Buyer, purchase_id: str) -> None:
        """Delete a cart row. Rows already checked out cannot be removed."""
        row = await self.purchases.get(purchase_id)
        if row is None or not buyer.owns(row):
            raise CartValidationError("Cart item not found", reason="cart_item_not_found", status_code=404)

        if row.payment_status != PurchaseStatus.CART:
            raise PurchaseStateConflictError(current_status=row.payment_status.value, entity_id=purchase_id)

        deleted = await self.purchases.delete_if_status(purchase_id, PurchaseStatus.CART)
        self.invalidate_owner(buyer)
        if not deleted:
            # moved to pending between the read and the delete
            current = await self.purchases.get(purchase_id)
            status = current.payment_status.value if current else None
            raise PurchaseStateConflictError(current_status=status, entity_id=purchase_id)

        self._logger.info("cart_item_removed", purchase_id=purchase_id, owner=buyer.key)

    async def update_purchase(self, purchase_id: str, **fields) -> Optional[Purchase]:
        if not isinstance(self.purchases, IPurchaseRepository):
            raise TypeError("update_purchase needs a writable purchase repository")
        updated = await self.purchases.update(purchase_id, **fields)
        if updated is not None:
            self.invalidate_owner(updated.owner_key)
        return updated
