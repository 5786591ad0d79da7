# storage/__init__.py
# ============================================================================
# CART CHECKOUT SERVICE - STORAGE MODULE
# ============================================================================
# Repository interfaces, in-memory implementations and the entity cache.
# PostgreSQL implementations live in storage.postgres (needs asyncpg).
# ============================================================================

from storage.entity_cache import (
    MISS,
    EntityCache,
)
from storage.repositories import (
    InMemoryAuditLog,
    InMemoryCouponRepository,
    InMemoryPaymentIntentRepository,
    InMemoryProductCatalog,
    InMemoryPurchaseRepository,
)

__all__ = [
    "MISS",
    "EntityCache",
    "InMemoryAuditLog",
    "InMemoryCouponRepository",
    "InMemoryPaymentIntentRepository",
    "InMemoryProductCatalog",
    "InMemoryPurchaseRepository",
]
