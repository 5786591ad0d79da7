"""
Database Module - The Black Box
================================
PostgreSQL persistence for the checkout service.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Idempotent migrations for purchases, payment intents, coupons, products
- The Black Box (system_events) for the audit trail
- Transaction helper for multi-statement compare-and-set writes

pip install asyncpg
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

import asyncpg
import structlog

from config import settings

# Configure logger
logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONFIGURATION
# =============================================================================

class DatabaseConfig:
    """Database configuration from environment"""

    DATABASE_URL = settings.DATABASE_URL
    MIN_POOL_SIZE = settings.DB_MIN_POOL_SIZE
    MAX_POOL_SIZE = settings.DB_MAX_POOL_SIZE


config = DatabaseConfig()


Severity = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False
    _init_lock: Optional[asyncio.Lock] = None

    @classmethod
    async def initialize(cls):
        """Initialize the connection pool"""
        if cls._initialized:
            return
        if cls._init_lock is None:
            cls._init_lock = asyncio.Lock()

        async with cls._init_lock:
            if cls._initialized:
                return
            try:
                cls._pool = await asyncpg.create_pool(
                    config.DATABASE_URL,
                    min_size=config.MIN_POOL_SIZE,
                    max_size=config.MAX_POOL_SIZE,
                )
                cls._initialized = True
                logger.info("pool_initialized", min_size=config.MIN_POOL_SIZE, max_size=config.MAX_POOL_SIZE)

                # Run migrations on startup
                await cls._run_migrations()

            except (OSError, asyncpg.PostgresError) as e:
                logger.error("pool_initialization_failed", error=str(e))
                raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    @asynccontextmanager
    async def transaction(cls):
        """Connection with an open transaction; rolled back on error."""
        async with cls.acquire() as conn:
            async with conn.transaction():
                yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        """Execute a query"""
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row"""
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        """Fetch all rows"""
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            # Purchase rows: cart items and bought items
            """
            CREATE TABLE IF NOT EXISTS purchases (
                id TEXT PRIMARY KEY,
                buyer_user_id TEXT,
                guest_identifier TEXT,
                purchasable_type VARCHAR(50),
                purchasable_id TEXT,
                product_id TEXT,
                payment_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
                original_price NUMERIC(12, 2),
                discount_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
                coupon_codes TEXT[] NOT NULL DEFAULT '{}',
                payment_status VARCHAR(20) NOT NULL DEFAULT 'cart',
                metadata JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CHECK ((buyer_user_id IS NULL) <> (guest_identifier IS NULL))
            )
            """,

            # Payment intents: one per checkout attempt
            """
            CREATE TABLE IF NOT EXISTS payment_intents (
                transaction_id TEXT PRIMARY KEY,
                buyer_user_id TEXT,
                guest_identifier TEXT,
                cart_item_ids TEXT[] NOT NULL,
                subtotal NUMERIC(12, 2) NOT NULL,
                discount_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
                total_amount NUMERIC(12, 2) NOT NULL,
                applied_coupon_codes TEXT[] NOT NULL DEFAULT '{}',
                line_amounts JSONB NOT NULL DEFAULT '{}',
                environment VARCHAR(20) NOT NULL DEFAULT 'test',
                fingerprint TEXT NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'created',
                provider VARCHAR(20),
                provider_session_id TEXT,
                payment_url TEXT,
                provider_transaction_id TEXT,
                reported_outcome VARCHAR(20),
                failure_reason TEXT,
                signals JSONB NOT NULL DEFAULT '[]',
                restored_cart_item_ids TEXT[] NOT NULL DEFAULT '{}',
                submitted_at TIMESTAMPTZ,
                paid_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                version INTEGER NOT NULL DEFAULT 1
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS coupons (
                code TEXT PRIMARY KEY,
                name TEXT,
                description TEXT,
                discount_type VARCHAR(20) NOT NULL,
                discount_value NUMERIC(12, 2) NOT NULL,
                minimum_amount NUMERIC(12, 2),
                targeting_type VARCHAR(20) NOT NULL DEFAULT 'general',
                targeting_criteria JSONB,
                user_segments TEXT[] NOT NULL DEFAULT '{}',
                visibility VARCHAR(10) NOT NULL DEFAULT 'secret',
                priority_level INTEGER NOT NULL DEFAULT 5,
                can_stack BOOLEAN NOT NULL DEFAULT FALSE,
                usage_limit INTEGER,
                usage_count INTEGER NOT NULL DEFAULT 0,
                valid_from TIMESTAMPTZ,
                valid_until TIMESTAMPTZ,
                is_active BOOLEAN NOT NULL DEFAULT TRUE
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                purchasable_type VARCHAR(50),
                purchasable_id TEXT,
                title TEXT NOT NULL,
                price NUMERIC(12, 2) NOT NULL DEFAULT 0,
                metadata JSONB NOT NULL DEFAULT '{}'
            )
            """,

            # THE BLACK BOX: audit trail
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id UUID PRIMARY KEY,
                transaction_id TEXT,
                timestamp TIMESTAMPTZ DEFAULT NOW(),
                event_type VARCHAR(50) NOT NULL,
                entity_type VARCHAR(30),
                entity_id TEXT,
                actor VARCHAR(30),
                payload JSONB NOT NULL DEFAULT '{}',
                severity VARCHAR(10) DEFAULT 'INFO'
            )
            """,

            # Create indexes
            "CREATE INDEX IF NOT EXISTS idx_purchases_user ON purchases(buyer_user_id)",
            "CREATE INDEX IF NOT EXISTS idx_purchases_guest ON purchases(guest_identifier)",
            "CREATE INDEX IF NOT EXISTS idx_purchases_txn ON purchases((metadata->>'transactionId'))",
            "CREATE INDEX IF NOT EXISTS idx_intents_status_created ON payment_intents(status, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_intents_provider_session ON payment_intents(provider_session_id)",
            "CREATE INDEX IF NOT EXISTS idx_intents_provider_txn ON payment_intents(provider_transaction_id)",
            # at most one active intent per cart fingerprint
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_intents_active_fingerprint
            ON payment_intents(fingerprint)
            WHERE status IN ('created', 'pending')
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_products_entity
            ON products(purchasable_type, purchasable_id)
            """,
            "CREATE INDEX IF NOT EXISTS idx_events_txn ON system_events(transaction_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_type ON system_events(event_type)",
            "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON system_events(timestamp DESC)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    # Index might already exist, that's fine
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))

        logger.info("migrations_complete", count=len(migrations))


def rows_affected(status: str) -> int:
    """Row count from an asyncpg command tag like 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


# =============================================================================
# THE BLACK BOX: Event Logging
# =============================================================================

async def log_event(
    transaction_id: Optional[str],
    event_type: str,
    payload: Dict[str, Any],
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor: Optional[str] = None,
    severity: Severity = "INFO",
    event_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> str:
    """
    Unified audit logging for every state change.

    This is "The Black Box" - every significant event in a checkout flows
    through here, creating a complete audit trail per transaction.

    Args:
        transaction_id: Checkout this event belongs to (optional)
        event_type: e.g. "payment.confirmed"
        payload: Event-specific data
        entity_type / entity_id: What changed
        actor: system, callback, surface, client, sweeper
        severity: DEBUG, INFO, WARN, ERROR, CRITICAL

    Returns:
        Event ID
    """
    event_id = event_id or str(uuid4())
    timestamp = timestamp or datetime.now(timezone.utc)

    try:
        await Database.execute(
            """
            INSERT INTO system_events
            (id, transaction_id, timestamp, event_type, entity_type, entity_id, actor, payload, severity)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            event_id,
            transaction_id,
            timestamp,
            event_type,
            entity_type,
            entity_id,
            actor,
            json.dumps(payload, default=str),
            severity,
        )
    except (OSError, asyncpg.PostgresError) as e:
        # audit write failures are logged, not raised
        logger.error("event_log_failed", event_type=event_type, transaction_id=transaction_id, error=str(e))

    return event_id


async def get_transaction_events(
    transaction_id: str,
    event_types: Optional[List[str]] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Get all events for a transaction, oldest first"""

    if event_types:
        query = """
            SELECT * FROM system_events
            WHERE transaction_id = $1 AND event_type = ANY($2)
            ORDER BY timestamp ASC
            LIMIT $3
        """
        rows = await Database.fetch_all(query, transaction_id, event_types, limit)
    else:
        query = """
            SELECT * FROM system_events
            WHERE transaction_id = $1
            ORDER BY timestamp ASC
            LIMIT $2
        """
        rows = await Database.fetch_all(query, transaction_id, limit)

    results = []
    for row in rows:
        result = dict(row)
        if isinstance(result.get("payload"), str):
            result["payload"] = json.loads(result["payload"])
        results.append(result)
    return results


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database():
    """Initialize database on app startup"""
    await Database.initialize()


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
