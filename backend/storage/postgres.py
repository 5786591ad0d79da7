"""
PostgreSQL Repositories
=======================
asyncpg-backed implementations of the repository interfaces.

Status changes are conditional UPDATEs (`WHERE status = $n`); the row
count tells the caller whether it won. Multi-row moves that must be
all-or-nothing run inside one transaction with the rows locked first.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

import asyncpg
import structlog

from coupons.models import Coupon, normalize_code
from database import Database, get_transaction_events, log_event, rows_affected
from payments.models import (
    AuditEventType,
    AuditLogEntry,
    Buyer,
    IntentStatus,
    PaymentIntent,
    Product,
    Purchase,
    PurchaseStatus,
    ReportedOutcome,
    SignalRecord,
    ensure_transition,
    append_signal,
    merge_outcome,
)
from schemas.base import utcnow
from storage.repositories import (
    IAuditLog,
    ICouponRepository,
    IPaymentIntentRepository,
    IProductCatalog,
    IPurchaseRepository,
)


logger = structlog.get_logger().bind(component="postgres_repositories")

ACTIVE = [IntentStatus.CREATED.value, IntentStatus.PENDING.value]


def _json(value, default):
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _owner_filter(owner_key: str) -> tuple[str, str]:
    kind, _, ident = owner_key.partition(":")
    column = "buyer_user_id" if kind == "user" else "guest_identifier"
    return column, ident


# =============================================================================
# PURCHASES
# =============================================================================

PURCHASE_UPDATABLE = {
    "purchasable_type", "purchasable_id", "product_id", "payment_amount",
    "original_price", "discount_amount", "coupon_codes", "metadata",
}


def _purchase_from_row(row: asyncpg.Record) -> Purchase:
    data = dict(row)
    data["metadata"] = _json(data.get("metadata"), {})
    return Purchase.model_validate(data)


class PostgresPurchaseRepository(IPurchaseRepository):

    async def get(self, purchase_id: str) -> Optional[Purchase]:
        row = await Database.fetch_one("SELECT * FROM purchases WHERE id = $1", purchase_id)
        return _purchase_from_row(row) if row else None

    async def get_many(self, purchase_ids: Iterable[str]) -> list[Purchase]:
        ids = list(purchase_ids)
        rows = await Database.fetch_all("SELECT * FROM purchases WHERE id = ANY($1::text[])", ids)
        by_id = {r["id"]: _purchase_from_row(r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    async def list_by_owner(self, buyer: Buyer, statuses: Optional[Iterable[PurchaseStatus]] = None) -> list[Purchase]:
        column, ident = _owner_filter(buyer.key)
        wanted = [s.value for s in statuses] if statuses else None
        rows = await Database.fetch_all(
            f"""
            SELECT * FROM purchases
            WHERE {column} = $1
              AND ($2::text[] IS NULL OR payment_status = ANY($2::text[]))
            ORDER BY created_at DESC
            """,
            ident,
            wanted,
        )
        return [_purchase_from_row(r) for r in rows]

    async def list_by_transaction(self, transaction_id: str) -> list[Purchase]:
        rows = await Database.fetch_all(
            "SELECT * FROM purchases WHERE metadata->>'transactionId' = $1",
            transaction_id,
        )
        return [_purchase_from_row(r) for r in rows]

    async def create(self, purchase: Purchase) -> Purchase:
        await Database.execute(
            """
            INSERT INTO purchases
            (id, buyer_user_id, guest_identifier, purchasable_type, purchasable_id, product_id,
             payment_amount, original_price, discount_amount, coupon_codes, payment_status,
             metadata, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            """,
            purchase.id,
            purchase.buyer_user_id,
            purchase.guest_identifier,
            purchase.purchasable_type,
            purchase.purchasable_id,
            purchase.product_id,
            purchase.payment_amount,
            purchase.original_price,
            purchase.discount_amount,
            purchase.coupon_codes,
            purchase.payment_status.value,
            json.dumps(purchase.metadata),
            purchase.created_at,
            purchase.updated_at,
        )
        return purchase

    async def update(self, purchase_id: str, **fields) -> Optional[Purchase]:
        set_clauses = ["updated_at = NOW()"]
        params = []
        for key, value in fields.items():
            if key not in PURCHASE_UPDATABLE:
                continue
            params.append(json.dumps(value) if key == "metadata" else value)
            set_clauses.append(f"{key} = ${len(params)}")
        params.append(purchase_id)

        row = await Database.fetch_one(
            f"UPDATE purchases SET {', '.join(set_clauses)} WHERE id = ${len(params)} RETURNING *",
            *params,
        )
        return _purchase_from_row(row) if row else None

    async def delete_if_status(self, purchase_id: str, expected: PurchaseStatus) -> bool:
        result = await Database.execute(
            "DELETE FROM purchases WHERE id = $1 AND payment_status = $2",
            purchase_id,
            expected.value,
        )
        return rows_affected(result) == 1

    async def compare_and_set_status(
        self,
        purchase_ids: Iterable[str],
        expected: PurchaseStatus,
        new: PurchaseStatus,
        *,
        all_or_nothing: bool = True,
        amounts: Optional[dict[str, Decimal]] = None,
        metadata: Optional[dict] = None,
        coupon_codes: Optional[list[str]] = None,
    ) -> list[str]:
        ensure_transition(expected, new)
        ids = list(dict.fromkeys(purchase_ids))
        amounts = amounts or {}

        async with Database.transaction() as conn:
            locked = await conn.fetch(
                "SELECT id FROM purchases WHERE id = ANY($1::text[]) AND payment_status = $2 FOR UPDATE",
                ids,
                expected.value,
            )
            if all_or_nothing and len(locked) != len(ids):
                return []

            moved = []
            for record in locked:
                purchase_id = record["id"]
                row = await conn.fetchrow(
                    """
                    UPDATE purchases
                    SET payment_status = $1,
                        updated_at = NOW(),
                        payment_amount = COALESCE($2::numeric, payment_amount),
                        discount_amount = CASE
                            WHEN $2::numeric IS NULL THEN discount_amount
                            ELSE COALESCE(original_price, payment_amount) - $2::numeric
                        END,
                        metadata = metadata || $3::jsonb,
                        coupon_codes = COALESCE($4::text[], coupon_codes)
                    WHERE id = $5 AND payment_status = $6
                    RETURNING id
                    """,
                    new.value,
                    amounts.get(purchase_id),
                    json.dumps(metadata or {}),
                    coupon_codes,
                    purchase_id,
                    expected.value,
                )
                if row:
                    moved.append(row["id"])
            return moved


# =============================================================================
# PAYMENT INTENTS
# =============================================================================

def _intent_from_row(row: asyncpg.Record) -> PaymentIntent:
    data = dict(row)
    data["line_amounts"] = _json(data.get("line_amounts"), {})
    data["signals"] = _json(data.get("signals"), [])
    return PaymentIntent.model_validate(data)


def _intent_values(intent: PaymentIntent) -> list:
    return [
        intent.transaction_id,
        intent.buyer_user_id,
        intent.guest_identifier,
        intent.cart_item_ids,
        intent.subtotal,
        intent.discount_amount,
        intent.total_amount,
        intent.applied_coupon_codes,
        json.dumps({k: str(v) for k, v in intent.line_amounts.items()}),
        intent.environment.value,
        intent.fingerprint,
        intent.status.value,
        intent.provider,
        intent.provider_session_id,
        intent.payment_url,
        intent.provider_transaction_id,
        intent.reported_outcome.value if intent.reported_outcome else None,
        intent.failure_reason,
        json.dumps([s.model_dump(mode="json") for s in intent.signals]),
        intent.restored_cart_item_ids,
        intent.submitted_at,
        intent.paid_at,
        intent.created_at,
        intent.updated_at,
        intent.version,
    ]


INTENT_COLUMNS = (
    "transaction_id, buyer_user_id, guest_identifier, cart_item_ids, subtotal, discount_amount, "
    "total_amount, applied_coupon_codes, line_amounts, environment, fingerprint, status, provider, "
    "provider_session_id, payment_url, provider_transaction_id, reported_outcome, failure_reason, "
    "signals, restored_cart_item_ids, submitted_at, paid_at, created_at, updated_at, version"
)


class PostgresPaymentIntentRepository(IPaymentIntentRepository):

    async def insert_if_no_active(self, intent: PaymentIntent) -> tuple[PaymentIntent, bool]:
        placeholders = ", ".join(f"${i}" for i in range(1, 26))
        for _ in range(2):
            row = await Database.fetch_one(
                f"""
                INSERT INTO payment_intents ({INTENT_COLUMNS})
                VALUES ({placeholders})
                ON CONFLICT (fingerprint) WHERE status IN ('created', 'pending') DO NOTHING
                RETURNING *
                """,
                *_intent_values(intent),
            )
            if row:
                return _intent_from_row(row), True

            existing = await Database.fetch_one(
                "SELECT * FROM payment_intents WHERE fingerprint = $1 AND status = ANY($2::text[])",
                intent.fingerprint,
                ACTIVE,
            )
            if existing:
                return _intent_from_row(existing), False
            # the blocking intent closed between the two statements; try again

        raise RuntimeError(f"could not insert intent {intent.transaction_id}")

    async def get(self, transaction_id: str) -> Optional[PaymentIntent]:
        row = await Database.fetch_one("SELECT * FROM payment_intents WHERE transaction_id = $1", transaction_id)
        return _intent_from_row(row) if row else None

    async def get_by_provider_reference(self, reference: str) -> Optional[PaymentIntent]:
        if not reference:
            return None
        row = await Database.fetch_one(
            """
            SELECT * FROM payment_intents
            WHERE provider_session_id = $1 OR provider_transaction_id = $1
            ORDER BY created_at DESC
            LIMIT 1
            """,
            reference,
        )
        return _intent_from_row(row) if row else None

    async def _write(self, conn, intent: PaymentIntent, expected_version: int) -> bool:
        values = _intent_values(intent)
        assignments = ", ".join(
            f"{column.strip()} = ${i}"
            for i, column in enumerate(INTENT_COLUMNS.split(","), start=1)
            if column.strip() != "transaction_id"
        )
        result = await conn.execute(
            f"""
            UPDATE payment_intents SET {assignments}
            WHERE transaction_id = $1 AND version = $26
            """,
            *values,
            expected_version,
        )
        return rows_affected(result) == 1

    async def _locked(self, conn, transaction_id: str) -> Optional[PaymentIntent]:
        row = await conn.fetchrow(
            "SELECT * FROM payment_intents WHERE transaction_id = $1 FOR UPDATE",
            transaction_id,
        )
        return _intent_from_row(row) if row else None

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: Iterable[IntentStatus],
        new: IntentStatus,
        **fields,
    ) -> Optional[PaymentIntent]:
        expected = set(expected)
        async with Database.transaction() as conn:
            current = await self._locked(conn, transaction_id)
            if current is None or current.status not in expected:
                return None
            updated = current.transition_to(new, **fields)
            if not await self._write(conn, updated, current.version):
                return None
            return updated

    async def record_signal(
        self,
        transaction_id: str,
        signal: SignalRecord,
        *,
        reported_outcome: Optional[ReportedOutcome] = None,
        submitted_at: Optional[datetime] = None,
        provider_transaction_id: Optional[str] = None,
    ) -> Optional[PaymentIntent]:
        async with Database.transaction() as conn:
            current = await self._locked(conn, transaction_id)
            if current is None:
                return None
            update = {
                "signals": append_signal(current.signals, signal),
                "reported_outcome": merge_outcome(current.reported_outcome, reported_outcome),
                "updated_at": utcnow(),
                "version": current.version + 1,
            }
            if submitted_at and current.submitted_at is None:
                update["submitted_at"] = submitted_at
            if provider_transaction_id and current.provider_transaction_id is None:
                update["provider_transaction_id"] = provider_transaction_id
            updated = current.model_copy(update=update)
            await self._write(conn, updated, current.version)
            return updated

    async def update(self, transaction_id: str, **fields) -> Optional[PaymentIntent]:
        fields.pop("status", None)
        async with Database.transaction() as conn:
            current = await self._locked(conn, transaction_id)
            if current is None:
                return None
            updated = current.model_copy(update={
                **fields,
                "updated_at": utcnow(),
                "version": current.version + 1,
            })
            await self._write(conn, updated, current.version)
            return updated

    async def list_stale(self, older_than: datetime, limit: int = 50) -> list[PaymentIntent]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM payment_intents
            WHERE status = ANY($1::text[]) AND created_at < $2
            ORDER BY created_at ASC
            LIMIT $3
            """,
            ACTIVE,
            older_than,
            limit,
        )
        return [_intent_from_row(r) for r in rows]

    async def list_active_by_owner(self, owner_key: str) -> list[PaymentIntent]:
        column, ident = _owner_filter(owner_key)
        rows = await Database.fetch_all(
            f"SELECT * FROM payment_intents WHERE {column} = $1 AND status = ANY($2::text[])",
            ident,
            ACTIVE,
        )
        return [_intent_from_row(r) for r in rows]


# =============================================================================
# COUPONS / PRODUCTS
# =============================================================================

def _coupon_from_row(row: asyncpg.Record) -> Coupon:
    data = dict(row)
    data["targeting_criteria"] = _json(data.get("targeting_criteria"), None)
    return Coupon.model_validate(data)


class PostgresCouponRepository(ICouponRepository):

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        row = await Database.fetch_one("SELECT * FROM coupons WHERE code = $1", normalize_code(code))
        return _coupon_from_row(row) if row else None

    async def list_public(self) -> list[Coupon]:
        rows = await Database.fetch_all("SELECT * FROM coupons WHERE visibility = 'public'")
        return [_coupon_from_row(r) for r in rows]

    async def save(self, coupon: Coupon) -> Coupon:
        await Database.execute(
            """
            INSERT INTO coupons
            (code, name, description, discount_type, discount_value, minimum_amount, targeting_type,
             targeting_criteria, user_segments, visibility, priority_level, can_stack, usage_limit,
             usage_count, valid_from, valid_until, is_active)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
            ON CONFLICT (code) DO UPDATE SET
                name = EXCLUDED.name,
                description = EXCLUDED.description,
                discount_type = EXCLUDED.discount_type,
                discount_value = EXCLUDED.discount_value,
                minimum_amount = EXCLUDED.minimum_amount,
                targeting_type = EXCLUDED.targeting_type,
                targeting_criteria = EXCLUDED.targeting_criteria,
                user_segments = EXCLUDED.user_segments,
                visibility = EXCLUDED.visibility,
                priority_level = EXCLUDED.priority_level,
                can_stack = EXCLUDED.can_stack,
                usage_limit = EXCLUDED.usage_limit,
                valid_from = EXCLUDED.valid_from,
                valid_until = EXCLUDED.valid_until,
                is_active = EXCLUDED.is_active
            """,
            coupon.code,
            coupon.name,
            coupon.description,
            coupon.discount_type.value,
            coupon.discount_value,
            coupon.minimum_amount,
            coupon.targeting_type.value,
            json.dumps(coupon.targeting_criteria) if coupon.targeting_criteria is not None else None,
            coupon.user_segments,
            coupon.visibility.value,
            coupon.priority_level,
            coupon.can_stack,
            coupon.usage_limit,
            coupon.usage_count,
            coupon.valid_from,
            coupon.valid_until,
            coupon.is_active,
        )
        return coupon

    async def increment_usage(self, code: str) -> bool:
        result = await Database.execute(
            """
            UPDATE coupons SET usage_count = usage_count + 1
            WHERE code = $1 AND (usage_limit IS NULL OR usage_count < usage_limit)
            """,
            normalize_code(code),
        )
        return rows_affected(result) == 1


def _product_from_row(row: asyncpg.Record) -> Product:
    data = dict(row)
    data["metadata"] = _json(data.get("metadata"), {})
    return Product.model_validate(data)


class PostgresProductCatalog(IProductCatalog):

    async def get_by_entity(self, purchasable_type: str, purchasable_id: str) -> Optional[Product]:
        row = await Database.fetch_one(
            "SELECT * FROM products WHERE purchasable_type = $1 AND purchasable_id = $2",
            purchasable_type,
            purchasable_id,
        )
        return _product_from_row(row) if row else None

    async def get_by_id(self, product_id: str) -> Optional[Product]:
        row = await Database.fetch_one("SELECT * FROM products WHERE id = $1", product_id)
        return _product_from_row(row) if row else None

    async def save(self, product: Product) -> Product:
        await Database.execute(
            """
            INSERT INTO products (id, purchasable_type, purchasable_id, title, price, metadata)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE SET
                purchasable_type = EXCLUDED.purchasable_type,
                purchasable_id = EXCLUDED.purchasable_id,
                title = EXCLUDED.title,
                price = EXCLUDED.price,
                metadata = EXCLUDED.metadata
            """,
            product.id,
            product.purchasable_type,
            product.purchasable_id,
            product.title,
            product.price,
            json.dumps(product.metadata),
        )
        return product


# =============================================================================
# AUDIT LOG (system_events)
# =============================================================================

class PostgresAuditLog(IAuditLog):
    """Audit entries go to the Black Box table."""

    async def append(self, entry: AuditLogEntry) -> None:
        severity = "CRITICAL" if entry.event_type == AuditEventType.LATE_SUCCESS else "INFO"
        await log_event(
            transaction_id=entry.correlation_id,
            event_type=entry.event_type.value,
            payload={
                "previous_state": entry.previous_state,
                "new_state": entry.new_state,
                "metadata": entry.metadata,
            },
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            actor=entry.actor,
            severity=severity,
            event_id=entry.log_id,
            timestamp=entry.timestamp,
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        entries = []
        for event in await get_transaction_events(correlation_id):
            payload = event.get("payload") or {}
            entries.append(AuditLogEntry(
                log_id=str(event["id"]),
                correlation_id=event["transaction_id"],
                event_type=AuditEventType(event["event_type"]),
                entity_type=event.get("entity_type") or "intent",
                entity_id=event.get("entity_id") or correlation_id,
                previous_state=payload.get("previous_state"),
                new_state=payload.get("new_state"),
                metadata=payload.get("metadata") or {},
                timestamp=event["timestamp"],
                actor=event.get("actor") or "system",
            ))
        return entries
