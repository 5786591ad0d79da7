"""
Abandonment Sweep - The Safety Net
===================================
Background task that finds payment intents still open past the payment
timeout and closes them.

Per stale intent the reconciler polls the provider once (a payment that
went through is finalized, not abandoned), then classifies:
reported failure -> failed, provider cancel -> cancelled, else abandoned.

Features:
- Runs every SWEEP_INTERVAL_SECONDS
- Finds intents older than PAYMENT_TIMEOUT_MINUTES
- Bounded batch per cycle
- One bad intent never stops the cycle
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import structlog

from config import settings
from errors import CheckoutError
from payments.models import ACTIVE_INTENT_STATUSES, IntentStatus
from payments.reconciler import CompletionReconciler
from schemas.base import utcnow

# Configure logger
logger = structlog.get_logger().bind(component="abandonment_sweep")


# =============================================================================
# CONFIGURATION
# =============================================================================

class SweepConfig:
    """Abandonment sweep configuration"""

    # How often to look for stale intents (seconds)
    CHECK_INTERVAL = settings.SWEEP_INTERVAL_SECONDS

    # How long an intent may stay open (minutes)
    TIMEOUT_MINUTES = settings.PAYMENT_TIMEOUT_MINUTES

    # Maximum intents to process per cycle
    MAX_INTENTS_PER_CYCLE = settings.SWEEP_BATCH_SIZE

    # Enable/disable the sweep loop
    ENABLED = settings.SWEEP_ENABLED


config = SweepConfig()

_stats = {
    "cycles": 0,
    "processed": 0,
    "closed": {},
    "errors": 0,
    "last_run": None,
}


# =============================================================================
# SWEEP LOGIC
# =============================================================================

async def run_sweep_cycle(
    reconciler: CompletionReconciler,
    now: Optional[datetime] = None,
    timeout_minutes: Optional[int] = None,
    limit: Optional[int] = None,
) -> dict[str, list[str]]:
    """
    One pass over stale intents.

    Returns:
        Transaction ids grouped by the status each intent ended in
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=timeout_minutes or config.TIMEOUT_MINUTES)
    stale = await reconciler.intents.list_stale(cutoff, limit=limit or config.MAX_INTENTS_PER_CYCLE)

    results: dict[str, list[str]] = {}
    if stale:
        logger.warning("stale_intents_found", count=len(stale), cutoff=cutoff.isoformat())

    for intent in stale:
        try:
            closed = await reconciler.expire(intent.transaction_id)
        except CheckoutError as e:
            _stats["errors"] += 1
            logger.error("sweep_intent_failed",
                         transaction_id=intent.transaction_id,
                         reason=e.reason,
                         error=e.message)
            continue
        except Exception as e:
            # oldest first: one broken intent must not block the ones behind it
            _stats["errors"] += 1
            logger.error("sweep_intent_failed",
                         transaction_id=intent.transaction_id,
                         error=str(e),
                         error_type=type(e).__name__,
                         exc_info=True)
            continue

        results.setdefault(closed.status.value, []).append(intent.transaction_id)
        if closed.status in ACTIVE_INTENT_STATUSES:
            logger.warning("intent_still_open_after_sweep", transaction_id=intent.transaction_id)
        elif closed.status == IntentStatus.PAID:
            logger.info("sweep_found_payment", transaction_id=intent.transaction_id)

    _stats["cycles"] += 1
    _stats["processed"] += len(stale)
    _stats["last_run"] = now.isoformat()
    for status, ids in results.items():
        _stats["closed"][status] = _stats["closed"].get(status, 0) + len(ids)

    if stale:
        logger.info("sweep_cycle_complete",
                    processed=len(stale),
                    outcomes={k: len(v) for k, v in results.items()})
    return results


async def abandonment_loop(reconciler: CompletionReconciler, interval: Optional[float] = None):
    """
    Background task that runs every SWEEP_INTERVAL_SECONDS until cancelled.
    """
    interval = interval or config.CHECK_INTERVAL
    logger.info(
        "sweep_loop_started",
        interval=interval,
        timeout_minutes=config.TIMEOUT_MINUTES,
        enabled=config.ENABLED,
    )

    if not config.ENABLED:
        logger.info("sweep_loop_disabled")
        return

    while True:
        try:
            await run_sweep_cycle(reconciler)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # keep the loop alive; the next cycle retries
            _stats["errors"] += 1
            logger.error("sweep_loop_error", error=str(e), exc_info=True)

        await asyncio.sleep(interval)


# =============================================================================
# HEALTH CHECK
# =============================================================================

async def get_sweep_stats(reconciler: Optional[CompletionReconciler] = None) -> dict:
    """Sweep statistics for monitoring"""
    stats = {
        "enabled": config.ENABLED,
        "interval_seconds": config.CHECK_INTERVAL,
        "timeout_minutes": config.TIMEOUT_MINUTES,
        **{k: (dict(v) if isinstance(v, dict) else v) for k, v in _stats.items()},
    }
    if reconciler is not None:
        cutoff = utcnow() - timedelta(minutes=config.TIMEOUT_MINUTES)
        stale = await reconciler.intents.list_stale(cutoff, limit=config.MAX_INTENTS_PER_CYCLE)
        stats["currently_stale"] = len(stale)
    return stats


def reset_sweep_stats() -> None:
    _stats.update(cycles=0, processed=0, closed={}, errors=0, last_run=None)
