"""APScheduler setup for the lot lifecycle sweep and settlement retries."""

from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from models.entities.couchbase.lots import Lot
from models.operations import clock
from models.operations.lots import (
    lot_end,
    lot_find_closing_before,
    lot_find_due_to_open,
    lot_mark_ending,
    lot_open,
)
from models.operations.settlement import settlement_on_lot_ended, settlement_retry_pending
from notifications import NotificationGateway
from utils import log

logger = log.get_logger(__name__)

# Lots ending within this horizon are checked for the sniper window each sweep
ENDING_HORIZON = timedelta(minutes=10)

_scheduler: Optional[AsyncIOScheduler] = None


async def close_lot(lot_id: str, gateway: NotificationGateway, due_only: bool = True) -> Optional[Lot]:
    """End a lot, announce it, and settle the auction if it was the last one.

    Returns the lot if this call ended it, None if it was not due or another
    caller got there first.
    """
    lot, changed = await lot_end(lot_id, due_only=due_only)
    if not changed:
        return None
    await gateway.lot_ended(lot)

    result = await settlement_on_lot_ended(lot)
    if result:
        gateway.invoices_issued(result.invoices)
    return lot


async def lot_sweep_job(gateway: NotificationGateway):
    """Open due lots, flag lots entering their sniper window, end expired lots."""
    now = clock.utcnow()

    try:
        due_to_open = await lot_find_due_to_open(now)
        closing = await lot_find_closing_before(now + ENDING_HORIZON)
    except Exception as e:
        logger.error(f"Lot sweep query failed: {e}")
        return

    for lot in due_to_open:
        try:
            opened, changed = await lot_open(lot.id)
            if changed:
                logger.info(f"Lot {lot.id} opened for bidding")
                await gateway.timer_update(opened)
        except Exception as e:
            logger.error(f"Failed to open lot {lot.id}: {e}", exc_info=True)

    for lot in closing:
        try:
            if lot.data.end_time <= now:
                await close_lot(lot.id, gateway)
            elif lot.data.status == "open":
                marked, changed = await lot_mark_ending(lot.id)
                if changed:
                    await gateway.timer_update(marked)
        except Exception as e:
            logger.error(f"Failed to advance lot {lot.id}: {e}", exc_info=True)


async def settlement_retry_job(gateway: NotificationGateway):
    """Retry settlement for completed auctions that are still unsettled."""
    try:
        results = await settlement_retry_pending()
    except Exception as e:
        logger.error(f"Settlement retry job failed: {e}", exc_info=True)
        return
    for result in results:
        gateway.invoices_issued(result.invoices)
    if results:
        logger.info(f"Settlement retry job settled {len(results)} auction(s)")


def init_scheduler(
    gateway: NotificationGateway,
    sweep_interval_seconds: int = 1,
    settlement_retry_interval_seconds: int = 60,
) -> AsyncIOScheduler:
    """Start the APScheduler with the lot sweep and settlement retry jobs."""
    global _scheduler
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        lot_sweep_job,
        trigger=IntervalTrigger(seconds=sweep_interval_seconds),
        args=[gateway],
        id="lot_sweep",
        name="Lot Lifecycle Sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    _scheduler.add_job(
        settlement_retry_job,
        trigger=IntervalTrigger(seconds=settlement_retry_interval_seconds),
        args=[gateway],
        id="settlement_retry",
        name="Settlement Retry",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    _scheduler.start()
    logger.info(
        f"APScheduler started with lot sweep (every {sweep_interval_seconds}s) "
        f"and settlement retry (every {settlement_retry_interval_seconds}s)"
    )
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")
