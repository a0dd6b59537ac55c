"""
Auction business logic with CAS-guarded atomic operations.

Follows the same pattern as operations/lots.py:
- _auction_cas_retry for atomic read-modify-write
- Exponential backoff on CASMismatchException
- auction_create_lot hands out lot numbers under the auction's CAS
- auction_end staggers the closing of every lot still running
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from couchbase.exceptions import CASMismatchException

from models.entities.couchbase.auctions import Auction, AuctionConfig, AuctionData
from models.entities.couchbase.auto_bids import AutoBid
from models.entities.couchbase.bids import Bid
from models.entities.couchbase.lots import (
    BIDDABLE_STATUSES,
    CLOSED_STATUSES,
    Lot,
    LotData,
    SniperConfig,
)
from models.operations import clock
from models.operations.exceptions import AuctionNotFound, ConcurrencyConflict, InvalidRequest
from models.operations.lots import lot_get_by_auction, lot_schedule_end

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CAS-retry helper
# ---------------------------------------------------------------------------

async def _auction_cas_retry(
    auction_id: str,
    mutator: Callable[[AuctionData], bool],
    max_retries: int = 5,
) -> Tuple[Auction, bool]:
    """Read-modify-write an auction with CAS-guarded retry.

    *mutator* receives ``AuctionData`` and mutates it in place, returning
    False when nothing needs writing. On ``CASMismatchException`` the helper
    re-reads and retries with exponential backoff (10 ms, 20 ms, 40 ms, …).
    """
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        auction = await Auction.get(auction_id)
        if not auction:
            raise AuctionNotFound(auction_id)

        if not mutator(auction.data):
            return auction, False

        try:
            await Auction.update(auction)
            return auction, True
        except CASMismatchException:
            if attempt == max_retries:
                raise ConcurrencyConflict(auction_id)
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2

    raise ConcurrencyConflict(auction_id)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

async def auction_create(
    title: str,
    starts_at: Optional[datetime] = None,
    description: str = "",
    location: Optional[str] = None,
    config: Optional[AuctionConfig] = None,
    user_id: Optional[str] = None,
) -> Auction:
    """Create an auction. Its config is frozen here and copied onto every lot."""
    if not title or not title.strip():
        raise InvalidRequest("Auction title is required")

    now = clock.utcnow()
    starts_at = starts_at or now
    data = AuctionData(
        title=title.strip(),
        description=description,
        location=location,
        config=config or AuctionConfig(),
        starts_at=starts_at,
        status="scheduled" if starts_at > now else "active",
    )
    auction = await Auction.create(data, user_id=user_id)
    logger.info(f"Auction {auction.id} created: {data.title!r}")
    return auction


async def auction_get(auction_id: str) -> Optional[Auction]:
    return await Auction.get(auction_id)


async def auction_require(auction_id: str) -> Auction:
    auction = await Auction.get(auction_id)
    if not auction:
        raise AuctionNotFound(auction_id)
    return auction


async def auction_delete(auction_id: str) -> bool:
    """
    Delete an auction together with its lots and their auto-bids and ledger
    entries. Invoices are kept.

    Refused while a lot is taking bids, or has ended with a winner but has
    not been invoiced yet. Lots go first, so a failure part-way through
    leaves the auction in place to delete again.
    """
    if not await Auction.get(auction_id):
        return False

    lots = await lot_get_by_auction(auction_id)
    blocking = [
        lot for lot in lots
        if lot.data.status in BIDDABLE_STATUSES
        or (lot.data.status == "ended" and lot.data.leader_id)
    ]
    if blocking:
        numbers = ", ".join(str(lot.data.lot_number) for lot in blocking)
        raise InvalidRequest(f"Cannot delete an auction with lots still in progress (lot {numbers})")

    for lot in lots:
        for auto_bid in await AutoBid.find({"lot_id": lot.id}):
            await AutoBid.delete(auto_bid.id)
        for bid in await Bid.find({"lot_id": lot.id}):
            await Bid.delete(bid.id)
        await Lot.delete(lot.id)

    deleted = await Auction.delete(auction_id)
    logger.info(f"Auction {auction_id} deleted with {len(lots)} lot(s)")
    return deleted


async def auction_list(status: Optional[str] = None, limit: int = 50) -> List[Auction]:
    where = {"status": status} if status else None
    return await Auction.find(where, order_by="starts_at DESC", limit=limit)


async def auction_find_pending_settlement() -> List[Auction]:
    """Completed auctions whose settlement has not gone through yet."""
    return await Auction.find(
        {"status": "completed", "settlement_status": ["pending", "failed"]}
    )


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------

async def _allocate_lot_number(auction_id: str) -> Tuple[Auction, int]:
    existing = await lot_get_by_auction(auction_id)
    highest = max((lot.data.lot_number for lot in existing), default=0)
    allocated = {}

    def _mutate(d: AuctionData) -> bool:
        d.last_lot_number = max(d.last_lot_number, highest) + 1
        allocated["number"] = d.last_lot_number
        return True

    auction, _ = await _auction_cas_retry(auction_id, _mutate)
    return auction, allocated["number"]


async def auction_create_lot(
    auction_id: str,
    title: str,
    starting_bid: float,
    bid_increment: Optional[float] = None,
    description: str = "",
    condition: str = "Good",
    image_urls: Optional[List[str]] = None,
    seller_id: Optional[str] = None,
    opens_at: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    default_increment: float = 10.0,
    user_id: Optional[str] = None,
) -> Lot:
    """
    Add a lot to an auction.

    Lots are numbered 1, 2, 3… within the auction. Without an explicit end
    time lot *n* ends ``default_lot_base_minutes + n`` minutes from now, so
    lots fall due one after another.
    """
    if not title or not title.strip():
        raise InvalidRequest("Lot title is required")
    if starting_bid is None or starting_bid < 0:
        raise InvalidRequest("Starting bid must not be negative")
    bid_increment = default_increment if bid_increment is None else bid_increment
    if bid_increment <= 0:
        raise InvalidRequest("Bid increment must be positive")

    await auction_require(auction_id)
    auction, lot_number = await _allocate_lot_number(auction_id)
    cfg = auction.data.config

    now = clock.utcnow()
    opens_at = opens_at or max(auction.data.starts_at, now)
    if end_time is None:
        end_time = max(opens_at, now) + timedelta(minutes=cfg.default_lot_base_minutes + lot_number)
    if end_time <= opens_at:
        raise InvalidRequest("Lot must end after it opens")

    data = LotData(
        auction_id=auction_id,
        lot_number=lot_number,
        title=title.strip(),
        description=description,
        condition=condition,
        image_urls=image_urls or [],
        seller_id=seller_id,
        starting_bid=round(starting_bid, 2),
        bid_increment=round(bid_increment, 2),
        sniper=SniperConfig(
            window_seconds=cfg.sniper_window_seconds,
            min_extension_seconds=cfg.sniper_min_extension_seconds,
        ),
        opens_at=opens_at,
        end_time=end_time,
        current_bid=round(starting_bid, 2),
    )
    lot = await Lot.create(data, user_id=user_id)
    logger.info(f"Lot {lot.id} (#{lot_number}) added to auction {auction_id}")
    return lot


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def auction_end(auction_id: str) -> List[Lot]:
    """
    Close an auction by staggering the end of its lots.

    Lot at position *i* (in lot-number order) ends at ``now + i * stagger``.
    Lots already ended, or already given a closing time by an earlier call,
    are left alone, so calling this twice does not push anything back.
    Sniper protection still applies to the new end times.
    """
    auction = await auction_require(auction_id)
    stagger = auction.data.config.stagger_seconds
    now = clock.utcnow()

    def _mark(d: AuctionData) -> bool:
        if d.close_requested_at is not None:
            return False
        d.close_requested_at = now
        return True

    await _auction_cas_retry(auction_id, _mark)

    scheduled: List[Lot] = []
    for index, lot in enumerate(await lot_get_by_auction(auction_id)):
        if lot.data.status in CLOSED_STATUSES or lot.data.closing_scheduled:
            continue
        end_time = now + timedelta(seconds=index * stagger)
        updated, changed = await lot_schedule_end(lot.id, end_time, closing=True)
        if changed:
            scheduled.append(updated)

    logger.info(f"Auction {auction_id} closing: {len(scheduled)} lot(s) scheduled to end")
    return scheduled


async def auction_refresh_status(auction_id: str) -> Auction:
    """Derive the auction status from its lots. Completed once every lot has ended."""
    lots = await lot_get_by_auction(auction_id)
    now = clock.utcnow()

    def _mutate(d: AuctionData) -> bool:
        if lots and all(lot.data.status in CLOSED_STATUSES for lot in lots):
            status = "completed"
            if d.ends_at is None:
                d.ends_at = max((lot.data.ended_at or now) for lot in lots)
        elif any(lot.data.status in BIDDABLE_STATUSES for lot in lots) or d.starts_at <= now:
            status = "active"
        else:
            status = "scheduled"
        if status == d.status or d.status == "completed":
            return False
        d.status = status
        return True

    auction, changed = await _auction_cas_retry(auction_id, _mutate)
    if changed:
        logger.info(f"Auction {auction_id} is now {auction.data.status}")
    return auction


async def auction_record_settlement(
    auction_id: str, status: str, error: Optional[str] = None
) -> Auction:
    now = clock.utcnow()

    def _mutate(d: AuctionData) -> bool:
        if d.settlement_status == "settled":
            return False
        d.settlement_status = status
        d.settlement_error = error
        d.settlement_attempts += 1
        if status == "settled":
            d.settled_at = now
        return True

    auction, _ = await _auction_cas_retry(auction_id, _mutate)
    return auction
