"""
Lot state machine and the bid-acceptance primitive.

Every mutation of a lot goes through _lot_cas_retry: read the document with
its CAS, let a mutator validate and change it, then replace it guarded by that
CAS. Two writers that read the same state cannot both commit, so two bids
against the same price cannot both win.

Status only moves forward: scheduled -> open -> ending -> ended -> settled.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from couchbase.exceptions import (
    AmbiguousTimeoutException,
    CASMismatchException,
    CouchbaseException,
    TemporaryFailException,
    TimeoutException,
    UnAmbiguousTimeoutException,
)

from models.entities.couchbase.bids import Bid
from models.entities.couchbase.lots import (
    CLOSED_STATUSES,
    LOT_STATUS_ORDER,
    LastBid,
    Lot,
    LotData,
)
from models.operations import clock
from models.operations.bids import bid_append, bid_entry, bid_key, bid_ledger_repair
from models.operations.exceptions import (
    AlreadyLeading,
    BidTooLow,
    ConcurrencyConflict,
    InvalidRequest,
    LotChanged,
    LotClosed,
    LotNotFound,
    LotNotOpen,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5

# Cluster errors worth another attempt. A replace that timed out may still
# have landed; the re-read then shows it and the mutator decides.
TRANSIENT_ERRORS = (
    AmbiguousTimeoutException,
    UnAmbiguousTimeoutException,
    TimeoutException,
    TemporaryFailException,
)
TRANSIENT_RETRIES = 3

# Fields an admin may edit on a lot; price, leader and status are never editable.
EDITABLE_FIELDS = {"title", "description", "condition", "image_urls"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def lot_minimum_next_bid(data: LotData) -> float:
    return round(data.current_bid + data.bid_increment, 2)


def _advance_status(data: LotData, status: str) -> bool:
    """Move ``data.status`` forward to ``status``. Never moves backward."""
    if LOT_STATUS_ORDER.index(status) <= LOT_STATUS_ORDER.index(data.status):
        return False
    data.status = status
    return True


def _in_sniper_window(data: LotData, now: datetime) -> bool:
    if data.end_time is None:
        return False
    remaining = (data.end_time - now).total_seconds()
    return 0 < remaining <= data.sniper.window_seconds


async def _lot_cas_retry(
    lot_id: str,
    mutator: Callable[[LotData], bool],
    max_retries: int = DEFAULT_MAX_RETRIES,
    prepare: Optional[Callable[[Lot], Awaitable[Any]]] = None,
) -> Tuple[Lot, bool]:
    """Read-modify-write a lot with CAS-guarded retry.

    *mutator* receives ``LotData`` and mutates it in place. It returns True
    when the document must be written and False when there is nothing to
    change; it may raise a ``BiddingError`` to abort. Validation therefore
    runs again against fresh state on every attempt. *prepare*, when given,
    is awaited with the freshly read lot before the mutator runs.

    ``CASMismatchException`` re-reads and retries up to *max_retries* times;
    transient cluster errors (timeouts, temporary failures) up to
    ``TRANSIENT_RETRIES`` times. Both back off exponentially (10 ms, 20 ms,
    40 ms, …).

    Returns ``(lot, changed)``. Raises ``LotNotFound``, ``ConcurrencyConflict``
    once CAS retries are exhausted, or the last transient error.
    """
    backoff_ms = 10
    conflicts = 0
    transient = 0
    while True:
        try:
            lot = await Lot.get(lot_id)
            if not lot:
                raise LotNotFound(lot_id)
            if prepare is not None:
                await prepare(lot)

            if not mutator(lot.data):
                return lot, False

            await Lot.update(lot)
            return lot, True
        except CASMismatchException:
            conflicts += 1
            logger.debug(f"CAS conflict on lot {lot_id} (attempt {conflicts})")
            if conflicts > max_retries:
                raise ConcurrencyConflict(lot_id)
        except TRANSIENT_ERRORS as e:
            transient += 1
            logger.warning(f"Transient error on lot {lot_id} (attempt {transient}): {e}")
            if transient > TRANSIENT_RETRIES:
                raise
        await asyncio.sleep(backoff_ms / 1000)
        backoff_ms *= 2


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def lot_get(lot_id: str) -> Optional[Lot]:
    return await Lot.get(lot_id)


async def lot_get_by_auction(auction_id: str) -> List[Lot]:
    """All lots of an auction in lot-number order."""
    return await Lot.find({"auction_id": auction_id}, order_by="lot_number ASC")


async def lot_find_due_to_open(now: datetime) -> List[Lot]:
    return await Lot.find({"status": "scheduled", "opens_at": ("<=", now)})


async def lot_find_closing_before(until: datetime) -> List[Lot]:
    """Unfinished lots whose end time falls before ``until``."""
    return await Lot.find(
        {"status": ["scheduled", "open", "ending"], "end_time": ("<=", until)},
        order_by="end_time ASC",
    )


# ---------------------------------------------------------------------------
# Bid acceptance (CAS-critical)
# ---------------------------------------------------------------------------

@dataclass
class AcceptedBid:
    """A committed bid and the lot state it produced."""
    bid: Bid
    lot: Lot
    previous_leader_id: Optional[str]
    previous_bid: float
    extended: bool

    @property
    def displaced_leader_id(self) -> Optional[str]:
        """The bidder who lost the lead, unless they merely raised themselves."""
        if self.previous_leader_id and self.previous_leader_id != self.bid.data.bidder_id:
            return self.previous_leader_id
        return None


async def lot_apply_bid(
    lot_id: str,
    bidder_id: str,
    amount: float,
    *,
    is_auto_bid: bool = False,
    auto_bid_id: Optional[str] = None,
    expected_bid_count: Optional[int] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> AcceptedBid:
    """
    Atomically accept one bid on a lot.

    CAS flow:
    1. Read lot with CAS and make sure the ledger holds the bid it last
       accepted (``bid_ledger_repair``), so no entry can be lost once
       ``last_bid`` moves on
    2. Validate (status, timing, leader, minimum amount)
    3. Write new price, leader and sequence; lazily open a due scheduled lot
    4. Sniper protection: inside the window, push end_time to bid time + window
       (only if that moves it by at least the minimum extension) and mark ending
    5. Append the ledger entry for the sequence this CAS claimed

    Once step 3 has committed the bid stands: a failed ledger append in step 5
    is logged and left for the next bid (or settlement) to repair, never
    reported to the caller. A write whose reply was lost is recognised on the
    re-read by its ``last_bid`` and not applied twice.

    ``expected_bid_count`` pins the bid to the lot state it was planned
    against (used by the auto-bid resolver); any intervening bid raises
    ``LotChanged``. Auto bids may raise their own bidder's lead.
    """
    amount = round(amount, 2)
    now = clock.utcnow()
    outcome: Dict[str, Any] = {}

    def _mutate(d: LotData) -> bool:
        mine = outcome.get("last_bid")
        if mine is not None and d.last_bid == mine:
            # An earlier attempt committed; only its reply went missing
            return False

        outcome.clear()
        if d.status in CLOSED_STATUSES:
            raise LotClosed("This lot has already ended")
        if d.end_time is not None and now >= d.end_time:
            raise LotClosed("This lot has already ended")
        if d.status == "scheduled":
            if d.opens_at > now:
                raise LotNotOpen(d.opens_at)
            d.status = "open"

        if expected_bid_count is not None and d.bid_count != expected_bid_count:
            raise LotChanged()
        if d.leader_id == bidder_id and not is_auto_bid:
            raise AlreadyLeading()

        minimum = lot_minimum_next_bid(d)
        if amount < minimum:
            raise BidTooLow(minimum)

        outcome["previous_leader_id"] = d.leader_id
        outcome["previous_bid"] = d.current_bid

        d.bid_count += 1
        d.current_bid = amount
        d.leader_id = bidder_id
        d.leader_bid_id = bid_key(lot_id, d.bid_count)
        d.last_bid = LastBid(
            sequence=d.bid_count,
            bidder_id=bidder_id,
            amount=amount,
            placed_at=now,
            is_auto_bid=is_auto_bid,
            auto_bid_id=auto_bid_id,
        )
        outcome["last_bid"] = d.last_bid

        outcome["extended"] = False
        if _in_sniper_window(d, now):
            target = now + timedelta(seconds=d.sniper.window_seconds)
            if (target - d.end_time).total_seconds() >= d.sniper.min_extension_seconds:
                d.end_time = target
                d.extensions_count += 1
                outcome["extended"] = True
            _advance_status(d, "ending")
        return True

    lot, changed = await _lot_cas_retry(
        lot_id, _mutate, max_retries=max_retries, prepare=bid_ledger_repair
    )
    if not changed:
        logger.info(f"Bid on lot {lot_id} by {bidder_id} was already committed by an earlier attempt")

    try:
        bid = await bid_append(lot)
    except CouchbaseException as e:
        logger.warning(f"Ledger append for lot {lot_id} seq={lot.data.bid_count} deferred to repair: {e}")
        bid = bid_entry(lot)

    logger.info(
        f"Bid accepted on lot {lot_id}: {bidder_id} {amount:.2f} "
        f"(seq={lot.data.bid_count}, auto={is_auto_bid})"
    )
    if outcome["extended"]:
        logger.info(f"Sniper protection extended lot {lot_id} to {lot.data.end_time.isoformat()}")

    return AcceptedBid(
        bid=bid,
        lot=lot,
        previous_leader_id=outcome["previous_leader_id"],
        previous_bid=outcome["previous_bid"],
        extended=outcome["extended"],
    )


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

async def lot_open(lot_id: str) -> Tuple[Lot, bool]:
    """Open a scheduled lot whose opening time has passed (called by the scheduler)."""
    now = clock.utcnow()

    def _mutate(d: LotData) -> bool:
        if d.status != "scheduled" or d.opens_at > now:
            return False
        if d.end_time is not None and d.end_time <= now:
            return False
        return _advance_status(d, "open")

    return await _lot_cas_retry(lot_id, _mutate)


async def lot_mark_ending(lot_id: str) -> Tuple[Lot, bool]:
    """Flag an open lot that has entered its sniper window."""
    now = clock.utcnow()

    def _mutate(d: LotData) -> bool:
        if d.status != "open" or not _in_sniper_window(d, now):
            return False
        return _advance_status(d, "ending")

    return await _lot_cas_retry(lot_id, _mutate)


async def lot_schedule_end(
    lot_id: str, end_time: datetime, closing: bool = False
) -> Tuple[Lot, bool]:
    """Set a lot's end time. A no-op on lots that have already ended."""

    def _mutate(d: LotData) -> bool:
        if d.status in CLOSED_STATUSES:
            return False
        if closing and d.closing_scheduled:
            # Another close request got here first; keep its time
            return False
        if d.end_time == end_time and not closing:
            return False
        d.end_time = end_time
        d.closing_scheduled = d.closing_scheduled or closing
        return True

    return await _lot_cas_retry(lot_id, _mutate)


async def lot_end(lot_id: str, due_only: bool = True) -> Tuple[Lot, bool]:
    """
    Transition a lot to ``ended``. Idempotent: ending an ended or settled lot
    is a no-op, so redundant scheduler firings are harmless.

    With ``due_only`` the lot is left alone unless its end time has passed;
    the end time may have been extended since the caller looked.
    Returns ``(lot, changed)``; exactly one caller ever sees ``changed``.
    """
    now = clock.utcnow()

    def _mutate(d: LotData) -> bool:
        if d.status in CLOSED_STATUSES:
            return False
        if due_only and (d.end_time is None or d.end_time > now):
            return False
        if d.end_time is None or d.end_time > now:
            d.end_time = now
        d.ended_at = now
        return _advance_status(d, "ended")

    lot, changed = await _lot_cas_retry(lot_id, _mutate)
    if changed:
        logger.info(
            f"Lot {lot_id} ended: leader={lot.data.leader_id} "
            f"price={lot.data.current_bid:.2f} bids={lot.data.bid_count}"
        )
    return lot, changed


async def lot_mark_settled(
    lot_id: str,
    buyer_invoice_id: Optional[str] = None,
    seller_invoice_id: Optional[str] = None,
) -> Tuple[Lot, bool]:
    """Record invoice ids and move an ended lot to ``settled`` (exactly once)."""
    now = clock.utcnow()

    def _mutate(d: LotData) -> bool:
        if d.status != "ended":
            return False
        if buyer_invoice_id and not d.buyer_invoice_id:
            d.buyer_invoice_id = buyer_invoice_id
        if seller_invoice_id and not d.seller_invoice_id:
            d.seller_invoice_id = seller_invoice_id
        d.settled_at = now
        return _advance_status(d, "settled")

    return await _lot_cas_retry(lot_id, _mutate)


# ---------------------------------------------------------------------------
# Curation
# ---------------------------------------------------------------------------

async def lot_update_details(lot_id: str, fields: Dict[str, Any]) -> Lot:
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise InvalidRequest(f"Cannot update fields: {', '.join(sorted(unknown))}")

    def _mutate(d: LotData) -> bool:
        for key, value in fields.items():
            setattr(d, key, value)
        return bool(fields)

    lot, _ = await _lot_cas_retry(lot_id, _mutate)
    return lot


async def lot_assign_seller(lot_id: str, seller_id: str) -> Lot:
    def _mutate(d: LotData) -> bool:
        if d.status == "settled":
            raise InvalidRequest("Cannot reassign the seller of a settled lot")
        d.seller_id = seller_id
        return True

    lot, _ = await _lot_cas_retry(lot_id, _mutate)
    return lot


async def lot_delete(lot_id: str) -> bool:
    """Delete a lot that has not received any bids."""
    lot = await Lot.get(lot_id)
    if not lot:
        return False
    if lot.data.bid_count > 0:
        raise InvalidRequest("Cannot delete a lot that has bids")
    return await Lot.delete(lot_id)
