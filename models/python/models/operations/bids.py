"""
Bid ledger operations.

The ledger is append-only: one document per accepted bid, keyed by the lot
and the sequence number the lot's CAS write assigned to it. Writing the same
sequence twice overwrites an identical entry, so a retried append is harmless.
The lot's ``last_bid`` snapshot covers the one entry that may not have been
written yet; every new bid repairs it before replacing the snapshot.
Bid acceptance itself lives in operations/lots.py.
"""

import asyncio
import logging
from typing import List, Optional

from couchbase.exceptions import CouchbaseException

from models.entities.couchbase.bids import Bid, BidData
from models.entities.couchbase.lots import Lot

logger = logging.getLogger(__name__)

LEDGER_APPEND_RETRIES = 3


def bid_key(lot_id: str, sequence: int) -> str:
    return f"{lot_id}::{sequence:06d}"


def _ledger_entry(lot: Lot) -> BidData:
    last = lot.data.last_bid
    return BidData(
        lot_id=lot.id,
        auction_id=lot.data.auction_id,
        bidder_id=last.bidder_id,
        amount=last.amount,
        sequence=last.sequence,
        placed_at=last.placed_at,
        is_auto_bid=last.is_auto_bid,
        auto_bid_id=last.auto_bid_id,
    )


def bid_entry(lot: Lot) -> Bid:
    """The ledger entry for the lot's most recent accepted bid, unsaved."""
    data = _ledger_entry(lot)
    return Bid(id=bid_key(lot.id, data.sequence), data=data)


async def bid_append(lot: Lot) -> Bid:
    """Write the ledger entry for the lot's most recent accepted bid.

    The lot document is already committed at this point, so a failure here
    only leaves a gap that ``bid_ledger_repair`` fills from ``last_bid``.
    """
    if lot.data.last_bid is None:
        raise ValueError(f"Lot {lot.id} has no accepted bid to record")

    data = _ledger_entry(lot)
    key = bid_key(lot.id, data.sequence)
    for attempt in range(LEDGER_APPEND_RETRIES - 1):
        try:
            return await Bid.create_or_update(key, data, user_id=data.bidder_id)
        except CouchbaseException as e:
            logger.warning(f"Ledger append for {key} failed, retrying: {e}")
            await asyncio.sleep(0.01 * (attempt + 1))
    return await Bid.create_or_update(key, data, user_id=data.bidder_id)


async def bid_ledger_repair(lot: Lot) -> bool:
    """Rewrite the latest ledger entry if it is missing. Returns True on repair."""
    if lot.data.last_bid is None:
        return False
    key = bid_key(lot.id, lot.data.last_bid.sequence)
    if await Bid.get(key):
        return False
    logger.warning(f"Repairing missing ledger entry {key}")
    await Bid.create_or_update(key, _ledger_entry(lot), user_id=lot.data.last_bid.bidder_id)
    return True


async def bid_get(bid_id: str) -> Optional[Bid]:
    return await Bid.get(bid_id)


async def bid_get_by_lot(lot_id: str, limit: Optional[int] = None) -> List[Bid]:
    """Ledger entries for a lot in acceptance order."""
    return await Bid.find({"lot_id": lot_id}, order_by="sequence ASC", limit=limit)


async def bid_get_by_bidder(bidder_id: str, limit: int = 100) -> List[Bid]:
    return await Bid.find({"bidder_id": bidder_id}, order_by="placed_at DESC", limit=limit)
