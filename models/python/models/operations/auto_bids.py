"""
Proxy (auto) bidding.

A bidder registers a ceiling per lot. After every manual bid, and whenever a
ceiling is set, the resolver bids on behalf of the strongest proxy until the
lot is stable: either the strongest proxy leads at the lowest price that beats
every other proxy, or no proxy can reach the minimum next bid.

The resolver never bypasses the lot's CAS. Each step is an ordinary bid
pinned to the bid count it was planned against.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from couchbase.exceptions import CouchbaseException

from models.entities.couchbase.auto_bids import AutoBid, AutoBidData
from models.entities.couchbase.lots import CLOSED_STATUSES, Lot, LotData
from models.operations import clock
from models.operations.exceptions import (
    BidRejected,
    BidTooLow,
    ConcurrencyConflict,
    LotClosed,
    LotNotFound,
    LotNotOpen,
)
from models.operations.lots import (
    DEFAULT_MAX_RETRIES,
    AcceptedBid,
    lot_apply_bid,
    lot_minimum_next_bid,
)
from models.operations.users import user_is_eligible

logger = logging.getLogger(__name__)

# Hard stop for a single resolution pass; a stable lot needs at most two steps.
MAX_RESOLVE_STEPS = 20

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def auto_bid_key(lot_id: str, bidder_id: str) -> str:
    return f"{lot_id}::{bidder_id}"


async def auto_bid_get(lot_id: str, bidder_id: str) -> Optional[AutoBid]:
    return await AutoBid.get(auto_bid_key(lot_id, bidder_id))


async def auto_bid_list_by_lot(lot_id: str) -> List[AutoBid]:
    return await AutoBid.find({"lot_id": lot_id})


async def auto_bid_set(lot_id: str, bidder_id: str, max_bid: float) -> AutoBid:
    """Create or replace a bidder's ceiling on a lot.

    Replacing a ceiling resets its registration time, which is what ties are
    broken on.
    """
    lot = await Lot.get(lot_id)
    if not lot:
        raise LotNotFound(lot_id)

    now = clock.utcnow()
    d = lot.data
    if d.status in CLOSED_STATUSES or (d.end_time is not None and now >= d.end_time):
        raise LotClosed("This lot has already ended")
    if d.status == "scheduled" and d.opens_at > now:
        raise LotNotOpen(d.opens_at)

    minimum = lot_minimum_next_bid(d)
    if max_bid < minimum:
        raise BidTooLow(minimum, f"Maximum bid must be at least {minimum:.2f}")

    data = AutoBidData(
        lot_id=lot_id,
        auction_id=d.auction_id,
        bidder_id=bidder_id,
        max_bid=round(max_bid, 2),
        created_at=now,
    )
    auto_bid = await AutoBid.create_or_update(auto_bid_key(lot_id, bidder_id), data, user_id=bidder_id)
    logger.info(f"Auto-bid set on lot {lot_id}: {bidder_id} max {max_bid:.2f}")
    return auto_bid


async def auto_bid_delete(lot_id: str, bidder_id: str) -> bool:
    return await AutoBid.delete(auto_bid_key(lot_id, bidder_id))


def _rank(proxies: List[AutoBid]) -> List[AutoBid]:
    # Highest ceiling first; on equal ceilings the earliest registration wins
    return sorted(proxies, key=lambda p: (-p.data.max_bid, p.data.created_at or _EPOCH))


def auto_bid_plan(lot: LotData, proxies: List[AutoBid]) -> Optional[Tuple[AutoBid, float]]:
    """Return the next proxy step as ``(proxy, amount)``, or None if the lot is stable."""
    if not proxies:
        return None

    ranked = _rank(proxies)
    winner = ranked[0]
    rivals = [p.data.max_bid for p in ranked[1:] if p.data.bidder_id != winner.data.bidder_id]
    runner_up = max(rivals) if rivals else None
    minimum = lot_minimum_next_bid(lot)

    if lot.leader_id == winner.data.bidder_id:
        # Already leading: only raise when a rival proxy could still overtake
        if runner_up is None or runner_up < minimum:
            return None
        amount = min(winner.data.max_bid, runner_up + lot.bid_increment)
    else:
        if winner.data.max_bid < minimum:
            return None
        floor = minimum if runner_up is None else max(minimum, runner_up + lot.bid_increment)
        amount = min(winner.data.max_bid, floor)

    return winner, round(amount, 2)


async def _eligible_proxies(proxies: List[AutoBid], cache: Dict[str, bool]) -> List[AutoBid]:
    eligible = []
    for proxy in proxies:
        bidder_id = proxy.data.bidder_id
        if bidder_id not in cache:
            cache[bidder_id] = await user_is_eligible(bidder_id)
            if not cache[bidder_id]:
                logger.info(f"Skipping auto-bid of ineligible bidder {bidder_id} on lot {proxy.data.lot_id}")
        if cache[bidder_id]:
            eligible.append(proxy)
    return eligible


async def auto_bid_resolve(lot_id: str, max_retries: int = DEFAULT_MAX_RETRIES) -> List[AcceptedBid]:
    """Run proxy bids on a lot until it is stable. Returns the bids placed.

    Resolution runs after a bid has already committed, so a cluster error
    stops it (logged) instead of failing that bid. The next bid or ceiling
    change on the lot resolves again.
    """
    accepted: List[AcceptedBid] = []
    eligibility: Dict[str, bool] = {}

    for _ in range(MAX_RESOLVE_STEPS):
        try:
            lot = await Lot.get(lot_id)
            if not lot or lot.data.status in CLOSED_STATUSES:
                break

            proxies = await _eligible_proxies(await auto_bid_list_by_lot(lot_id), eligibility)
            step = auto_bid_plan(lot.data, proxies)
            if step is None:
                break

            proxy, amount = step
            result = await lot_apply_bid(
                lot_id,
                proxy.data.bidder_id,
                amount,
                is_auto_bid=True,
                auto_bid_id=proxy.id,
                expected_bid_count=lot.data.bid_count,
                max_retries=max_retries,
            )
        except (LotClosed, LotNotOpen):
            break
        except (BidRejected, ConcurrencyConflict) as e:
            # Someone else bid in between; plan again from the new state
            logger.debug(f"Auto-bid step on lot {lot_id} re-planned: {e}")
            continue
        except CouchbaseException as e:
            logger.warning(f"Auto-bid resolution on lot {lot_id} interrupted: {e}")
            break
        accepted.append(result)
    else:
        logger.warning(f"Auto-bid resolution on lot {lot_id} stopped after {MAX_RESOLVE_STEPS} steps")

    return accepted
