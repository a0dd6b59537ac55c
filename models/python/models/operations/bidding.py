"""
Bid pipeline: eligibility gate, manual bid, then proxy resolution.

Nothing here notifies anyone. Callers receive a BidOutcome describing every
bid that was committed and who was displaced, and fan out notifications only
after the writes have landed.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from models.entities.couchbase.auto_bids import AutoBid
from models.entities.couchbase.lots import Lot
from models.operations.auto_bids import auto_bid_resolve, auto_bid_set
from models.operations.exceptions import InvalidRequest, LotNotFound
from models.operations.lots import DEFAULT_MAX_RETRIES, AcceptedBid, lot_apply_bid
from models.operations.users import user_require_bid_eligibility

logger = logging.getLogger(__name__)


@dataclass
class OutbidEvent:
    lot_id: str
    auction_id: str
    bidder_id: str
    new_amount: float


@dataclass
class BidOutcome:
    lot: Lot
    accepted: List[AcceptedBid] = field(default_factory=list)
    previous_bidder_id: Optional[str] = None

    @property
    def bid(self) -> Optional[AcceptedBid]:
        """The bid the caller placed, if there was one."""
        return self.accepted[0] if self.accepted else None

    @property
    def outbid_events(self) -> List[OutbidEvent]:
        events = []
        for accepted in self.accepted:
            displaced = accepted.displaced_leader_id
            if displaced:
                events.append(
                    OutbidEvent(
                        lot_id=accepted.lot.id,
                        auction_id=accepted.lot.data.auction_id,
                        bidder_id=displaced,
                        new_amount=accepted.bid.data.amount,
                    )
                )
        return events

    @property
    def extended(self) -> bool:
        return any(a.extended for a in self.accepted)


def _normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not email:
        raise InvalidRequest("Bidder email is required")
    return email


async def bid_place(
    lot_id: str,
    bidder_email: str,
    amount: Optional[float] = None,
    increment: Optional[float] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> BidOutcome:
    """
    Place a manual bid and let proxies respond.

    With no ``amount`` the bid is the current price plus ``increment`` (never
    less than the lot's own increment). An ineligible bidder is rejected
    before anything is written. ``max_retries`` is the CAS retry budget for
    each write before ``ConcurrencyConflict`` is raised.
    """
    bidder_id = _normalize_email(bidder_email)
    if amount is not None and amount <= 0:
        raise InvalidRequest("Bid amount must be positive")
    if increment is not None and increment <= 0:
        raise InvalidRequest("Increment must be positive")

    lot = await Lot.get(lot_id)
    if not lot:
        raise LotNotFound(lot_id)

    await user_require_bid_eligibility(bidder_id)

    if amount is None:
        step = max(increment or 0, lot.data.bid_increment)
        amount = lot.data.current_bid + step

    manual = await lot_apply_bid(lot_id, bidder_id, amount, max_retries=max_retries)
    proxies = await auto_bid_resolve(lot_id, max_retries=max_retries)

    final = proxies[-1].lot if proxies else manual.lot
    return BidOutcome(
        lot=final,
        accepted=[manual] + proxies,
        previous_bidder_id=manual.previous_leader_id,
    )


async def autobid_submit(
    lot_id: str,
    bidder_email: str,
    max_bid: float,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> Tuple[AutoBid, BidOutcome]:
    """Register a proxy ceiling and resolve the lot against it straight away."""
    bidder_id = _normalize_email(bidder_email)
    if max_bid is None or max_bid <= 0:
        raise InvalidRequest("Maximum bid must be positive")

    lot = await Lot.get(lot_id)
    if not lot:
        raise LotNotFound(lot_id)

    await user_require_bid_eligibility(bidder_id)

    auto_bid = await auto_bid_set(lot_id, bidder_id, max_bid)
    accepted = await auto_bid_resolve(lot_id, max_retries=max_retries)

    final = accepted[-1].lot if accepted else (await Lot.get(lot_id) or lot)
    return auto_bid, BidOutcome(
        lot=final,
        accepted=accepted,
        previous_bidder_id=accepted[0].previous_leader_id if accepted else None,
    )
