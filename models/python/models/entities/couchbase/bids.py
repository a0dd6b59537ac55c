from typing import Optional
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class BidData(BaseCouchbaseEntityData):
    lot_id: str
    auction_id: str
    bidder_id: str
    amount: float
    sequence: int
    placed_at: datetime
    is_auto_bid: bool = False
    auto_bid_id: Optional[str] = None


class Bid(BaseModelCouchbase[BidData]):
    """Append-only ledger entry. Keyed ``{lot_id}::{sequence:06d}``."""
    _collection_name = "bids"
