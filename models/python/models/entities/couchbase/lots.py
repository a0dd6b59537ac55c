from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

LotStatus = Literal["scheduled", "open", "ending", "ended", "settled"]

# Forward-only ordering of lot states
LOT_STATUS_ORDER = ("scheduled", "open", "ending", "ended", "settled")
BIDDABLE_STATUSES = ("open", "ending")
CLOSED_STATUSES = ("ended", "settled")


class SniperConfig(BaseModel):
    window_seconds: int = 120
    min_extension_seconds: int = 10


class LastBid(BaseModel):
    """Snapshot of the most recent accepted bid, kept on the lot for ledger repair."""
    sequence: int
    bidder_id: str
    amount: float
    placed_at: datetime
    is_auto_bid: bool = False
    auto_bid_id: Optional[str] = None


class LotData(BaseCouchbaseEntityData):
    auction_id: str
    lot_number: int

    # Opaque to bidding
    title: str
    description: str = ""
    condition: str = "Good"
    image_urls: List[str] = []
    seller_id: Optional[str] = None

    starting_bid: float
    bid_increment: float
    sniper: SniperConfig = SniperConfig()

    # Schedule
    opens_at: datetime
    end_time: Optional[datetime] = None
    closing_scheduled: bool = False
    extensions_count: int = 0

    status: LotStatus = "scheduled"

    # Leader state, mutated only through CAS on this document
    current_bid: float
    leader_id: Optional[str] = None
    leader_bid_id: Optional[str] = None
    bid_count: int = 0
    last_bid: Optional[LastBid] = None

    ended_at: Optional[datetime] = None

    # Settlement
    buyer_invoice_id: Optional[str] = None
    seller_invoice_id: Optional[str] = None
    settled_at: Optional[datetime] = None


class Lot(BaseModelCouchbase[LotData]):
    _collection_name = "lots"
