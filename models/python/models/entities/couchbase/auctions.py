from typing import Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class AuctionConfig(BaseModel):
    """Timing and fee parameters captured when the auction is created."""
    sniper_window_seconds: int = 120
    sniper_min_extension_seconds: int = 10
    stagger_seconds: int = 10
    default_lot_base_minutes: int = 5
    buyer_premium_pct: float = 10.0
    seller_commission_pct: float = 15.0
    buyer_invoice_due_days: int = 7
    seller_invoice_due_days: int = 14


class AuctionData(BaseCouchbaseEntityData):
    title: str
    description: str = ""
    location: Optional[str] = None

    config: AuctionConfig = AuctionConfig()

    starts_at: datetime
    ends_at: Optional[datetime] = None

    # Derived from the lots: "completed" once every lot has ended
    status: Literal["scheduled", "active", "completed"] = "scheduled"

    # Highest lot number handed out; bumped under CAS so numbers stay unique
    last_lot_number: int = 0

    # Bulk close requested by an admin
    close_requested_at: Optional[datetime] = None

    # Settlement
    settlement_status: Literal["pending", "settled", "failed"] = "pending"
    settlement_error: Optional[str] = None
    settlement_attempts: int = 0
    settled_at: Optional[datetime] = None


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"
