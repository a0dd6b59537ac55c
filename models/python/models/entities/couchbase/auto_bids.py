from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class AutoBidData(BaseCouchbaseEntityData):
    lot_id: str
    auction_id: str
    bidder_id: str
    max_bid: float


class AutoBid(BaseModelCouchbase[AutoBidData]):
    """Standing proxy instruction. Keyed ``{lot_id}::{bidder_id}``, one per pair."""
    _collection_name = "auto_bids"
