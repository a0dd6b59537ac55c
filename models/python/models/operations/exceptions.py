"""Errors raised by the bidding and lot-lifecycle operations.

Routes translate these into HTTP responses; nothing below the route layer
knows about status codes.
"""


class BiddingError(Exception):
    """Base exception for bidding operations."""
    retryable = False


class NotFound(BiddingError):
    pass


class LotNotFound(NotFound):
    def __init__(self, lot_id: str):
        super().__init__("Lot not found")
        self.lot_id = lot_id


class AuctionNotFound(NotFound):
    def __init__(self, auction_id: str):
        super().__init__("Auction not found")
        self.auction_id = auction_id


class BidderNotFound(NotFound):
    def __init__(self, bidder_id: str):
        super().__init__("User not found. Please register to participate in auctions.")
        self.bidder_id = bidder_id


class BidderNotEligible(BiddingError):
    """FICA not approved, or the account is suspended."""


class InvalidRequest(BiddingError):
    pass


class LotClosed(BiddingError):
    """The lot has ended (or is past its end time). Not retryable."""


class BidRejected(BiddingError):
    """The lot moved on or the amount does not beat it. Re-fetch and retry."""
    retryable = True


class BidTooLow(BidRejected):
    def __init__(self, minimum: float, message: str = ""):
        super().__init__(message or f"Minimum bid is {minimum:.2f}")
        self.minimum = minimum


class AlreadyLeading(BidRejected):
    def __init__(self):
        super().__init__("You are already the highest bidder")


class ConcurrencyConflict(BiddingError):
    """CAS retries exhausted while other writers kept changing the lot."""
    retryable = True

    def __init__(self, lot_id: str):
        super().__init__("Concurrent update conflict, please re-fetch the lot and retry")
        self.lot_id = lot_id


class LotNotOpen(BiddingError):
    """The lot is scheduled but bidding has not opened yet."""

    def __init__(self, opens_at):
        super().__init__(f"Bidding opens at {opens_at.isoformat()}")
        self.opens_at = opens_at


class LotChanged(BidRejected):
    """A proxy step was planned against a lot state that has since moved on."""

    def __init__(self):
        super().__init__("Lot changed while the bid was being placed")
