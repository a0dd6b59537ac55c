"""
API endpoints for lots, bidding and auto-bids.

GET    /lots/{auction_id}                          — lots with bid history (public)
POST   /lots/{auction_id}                          — create lot (admin)
PUT    /lots/{auction_id}/{lot_id}                 — edit lot details (admin)
DELETE /lots/{auction_id}/{lot_id}                 — delete lot without bids (admin)
PUT    /lots/{auction_id}/{lot_id}/assign-seller   — assign seller (admin)
POST   /lots/{lot_id}/bid                          — place a bid
PUT    /lots/{auction_id}/{lot_id}/autobid         — set an auto-bid ceiling
GET    /lots/{auction_id}/{lot_id}/autobid/{email} — read an auto-bid ceiling
POST   /lots/{auction_id}/end                      — staggered close (admin)
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import conf
from models.operations.auctions import auction_create_lot, auction_end, auction_get
from models.operations.auto_bids import auto_bid_get
from models.operations.bidding import autobid_submit, bid_place
from models.operations.bids import bid_get_by_lot
from models.operations.exceptions import BiddingError
from models.operations.lots import (
    lot_assign_seller,
    lot_delete,
    lot_get,
    lot_get_by_auction,
    lot_minimum_next_bid,
    lot_update_details,
)
from notifications import NotificationGateway, mask_bidder
from utils import log

from .dependencies import get_gateway, http_status_for, require_admin, to_http_exception

logger = log.get_logger(__name__)

router = APIRouter(prefix="/lots", tags=["lots"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateLotRequest(BaseModel):
    title: str
    description: str = ""
    condition: str = "Good"
    image_urls: List[str] = []
    starting_bid: float = 0.0
    bid_increment: Optional[float] = None
    seller_id: Optional[str] = None
    opens_at: Optional[datetime] = None
    end_time: Optional[datetime] = None


class UpdateLotRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    condition: Optional[str] = None
    image_urls: Optional[List[str]] = None


class AssignSellerRequest(BaseModel):
    seller_id: str


class PlaceBidRequest(BaseModel):
    bidderEmail: str
    amount: Optional[float] = None
    increment: Optional[float] = None


class PlaceBidResponse(BaseModel):
    success: bool
    message: str
    currentBid: float
    newBidAmount: float
    previousBidder: Optional[str] = None


class AutoBidRequest(BaseModel):
    bidderEmail: str
    maxBid: float


class BidHistoryEntry(BaseModel):
    sequence: int
    amount: float
    bidderEmail: Optional[str] = None
    placed_at: datetime
    is_auto_bid: bool


class LotResponse(BaseModel):
    id: str
    auction_id: str
    lot_number: int
    title: str
    description: str
    condition: str
    image_urls: List[str]
    seller_id: Optional[str] = None
    starting_bid: float
    current_bid: float
    bid_increment: float
    next_min_bid: float
    bid_count: int
    leader: Optional[str] = None
    status: str
    opens_at: datetime
    end_time: Optional[datetime] = None
    extensions_count: int
    bid_history: List[BidHistoryEntry] = []


class ScheduledEnd(BaseModel):
    lot_id: str
    lot_number: int
    end_time: datetime


class EndAuctionResponse(BaseModel):
    auction_id: str
    scheduled: List[ScheduledEnd]


def _lot_to_response(lot, bids=None) -> LotResponse:
    d = lot.data
    return LotResponse(
        id=lot.id,
        auction_id=d.auction_id,
        lot_number=d.lot_number,
        title=d.title,
        description=d.description,
        condition=d.condition,
        image_urls=d.image_urls,
        seller_id=d.seller_id,
        starting_bid=d.starting_bid,
        current_bid=d.current_bid,
        bid_increment=d.bid_increment,
        next_min_bid=lot_minimum_next_bid(d),
        bid_count=d.bid_count,
        leader=mask_bidder(d.leader_id),
        status=d.status,
        opens_at=d.opens_at,
        end_time=d.end_time,
        extensions_count=d.extensions_count,
        bid_history=[
            BidHistoryEntry(
                sequence=b.data.sequence,
                amount=b.data.amount,
                bidderEmail=mask_bidder(b.data.bidder_id),
                placed_at=b.data.placed_at,
                is_auto_bid=b.data.is_auto_bid,
            )
            for b in (bids or [])
        ],
    )


async def _lot_in_auction(auction_id: str, lot_id: str):
    lot = await lot_get(lot_id)
    if not lot or lot.data.auction_id != auction_id:
        raise HTTPException(status_code=404, detail="Lot not found")
    return lot


# ---------------------------------------------------------------------------
# Lots of an auction
# ---------------------------------------------------------------------------

@router.get("/{auction_id}", response_model=List[LotResponse])
async def route_lots_list(auction_id: str):
    """Lots of an auction in lot-number order, each with its bid history."""
    if not await auction_get(auction_id):
        raise HTTPException(status_code=404, detail="Auction not found")
    lots = await lot_get_by_auction(auction_id)
    return [_lot_to_response(lot, await bid_get_by_lot(lot.id)) for lot in lots]


@router.post("/{auction_id}", response_model=LotResponse, status_code=201, dependencies=[Depends(require_admin)])
async def route_lot_create(auction_id: str, body: CreateLotRequest):
    try:
        lot = await auction_create_lot(
            auction_id,
            title=body.title,
            starting_bid=body.starting_bid,
            bid_increment=body.bid_increment,
            description=body.description,
            condition=body.condition,
            image_urls=body.image_urls,
            seller_id=body.seller_id,
            opens_at=body.opens_at,
            end_time=body.end_time,
            default_increment=conf.get_bidding_conf().default_bid_increment,
        )
    except BiddingError as e:
        raise to_http_exception(e)
    return _lot_to_response(lot)


@router.put("/{auction_id}/{lot_id}", response_model=LotResponse, dependencies=[Depends(require_admin)])
async def route_lot_update(auction_id: str, lot_id: str, body: UpdateLotRequest):
    await _lot_in_auction(auction_id, lot_id)
    try:
        lot = await lot_update_details(lot_id, body.model_dump(exclude_none=True))
    except BiddingError as e:
        raise to_http_exception(e)
    return _lot_to_response(lot)


@router.delete("/{auction_id}/{lot_id}", dependencies=[Depends(require_admin)])
async def route_lot_delete(auction_id: str, lot_id: str):
    await _lot_in_auction(auction_id, lot_id)
    try:
        await lot_delete(lot_id)
    except BiddingError as e:
        raise to_http_exception(e)
    return {"message": "Lot deleted"}


@router.put("/{auction_id}/{lot_id}/assign-seller", response_model=LotResponse, dependencies=[Depends(require_admin)])
async def route_lot_assign_seller(auction_id: str, lot_id: str, body: AssignSellerRequest):
    await _lot_in_auction(auction_id, lot_id)
    try:
        lot = await lot_assign_seller(lot_id, body.seller_id)
    except BiddingError as e:
        raise to_http_exception(e)
    return _lot_to_response(lot)


# ---------------------------------------------------------------------------
# POST /lots/{lot_id}/bid — place a bid
# ---------------------------------------------------------------------------

@router.post("/{lot_id}/bid", response_model=PlaceBidResponse)
async def route_place_bid(
    lot_id: str,
    body: PlaceBidRequest,
    gateway: NotificationGateway = Depends(get_gateway),
):
    """Place a bid. Auto-bids respond before this returns; notifications follow the commit."""
    try:
        outcome = await bid_place(
            lot_id,
            body.bidderEmail,
            amount=body.amount,
            increment=body.increment,
            max_retries=conf.get_bidding_conf().max_retries,
        )
    except BiddingError as e:
        logger.info(f"Bid on lot {lot_id} rejected (retryable={e.retryable}): {e}")
        return JSONResponse(status_code=http_status_for(e), content={"success": False, "error": str(e)})

    await gateway.dispatch_bid_outcome(outcome)

    return PlaceBidResponse(
        success=True,
        message="Bid placed successfully",
        currentBid=outcome.lot.data.current_bid,
        newBidAmount=outcome.bid.bid.data.amount,
        previousBidder=mask_bidder(outcome.previous_bidder_id),
    )


# ---------------------------------------------------------------------------
# Auto-bids
# ---------------------------------------------------------------------------

@router.put("/{auction_id}/{lot_id}/autobid")
async def route_autobid_set(
    auction_id: str,
    lot_id: str,
    body: AutoBidRequest,
    gateway: NotificationGateway = Depends(get_gateway),
):
    """Set (or replace) the caller's auto-bid ceiling and resolve the lot against it."""
    await _lot_in_auction(auction_id, lot_id)
    try:
        auto_bid, outcome = await autobid_submit(
            lot_id, body.bidderEmail, body.maxBid, max_retries=conf.get_bidding_conf().max_retries
        )
    except BiddingError as e:
        raise to_http_exception(e, ineligible_status=403)

    await gateway.dispatch_bid_outcome(outcome)
    return {"message": "Auto-bid set successfully", "maxBid": auto_bid.data.max_bid}


@router.get("/{auction_id}/{lot_id}/autobid/{user_email}")
async def route_autobid_get(auction_id: str, lot_id: str, user_email: str):
    await _lot_in_auction(auction_id, lot_id)
    auto_bid = await auto_bid_get(lot_id, user_email.strip().lower())
    return {"maxBid": auto_bid.data.max_bid if auto_bid else None}


# ---------------------------------------------------------------------------
# POST /lots/{auction_id}/end — staggered close
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/end", response_model=EndAuctionResponse, dependencies=[Depends(require_admin)])
async def route_auction_end(
    auction_id: str,
    gateway: NotificationGateway = Depends(get_gateway),
):
    """End every running lot, staggered by the auction's stagger interval."""
    try:
        scheduled = await auction_end(auction_id)
    except BiddingError as e:
        raise to_http_exception(e)

    for lot in scheduled:
        await gateway.timer_update(lot)

    return EndAuctionResponse(
        auction_id=auction_id,
        scheduled=[
            ScheduledEnd(lot_id=lot.id, lot_number=lot.data.lot_number, end_time=lot.data.end_time)
            for lot in scheduled
        ],
    )
