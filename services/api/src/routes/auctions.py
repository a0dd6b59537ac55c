"""
API endpoints for auctions.

POST   /auctions/                   — create auction (admin)
GET    /auctions/                   — list auctions (public)
GET    /auctions/{id}               — auction detail with derived status
DELETE /auctions/{id}               — delete auction, lots, auto-bids and ledger (admin)
GET    /auctions/{id}/stream        — SSE stream for live lot events
POST   /auctions/{id}/settle        — re-run settlement (admin)
GET    /auctions/{id}/invoices      — invoices of an auction (admin)
POST   /auctions/{id}/invoices/{invoice_id}/paid — record an EFT payment (admin)
"""

import asyncio
import json
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

import conf
from models.operations.auctions import (
    auction_create,
    auction_delete,
    auction_get,
    auction_list,
    auction_refresh_status,
)
from models.operations.exceptions import BiddingError
from models.operations.invoices import invoice_get, invoice_get_by_auction, invoice_mark_paid
from models.operations.lots import lot_get_by_auction
from models.operations.settlement import settlement_run
from notifications import NotificationGateway, mask_bidder
from utils import log

from .dependencies import get_gateway, require_admin, to_http_exception

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])

# Seconds between SSE keep-alive comments
STREAM_KEEPALIVE_SECONDS = 15


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateAuctionRequest(BaseModel):
    title: str
    description: str = ""
    location: Optional[str] = None
    starts_at: Optional[datetime] = None


class AuctionResponse(BaseModel):
    id: str
    title: str
    description: str
    location: Optional[str] = None
    starts_at: datetime
    ends_at: Optional[datetime] = None
    status: str
    lot_count: int
    close_requested_at: Optional[datetime] = None
    settlement_status: str
    settlement_error: Optional[str] = None
    settled_at: Optional[datetime] = None


class InvoiceItemResponse(BaseModel):
    lot_id: str
    lot_number: int
    description: str
    quantity: int
    unit_price: float
    total_price: float


class InvoiceResponse(BaseModel):
    id: str
    invoice_number: str
    auction_id: str
    user_id: str
    invoice_type: str
    items: List[InvoiceItemResponse]
    subtotal: float
    commission: float
    total: float
    due_date: datetime
    payment_status: str
    paid_at: Optional[datetime] = None


class SettlementResponse(BaseModel):
    auction_id: str
    settlement_status: str
    invoices: List[InvoiceResponse]
    settled_lots: int


def _auction_to_response(auction, lot_count: int) -> AuctionResponse:
    d = auction.data
    return AuctionResponse(
        id=auction.id,
        title=d.title,
        description=d.description,
        location=d.location,
        starts_at=d.starts_at,
        ends_at=d.ends_at,
        status=d.status,
        lot_count=lot_count,
        close_requested_at=d.close_requested_at,
        settlement_status=d.settlement_status,
        settlement_error=d.settlement_error,
        settled_at=d.settled_at,
    )


def _invoice_to_response(invoice) -> InvoiceResponse:
    d = invoice.data
    return InvoiceResponse(
        id=invoice.id,
        invoice_number=d.invoice_number,
        auction_id=d.auction_id,
        user_id=d.user_id,
        invoice_type=d.invoice_type,
        items=[InvoiceItemResponse(**item.model_dump()) for item in d.items],
        subtotal=d.subtotal,
        commission=d.commission,
        total=d.total,
        due_date=d.due_date,
        payment_status=d.payment_status,
        paid_at=d.paid_at,
    )


# ---------------------------------------------------------------------------
# POST /auctions/ — create auction
# ---------------------------------------------------------------------------

@router.post("/", response_model=AuctionResponse, status_code=201, dependencies=[Depends(require_admin)])
async def route_auction_create(body: CreateAuctionRequest):
    """Create an auction. Timing and fee settings are taken from the server config."""
    try:
        auction = await auction_create(
            title=body.title,
            starts_at=body.starts_at,
            description=body.description,
            location=body.location,
            config=conf.get_auction_config(),
        )
    except BiddingError as e:
        raise to_http_exception(e)
    return _auction_to_response(auction, lot_count=0)


# ---------------------------------------------------------------------------
# GET /auctions/ — list auctions
# ---------------------------------------------------------------------------

@router.get("/", response_model=List[AuctionResponse])
async def route_auctions_list(
    status: Optional[str] = None,
    limit: int = Query(default=50, le=100),
):
    auctions = await auction_list(status=status, limit=limit)
    responses = []
    for auction in auctions:
        lots = await lot_get_by_auction(auction.id)
        responses.append(_auction_to_response(auction, lot_count=len(lots)))
    return responses


# ---------------------------------------------------------------------------
# GET /auctions/{id} — auction detail
# ---------------------------------------------------------------------------

@router.get("/{auction_id}", response_model=AuctionResponse)
async def route_auction_detail(auction_id: str):
    """Get a single auction. Its status is re-derived from the lots."""
    if not await auction_get(auction_id):
        raise HTTPException(status_code=404, detail="Auction not found")
    auction = await auction_refresh_status(auction_id)
    lots = await lot_get_by_auction(auction_id)
    return _auction_to_response(auction, lot_count=len(lots))


# ---------------------------------------------------------------------------
# DELETE /auctions/{id} — delete auction and its lots
# ---------------------------------------------------------------------------

@router.delete("/{auction_id}", dependencies=[Depends(require_admin)])
async def route_auction_delete(auction_id: str):
    try:
        deleted = await auction_delete(auction_id)
    except BiddingError as e:
        raise to_http_exception(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Auction not found")
    return {"message": "Auction deleted"}


# ---------------------------------------------------------------------------
# GET /auctions/{id}/stream — SSE push channel
# ---------------------------------------------------------------------------

def _sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


@router.get("/{auction_id}/stream")
async def route_auction_stream(
    auction_id: str,
    request: Request,
    email: Optional[str] = None,
    gateway: NotificationGateway = Depends(get_gateway),
):
    """Server-Sent Events stream for live auction updates.

    Sends a ``snapshot`` of every lot first, then ``bidUpdate``,
    ``timerUpdate`` and ``lotEnded`` events as they happen. Passing ``email``
    also delivers that bidder's ``outbidNotification`` events.
    """
    if not await auction_get(auction_id):
        raise HTTPException(status_code=404, detail="Auction not found")

    sub = gateway.subscribe(auction_id, user_id=email)
    lots = await lot_get_by_auction(auction_id)

    async def event_generator():
        try:
            yield _sse("snapshot", {
                "auctionId": auction_id,
                "lots": [
                    {
                        "lotId": lot.id,
                        "lotNumber": lot.data.lot_number,
                        "title": lot.data.title,
                        "status": lot.data.status,
                        "currentBid": lot.data.current_bid,
                        "bidderEmail": mask_bidder(lot.data.leader_id),
                        "bidCount": lot.data.bid_count,
                        "endTime": lot.data.end_time.isoformat() if lot.data.end_time else None,
                    }
                    for lot in lots
                ],
            })
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event, payload = await asyncio.wait_for(sub.queue.get(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(event, payload)
        finally:
            gateway.unsubscribe(sub)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# POST /auctions/{id}/settle — settlement
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/settle", response_model=SettlementResponse, dependencies=[Depends(require_admin)])
async def route_auction_settle(
    auction_id: str,
    gateway: NotificationGateway = Depends(get_gateway),
):
    """Run settlement. Safe to repeat: existing invoices are returned, not duplicated."""
    try:
        result = await settlement_run(auction_id)
    except BiddingError as e:
        raise to_http_exception(e)

    gateway.invoices_issued(result.invoices)
    return SettlementResponse(
        auction_id=auction_id,
        settlement_status=result.auction.data.settlement_status,
        invoices=[_invoice_to_response(i) for i in result.invoices],
        settled_lots=len(result.settled_lots),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/invoices", response_model=List[InvoiceResponse], dependencies=[Depends(require_admin)])
async def route_auction_invoices(auction_id: str):
    if not await auction_get(auction_id):
        raise HTTPException(status_code=404, detail="Auction not found")
    return [_invoice_to_response(i) for i in await invoice_get_by_auction(auction_id)]


@router.post(
    "/{auction_id}/invoices/{invoice_id}/paid",
    response_model=InvoiceResponse,
    dependencies=[Depends(require_admin)],
)
async def route_invoice_mark_paid(auction_id: str, invoice_id: str):
    invoice = await invoice_get(invoice_id)
    if not invoice or invoice.data.auction_id != auction_id:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return _invoice_to_response(await invoice_mark_paid(invoice_id))
