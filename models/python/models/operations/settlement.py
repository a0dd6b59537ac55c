"""
Auction settlement.

Runs once every lot of an auction has ended. Sold lots are grouped into one
invoice per buyer and one per seller; every lot then moves to ``settled``.
All steps are idempotent: invoice keys are deterministic, lots remember the
invoices they were billed on, and settled lots are skipped. A failure is
recorded on the auction and retried later; it never reopens or rolls back a
lot.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.invoices import Invoice
from models.entities.couchbase.lots import CLOSED_STATUSES, Lot
from models.operations.auctions import (
    auction_find_pending_settlement,
    auction_record_settlement,
    auction_refresh_status,
    auction_require,
)
from models.operations.bids import bid_ledger_repair
from models.operations.exceptions import InvalidRequest
from models.operations.invoices import invoice_create
from models.operations.lots import lot_get_by_auction, lot_mark_settled

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    auction: Auction
    buyer_invoices: List[Invoice] = field(default_factory=list)
    seller_invoices: List[Invoice] = field(default_factory=list)
    settled_lots: List[Lot] = field(default_factory=list)

    @property
    def invoices(self) -> List[Invoice]:
        return self.buyer_invoices + self.seller_invoices


def _group(lots: List[Lot], attr: str, invoice_attr: str) -> Dict[str, List[Lot]]:
    groups: Dict[str, List[Lot]] = defaultdict(list)
    for lot in lots:
        party = getattr(lot.data, attr)
        if party and not getattr(lot.data, invoice_attr):
            groups[party].append(lot)
    return groups


async def settlement_run(auction_id: str) -> SettlementResult:
    """Invoice every sold lot of an auction and mark all its lots settled."""
    auction = await auction_require(auction_id)
    lots = await lot_get_by_auction(auction_id)
    open_lots = [lot for lot in lots if lot.data.status not in CLOSED_STATUSES]
    if open_lots:
        raise InvalidRequest(f"{len(open_lots)} lot(s) have not ended yet")

    auction = await auction_refresh_status(auction_id)
    result = SettlementResult(auction=auction)

    for lot in lots:
        await bid_ledger_repair(lot)

    sold = [lot for lot in lots if lot.data.leader_id and lot.data.status == "ended"]
    buyer_invoice_of: Dict[str, str] = {}
    seller_invoice_of: Dict[str, str] = {}

    for buyer_id, buyer_lots in _group(sold, "leader_id", "buyer_invoice_id").items():
        invoice = await invoice_create(auction, "buyer", buyer_id, buyer_lots)
        result.buyer_invoices.append(invoice)
        for lot in buyer_lots:
            buyer_invoice_of[lot.id] = invoice.id

    for seller_id, seller_lots in _group(sold, "seller_id", "seller_invoice_id").items():
        invoice = await invoice_create(auction, "seller", seller_id, seller_lots)
        result.seller_invoices.append(invoice)
        for lot in seller_lots:
            seller_invoice_of[lot.id] = invoice.id

    for lot in lots:
        if lot.data.status != "ended":
            continue
        settled, changed = await lot_mark_settled(
            lot.id,
            buyer_invoice_id=buyer_invoice_of.get(lot.id),
            seller_invoice_id=seller_invoice_of.get(lot.id),
        )
        if changed:
            result.settled_lots.append(settled)

    result.auction = await auction_record_settlement(auction_id, "settled")
    logger.info(
        f"Auction {auction_id} settled: {len(result.buyer_invoices)} buyer and "
        f"{len(result.seller_invoices)} seller invoice(s), {len(result.settled_lots)} lot(s)"
    )
    return result


async def settlement_on_lot_ended(lot: Lot) -> Optional[SettlementResult]:
    """Settle the lot's auction if this was its last running lot.

    Failures are logged and recorded on the auction for the retry job.
    """
    auction = await auction_refresh_status(lot.data.auction_id)
    if auction.data.status != "completed" or auction.data.settlement_status == "settled":
        return None
    return await _settle_recording_failure(auction.id)


async def _settle_recording_failure(auction_id: str) -> Optional[SettlementResult]:
    try:
        return await settlement_run(auction_id)
    except Exception as e:
        logger.exception(f"Settlement of auction {auction_id} failed: {e}")
        await auction_record_settlement(auction_id, "failed", str(e))
        return None


async def settlement_retry_pending() -> List[SettlementResult]:
    """Re-run settlement for completed auctions still pending or failed."""
    results = []
    for auction in await auction_find_pending_settlement():
        result = await _settle_recording_failure(auction.id)
        if result:
            results.append(result)
    return results
