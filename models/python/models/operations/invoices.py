"""
Invoice generation.

Each (auction, role, party) has exactly one invoice, stored under a key
derived from those three values. Creating it twice returns the first one, so
settlement can be re-run after a partial failure without duplicating bills.
"""

import hashlib
import logging
from datetime import timedelta
from typing import List, Literal, Optional

from couchbase.exceptions import DocumentExistsException

from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.invoices import Invoice, InvoiceData, InvoiceItem
from models.entities.couchbase.lots import Lot
from models.operations import clock

logger = logging.getLogger(__name__)

InvoiceType = Literal["buyer", "seller"]

_PREFIX = {"buyer": "BUY", "seller": "SELL"}


def _party_digest(party_id: str) -> str:
    return hashlib.sha256(party_id.encode("utf-8")).hexdigest()


def invoice_key(invoice_type: InvoiceType, auction_id: str, party_id: str) -> str:
    return f"invoice::{invoice_type}::{auction_id}::{_party_digest(party_id)[:16]}"


def invoice_number(invoice_type: InvoiceType, auction_id: str, party_id: str) -> str:
    return f"{_PREFIX[invoice_type]}-{auction_id[:8].upper()}-{_party_digest(party_id)[:6].upper()}"


def _items(lots: List[Lot]) -> List[InvoiceItem]:
    return [
        InvoiceItem(
            lot_id=lot.id,
            lot_number=lot.data.lot_number,
            description=f"Lot {lot.data.lot_number}: {lot.data.title}",
            unit_price=lot.data.current_bid,
            total_price=lot.data.current_bid,
        )
        for lot in sorted(lots, key=lambda lot: lot.data.lot_number)
    ]


async def invoice_get(invoice_id: str) -> Optional[Invoice]:
    return await Invoice.get(invoice_id)


async def invoice_get_by_auction(auction_id: str) -> List[Invoice]:
    return await Invoice.find({"auction_id": auction_id}, order_by="invoice_number ASC")


async def invoice_get_by_user(user_id: str) -> List[Invoice]:
    return await Invoice.find({"user_id": user_id}, order_by="created_at DESC")


async def invoice_create(
    auction: Auction, invoice_type: InvoiceType, party_id: str, lots: List[Lot]
) -> Invoice:
    """
    Create the buyer or seller invoice for one party of an auction.

    Buyers pay the hammer price plus the buyer's premium; sellers receive the
    hammer price less commission. Idempotent on (auction, role, party).
    """
    cfg = auction.data.config
    items = _items(lots)
    subtotal = round(sum(item.total_price for item in items), 2)

    if invoice_type == "buyer":
        commission = round(subtotal * cfg.buyer_premium_pct / 100, 2)
        total = round(subtotal + commission, 2)
        due_days = cfg.buyer_invoice_due_days
    else:
        commission = round(subtotal * cfg.seller_commission_pct / 100, 2)
        total = round(subtotal - commission, 2)
        due_days = cfg.seller_invoice_due_days

    data = InvoiceData(
        invoice_number=invoice_number(invoice_type, auction.id, party_id),
        auction_id=auction.id,
        user_id=party_id,
        invoice_type=invoice_type,
        items=items,
        subtotal=subtotal,
        commission=commission,
        total=total,
        due_date=clock.utcnow() + timedelta(days=due_days),
    )

    key = invoice_key(invoice_type, auction.id, party_id)
    try:
        invoice = await Invoice.create(data, key=key)
        logger.info(f"Created {invoice_type} invoice {data.invoice_number} for {party_id}: {total:.2f}")
        return invoice
    except DocumentExistsException:
        existing = await Invoice.get(key)
        if existing is None:
            raise
        logger.info(f"{invoice_type.capitalize()} invoice {existing.data.invoice_number} already exists")
        return existing


async def invoice_mark_paid(invoice_id: str) -> Optional[Invoice]:
    """Record an offline (EFT) payment. Paying twice keeps the first payment date."""
    invoice = await Invoice.get(invoice_id)
    if not invoice:
        return None
    if invoice.data.payment_status == "paid":
        return invoice
    invoice.data.payment_status = "paid"
    invoice.data.paid_at = clock.utcnow()
    return await Invoice.update(invoice)
