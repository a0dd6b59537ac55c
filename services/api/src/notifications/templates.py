"""Plain-text bodies for auction e-mail."""

from datetime import datetime
from typing import Optional, Tuple

from models.entities.couchbase.invoices import Invoice
from models.entities.couchbase.lots import Lot


def _money(amount: float) -> str:
    return f"R{amount:,.2f}"


def _time_remaining(end_time: Optional[datetime], now: datetime) -> Optional[str]:
    if end_time is None:
        return None
    seconds = int((end_time - now).total_seconds())
    if seconds <= 0:
        return None
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def outbid(lot: Lot, previous_bid: float, new_amount: float, is_auto_bid: bool, now: datetime) -> Tuple[str, str]:
    title = lot.data.title
    remaining = _time_remaining(lot.data.end_time, now)
    lines = [
        f"You've been outbid on \"{title}\" (lot {lot.data.lot_number}).",
        "",
        f"Your previous bid: {_money(previous_bid)}",
        f"New leading bid: {_money(new_amount)}",
    ]
    if is_auto_bid:
        lines.append("This was an automatic bid.")
    lines.append("")
    lines.append(f"Time remaining: {remaining}" if remaining else "The lot may be ending soon.")
    lines.append("Consider setting an auto-bid to stay competitive without watching the lot.")
    return f"You've been outbid on \"{title}\"", "\n".join(lines)


def lot_won(lot: Lot) -> Tuple[str, str]:
    title = lot.data.title
    body = "\n".join([
        f"Congratulations! You won \"{title}\" (lot {lot.data.lot_number}).",
        "",
        f"Winning bid: {_money(lot.data.current_bid)}",
        "Your invoice will follow once the auction has closed.",
    ])
    return f"You won \"{title}\"", body


def invoice(inv: Invoice) -> Tuple[str, str]:
    d = inv.data
    lines = [f"Invoice {d.invoice_number}", ""]
    for item in d.items:
        lines.append(f"  {item.description}: {_money(item.total_price)}")
    lines.append("")
    lines.append(f"Subtotal: {_money(d.subtotal)}")
    if d.invoice_type == "buyer":
        lines.append(f"Buyer's premium: {_money(d.commission)}")
        lines.append(f"Total due: {_money(d.total)}")
        lines.append(f"Please pay by EFT before {d.due_date:%Y-%m-%d}, quoting {d.invoice_number}.")
        subject = f"Your invoice {d.invoice_number}"
    else:
        lines.append(f"Commission: {_money(d.commission)}")
        lines.append(f"Payout: {_money(d.total)}")
        lines.append(f"Payout is scheduled for {d.due_date:%Y-%m-%d}.")
        subject = f"Your seller statement {d.invoice_number}"
    return subject, "\n".join(lines)


def bid_confirmation(lot: Lot, amount: float, is_auto_bid: bool) -> Tuple[str, str]:
    title = lot.data.title
    lines = [
        f"Your bid of {_money(amount)} on \"{title}\" (lot {lot.data.lot_number}) was accepted.",
    ]
    if is_auto_bid:
        lines.append("It was placed automatically from your auto-bid.")
    lines.append("")
    lines.append(f"Next minimum bid: {_money(round(amount + lot.data.bid_increment, 2))}")
    return f"Bid confirmed on \"{title}\"", "\n".join(lines)
