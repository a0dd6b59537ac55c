"""
Notification Gateway: pushes auction events to connected clients and queues
e-mail.

Events fan out to in-process subscribers (one bounded queue per SSE
connection) and, when configured, to an external realtime service. E-mail
goes through an outbox drained by a background worker, so a slow SMTP server
never delays a bid response. Delivery is best effort: failures are logged and
never reach the bidding path.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from clients.mailer import Mailer, MailerError
from clients.realtime import RealtimeClient, RealtimeClientError
from models.entities.couchbase.invoices import Invoice
from models.entities.couchbase.lots import Lot
from models.operations import clock
from models.operations.bidding import BidOutcome
from models.operations.lots import lot_minimum_next_bid
from utils import log

from . import templates

logger = log.get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100
OUTBOX_SIZE = 1000


def mask_bidder(bidder_id: Optional[str]) -> Optional[str]:
    if not bidder_id:
        return None
    return bidder_id[:3] + "***"


@dataclass(eq=False)
class Subscriber:
    auction_id: str
    user_id: Optional[str]
    queue: asyncio.Queue


class NotificationGateway:
    def __init__(
        self,
        realtime: Optional[RealtimeClient] = None,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self.realtime = realtime
        self.mailer = mailer
        self._subscribers: Dict[str, Set[Subscriber]] = defaultdict(set)
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=OUTBOX_SIZE)
        self._worker: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._drain_outbox(), name="email-outbox")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self.realtime is not None:
            await self.realtime.aclose()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, auction_id: str, user_id: Optional[str] = None) -> Subscriber:
        sub = Subscriber(
            auction_id=auction_id,
            user_id=user_id.strip().lower() if user_id else None,
            queue=asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE),
        )
        self._subscribers[auction_id].add(sub)
        logger.debug(f"Subscriber joined auction {auction_id} ({len(self._subscribers[auction_id])} connected)")
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        subs = self._subscribers.get(sub.auction_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.auction_id]

    def subscriber_count(self, auction_id: str) -> int:
        return len(self._subscribers.get(auction_id, ()))

    @staticmethod
    def _offer(sub: Subscriber, event: Tuple[str, Dict[str, Any]]) -> None:
        # Slow consumers lose their oldest events rather than blocking publishers
        if sub.queue.full():
            try:
                sub.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        sub.queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(
        self,
        event_type: str,
        auction_id: str,
        payload: Dict[str, Any],
        user_id: Optional[str] = None,
    ) -> None:
        """Deliver one event to the auction's subscribers, or only to ``user_id``'s."""
        for sub in list(self._subscribers.get(auction_id, ())):
            if user_id is None or sub.user_id == user_id:
                self._offer(sub, (event_type, payload))

        if self.realtime is not None:
            try:
                await self.realtime.publish(event_type, auction_id, payload, user_id=user_id)
            except RealtimeClientError as e:
                logger.warning(f"Realtime forward failed: {e}")

    async def bid_update(self, lot: Lot, amount: float, bidder_id: str, is_auto_bid: bool = False) -> None:
        await self.publish(
            "bidUpdate",
            lot.data.auction_id,
            {
                "auctionId": lot.data.auction_id,
                "lotId": lot.id,
                "currentBid": amount,
                "bidderEmail": mask_bidder(bidder_id),
                "lotTitle": lot.data.title,
                "timestamp": clock.utcnow().isoformat(),
                "bidIncrement": lot.data.bid_increment,
                "nextMinBid": lot_minimum_next_bid(lot.data),
                "isAutoBid": is_auto_bid,
            },
        )

    async def timer_update(self, lot: Lot) -> None:
        await self.publish(
            "timerUpdate",
            lot.data.auction_id,
            {
                "auctionId": lot.data.auction_id,
                "lotId": lot.id,
                "endTime": lot.data.end_time.isoformat() if lot.data.end_time else None,
                "status": lot.data.status,
                "extensionsCount": lot.data.extensions_count,
            },
        )

    async def lot_ended(self, lot: Lot) -> None:
        await self.publish(
            "lotEnded",
            lot.data.auction_id,
            {
                "auctionId": lot.data.auction_id,
                "lotId": lot.id,
                "finalBid": lot.data.current_bid if lot.data.leader_id else None,
                "winner": mask_bidder(lot.data.leader_id),
                "status": lot.data.status,
            },
        )
        if lot.data.leader_id:
            subject, body = templates.lot_won(lot)
            self.queue_email(lot.data.leader_id, subject, body)

    async def dispatch_bid_outcome(self, outcome: BidOutcome) -> None:
        """Notify everyone affected by a committed bid pipeline run."""
        if outcome.accepted:
            first = outcome.bid
            subject, body = templates.bid_confirmation(first.lot, first.bid.data.amount, first.bid.data.is_auto_bid)
            self.queue_email(first.bid.data.bidder_id, subject, body)

        for accepted in outcome.accepted:
            lot = accepted.lot
            bid = accepted.bid.data
            await self.bid_update(lot, bid.amount, bid.bidder_id, bid.is_auto_bid)
            if accepted.extended:
                await self.timer_update(lot)

            displaced = accepted.displaced_leader_id
            if displaced:
                await self.publish(
                    "outbidNotification",
                    lot.data.auction_id,
                    {
                        "auctionId": lot.data.auction_id,
                        "lotId": lot.id,
                        "lotTitle": lot.data.title,
                        "previousBid": accepted.previous_bid,
                        "newBidAmount": bid.amount,
                        "isAutoBid": bid.is_auto_bid,
                    },
                    user_id=displaced,
                )
                subject, body = templates.outbid(
                    lot, accepted.previous_bid, bid.amount, bid.is_auto_bid, clock.utcnow()
                )
                self.queue_email(displaced, subject, body)

    def invoices_issued(self, invoices: List[Invoice]) -> None:
        for invoice in invoices:
            subject, body = templates.invoice(invoice)
            self.queue_email(invoice.data.user_id, subject, body)

    # ------------------------------------------------------------------
    # E-mail outbox
    # ------------------------------------------------------------------

    def queue_email(self, to: str, subject: str, body: str) -> None:
        if self.mailer is None or not self.mailer.enabled:
            logger.debug(f"Mail disabled, dropping '{subject}' to {mask_bidder(to)}")
            return
        try:
            self._outbox.put_nowait((to, subject, body))
        except asyncio.QueueFull:
            logger.error(f"E-mail outbox full, dropping '{subject}' to {mask_bidder(to)}")

    async def _drain_outbox(self) -> None:
        while True:
            to, subject, body = await self._outbox.get()
            try:
                await self.mailer.send(to, subject, body)
            except MailerError as e:
                logger.error(str(e))
            finally:
                self._outbox.task_done()
