import asyncio
from datetime import timedelta

import pytest

from conftest import create_auction_with_lots, register_bidder
from clients.mailer import Mailer, MailerConfig
from models.entities.couchbase.auctions import Auction
from models.entities.couchbase.lots import Lot
from models.operations.auctions import auction_end
from models.operations.auto_bids import auto_bid_set
from models.operations.bidding import bid_place
from notifications import NotificationGateway, mask_bidder


class RecordingMailer(Mailer):
    def __init__(self):
        super().__init__(MailerConfig(host="smtp.test"))
        self.sent = []

    async def send(self, to, subject, body):
        self.sent.append((to, subject, body))
        return True


class RecordingRealtime:
    def __init__(self):
        self.published = []

    async def publish(self, event_type, auction_id, payload, user_id=None):
        self.published.append((event_type, auction_id, user_id))

    async def aclose(self):
        pass


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def test_mask_bidder():
    assert mask_bidder("alice@example.com") == "ali***"
    assert mask_bidder(None) is None


@pytest.mark.asyncio
async def test_bid_outcome_fans_out_to_subscribers(frozen_clock):
    auction, (lot,) = await create_auction_with_lots(starting_bid=10, bid_increment=10)
    await register_bidder("alice@example.com")
    await register_bidder("bob@example.com")

    realtime = RecordingRealtime()
    gateway = NotificationGateway(realtime=realtime)
    watcher = gateway.subscribe(auction.id)
    alice = gateway.subscribe(auction.id, user_id="Alice@example.com")
    other_auction = gateway.subscribe("another-auction")

    await gateway.dispatch_bid_outcome(await bid_place(lot.id, "alice@example.com", amount=20))
    await gateway.dispatch_bid_outcome(await bid_place(lot.id, "bob@example.com", amount=30))

    watched = _drain(watcher.queue)
    assert [event for event, _ in watched] == ["bidUpdate", "bidUpdate"]
    payload = watched[-1][1]
    assert payload["currentBid"] == 30
    assert payload["bidderEmail"] == "bob***"
    assert payload["nextMinBid"] == 40
    assert payload["lotTitle"] == "Item 1"

    alice_events = [event for event, _ in _drain(alice.queue)]
    assert alice_events == ["bidUpdate", "bidUpdate", "outbidNotification"]
    assert _drain(other_auction.queue) == []

    assert ("outbidNotification", auction.id, "alice@example.com") in realtime.published


@pytest.mark.asyncio
async def test_sniper_extension_sends_timer_update(frozen_clock):
    auction, (lot,) = await create_auction_with_lots()
    await register_bidder("alice@example.com")
    gateway = NotificationGateway()
    sub = gateway.subscribe(auction.id)

    frozen_clock.now = lot.data.end_time - timedelta(seconds=30)
    await gateway.dispatch_bid_outcome(await bid_place(lot.id, "alice@example.com", amount=20))

    events = _drain(sub.queue)
    assert [event for event, _ in events] == ["bidUpdate", "timerUpdate"]
    assert events[1][1]["status"] == "ending"


@pytest.mark.asyncio
async def test_outbid_email_is_queued_and_sent(frozen_clock):
    auction, (lot,) = await create_auction_with_lots(starting_bid=10, bid_increment=10)
    for email in ("alice@example.com", "bob@example.com"):
        await register_bidder(email)
    await auto_bid_set(lot.id, "bob@example.com", 100)

    mailer = RecordingMailer()
    gateway = NotificationGateway(mailer=mailer)
    gateway.start()
    try:
        outcome = await bid_place(lot.id, "alice@example.com", amount=20)
        await gateway.dispatch_bid_outcome(outcome)
        await asyncio.wait_for(gateway._outbox.join(), timeout=1)
    finally:
        await gateway.stop()

    assert [to for to, _, _ in mailer.sent] == ["alice@example.com", "alice@example.com"]
    confirmation, outbid = mailer.sent
    assert confirmation[1] == 'Bid confirmed on "Item 1"'
    assert "Next minimum bid: R30.00" in confirmation[2]
    assert "outbid" in outbid[1]
    assert "This was an automatic bid." in outbid[2]


@pytest.mark.asyncio
async def test_unsubscribe_removes_queue(frozen_clock):
    gateway = NotificationGateway()
    sub = gateway.subscribe("auction-1")
    assert gateway.subscriber_count("auction-1") == 1
    gateway.unsubscribe(sub)
    assert gateway.subscriber_count("auction-1") == 0

    await gateway.publish("bidUpdate", "auction-1", {"lotId": "x"})
    assert sub.queue.empty()


@pytest.mark.asyncio
async def test_sweep_opens_ends_and_settles(frozen_clock):
    from scheduler import lot_sweep_job

    auction, lots = await create_auction_with_lots(n_lots=2)
    await register_bidder("alice@example.com")
    gateway = NotificationGateway()
    sub = gateway.subscribe(auction.id)

    await lot_sweep_job(gateway)
    assert [(await Lot.get(lot.id)).data.status for lot in lots] == ["open"] * len(lots)

    await bid_place(lots[0].id, "alice@example.com", amount=20)
    await auction_end(auction.id)

    await lot_sweep_job(gateway)
    assert (await Lot.get(lots[0].id)).data.status == "ended"
    # Lot 2 closes in 10 seconds, inside its sniper window
    assert (await Lot.get(lots[1].id)).data.status == "ending"

    frozen_clock.advance(seconds=10)
    await lot_sweep_job(gateway)

    assert [(await Lot.get(lot.id)).data.status for lot in lots] == ["settled"] * len(lots)
    assert (await Auction.get(auction.id)).data.settlement_status == "settled"

    events = [event for event, _ in _drain(sub.queue)]
    assert events.count("lotEnded") == 2

    # Redundant sweeps change nothing
    await lot_sweep_job(gateway)
    assert _drain(sub.queue) == []
