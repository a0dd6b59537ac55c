import pytest

from conftest import create_auction_with_lots, register_bidder
from models.entities.couchbase.lots import Lot
from models.operations.auto_bids import (
    auto_bid_get,
    auto_bid_list_by_lot,
    auto_bid_plan,
    auto_bid_resolve,
    auto_bid_set,
)
from models.operations.bidding import autobid_submit, bid_place
from models.operations.bids import bid_get_by_lot
from models.operations.exceptions import BidderNotEligible, BidTooLow


@pytest.mark.asyncio
async def test_highest_proxy_wins_one_increment_above_runner_up(frozen_clock):
    _, (lot,) = await create_auction_with_lots(starting_bid=10, bid_increment=10)
    for email in ("a@example.com", "b@example.com", "c@example.com", "d@example.com"):
        await register_bidder(email)

    await auto_bid_set(lot.id, "a@example.com", 100)
    await auto_bid_set(lot.id, "b@example.com", 150)
    await auto_bid_set(lot.id, "c@example.com", 120)

    outcome = await bid_place(lot.id, "d@example.com", amount=20)

    final = await Lot.get(lot.id)
    assert final.data.leader_id == "b@example.com"
    assert final.data.current_bid == 130
    assert outcome.lot.data.current_bid == 130

    # The manual bid, then a single proxy step
    assert [a.bid.data.amount for a in outcome.accepted] == [20, 130]
    assert outcome.accepted[1].bid.data.is_auto_bid
    assert outcome.accepted[1].bid.data.auto_bid_id == f"{lot.id}::b@example.com"
    assert [e.bidder_id for e in outcome.outbid_events] == ["d@example.com"]

    # Resolving again is a no-op
    assert await auto_bid_resolve(lot.id) == []


@pytest.mark.asyncio
async def test_submitting_proxies_one_by_one_converges(frozen_clock):
    _, (lot,) = await create_auction_with_lots(starting_bid=10, bid_increment=10)
    for email in ("a@example.com", "b@example.com", "c@example.com"):
        await register_bidder(email)

    _, first = await autobid_submit(lot.id, "a@example.com", 100)
    assert first.lot.data.current_bid == 20
    assert first.lot.data.leader_id == "a@example.com"

    _, second = await autobid_submit(lot.id, "b@example.com", 150)
    assert second.lot.data.current_bid == 110
    assert second.lot.data.leader_id == "b@example.com"

    _, third = await autobid_submit(lot.id, "c@example.com", 120)
    assert third.lot.data.current_bid == 130
    assert third.lot.data.leader_id == "b@example.com"
    # B raising its own lead does not notify B
    assert third.outbid_events == []

    ledger = sorted(await bid_get_by_lot(lot.id), key=lambda b: b.data.sequence)
    amounts = [b.data.amount for b in ledger]
    assert amounts == sorted(amounts)
    assert len(set(amounts)) == len(amounts)


@pytest.mark.asyncio
async def test_equal_ceilings_favour_the_earliest(frozen_clock):
    _, (lot,) = await create_auction_with_lots(starting_bid=10, bid_increment=10)
    for email in ("early@example.com", "late@example.com", "manual@example.com"):
        await register_bidder(email)

    await auto_bid_set(lot.id, "early@example.com", 200)
    frozen_clock.advance(seconds=5)
    await auto_bid_set(lot.id, "late@example.com", 200)

    await bid_place(lot.id, "manual@example.com", amount=20)

    final = await Lot.get(lot.id)
    assert final.data.leader_id == "early@example.com"
    assert final.data.current_bid == 200


@pytest.mark.asyncio
async def test_resubmitting_replaces_ceiling_and_resets_priority(frozen_clock):
    _, (lot,) = await create_auction_with_lots(starting_bid=10, bid_increment=10)
    await register_bidder("a@example.com")

    first = await auto_bid_set(lot.id, "a@example.com", 100)
    frozen_clock.advance(seconds=30)
    second = await auto_bid_set(lot.id, "a@example.com", 300)

    assert first.id == second.id
    stored = await auto_bid_get(lot.id, "a@example.com")
    assert stored.data.max_bid == 300
    assert stored.data.created_at == frozen_clock.now
    assert len(await auto_bid_list_by_lot(lot.id)) == 1


@pytest.mark.asyncio
async def test_ceiling_below_minimum_is_rejected(frozen_clock):
    _, (lot,) = await create_auction_with_lots(starting_bid=50, bid_increment=10)
    await register_bidder("a@example.com")

    with pytest.raises(BidTooLow, match="Maximum bid must be at least 60.00"):
        await autobid_submit(lot.id, "a@example.com", 55)
    assert await auto_bid_get(lot.id, "a@example.com") is None


@pytest.mark.asyncio
async def test_ineligible_bidder_cannot_register_proxy(frozen_clock):
    _, (lot,) = await create_auction_with_lots()
    await register_bidder("pending@example.com", fica_approved=False)

    with pytest.raises(BidderNotEligible):
        await autobid_submit(lot.id, "pending@example.com", 500)
    assert await auto_bid_get(lot.id, "pending@example.com") is None


@pytest.mark.asyncio
async def test_proxy_of_suspended_bidder_is_skipped(frozen_clock):
    from models.entities.couchbase.users import User
    from models.operations.users import user_get_by_email

    _, (lot,) = await create_auction_with_lots(starting_bid=10, bid_increment=10)
    for email in ("a@example.com", "b@example.com", "m@example.com"):
        await register_bidder(email)

    await auto_bid_set(lot.id, "a@example.com", 500)
    await auto_bid_set(lot.id, "b@example.com", 80)

    user = await user_get_by_email("a@example.com")
    user = await User.get(user.id)
    user.data.suspended = True
    await User.update(user)

    await bid_place(lot.id, "m@example.com", amount=20)

    final = await Lot.get(lot.id)
    assert final.data.leader_id == "b@example.com"
    assert final.data.current_bid == 30


def _proxy(bidder_id, max_bid, seconds=0):
    from datetime import datetime, timedelta, timezone

    from models.entities.couchbase.auto_bids import AutoBid, AutoBidData

    created = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds)
    return AutoBid(
        id=f"lot::{bidder_id}",
        data=AutoBidData(lot_id="lot", auction_id="auc", bidder_id=bidder_id, max_bid=max_bid, created_at=created),
    )


def _lot_data(current_bid, leader_id=None, increment=10):
    from datetime import datetime, timezone

    from models.entities.couchbase.lots import LotData

    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return LotData(
        auction_id="auc",
        lot_number=1,
        title="Item",
        starting_bid=10,
        bid_increment=increment,
        opens_at=now,
        current_bid=current_bid,
        leader_id=leader_id,
    )


def test_plan_is_stable_without_proxies():
    assert auto_bid_plan(_lot_data(20, "x"), []) is None


def test_plan_single_proxy_bids_the_minimum():
    proxy, amount = auto_bid_plan(_lot_data(20, "x"), [_proxy("a", 100)])
    assert proxy.data.bidder_id == "a"
    assert amount == 30


def test_plan_leader_raises_only_when_rival_can_reach_minimum():
    proxies = [_proxy("a", 100), _proxy("b", 60)]
    assert auto_bid_plan(_lot_data(70, "a"), proxies) is None

    proxy, amount = auto_bid_plan(_lot_data(40, "a"), proxies)
    assert (proxy.data.bidder_id, amount) == ("a", 70)


def test_plan_caps_at_winner_ceiling():
    proxies = [_proxy("a", 125), _proxy("b", 120)]
    proxy, amount = auto_bid_plan(_lot_data(20, "x"), proxies)
    assert (proxy.data.bidder_id, amount) == ("a", 125)


def test_plan_does_nothing_when_no_proxy_reaches_minimum():
    assert auto_bid_plan(_lot_data(100, "x"), [_proxy("a", 105)]) is None
