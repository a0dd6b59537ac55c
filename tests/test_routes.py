import httpx
import pytest
import pytest_asyncio

from conftest import register_bidder
from notifications import NotificationGateway

ADMIN = {"X-Admin-API-Key": "s3cret"}


@pytest_asyncio.fixture
async def client(monkeypatch, frozen_clock):
    monkeypatch.setenv("ADMIN_API_KEY", "s3cret")

    async def ping():
        return None

    import main
    import routes.base

    monkeypatch.setattr(routes.base, "check_connection", ping)
    main.app.state.gateway = NotificationGateway()

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _auction_with_lot(client, **lot):
    resp = await client.post("/api/auctions/", json={"title": "Farm Equipment"}, headers=ADMIN)
    assert resp.status_code == 201
    auction = resp.json()

    body = {"title": "Tractor", "starting_bid": 1000, "bid_increment": 100}
    body.update(lot)
    resp = await client.post(f"/api/lots/{auction['id']}", json=body, headers=ADMIN)
    assert resp.status_code == 201
    return auction, resp.json()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_admin_routes_require_key(client):
    resp = await client.post("/api/auctions/", json={"title": "No key"})
    assert resp.status_code == 401

    resp = await client.post("/api/auctions/", json={"title": "Wrong key"}, headers={"X-Admin-API-Key": "nope"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_place_bid_over_http(client):
    auction, lot = await _auction_with_lot(client)
    await register_bidder("alice@example.com")
    await register_bidder("bob@example.com")

    resp = await client.post(f"/api/lots/{lot['id']}/bid", json={"bidderEmail": "alice@example.com"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["newBidAmount"] == 1100
    assert resp.json()["previousBidder"] is None

    resp = await client.post(f"/api/lots/{lot['id']}/bid", json={"bidderEmail": "bob@example.com", "amount": 1500})
    body = resp.json()
    assert body["currentBid"] == 1500
    assert body["previousBidder"] == "ali***"

    resp = await client.get(f"/api/lots/{auction['id']}")
    (listed,) = resp.json()
    assert listed["current_bid"] == 1500
    assert listed["leader"] == "bob***"
    assert listed["next_min_bid"] == 1600
    assert [b["amount"] for b in listed["bid_history"]] == [1100, 1500]


@pytest.mark.asyncio
async def test_bid_errors_use_failure_body(client):
    _, lot = await _auction_with_lot(client)
    await register_bidder("alice@example.com")
    await register_bidder("pending@example.com", fica_approved=False)

    resp = await client.post(f"/api/lots/{lot['id']}/bid", json={"bidderEmail": "alice@example.com", "amount": 5})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Minimum bid is 1100.00"}

    resp = await client.post(f"/api/lots/{lot['id']}/bid", json={"bidderEmail": "pending@example.com"})
    assert resp.status_code == 400
    assert "FICA approval required" in resp.json()["error"]

    resp = await client.post("/api/lots/missing/bid", json={"bidderEmail": "alice@example.com"})
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "error": "Lot not found"}


@pytest.mark.asyncio
async def test_autobid_endpoints(client):
    auction, lot = await _auction_with_lot(client)
    await register_bidder("alice@example.com")
    await register_bidder("pending@example.com", fica_approved=False)
    base = f"/api/lots/{auction['id']}/{lot['id']}"

    resp = await client.put(f"{base}/autobid", json={"bidderEmail": "alice@example.com", "maxBid": 5000})
    assert resp.status_code == 200
    assert resp.json() == {"message": "Auto-bid set successfully", "maxBid": 5000}

    resp = await client.get(f"{base}/autobid/ALICE@example.com")
    assert resp.json() == {"maxBid": 5000}
    resp = await client.get(f"{base}/autobid/nobody@example.com")
    assert resp.json() == {"maxBid": None}

    resp = await client.put(f"{base}/autobid", json={"bidderEmail": "pending@example.com", "maxBid": 5000})
    assert resp.status_code == 403

    resp = await client.put(f"{base}/autobid", json={"bidderEmail": "alice@example.com", "maxBid": 50})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_end_auction_returns_staggered_schedule(client, frozen_clock):
    auction, first = await _auction_with_lot(client)
    resp = await client.post(f"/api/lots/{auction['id']}", json={"title": "Plough", "starting_bid": 10}, headers=ADMIN)
    second = resp.json()
    assert second["lot_number"] == 2
    assert second["bid_increment"] == 10

    resp = await client.post(f"/api/lots/{auction['id']}/end", headers=ADMIN)
    assert resp.status_code == 200
    scheduled = resp.json()["scheduled"]
    assert [s["lot_id"] for s in scheduled] == [first["id"], second["id"]]

    resp = await client.post(f"/api/lots/{auction['id']}/end", headers=ADMIN)
    assert resp.json()["scheduled"] == []


@pytest.mark.asyncio
async def test_lot_curation(client):
    auction, lot = await _auction_with_lot(client)
    base = f"/api/lots/{auction['id']}/{lot['id']}"

    resp = await client.put(base, json={"title": "Vintage Tractor"}, headers=ADMIN)
    assert resp.json()["title"] == "Vintage Tractor"

    resp = await client.put(f"{base}/assign-seller", json={"seller_id": "seller-9"}, headers=ADMIN)
    assert resp.json()["seller_id"] == "seller-9"

    resp = await client.delete(base, headers=ADMIN)
    assert resp.status_code == 200
    resp = await client.get(f"/api/lots/{auction['id']}")
    assert resp.json() == []


@pytest.mark.asyncio
async def test_settle_and_list_invoices(client, frozen_clock):
    auction, lot = await _auction_with_lot(client)
    await register_bidder("alice@example.com")
    await client.post(f"/api/lots/{lot['id']}/bid", json={"bidderEmail": "alice@example.com"})

    resp = await client.post(f"/api/auctions/{auction['id']}/settle", headers=ADMIN)
    assert resp.status_code == 400

    await client.post(f"/api/lots/{auction['id']}/end", headers=ADMIN)
    from models.operations.lots import lot_end

    await lot_end(lot["id"])

    resp = await client.post(f"/api/auctions/{auction['id']}/settle", headers=ADMIN)
    assert resp.status_code == 200
    body = resp.json()
    assert body["settlement_status"] == "settled"
    (invoice,) = body["invoices"]
    assert invoice["total"] == 1210.0

    resp = await client.get(f"/api/auctions/{auction['id']}/invoices", headers=ADMIN)
    assert [i["id"] for i in resp.json()] == [invoice["id"]]

    resp = await client.post(f"/api/auctions/{auction['id']}/invoices/{invoice['id']}/paid", headers=ADMIN)
    assert resp.json()["payment_status"] == "paid"

    resp = await client.get(f"/api/auctions/{auction['id']}")
    assert resp.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_unknown_auction_is_404(client):
    assert (await client.get("/api/auctions/missing")).status_code == 404
    assert (await client.get("/api/lots/missing")).status_code == 404
    resp = await client.post("/api/lots/missing/end", headers=ADMIN)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_bid_retry_budget_comes_from_config(client, monkeypatch, couchbase_store):
    _, lot = await _auction_with_lot(client)
    await register_bidder("alice@example.com")
    monkeypatch.setenv("BID_MAX_RETRIES", "0")

    couchbase_store.forced_cas_mismatches["lots"] = 1
    resp = await client.post(f"/api/lots/{lot['id']}/bid", json={"bidderEmail": "alice@example.com"})
    assert resp.status_code == 400
    assert "re-fetch" in resp.json()["error"]

    resp = await client.post(f"/api/lots/{lot['id']}/bid", json={"bidderEmail": "alice@example.com"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_delete_auction(client):
    auction, lot = await _auction_with_lot(client)
    await register_bidder("alice@example.com")
    await client.post(f"/api/lots/{lot['id']}/bid", json={"bidderEmail": "alice@example.com"})

    assert (await client.delete(f"/api/auctions/{auction['id']}")).status_code == 401

    resp = await client.delete(f"/api/auctions/{auction['id']}", headers=ADMIN)
    assert resp.status_code == 400
    assert "in progress" in resp.json()["detail"]

    other, _ = await _auction_with_lot(client)
    resp = await client.delete(f"/api/auctions/{other['id']}", headers=ADMIN)
    assert resp.status_code == 200
    assert (await client.get(f"/api/auctions/{other['id']}")).status_code == 404
    assert (await client.get(f"/api/lots/{other['id']}")).status_code == 404

    resp = await client.delete(f"/api/auctions/{other['id']}", headers=ADMIN)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_unexpected_error_returns_generic_500(monkeypatch, frozen_clock):
    import main
    import routes.auctions

    async def broken(*args, **kwargs):
        raise RuntimeError("connection pool exhausted")

    monkeypatch.setattr(routes.auctions, "auction_list", broken)
    main.app.state.gateway = NotificationGateway()

    transport = httpx.ASGITransport(app=main.app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/api/auctions/")

    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error"}
