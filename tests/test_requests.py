import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from storefront.models import Order, Product

BANK = {
    "account_holder_name": "Asha Rao",
    "bank_name": "State Bank",
    "account_number": "001234567890",
    "ifsc_code": "SBIN0000001",
}


async def _order(place_order, user, *products, payment_method="UPI"):
    lines = [{"product_id": p.id, "size": "M", "quantity": 1} for p in products]
    resp = await place_order(user, lines, payment_method=payment_method)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _balance(client, auth, user):
    return (await client.get("/api/wallet", headers=auth(user))).json()["balance_cents"]


@pytest.mark.asyncio
async def test_order_cancel_request_approved_refunds_wallet_once(client, auth, admin, customer, product_factory, place_order, session_factory):
    shirt = await product_factory(price_cents=30_000, stock=2)
    order = await _order(place_order, customer, shirt)

    resp = await client.post(
        "/api/requests/cancel", json={"order_id": order["id"], "reason": "Changed my mind"}, headers=auth(customer)
    )
    assert resp.status_code == 201, resp.text
    req = resp.json()
    assert req["refund_amount_cents"] == order["total_cents"]
    assert req["previous_status"] == "Pending"
    assert (await client.get(f"/api/orders/{order['id']}", headers=auth(customer))).json()["status"] == "Cancel Requested"

    # one open request per order
    dup = await client.post("/api/requests/cancel", json={"order_id": order["id"]}, headers=auth(customer))
    assert dup.status_code == 409

    resp = await client.put(f"/api/requests/cancel/{req['id']}", json={"status": "Approved"}, headers=auth(admin))
    assert resp.status_code == 200, resp.text
    decided = resp.json()
    assert decided["refund_status"] == "Completed"
    assert decided["refund_reference"].startswith("TXN-")

    again = await client.put(f"/api/requests/cancel/{req['id']}", json={"status": "Approved"}, headers=auth(admin))
    assert again.status_code == 409
    settle = await client.post("/api/refunds", json={"request_type": "cancel", "request_id": req["id"]}, headers=auth(admin))
    assert settle.status_code == 200

    assert await _balance(client, auth, customer) == order["total_cents"]
    assert (await client.get(f"/api/orders/{order['id']}", headers=auth(customer))).json()["status"] == "Cancelled"
    async with session_factory() as s:
        assert (await s.get(Product, shirt.id)).stock == 2


@pytest.mark.asyncio
async def test_rejected_cancel_restores_previous_status(client, auth, admin, customer, product_factory, place_order, advance):
    shirt = await product_factory()
    order = await _order(place_order, customer, shirt)
    await advance(order["id"], "Processing")

    req = (await client.post("/api/requests/cancel", json={"order_id": order["id"]}, headers=auth(customer))).json()
    resp = await client.put(
        f"/api/requests/cancel/{req['id']}", json={"status": "Rejected", "admin_note": "Already packed"}, headers=auth(admin)
    )
    assert resp.json()["status"] == "Rejected"
    assert resp.json()["admin_note"] == "Already packed"
    assert (await client.get(f"/api/orders/{order['id']}", headers=auth(customer))).json()["status"] == "Processing"
    assert await _balance(client, auth, customer) == 0


@pytest.mark.asyncio
async def test_cod_cancel_needs_no_refund(client, auth, admin, customer, product_factory, place_order):
    shirt = await product_factory()
    order = await _order(place_order, customer, shirt, payment_method="COD")
    req = (await client.post("/api/requests/cancel", json={"order_id": order["id"]}, headers=auth(customer))).json()
    assert req["refund_status"] == "Not Required"
    assert req["refund_amount_cents"] == 0

    decided = (await client.put(f"/api/requests/cancel/{req['id']}", json={"status": "Approved"}, headers=auth(admin))).json()
    assert decided["refund_status"] == "Not Required"
    assert await _balance(client, auth, customer) == 0


@pytest.mark.asyncio
async def test_shipped_order_cannot_be_cancelled(client, auth, customer, product_factory, place_order, advance):
    shirt = await product_factory()
    order = await _order(place_order, customer, shirt)
    await advance(order["id"], "Shipped")
    resp = await client.post("/api/requests/cancel", json={"order_id": order["id"]}, headers=auth(customer))
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_only_the_owner_can_request(client, auth, user_factory, product_factory, place_order):
    owner = await user_factory()
    stranger = await user_factory()
    shirt = await product_factory()
    order = await _order(place_order, owner, shirt)
    resp = await client.post("/api/requests/cancel", json={"order_id": order["id"]}, headers=auth(stranger))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_item_cancels_refund_line_and_cancel_order_when_all_gone(client, auth, admin, customer, product_factory, place_order):
    shirt = await product_factory(price_cents=40_000)
    jeans = await product_factory(price_cents=60_000)
    order = await _order(place_order, customer, shirt, jeans)
    first, second = order["items"]

    req1 = (await client.post(
        "/api/requests/cancel", json={"order_id": order["id"], "item_id": first["id"]}, headers=auth(customer)
    )).json()
    assert req1["item_level"] is True
    assert req1["refund_amount_cents"] == 40_000
    await client.put(f"/api/requests/cancel/{req1['id']}", json={"status": "Approved"}, headers=auth(admin))

    current = (await client.get(f"/api/orders/{order['id']}", headers=auth(customer))).json()
    assert current["status"] == "Pending"
    assert [i["status"] for i in current["items"]] == ["Cancelled", "Pending"]
    assert await _balance(client, auth, customer) == 40_000

    req2 = (await client.post(
        "/api/requests/cancel", json={"order_id": order["id"], "item_id": second["id"]}, headers=auth(customer)
    )).json()
    await client.put(f"/api/requests/cancel/{req2['id']}", json={"status": "Approved"}, headers=auth(admin))

    current = (await client.get(f"/api/orders/{order['id']}", headers=auth(customer))).json()
    assert current["status"] == "Cancelled"
    # the last line also carries the shipping charge back
    assert await _balance(client, auth, customer) == order["total_cents"]

    listing = await client.get("/api/requests/cancel", params={"item_level": True}, headers=auth(admin))
    assert {r["id"] for r in listing.json()} == {req1["id"], req2["id"]}


@pytest.mark.asyncio
async def test_open_item_cancel_blocks_status_moves_until_order_cancelled(client, auth, admin, customer, product_factory, place_order):
    shirt = await product_factory(price_cents=40_000)
    jeans = await product_factory(price_cents=60_000)
    order = await _order(place_order, customer, shirt, jeans)
    first = order["items"][0]

    req = (await client.post(
        "/api/requests/cancel", json={"order_id": order["id"], "item_id": first["id"]}, headers=auth(customer)
    )).json()
    blocked = await client.patch(f"/api/orders/{order['id']}/status", json={"status": "Processing"}, headers=auth(admin))
    assert blocked.status_code == 409

    cancelled = await client.patch(f"/api/orders/{order['id']}/status", json={"status": "Cancelled"}, headers=auth(admin))
    assert cancelled.status_code == 200, cancelled.text
    assert {i["status"] for i in cancelled.json()["items"]} == {"Cancelled"}
    assert await _balance(client, auth, customer) == order["total_cents"]

    # the full cancellation already covered the line
    decided = (await client.put(f"/api/requests/cancel/{req['id']}", json={"status": "Approved"}, headers=auth(admin))).json()
    assert decided["refund_status"] == "Not Required"
    assert await _balance(client, auth, customer) == order["total_cents"]


@pytest.mark.asyncio
async def test_return_flow_refunds_on_completion(client, auth, admin, customer, product_factory, place_order, advance):
    shirt = await product_factory(price_cents=40_000)
    jeans = await product_factory(price_cents=60_000)
    order = await _order(place_order, customer, shirt, jeans)
    await advance(order["id"], "Shipped", "Delivered")

    resp = await client.post(
        "/api/requests/return",
        json={"order_id": order["id"], "item_id": order["items"][1]["id"], "reason": "size_issue", "comment": "Too small"},
        headers=auth(customer),
    )
    assert resp.status_code == 201, resp.text
    req = resp.json()
    assert req["refund_method"] == "wallet"
    assert req["refund_amount_cents"] == 60_000

    url = f"/api/requests/return/{req['id']}"
    assert (await client.put(url, json={"status": "Completed"}, headers=auth(admin))).status_code == 409
    assert (await client.put(url, json={"status": "Approved"}, headers=auth(admin))).json()["status"] == "Approved"
    assert await _balance(client, auth, customer) == 0

    done = (await client.put(url, json={"status": "Completed"}, headers=auth(admin))).json()
    assert done["refund_status"] == "Completed"
    assert await _balance(client, auth, customer) == 60_000

    current = (await client.get(f"/api/orders/{order['id']}", headers=auth(customer))).json()
    assert current["status"] == "Delivered"
    assert [i["status"] for i in current["items"]] == ["Delivered", "Return Completed"]

    assert (await client.delete(url, headers=auth(admin))).status_code == 200
    assert (await client.get("/api/requests/return", headers=auth(admin))).json() == []


@pytest.mark.asyncio
async def test_bank_refund_waits_for_manual_settlement(client, auth, admin, customer, product_factory, place_order, advance):
    shirt = await product_factory(price_cents=40_000)
    order = await _order(place_order, customer, shirt)
    await advance(order["id"], "Shipped", "Delivered")

    missing_bank = await client.post(
        "/api/requests/return",
        json={"order_id": order["id"], "reason": "damaged_item", "refund_method": "bank"},
        headers=auth(customer),
    )
    assert missing_bank.status_code == 400

    req = (await client.post(
        "/api/requests/return",
        json={"order_id": order["id"], "reason": "damaged_item", "refund_method": "bank", "bank_details": BANK},
        headers=auth(customer),
    )).json()
    assert req["refund_amount_cents"] == 40_000
    assert (await client.get(f"/api/orders/{order['id']}", headers=auth(customer))).json()["status"] == "Return Requested"

    url = f"/api/requests/return/{req['id']}"
    await client.put(url, json={"status": "Approved"}, headers=auth(admin))
    done = (await client.put(url, json={"status": "Completed"}, headers=auth(admin))).json()
    assert done["refund_status"] == "Pending"

    no_ref = await client.post("/api/refunds", json={"request_type": "return", "request_id": req["id"]}, headers=auth(admin))
    assert no_ref.status_code == 400
    settled = await client.post(
        "/api/refunds", json={"request_type": "return", "request_id": req["id"], "reference": "NEFT-778"}, headers=auth(admin)
    )
    assert settled.json()["request"]["refund_status"] == "Completed"
    assert settled.json()["request"]["refund_reference"] == "NEFT-778"
    assert await _balance(client, auth, customer) == 0
    assert (await client.get(f"/api/orders/{order['id']}", headers=auth(customer))).json()["status"] == "Return Completed"


@pytest.mark.asyncio
async def test_return_window_is_enforced(client, auth, customer, product_factory, place_order, advance, session_factory):
    shirt = await product_factory()
    order = await _order(place_order, customer, shirt)
    await advance(order["id"], "Shipped", "Delivered")
    async with session_factory() as s:
        await s.execute(
            update(Order).where(Order.id == order["id"]).values(delivered_at=datetime.now(timezone.utc) - timedelta(days=30))
        )
        await s.commit()

    resp = await client.post(
        "/api/requests/return", json={"order_id": order["id"], "reason": "other"}, headers=auth(customer)
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_replacement_return_has_no_refund(client, auth, admin, customer, product_factory, place_order, advance):
    shirt = await product_factory()
    order = await _order(place_order, customer, shirt)
    await advance(order["id"], "Shipped", "Delivered")
    req = (await client.post(
        "/api/requests/return",
        json={"order_id": order["id"], "reason": "wrong_product", "resolution": "replacement"},
        headers=auth(customer),
    )).json()
    assert req["refund_status"] == "Not Required"
    assert req["refund_method"] is None


@pytest.mark.asyncio
async def test_pending_requests_cannot_be_deleted(client, auth, admin, customer, product_factory, place_order):
    shirt = await product_factory()
    order = await _order(place_order, customer, shirt)
    req = (await client.post("/api/requests/cancel", json={"order_id": order["id"]}, headers=auth(customer))).json()
    assert (await client.delete(f"/api/requests/cancel/{req['id']}", headers=auth(admin))).status_code == 409
    assert (await client.delete("/api/requests/cancel/unknown", headers=auth(admin))).status_code == 404


@pytest.mark.asyncio
async def test_combined_endpoint_dispatches_by_type(client, auth, customer, product_factory, place_order):
    shirt = await product_factory()
    order = await _order(place_order, customer, shirt)

    bad = await client.post("/api/requests", json={"type": "exchange", "order_id": order["id"]}, headers=auth(customer))
    assert bad.status_code == 400
    invalid = await client.post("/api/requests", json={"type": "return", "order_id": order["id"], "reason": "meh"}, headers=auth(customer))
    assert invalid.status_code == 422

    resp = await client.post("/api/requests", json={"type": "cancel", "order_id": order["id"]}, headers=auth(customer))
    assert resp.status_code == 201
    assert resp.json()["type"] == "cancel"


@pytest.mark.asyncio
async def test_request_listing_is_admin_only_and_filterable(client, auth, admin, customer, product_factory, place_order):
    shirt = await product_factory()
    order = await _order(place_order, customer, shirt)
    await client.post("/api/requests/cancel", json={"order_id": order["id"]}, headers=auth(customer))

    assert (await client.get("/api/requests/cancel", headers=auth(customer))).status_code == 403
    pending = await client.get("/api/requests/cancel", params={"status": "Pending"}, headers=auth(admin))
    assert len(pending.json()) == 1
    approved = await client.get("/api/requests/cancel", params={"status": "Approved"}, headers=auth(admin))
    assert approved.json() == []


@pytest.mark.asyncio
async def test_concurrent_cancel_decisions_apply_once(client, auth, admin, customer, product_factory, place_order, session_factory):
    shirt = await product_factory(price_cents=30_000, stock=3)
    order = await _order(place_order, customer, shirt)
    req = (await client.post("/api/requests/cancel", json={"order_id": order["id"]}, headers=auth(customer))).json()

    url = f"/api/requests/cancel/{req['id']}"
    responses = await asyncio.gather(*(client.put(url, json={"status": "Approved"}, headers=auth(admin)) for _ in range(4)))

    assert sorted(r.status_code for r in responses) == [200, 409, 409, 409]
    assert await _balance(client, auth, customer) == order["total_cents"]
    txns = (await client.get("/api/wallet/transactions", headers=auth(customer))).json()
    assert len(txns) == 1
    async with session_factory() as s:
        assert (await s.get(Product, shirt.id)).stock == 3


@pytest.mark.asyncio
async def test_concurrent_return_completions_refund_once(client, auth, admin, customer, product_factory, place_order, advance):
    shirt = await product_factory(price_cents=40_000)
    order = await _order(place_order, customer, shirt)
    await advance(order["id"], "Shipped", "Delivered")
    req = (await client.post(
        "/api/requests/return",
        json={"order_id": order["id"], "item_id": order["items"][0]["id"], "reason": "damaged_item"},
        headers=auth(customer),
    )).json()
    url = f"/api/requests/return/{req['id']}"

    approvals = await asyncio.gather(*(client.put(url, json={"status": "Approved"}, headers=auth(admin)) for _ in range(3)))
    assert sorted(r.status_code for r in approvals) == [200, 409, 409]

    completions = await asyncio.gather(*(client.put(url, json={"status": "Completed"}, headers=auth(admin)) for _ in range(4)))
    assert sorted(r.status_code for r in completions) == [200, 409, 409, 409]
    assert await _balance(client, auth, customer) == 40_000
    assert len((await client.get("/api/wallet/transactions", headers=auth(customer))).json()) == 1
