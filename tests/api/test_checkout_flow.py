# tests/api/test_checkout_flow.py
from __future__ import annotations

import httpx
import pytest

from app.models.payment import Payment
from tests.factories import add_to_cart, count_rows, make_variant, make_voucher, set_site_settings, stock_of

BUYER = 42
H = {"X-Buyer-Id": str(BUYER)}

SHIPPING = {
    "firstName": "Maria",
    "lastName": "Santos",
    "address": "45 Mabini Ave",
    "city": "Cebu City",
    "province": "Cebu",
    "zipCode": "6000",
    "phone": "09181234567",
    "email": "maria@example.com",
}


def _assert_problem_shape(obj: dict) -> None:
    assert isinstance(obj, dict)
    for k in ("error_code", "message", "http_status", "trace_id", "context"):
        assert k in obj, f"problem 缺少字段 {k}: {obj}"


@pytest.mark.asyncio
async def test_cod_checkout_end_to_end(client: httpx.AsyncClient, async_session_maker):
    await set_site_settings(async_session_maker, ship_flat=True, flat_rate_amount=50)
    v = await make_variant(async_session_maker, seller_id=1, price="500", stock=5)
    await make_voucher(async_session_maker, seller_id=1, code="SAVE10")
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=2)

    r = await client.post("/checkout/voucher/validate", json={"code": "SAVE10"}, headers=H)
    assert r.status_code == 200, r.text
    assert r.json()["applicable"] is True
    assert r.json()["discount"] == "100.00"

    r = await client.get("/checkout/preview", params={"voucher_code": "SAVE10"}, headers=H)
    assert r.status_code == 200, r.text
    assert r.json()["total"] == "980.00"

    r = await client.post(
        "/checkout/orders",
        json={"paymentMethod": "cod", "shipping": SHIPPING, "voucherCode": "SAVE10"},
        headers=H,
    )
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["total"] == "980.00"
    assert body["settlement"] == "immediate"
    assert body["voucher_applied"]["code"] == "SAVE10"
    order_id = body["order_id"]
    assert await stock_of(async_session_maker, v) == 3

    r = await client.get(f"/orders/{order_id}", headers=H)
    assert r.status_code == 200, r.text
    order = r.json()
    assert order["order_status"] == "pending"
    assert order["total_amount"] == "980.00"
    assert order["discount_amount"] == "100.00"
    assert len(order["items"]) == 1

    r = await client.post(f"/orders/items/{order['items'][0]['id']}/cancel", headers=H)
    assert r.status_code == 200, r.text
    assert r.json()["order_status"] == "cancelled"
    assert await stock_of(async_session_maker, v) == 5


@pytest.mark.asyncio
async def test_insufficient_stock_problem(client: httpx.AsyncClient, async_session_maker):
    v = await make_variant(async_session_maker, seller_id=1, price="10", stock=1)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=3)

    r = await client.post(
        "/checkout/orders", json={"paymentMethod": "cod", "shipping": SHIPPING}, headers=H
    )

    assert r.status_code == 409, r.text
    p = r.json()
    _assert_problem_shape(p)
    assert p["error_code"] == "insufficient_stock"
    assert p["details"] == [
        {"type": "shortage", "reason": "insufficient_stock", "variant_id": v, "needed": 3, "available": 1}
    ]
    assert await stock_of(async_session_maker, v) == 1


@pytest.mark.asyncio
async def test_missing_shipping_fields_are_listed(client: httpx.AsyncClient, async_session_maker):
    v = await make_variant(async_session_maker, seller_id=1, price="10", stock=1)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)

    r = await client.post(
        "/checkout/orders",
        json={"paymentMethod": "cod", "shipping": {**SHIPPING, "city": "", "zipCode": ""}},
        headers=H,
    )

    assert r.status_code == 422, r.text
    p = r.json()
    _assert_problem_shape(p)
    assert p["error_code"] == "validation_error"
    assert {d["path"] for d in p["details"]} == {"shipping.city", "shipping.zip_code"}


@pytest.mark.asyncio
async def test_disabled_method_is_rejected(client: httpx.AsyncClient, async_session_maker):
    await set_site_settings(async_session_maker, pay_cod=False)
    v = await make_variant(async_session_maker, seller_id=1, price="10", stock=1)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)

    r = await client.post(
        "/checkout/orders", json={"paymentMethod": "cod", "shipping": SHIPPING}, headers=H
    )
    assert r.status_code == 422, r.text
    assert r.json()["context"]["payment_method"] == "cod"


@pytest.mark.asyncio
async def test_preview_with_bad_voucher_is_400(client: httpx.AsyncClient, async_session_maker):
    v = await make_variant(async_session_maker, seller_id=1, price="10", stock=1)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)

    r = await client.get("/checkout/preview", params={"voucher_code": "NOPE"}, headers=H)
    assert r.status_code == 400, r.text
    p = r.json()
    assert p["error_code"] == "voucher_ineligible"
    assert p["context"]["reason"] == "not-found"


@pytest.mark.asyncio
async def test_gateway_checkout_and_duplicate_callback(
    client: httpx.AsyncClient, async_session_maker, fake_paypal
):
    v = await make_variant(async_session_maker, seller_id=1, price="100", stock=5)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)

    r = await client.post(
        "/checkout/orders", json={"paymentMethod": "paypal", "shipping": SHIPPING}, headers=H
    )
    assert r.status_code == 201, r.text
    order_id = r.json()["order_id"]
    assert r.json()["settlement"] == "deferred"
    assert await stock_of(async_session_maker, v) == 5

    r = await client.post("/payments/gateway/orders", json={"orderId": order_id}, headers=H)
    assert r.status_code == 201, r.text
    ref = r.json()["gateway_ref"]

    cb = {"orderId": order_id, "gatewayRef": ref}
    r = await client.post("/payments/capture", json=cb)
    assert r.status_code == 200, r.text
    assert r.json()["already_paid"] is False
    assert r.json()["transaction_id"] == f"CAP-{ref}"

    r = await client.post("/payments/capture", json=cb)
    assert r.status_code == 200, r.text
    assert r.json()["already_paid"] is True

    assert fake_paypal.capture_calls == 1
    assert await stock_of(async_session_maker, v) == 4
    assert await count_rows(async_session_maker, Payment, Payment.order_id == order_id) == 1

    r = await client.get(f"/orders/{order_id}", headers=H)
    assert r.json()["payment_status"] == "paid"
    assert r.json()["order_status"] == "confirmed"


@pytest.mark.asyncio
async def test_gateway_outage_is_502(client: httpx.AsyncClient, async_session_maker, fake_paypal):
    v = await make_variant(async_session_maker, seller_id=1, price="100", stock=5)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)
    r = await client.post(
        "/checkout/orders", json={"paymentMethod": "paypal", "shipping": SHIPPING}, headers=H
    )
    order_id = r.json()["order_id"]
    r = await client.post("/payments/gateway/orders", json={"orderId": order_id}, headers=H)
    ref = r.json()["gateway_ref"]

    fake_paypal.fail_next_capture = True
    r = await client.post("/payments/capture", json={"orderId": order_id, "gatewayRef": ref})
    assert r.status_code == 502, r.text
    assert r.json()["error_code"] == "payment_gateway_error"
    assert await stock_of(async_session_maker, v) == 5


@pytest.mark.asyncio
async def test_admin_flow_and_seller_removal(client: httpx.AsyncClient, async_session_maker):
    a = await make_variant(async_session_maker, seller_id=10, price="300", stock=5)
    b = await make_variant(async_session_maker, seller_id=20, price="400", stock=5)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=a, quantity=1)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=b, quantity=1)
    r = await client.post(
        "/checkout/orders", json={"paymentMethod": "cod", "shipping": SHIPPING}, headers=H
    )
    order_id = r.json()["order_id"]
    items = (await client.get(f"/orders/{order_id}", headers=H)).json()["items"]

    r = await client.post(f"/admin/orders/items/{items[0]['id']}/status", json={"status": "confirmed"})
    assert r.status_code == 200, r.text
    r = await client.post(f"/admin/orders/items/{items[0]['id']}/status", json={"status": "completed"})
    assert r.status_code == 409, r.text
    assert r.json()["error_code"] == "state_transition_error"

    r = await client.delete(f"/admin/orders/{order_id}/sellers/20")
    assert r.status_code == 200, r.text
    assert r.json()["order_deleted"] is False
    # 300 + 9
    assert r.json()["total"] == "309.00"

    r = await client.delete(f"/admin/orders/{order_id}/sellers/20")
    assert r.status_code == 404, r.text


@pytest.mark.asyncio
async def test_buyer_header_is_required(client: httpx.AsyncClient):
    r = await client.get("/checkout/preview")
    assert r.status_code == 401
    _assert_problem_shape(r.json())

    r = await client.get("/orders/1", headers={"X-Buyer-Id": "abc"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_unknown_order_is_404(client: httpx.AsyncClient):
    r = await client.get("/orders/999999", headers=H)
    assert r.status_code == 404
    assert r.json()["error_code"] == "not_found"


@pytest.mark.asyncio
async def test_metrics_endpoint(client: httpx.AsyncClient):
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "orders_placed_total" in r.text
