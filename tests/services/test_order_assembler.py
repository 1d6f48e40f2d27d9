# tests/services/test_order_assembler.py
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.domain.errors import InsufficientStockError, ValidationError, VoucherIneligibleError
from app.models.audit_event import AuditEvent
from app.models.cart import CartItem
from app.models.order import Order
from app.models.order_item import OrderItem
from app.services.order_assembler import OrderAssembler
from app.services.site_settings_provider import SiteConfig
from tests.factories import add_to_cart, count_rows, make_variant, make_voucher, stock_of, used_count_of

BUYER = 501


async def _load(maker, order_id: int) -> Order:
    async with maker() as s:
        return (await s.execute(select(Order).where(Order.id == order_id))).scalars().one()


@pytest.mark.asyncio
async def test_cod_order_reserves_stock_redeems_voucher_and_clears_cart(
    async_session_maker, session, shipping, site_config
):
    """
    单卖家 2 × 500，10% 券，统一运费 50：
    subtotal 1000 − 100 + tax 30 + 50 = 980；库存、券、购物车在同一事务内落定。
    """
    v = await make_variant(async_session_maker, seller_id=1, price="500", stock=5)
    vid = await make_voucher(async_session_maker, seller_id=1, code="SAVE10", usage_limit=5)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=2)

    res = await OrderAssembler.place_order(
        session,
        buyer_id=BUYER,
        payment_method="cod",
        shipping=shipping,
        site_config=site_config,
        voucher_code="save10",
    )

    assert res.total == Decimal("980.00")
    assert res.settlement == "immediate"
    assert res.voucher == {"code": "SAVE10", "seller_id": 1, "discount": "100.00"}

    order = await _load(async_session_maker, res.order_id)
    assert order.order_status == "pending"
    assert order.payment_status == "unpaid"
    assert order.stock_reserved is True
    assert order.voucher_id == vid
    assert order.subtotal == Decimal("1000.00")
    assert order.discount_amount == Decimal("100.00")
    assert order.tax_amount == Decimal("30.00")
    assert order.shipping_amount == Decimal("50.00")
    assert order.total_amount == Decimal("980.00")
    assert "Juan Dela Cruz" in order.shipping_address
    assert [(it.variant_id, it.quantity, it.unit_price) for it in order.items] == [
        (v, 2, Decimal("500.00"))
    ]

    assert await stock_of(async_session_maker, v) == 3
    assert await used_count_of(async_session_maker, vid) == 1
    assert await count_rows(async_session_maker, CartItem, CartItem.buyer_id == BUYER) == 0

    events = await count_rows(
        async_session_maker, AuditEvent, AuditEvent.ref == f"ORD:{res.order_id}"
    )
    # ORDER_CREATED + SELLER_ORDER_PLACED + VOUCHER_REDEEMED
    assert events == 3


@pytest.mark.asyncio
async def test_gateway_order_defers_reservation(async_session_maker, session, shipping, site_config):
    v = await make_variant(async_session_maker, seller_id=1, price="200", stock=2)
    vid = await make_voucher(async_session_maker, seller_id=1, code="TENOFF", discount_type="fixed", discount_value="10")
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=2)

    res = await OrderAssembler.place_order(
        session,
        buyer_id=BUYER,
        payment_method="paypal",
        shipping=shipping,
        site_config=site_config,
        voucher_code="TENOFF",
    )

    assert res.settlement == "deferred"
    # 400 − 10 + 12 + 50
    assert res.total == Decimal("452.00")

    order = await _load(async_session_maker, res.order_id)
    assert order.stock_reserved is False
    assert order.voucher_id == vid
    assert await stock_of(async_session_maker, v) == 2
    assert await used_count_of(async_session_maker, vid) == 0
    assert await count_rows(async_session_maker, CartItem, CartItem.buyer_id == BUYER) == 1


@pytest.mark.asyncio
async def test_insufficient_stock_rolls_back_everything(async_session_maker, session, shipping, site_config):
    a = await make_variant(async_session_maker, seller_id=1, price="10", stock=5)
    b = await make_variant(async_session_maker, seller_id=2, price="10", stock=1)
    vid = await make_voucher(async_session_maker, seller_id=1, code="A10")
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=a, quantity=2)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=b, quantity=3)

    with pytest.raises(InsufficientStockError) as ei:
        await OrderAssembler.place_order(
            session,
            buyer_id=BUYER,
            payment_method="cod",
            shipping=shipping,
            site_config=site_config,
            voucher_code="A10",
        )

    assert ei.value.context == {"variant_id": b, "needed": 3, "available": 1}
    assert await count_rows(async_session_maker, Order) == 0
    assert await count_rows(async_session_maker, OrderItem) == 0
    assert await count_rows(async_session_maker, AuditEvent) == 0
    assert await stock_of(async_session_maker, a) == 5
    assert await stock_of(async_session_maker, b) == 1
    assert await used_count_of(async_session_maker, vid) == 0
    assert await count_rows(async_session_maker, CartItem, CartItem.buyer_id == BUYER) == 2


@pytest.mark.asyncio
async def test_empty_cart_is_rejected(async_session_maker, session, shipping, site_config):
    with pytest.raises(ValidationError):
        await OrderAssembler.place_order(
            session,
            buyer_id=BUYER,
            payment_method="cod",
            shipping=shipping,
            site_config=site_config,
        )
    assert await count_rows(async_session_maker, Order) == 0


@pytest.mark.asyncio
async def test_missing_shipping_field_touches_nothing(async_session_maker, session, shipping, site_config):
    v = await make_variant(async_session_maker, seller_id=1, price="10", stock=5)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)
    broken = replace(shipping, phone="  ")

    with pytest.raises(ValidationError) as ei:
        await OrderAssembler.place_order(
            session,
            buyer_id=BUYER,
            payment_method="cod",
            shipping=broken,
            site_config=site_config,
        )
    assert ei.value.context["missing"] == ["phone"]
    assert await stock_of(async_session_maker, v) == 5
    assert await count_rows(async_session_maker, Order) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "method, cfg",
    [
        ("cod", SiteConfig(cod_enabled=False)),
        ("paypal", SiteConfig(external_payment_enabled=False)),
        ("bitcoin", SiteConfig()),
    ],
)
async def test_disabled_or_unknown_payment_method(async_session_maker, session, shipping, method, cfg):
    v = await make_variant(async_session_maker, seller_id=1, price="10", stock=5)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)

    with pytest.raises(ValidationError):
        await OrderAssembler.place_order(
            session,
            buyer_id=BUYER,
            payment_method=method,
            shipping=shipping,
            site_config=cfg,
        )
    assert await count_rows(async_session_maker, Order) == 0


@pytest.mark.asyncio
async def test_final_assembly_drops_voucher_that_became_ineligible(
    async_session_maker, session, shipping, site_config
):
    """预览时可用、下单时已过期：订单照常创建，只是不打折。"""
    today = date(2026, 10, 19)
    v = await make_variant(async_session_maker, seller_id=1, price="100", stock=5)
    vid = await make_voucher(
        async_session_maker, seller_id=1, code="LASTDAY", expiry_date=today
    )
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)

    pv = await OrderAssembler.preview(
        session, buyer_id=BUYER, site_config=site_config, voucher_code="LASTDAY", today=today
    )
    await session.rollback()
    assert pv.totals.discount == Decimal("10.00")

    res = await OrderAssembler.place_order(
        session,
        buyer_id=BUYER,
        payment_method="cod",
        shipping=shipping,
        site_config=site_config,
        voucher_code="LASTDAY",
        today=today + timedelta(days=1),
    )

    assert res.voucher is None
    # 100 + 3 + 50
    assert res.total == Decimal("153.00")
    order = await _load(async_session_maker, res.order_id)
    assert order.voucher_id is None
    assert order.discount_amount == Decimal("0.00")
    assert await used_count_of(async_session_maker, vid) == 0


@pytest.mark.asyncio
async def test_preview_rejects_ineligible_voucher(async_session_maker, session, site_config):
    v = await make_variant(async_session_maker, seller_id=1, price="100", stock=5)
    await make_voucher(async_session_maker, seller_id=2, code="OTHER")
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)

    with pytest.raises(VoucherIneligibleError) as ei:
        await OrderAssembler.preview(
            session, buyer_id=BUYER, site_config=site_config, voucher_code="OTHER"
        )
    await session.rollback()
    assert ei.value.reason == "not-applicable"


@pytest.mark.asyncio
async def test_preview_and_placement_agree(async_session_maker, session, shipping, site_config):
    a = await make_variant(async_session_maker, seller_id=1, price="19.99", stock=10)
    b = await make_variant(async_session_maker, seller_id=2, price="5.55", stock=10)
    await make_voucher(async_session_maker, seller_id=2, code="FIVE", discount_type="fixed", discount_value="5")
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=a, quantity=3)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=b, quantity=2)

    pv = await OrderAssembler.preview(
        session, buyer_id=BUYER, site_config=site_config, voucher_code="FIVE"
    )
    await session.rollback()

    res = await OrderAssembler.place_order(
        session,
        buyer_id=BUYER,
        payment_method="cod",
        shipping=shipping,
        site_config=site_config,
        voucher_code="FIVE",
    )
    assert res.total == pv.totals.total


@pytest.mark.asyncio
async def test_validate_voucher_reports_reason(async_session_maker, session):
    check = await OrderAssembler.validate_voucher(session, buyer_id=BUYER, code="ANY")
    await session.rollback()
    assert check.reason == "empty-cart"

    v = await make_variant(async_session_maker, seller_id=1, price="100", stock=5)
    await make_voucher(async_session_maker, seller_id=1, code="USEDUP", usage_limit=1, used_count=1)
    await add_to_cart(async_session_maker, buyer_id=BUYER, variant_id=v, quantity=1)

    assert (await OrderAssembler.validate_voucher(session, buyer_id=BUYER, code="")).reason == "empty-code"
    assert (await OrderAssembler.validate_voucher(session, buyer_id=BUYER, code="NOPE")).reason == "not-found"
    assert (await OrderAssembler.validate_voucher(session, buyer_id=BUYER, code="usedup")).reason == "ineligible"
    await session.rollback()


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_cod_orders_for_last_unit_create_one_order(async_session_maker, shipping, site_config):
    """库存 1，两个买家同时货到付款下单：恰好一单落库，另一单 InsufficientStockError 且无残留。"""
    v = await make_variant(async_session_maker, seller_id=1, price="999", stock=1)
    buyers = (BUYER, BUYER + 1)
    for b in buyers:
        await add_to_cart(async_session_maker, buyer_id=b, variant_id=v, quantity=1)

    async def attempt(buyer_id: int):
        async with async_session_maker() as s:
            return await OrderAssembler.place_order(
                s,
                buyer_id=buyer_id,
                payment_method="cod",
                shipping=shipping,
                site_config=site_config,
            )

    results = await asyncio.gather(*(attempt(b) for b in buyers), return_exceptions=True)

    placed = [r for r in results if not isinstance(r, BaseException)]
    failed = [r for r in results if isinstance(r, InsufficientStockError)]
    assert len(placed) == 1
    assert len(failed) == 1
    assert (failed[0].variant_id, failed[0].needed, failed[0].available) == (v, 1, 0)

    assert await stock_of(async_session_maker, v) == 0
    assert await count_rows(async_session_maker, Order) == 1
    assert await count_rows(async_session_maker, OrderItem) == 1
    winner = await _load(async_session_maker, placed[0].order_id)
    # 失败一方的购物车原样保留
    loser = buyers[1] if winner.buyer_id == buyers[0] else buyers[0]
    assert await count_rows(async_session_maker, CartItem, CartItem.buyer_id == loser) == 1
    assert await count_rows(async_session_maker, CartItem, CartItem.buyer_id == winner.buyer_id) == 0
