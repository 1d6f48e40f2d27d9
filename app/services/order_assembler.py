# app/services/order_assembler.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit import TraceContext, ensure_trace
from app.core.tx import TxManager
from app.domain.errors import (
    ConcurrencyConflictError,
    ValidationError,
    VoucherIneligibleError,
    money_str,
)
from app.metrics import ORDERS_PLACED, VOUCHER_REDEMPTIONS
from app.models.enums import OrderStatus, PaymentMethod, PaymentStatus
from app.models.order import Order
from app.models.order_item import OrderItem
from app.services.audit_writer import FLOW_CHECKOUT, AuditEventWriter, order_ref
from app.services.cart_store import CartStore
from app.services.checkout_types import LineItem, PlaceOrderResult, ShippingFields, VoucherCheck
from app.services.pricing_calculator import Totals, compute_totals, round2
from app.services.settlement import VOUCHER_EXHAUSTED, SettlementOutcome, settlement_for
from app.services.site_settings_provider import SiteConfig
from app.services.voucher_service import VoucherValidator

logger = logging.getLogger("techora.checkout")


def parse_payment_method(raw: Any) -> PaymentMethod:
    try:
        return PaymentMethod(str(raw or "").strip().lower())
    except ValueError:
        raise ValidationError(
            f"unsupported payment method: {raw!r}",
            context={"payment_method": raw, "allowed": [m.value for m in PaymentMethod]},
        )


@dataclass
class CheckoutPreview:
    items: List[LineItem]
    totals: Totals
    voucher: Optional[VoucherCheck] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "items": [
                {
                    "variant_id": it.variant_id,
                    "seller_id": it.seller_id,
                    "unit_price": money_str(it.unit_price),
                    "quantity": it.quantity,
                }
                for it in self.items
            ],
            **self.totals.as_dict(),
            "voucher_code": self.voucher.code if self.voucher else None,
        }


@dataclass
class _Placed:
    order: Order
    totals: Totals
    voucher: Optional[VoucherCheck]
    outcome: SettlementOutcome


class OrderAssembler:
    """
    下单编排：实时购物车 → 券复核 → 计价 → 落单 → 按结算时机分派。

    - 所有写入都在同一个事务里，任一步失败整体回滚（无订单、无明细、无库存变化）
    - 购物车行、券行一律在事务内重读，不信任调用方传入的价格 / 预览结果
    - 站点配置（运费 / 支付开关）在事务外取（短 TTL 缓存，允许稍旧）
    """

    # ------------------------------------------------------------------
    # 结算页：券预校验 / 预览（事务外，容忍旧数据）
    # ------------------------------------------------------------------
    @staticmethod
    async def validate_voucher(
        session: AsyncSession,
        *,
        buyer_id: int,
        code: Optional[str],
        today: Optional[date] = None,
    ) -> VoucherCheck:
        items = await CartStore.get_live_items(session, buyer_id)
        if not items:
            return VoucherCheck.rejected("empty-cart", code=code)
        return await VoucherValidator.validate(session, code, items, today=today)

    @staticmethod
    async def preview(
        session: AsyncSession,
        *,
        buyer_id: int,
        site_config: SiteConfig,
        voucher_code: Optional[str] = None,
        today: Optional[date] = None,
    ) -> CheckoutPreview:
        """带券预览：券不可用直接拒绝（VoucherIneligibleError），不静默吞掉。"""
        items = await CartStore.get_live_items(session, buyer_id)
        check: Optional[VoucherCheck] = None
        if str(voucher_code or "").strip():
            check = await VoucherValidator.validate(session, voucher_code, items, today=today)
            if not check.applicable:
                raise VoucherIneligibleError(str(check.reason))
        totals = compute_totals(
            items,
            discount=check.discount if check else 0,
            shipping=site_config.shipping,
        )
        return CheckoutPreview(items=items, totals=totals, voucher=check)

    # ------------------------------------------------------------------
    # 最终下单
    # ------------------------------------------------------------------
    @staticmethod
    async def place_order(
        session: AsyncSession,
        *,
        buyer_id: int,
        payment_method: Any,
        shipping: ShippingFields,
        site_config: SiteConfig,
        voucher_code: Optional[str] = None,
        trace: Optional[TraceContext] = None,
        today: Optional[date] = None,
    ) -> PlaceOrderResult:
        # 入参校验：不触碰任何状态
        method = parse_payment_method(payment_method)
        shipping.validate()
        if not site_config.is_method_enabled(method):
            raise ValidationError(
                f"payment method {method.value!r} is currently disabled",
                context={"payment_method": method.value},
            )

        trace = ensure_trace(trace, "checkout:place_order")
        strategy = settlement_for(method)

        try:
            placed: _Placed = await TxManager.run(
                session,
                OrderAssembler._place_in_tx,
                op="place_order",
                buyer_id=int(buyer_id),
                method=method,
                shipping=shipping,
                site_config=site_config,
                voucher_code=voucher_code,
                trace=trace,
                today=today,
            )
        except ConcurrencyConflictError as e:
            if e.context.get("reason") == VOUCHER_EXHAUSTED:
                VOUCHER_REDEMPTIONS.labels(result="refused").inc()
            raise

        # 提交成功之后才记指标
        ORDERS_PLACED.labels(payment_method=method.value, settlement=strategy.timing.value).inc()
        if placed.outcome.voucher_redeemed:
            VOUCHER_REDEMPTIONS.labels(result="redeemed").inc()

        voucher_info = None
        if placed.voucher is not None:
            voucher_info = {
                "code": placed.voucher.code,
                "seller_id": placed.voucher.seller_id,
                "discount": money_str(placed.voucher.discount),
            }

        logger.info(
            "order placed: id=%s buyer=%s method=%s total=%s trace=%s",
            placed.order.id,
            buyer_id,
            method.value,
            placed.totals.total,
            trace.trace_id,
        )
        return PlaceOrderResult(
            order_id=int(placed.order.id),
            total=placed.totals.total,
            settlement=strategy.timing.value,
            voucher=voucher_info,
        )

    @staticmethod
    async def _place_in_tx(
        *,
        session: AsyncSession,
        buyer_id: int,
        method: PaymentMethod,
        shipping: ShippingFields,
        site_config: SiteConfig,
        voucher_code: Optional[str],
        trace: TraceContext,
        today: Optional[date],
    ) -> _Placed:
        # 1) 事务内重读实时购物车
        items = await CartStore.get_live_items(session, buyer_id)
        if not items:
            raise ValidationError("cart is empty", context={"buyer_id": buyer_id})

        # 2) 事务内复核券；不可用则静默不打折（与预校验的直接拒绝不同）
        check = await OrderAssembler._recheck_voucher(session, voucher_code, items, today=today)

        # 3) 计价
        totals = compute_totals(
            items,
            discount=check.discount if check else 0,
            shipping=site_config.shipping,
        )

        # 4) + 5) 订单头 + 明细
        order = Order(
            buyer_id=buyer_id,
            order_status=OrderStatus.PENDING.value,
            payment_method=method.value,
            payment_status=PaymentStatus.UNPAID.value,
            subtotal=round2(totals.subtotal),
            discount_amount=round2(totals.discount),
            tax_amount=round2(totals.tax),
            shipping_amount=round2(totals.shipping),
            total_amount=totals.total,
            voucher_id=check.voucher_id if check else None,
            shipping_address=shipping.compose(),
            stock_reserved=False,
        )
        order.items = [
            OrderItem(
                variant_id=it.variant_id,
                quantity=it.quantity,
                unit_price=it.unit_price,
            )
            for it in items
        ]
        session.add(order)
        await session.flush()

        # 6) 按结算时机分派
        outcome = await settlement_for(method).on_order_placed(
            session, order=order, items=items, voucher=check
        )

        await OrderAssembler._audit_placed(session, order, items, totals, check, outcome, trace)
        return _Placed(order=order, totals=totals, voucher=check, outcome=outcome)

    @staticmethod
    async def _recheck_voucher(
        session: AsyncSession,
        voucher_code: Optional[str],
        items: Sequence[LineItem],
        *,
        today: Optional[date],
    ) -> Optional[VoucherCheck]:
        if not str(voucher_code or "").strip():
            return None
        check = await VoucherValidator.validate(session, voucher_code, items, today=today)
        if check.applicable:
            return check
        logger.info(
            "voucher %r dropped at final assembly (reason=%s); order proceeds without discount",
            voucher_code,
            check.reason,
        )
        return None

    @staticmethod
    async def _audit_placed(
        session: AsyncSession,
        order: Order,
        items: Sequence[LineItem],
        totals: Totals,
        check: Optional[VoucherCheck],
        outcome: SettlementOutcome,
        trace: TraceContext,
    ) -> None:
        ref = order_ref(order.id)
        await AuditEventWriter.write(
            session,
            flow=FLOW_CHECKOUT,
            event="ORDER_CREATED",
            ref=ref,
            trace_id=trace.trace_id,
            meta={
                "buyer_id": order.buyer_id,
                "payment_method": order.payment_method,
                "stock_reserved": outcome.stock_reserved,
                **totals.as_dict(),
            },
        )
        # 每个卖家一条（卖家通过 variant → product 查到，订单不持有卖家）
        per_seller: Dict[int, int] = {}
        for it in items:
            per_seller[it.seller_id] = per_seller.get(it.seller_id, 0) + int(it.quantity)
        for seller_id in sorted(per_seller):
            await AuditEventWriter.write(
                session,
                flow=FLOW_CHECKOUT,
                event="SELLER_ORDER_PLACED",
                ref=ref,
                trace_id=trace.trace_id,
                meta={"seller_id": seller_id, "units": per_seller[seller_id]},
            )
        if outcome.voucher_redeemed and check is not None:
            await AuditEventWriter.write(
                session,
                flow=FLOW_CHECKOUT,
                event="VOUCHER_REDEEMED",
                ref=ref,
                trace_id=trace.trace_id,
                meta={
                    "voucher_id": check.voucher_id,
                    "code": check.code,
                    "discount": money_str(check.discount),
                },
            )
