# app/services/settlement.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.errors import ConcurrencyConflictError
from app.models.enums import PaymentMethod, SettlementTiming
from app.models.order import Order
from app.services.cart_store import CartStore
from app.services.checkout_types import LineItem, VoucherCheck
from app.services.inventory_reservation_service import InventoryReservationService, coalesce_demand
from app.services.voucher_service import VoucherRedeemer

logger = logging.getLogger("techora.checkout")

VOUCHER_EXHAUSTED = "voucher-exhausted"

# 支付方式 → 结算时机（封闭映射；新增支付方式必须在这里登记）
SETTLEMENT_BY_METHOD: Dict[PaymentMethod, SettlementTiming] = {
    PaymentMethod.COD: SettlementTiming.IMMEDIATE,
    PaymentMethod.PAYPAL: SettlementTiming.DEFERRED,
}


@dataclass(frozen=True)
class SettlementOutcome:
    stock_reserved: bool = False
    voucher_redeemed: bool = False
    cart_cleared: int = 0


class SettlementStrategy(Protocol):
    timing: SettlementTiming

    async def on_order_placed(
        self,
        session: AsyncSession,
        *,
        order: Order,
        items: Sequence[LineItem],
        voucher: VoucherCheck | None,
    ) -> SettlementOutcome: ...


class ImmediateSettlement:
    """
    即时结算（COD）：在下单事务内

    1) 预占库存（失败 → InsufficientStockError，整单回滚）
    2) 核销券（条件更新未命中 → ConcurrencyConflictError，整单回滚，调用方可重试）
    3) 清掉已消费的购物车行
    """

    timing = SettlementTiming.IMMEDIATE

    async def on_order_placed(
        self,
        session: AsyncSession,
        *,
        order: Order,
        items: Sequence[LineItem],
        voucher: VoucherCheck | None,
    ) -> SettlementOutcome:
        demand = coalesce_demand(items)
        await InventoryReservationService.reserve(session, demand)
        order.stock_reserved = True

        redeemed = False
        if voucher is not None and voucher.applicable and voucher.voucher_id is not None:
            if not await VoucherRedeemer.redeem(session, voucher.voucher_id):
                raise ConcurrencyConflictError(
                    f"voucher {voucher.code!r} was exhausted concurrently, please retry",
                    context={"reason": VOUCHER_EXHAUSTED, "voucher_id": voucher.voucher_id},
                )
            redeemed = True

        cleared = await CartStore.clear_items(session, order.buyer_id, demand.keys())
        return SettlementOutcome(stock_reserved=True, voucher_redeemed=redeemed, cart_cleared=cleared)


class DeferredSettlement:
    """延迟结算（外部网关）：下单只落 pending 单；预占、核销、清购物车都推迟到 capture。"""

    timing = SettlementTiming.DEFERRED

    async def on_order_placed(
        self,
        session: AsyncSession,
        *,
        order: Order,
        items: Sequence[LineItem],
        voucher: VoucherCheck | None,
    ) -> SettlementOutcome:
        logger.debug("deferred settlement: order=%s waits for capture", order.id)
        return SettlementOutcome()


_STRATEGIES: Dict[SettlementTiming, SettlementStrategy] = {
    SettlementTiming.IMMEDIATE: ImmediateSettlement(),
    SettlementTiming.DEFERRED: DeferredSettlement(),
}


def settlement_timing(method: PaymentMethod) -> SettlementTiming:
    return SETTLEMENT_BY_METHOD[PaymentMethod(method)]


def settlement_for(method: PaymentMethod) -> SettlementStrategy:
    return _STRATEGIES[settlement_timing(method)]
