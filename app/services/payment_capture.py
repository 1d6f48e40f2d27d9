# app/services/payment_capture.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit import TraceContext, ensure_trace
from app.core.tx import TxManager
from app.domain.errors import (
    InsufficientStockError,
    NotFoundError,
    PaymentGatewayError,
    StateTransitionError,
    ValidationError,
    money_str,
)
from app.metrics import CAPTURES, VOUCHER_REDEMPTIONS
from app.models.enums import (
    ItemStatus,
    OrderStatus,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentStatus,
    SettlementTiming,
)
from app.models.order import Order
from app.models.payment import Payment
from app.services.audit_writer import FLOW_PAYMENT, AuditEventWriter, order_ref
from app.services.cart_store import CartStore
from app.services.inventory_reservation_service import InventoryReservationService, coalesce_demand
from app.services.payment_gateway import CaptureResult, PaymentGateway
from app.services.settlement import settlement_timing
from app.services.voucher_service import VoucherRedeemer

logger = logging.getLogger("techora.capture")


@dataclass
class CaptureOutcome:
    order_id: int
    success: bool = True
    already_paid: bool = False
    transaction_id: Optional[str] = None
    voucher_redeemed: Optional[bool] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "success": self.success,
            "already_paid": self.already_paid,
            "transaction_id": self.transaction_id,
        }


def _is_paid(order: Order) -> bool:
    if order.payment_status == PaymentStatus.PAID.value:
        return True
    return any(p.payment_status == PaymentRecordStatus.COMPLETED.value for p in order.payments)


async def _load_order(
    session: AsyncSession,
    order_id: int,
    *,
    for_update: bool = False,
) -> Order:
    stmt = select(Order).where(Order.id == int(order_id)).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    order = (await session.execute(stmt)).scalars().first()
    if order is None:
        raise NotFoundError(f"order {order_id} not found", context={"order_id": int(order_id)})
    return order


def _check_deferred(order: Order) -> None:
    if settlement_timing(PaymentMethod(order.payment_method)) is not SettlementTiming.DEFERRED:
        raise ValidationError(
            f"order {order.id} is not settled through the payment gateway",
            context={"order_id": order.id, "payment_method": order.payment_method},
        )


def _check_open(order: Order) -> None:
    """已取消（或明细已全部取消）的订单不能再建网关单 / 记付款。"""
    live = [it for it in order.items if it.item_status != ItemStatus.CANCELLED.value]
    if order.order_status == OrderStatus.CANCELLED.value or not live:
        raise StateTransitionError(order.order_status, OrderStatus.CONFIRMED.value)


class PaymentCaptureService:
    """
    延迟结算（外部网关）的两步：

    1) create_gateway_order：按库里的 total_amount 在网关建单，回写 gateway_ref
    2) capture_callback：网关确认 → 事务外 capture → 事务内 预占库存 / 记付款 / 改状态 / 核销券 / 清购物车

    幂等：已付款订单的重复回调直接 no-op（事务外先看一次，持订单行锁后再看一次），
    绝不二次预占、绝不写第二条 completed 付款行。
    """

    @staticmethod
    async def create_gateway_order(
        session: AsyncSession,
        *,
        order_id: int,
        gateway: PaymentGateway,
        buyer_id: Optional[int] = None,
    ) -> str:
        async def _read(*, session: AsyncSession) -> Order:
            order = await _load_order(session, order_id)
            if buyer_id is not None and int(order.buyer_id) != int(buyer_id):
                raise NotFoundError(f"order {order_id} not found", context={"order_id": int(order_id)})
            _check_deferred(order)
            if _is_paid(order):
                raise ValidationError(f"order {order_id} is already paid", context={"order_id": order.id})
            _check_open(order)
            if order.total_amount is None or order.total_amount <= 0:
                raise ValidationError(
                    f"order {order_id} has nothing to pay",
                    context={"order_id": order.id, "total": money_str(order.total_amount or 0)},
                )
            return order

        order = await TxManager.run(session, _read, op="gateway_order.read")

        # 网络调用：不持有任何本地事务 / 锁
        gateway_ref = await gateway.authorize(order.total_amount, reference=str(order.id))

        async def _store(*, session: AsyncSession) -> None:
            locked = await _load_order(session, order_id, for_update=True)
            if _is_paid(locked):
                raise ValidationError(f"order {order_id} is already paid", context={"order_id": locked.id})
            _check_open(locked)
            locked.gateway_ref = gateway_ref

        await TxManager.run(session, _store, op="gateway_order.store")
        return gateway_ref

    @staticmethod
    async def capture_callback(
        session: AsyncSession,
        *,
        order_id: int,
        gateway_ref: str,
        gateway: PaymentGateway,
        trace: Optional[TraceContext] = None,
    ) -> CaptureOutcome:
        trace = ensure_trace(trace, "gateway:capture")
        ref = str(gateway_ref or "").strip()
        if not ref:
            raise ValidationError("gateway_ref is required")

        async def _precheck(*, session: AsyncSession) -> Optional[CaptureOutcome]:
            order = await _load_order(session, order_id)
            _check_deferred(order)
            if order.gateway_ref and order.gateway_ref != ref:
                raise ValidationError(
                    f"gateway_ref does not match order {order_id}",
                    context={"order_id": order.id, "gateway_ref": ref},
                )
            if _is_paid(order):
                return CaptureOutcome(order_id=order.id, already_paid=True)
            _check_open(order)
            return None

        early = await TxManager.run(session, _precheck, op="capture.precheck")
        if early is not None:
            CAPTURES.labels(result="duplicate").inc()
            logger.info("capture callback for paid order=%s ignored (no-op)", order_id)
            return early

        # 1) 网关 capture（事务外）；失败时订单保持 pending/unpaid，库存未动，可重试
        try:
            captured = await gateway.capture(ref)
        except PaymentGatewayError:
            CAPTURES.labels(result="gateway_error").inc()
            raise

        # 2..5) 本地事务
        try:
            outcome: CaptureOutcome = await TxManager.run(
                session,
                PaymentCaptureService._settle_in_tx,
                op="capture",
                order_id=int(order_id),
                gateway_ref=ref,
                captured=captured,
                trace=trace,
            )
        except InsufficientStockError:
            CAPTURES.labels(result="insufficient_stock").inc()
            logger.error(
                "order=%s captured at gateway (txn=%s) but stock ran out; needs manual refund",
                order_id,
                captured.transaction_id,
            )
            raise
        except StateTransitionError:
            CAPTURES.labels(result="rejected").inc()
            logger.error(
                "order=%s captured at gateway (txn=%s) but was cancelled meanwhile; needs manual refund",
                order_id,
                captured.transaction_id,
            )
            raise

        if outcome.already_paid:
            CAPTURES.labels(result="duplicate").inc()
            return outcome

        CAPTURES.labels(result="captured").inc()
        if outcome.voucher_redeemed is not None:
            VOUCHER_REDEMPTIONS.labels(result="redeemed" if outcome.voucher_redeemed else "refused").inc()
        logger.info(
            "order=%s paid via gateway ref=%s txn=%s amount=%s trace=%s",
            order_id,
            ref,
            captured.transaction_id,
            money_str(captured.amount),
            trace.trace_id,
        )
        return outcome

    @staticmethod
    async def _settle_in_tx(
        *,
        session: AsyncSession,
        order_id: int,
        gateway_ref: str,
        captured: CaptureResult,
        trace: TraceContext,
    ) -> CaptureOutcome:
        # 订单行锁：并发的两次回调在这里排队，后到者看到 paid 直接 no-op
        order = await _load_order(session, order_id, for_update=True)
        if _is_paid(order):
            return CaptureOutcome(order_id=order.id, already_paid=True)
        # 网关 capture 期间订单可能已被取消：不能把终态订单重新打开
        _check_open(order)

        live_items = [it for it in order.items if it.item_status != ItemStatus.CANCELLED.value]
        demand = coalesce_demand(live_items)
        await InventoryReservationService.reserve(session, demand)
        order.stock_reserved = True

        if captured.amount != order.total_amount:
            logger.warning(
                "order=%s captured amount %s differs from total %s",
                order.id,
                money_str(captured.amount),
                money_str(order.total_amount),
            )

        session.add(
            Payment(
                order_id=order.id,
                payment_method=order.payment_method,
                payment_status=PaymentRecordStatus.COMPLETED.value,
                transaction_id=captured.transaction_id,
                amount_paid=captured.amount,
            )
        )
        order.payment_status = PaymentStatus.PAID.value
        order.order_status = OrderStatus.CONFIRMED.value
        order.gateway_ref = order.gateway_ref or gateway_ref
        for it in live_items:
            if it.item_status == ItemStatus.PENDING.value:
                it.item_status = ItemStatus.CONFIRMED.value

        # 已按报价扣款：券核销失败只记录，不影响 capture
        redeemed: Optional[bool] = None
        ref = order_ref(order.id)
        if order.voucher_id is not None:
            redeemed = await VoucherRedeemer.redeem(session, order.voucher_id)
            await AuditEventWriter.write(
                session,
                flow=FLOW_PAYMENT,
                event="VOUCHER_REDEEMED" if redeemed else "VOUCHER_REDEEM_SKIPPED",
                ref=ref,
                trace_id=trace.trace_id,
                meta={
                    "voucher_id": order.voucher_id,
                    "discount": money_str(order.discount_amount or 0),
                },
            )
            if not redeemed:
                logger.warning(
                    "order=%s voucher=%s could not be redeemed at capture; discount kept",
                    order.id,
                    order.voucher_id,
                )

        await CartStore.clear_items(session, order.buyer_id, demand.keys())
        await session.flush()

        await AuditEventWriter.write(
            session,
            flow=FLOW_PAYMENT,
            event="PAYMENT_CAPTURED",
            ref=ref,
            trace_id=trace.trace_id,
            meta={
                "gateway_ref": gateway_ref,
                "transaction_id": captured.transaction_id,
                "amount": money_str(captured.amount),
                "replayed": captured.replayed,
            },
        )
        return CaptureOutcome(
            order_id=order.id,
            transaction_id=captured.transaction_id,
            voucher_redeemed=redeemed,
        )
