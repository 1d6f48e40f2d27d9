# app/services/order_status_service.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit import TraceContext, ensure_trace
from app.core.tx import TxManager
from app.domain.errors import NotFoundError, StateTransitionError, ValidationError, money_str
from app.models.enums import (
    ItemStatus,
    OrderStatus,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentStatus,
    SettlementTiming,
)
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.payment import Payment
from app.models.voucher import Voucher
from app.services.audit_writer import FLOW_ORDER, AuditEventWriter, order_ref
from app.services.checkout_types import LineItem
from app.services.inventory_reservation_service import InventoryReservationService, coalesce_demand
from app.services.pricing_calculator import ShippingConfig, compute_totals, round2, to_money
from app.services.settlement import settlement_timing

logger = logging.getLogger("techora.orders")

# ========================= 状态图（单调，终态不可重开） =========================

TRANSITIONS: Mapping[ItemStatus, FrozenSet[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.CONFIRMED, ItemStatus.CANCELLED}),
    ItemStatus.CONFIRMED: frozenset({ItemStatus.SHIPPED, ItemStatus.CANCELLED}),
    ItemStatus.SHIPPED: frozenset({ItemStatus.COMPLETED, ItemStatus.RETURN}),
    ItemStatus.COMPLETED: frozenset(),
    ItemStatus.CANCELLED: frozenset(),
    ItemStatus.RETURN: frozenset(),
}

TERMINAL: FrozenSet[ItemStatus] = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)

# 活跃态的推进顺序（汇总时取“最不靠前”的那个）
_ACTIVE_RANK: Dict[str, int] = {
    ItemStatus.PENDING.value: 0,
    ItemStatus.CONFIRMED.value: 1,
    ItemStatus.SHIPPED.value: 2,
}


def can_transition(current: str, target: str) -> bool:
    try:
        return ItemStatus(target) in TRANSITIONS[ItemStatus(current)]
    except ValueError:
        return False


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise StateTransitionError(current, target)


def rollup_order_status(statuses: Iterable[str]) -> Optional[str]:
    """
    明细状态 → 订单状态：

    - 全部 cancelled → cancelled
    - 全部 completed → completed
    - 还有未终结的明细 → 取其中推进得最慢的活跃态（pending < confirmed < shipped）
    - 全部终结但混合 → 有 return 则 return，否则 completed（被取消的明细不影响已完成部分）
    空明细返回 None（调用方保持原状态）。
    """
    s = [str(x) for x in statuses]
    if not s:
        return None
    if all(x == ItemStatus.CANCELLED.value for x in s):
        return OrderStatus.CANCELLED.value
    if all(x == ItemStatus.COMPLETED.value for x in s):
        return OrderStatus.COMPLETED.value

    active = [x for x in s if x in _ACTIVE_RANK]
    if active:
        return min(active, key=_ACTIVE_RANK.__getitem__)
    if ItemStatus.RETURN.value in s:
        return OrderStatus.RETURN.value
    return OrderStatus.COMPLETED.value


@dataclass
class TransitionResult:
    order_id: int
    order_status: str
    changed_items: List[int] = field(default_factory=list)
    payment_status: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "order_id": self.order_id,
            "order_status": self.order_status,
            "payment_status": self.payment_status,
            "changed_items": self.changed_items,
        }


@dataclass
class SellerRemovalResult:
    order_id: int
    removed_items: List[int]
    order_deleted: bool
    total: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "removed_items": self.removed_items,
            "order_deleted": self.order_deleted,
            "total": self.total,
        }


# ================================== 内部辅助 ==================================


async def _lock_order(session: AsyncSession, order_id: int, buyer_id: Optional[int] = None) -> Order:
    order = (
        await session.execute(
            select(Order)
            .where(Order.id == int(order_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalars().first()
    # 买家看不到别人的订单：归属不符与不存在同样处理
    if order is None or (buyer_id is not None and int(order.buyer_id) != int(buyer_id)):
        raise NotFoundError(f"order {order_id} not found", context={"order_id": int(order_id)})
    return order


async def _order_id_of_item(session: AsyncSession, order_item_id: int) -> int:
    oid = (
        await session.execute(select(OrderItem.order_id).where(OrderItem.id == int(order_item_id)))
    ).scalar_one_or_none()
    if oid is None:
        raise NotFoundError(
            f"order item {order_item_id} not found", context={"order_item_id": int(order_item_id)}
        )
    return int(oid)


def _find_item(order: Order, order_item_id: int) -> OrderItem:
    for it in order.items:
        if int(it.id) == int(order_item_id):
            return it
    raise NotFoundError(
        f"order item {order_item_id} not found", context={"order_item_id": int(order_item_id)}
    )


def _is_immediate(order: Order) -> bool:
    return settlement_timing(PaymentMethod(order.payment_method)) is SettlementTiming.IMMEDIATE


def _item_seller(it: OrderItem) -> int:
    return int(it.variant.product.seller_id)


class OrderStatusService:
    """
    明细状态机 + 订单状态汇总。

    - 每次明细迁移后重算订单状态（持订单行锁，串行化同一订单上的并发操作）
    - 取消 / 按卖家移除：若该单确实预占过库存，按升序锁把数量还回库存
    - 即时结算（COD）订单汇总为 completed 时补记付款（COD 结算）
    - 延迟结算订单在付款前不允许推进到 confirmed 之后（库存尚未预占）
    """

    # ------------------------------------------------------------------
    # 公共迁移入口
    # ------------------------------------------------------------------
    @staticmethod
    async def _apply(
        session: AsyncSession,
        order: Order,
        items: List[OrderItem],
        target: ItemStatus,
        trace: TraceContext,
        actor: str,
    ) -> TransitionResult:
        ref = order_ref(order.id)
        if target is not ItemStatus.CANCELLED and not _is_immediate(order):
            if order.payment_status != PaymentStatus.PAID.value:
                raise StateTransitionError(
                    items[0].item_status,
                    target.value,
                    f"order {order.id} is awaiting payment; items cannot move to {target.value!r}",
                )

        for it in items:
            ensure_transition(it.item_status, target.value)

        if target is ItemStatus.CANCELLED and order.stock_reserved:
            await InventoryReservationService.release(session, coalesce_demand(items))

        changed: List[int] = []
        for it in items:
            before = it.item_status
            it.item_status = target.value
            changed.append(int(it.id))
            await AuditEventWriter.write(
                session,
                flow=FLOW_ORDER,
                event="ITEM_STATUS_CHANGED",
                ref=ref,
                trace_id=trace.trace_id,
                meta={"order_item_id": it.id, "from": before, "to": target.value, "actor": actor},
            )

        await OrderStatusService._recompute(session, order, trace)
        await session.flush()
        return TransitionResult(
            order_id=order.id,
            order_status=order.order_status,
            changed_items=changed,
            payment_status=order.payment_status,
        )

    @staticmethod
    async def _recompute(session: AsyncSession, order: Order, trace: TraceContext) -> None:
        new_status = rollup_order_status(it.item_status for it in order.items)
        if new_status is None or new_status == order.order_status:
            return
        before = order.order_status
        order.order_status = new_status
        await AuditEventWriter.write(
            session,
            flow=FLOW_ORDER,
            event="ORDER_STATUS_CHANGED",
            ref=order_ref(order.id),
            trace_id=trace.trace_id,
            meta={"from": before, "to": new_status},
        )
        if new_status == OrderStatus.COMPLETED.value and _is_immediate(order):
            await OrderStatusService._finalize_cod(session, order, trace)

    @staticmethod
    async def _finalize_cod(session: AsyncSession, order: Order, trace: TraceContext) -> None:
        """COD 结算：现付款行转 completed（没有则新建），订单标记已付。"""
        if order.payment_status == PaymentStatus.PAID.value:
            return
        now = datetime.now(UTC)
        txn = f"COD-{order.id}-{int(time.time() * 1000)}"
        current = next(
            (p for p in reversed(order.payments) if p.payment_status != PaymentRecordStatus.COMPLETED.value),
            None,
        )
        if current is None:
            current = Payment(order_id=order.id, payment_method=order.payment_method)
            session.add(current)
        current.payment_status = PaymentRecordStatus.COMPLETED.value
        current.transaction_id = txn
        current.amount_paid = order.total_amount
        current.payment_date = now
        order.payment_status = PaymentStatus.PAID.value

        await AuditEventWriter.write(
            session,
            flow=FLOW_ORDER,
            event="COD_FINALIZED",
            ref=order_ref(order.id),
            trace_id=trace.trace_id,
            meta={"transaction_id": txn, "amount": money_str(order.total_amount)},
        )
        logger.info("COD order=%s finalized txn=%s", order.id, txn)

    # ------------------------------------------------------------------
    # 买家操作
    # ------------------------------------------------------------------
    @staticmethod
    async def cancel_item(
        session: AsyncSession,
        *,
        order_item_id: int,
        buyer_id: Optional[int] = None,
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """仅 pending / confirmed 可取消；发货后不可取消。"""
        trace = ensure_trace(trace, "orders:cancel_item")

        async def _run(*, session: AsyncSession) -> TransitionResult:
            order = await _lock_order(session, await _order_id_of_item(session, order_item_id), buyer_id)
            item = _find_item(order, order_item_id)
            return await OrderStatusService._apply(
                session, order, [item], ItemStatus.CANCELLED, trace, actor="buyer"
            )

        return await TxManager.run(session, _run, op="cancel_item")

    @staticmethod
    async def mark_received(
        session: AsyncSession,
        *,
        order_id: int,
        buyer_id: Optional[int] = None,
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """确认收货：只推进当前为 shipped 的明细。"""
        trace = ensure_trace(trace, "orders:mark_received")
        return await OrderStatusService._bulk_from_shipped(
            session, order_id, buyer_id, ItemStatus.COMPLETED, trace, op="mark_received"
        )

    @staticmethod
    async def request_refund(
        session: AsyncSession,
        *,
        order_id: int,
        buyer_id: Optional[int] = None,
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """申请退款 / 退货：只作用于 shipped 的明细。"""
        trace = ensure_trace(trace, "orders:request_refund")
        return await OrderStatusService._bulk_from_shipped(
            session, order_id, buyer_id, ItemStatus.RETURN, trace, op="request_refund"
        )

    @staticmethod
    async def _bulk_from_shipped(
        session: AsyncSession,
        order_id: int,
        buyer_id: Optional[int],
        target: ItemStatus,
        trace: TraceContext,
        *,
        op: str,
    ) -> TransitionResult:
        async def _run(*, session: AsyncSession) -> TransitionResult:
            order = await _lock_order(session, order_id, buyer_id)
            shipped = [it for it in order.items if it.item_status == ItemStatus.SHIPPED.value]
            if not shipped:
                raise StateTransitionError(
                    order.order_status,
                    target.value,
                    f"order {order_id} has no shipped items",
                )
            return await OrderStatusService._apply(session, order, shipped, target, trace, actor="buyer")

        return await TxManager.run(session, _run, op=op)

    # ------------------------------------------------------------------
    # 管理员 / 卖家操作
    # ------------------------------------------------------------------
    @staticmethod
    async def advance_item(
        session: AsyncSession,
        *,
        order_item_id: int,
        target: str,
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """pending→confirmed→shipped→completed，以及 {pending, confirmed}→cancelled。"""
        trace = ensure_trace(trace, "admin:advance_item")
        try:
            to = ItemStatus(str(target or "").strip().lower())
        except ValueError:
            raise ValidationError(
                f"unknown item status {target!r}",
                context={"allowed": [s.value for s in ItemStatus]},
            )

        async def _run(*, session: AsyncSession) -> TransitionResult:
            order = await _lock_order(session, await _order_id_of_item(session, order_item_id))
            item = _find_item(order, order_item_id)
            return await OrderStatusService._apply(session, order, [item], to, trace, actor="admin")

        return await TxManager.run(session, _run, op="advance_item")

    @staticmethod
    async def remove_seller_items(
        session: AsyncSession,
        *,
        order_id: int,
        seller_id: int,
        trace: Optional[TraceContext] = None,
    ) -> SellerRemovalResult:
        """
        按卖家移除明细：

        - 该卖家在单中没有明细 → NotFoundError
        - 移除后无剩余明细 → 删除订单及其付款行
        - 否则按剩余明细重算金额（运费沿用原值；券卖家仍有明细时保留折扣，并夹到其剩余小计）
        订单状态不随之重算。
        """
        trace = ensure_trace(trace, "admin:remove_seller_items")

        async def _run(*, session: AsyncSession) -> SellerRemovalResult:
            order = await _lock_order(session, order_id)
            removed = [it for it in order.items if _item_seller(it) == int(seller_id)]
            if not removed:
                raise NotFoundError(
                    f"order {order_id} has no items from seller {seller_id}",
                    context={"order_id": int(order_id), "seller_id": int(seller_id)},
                )
            survivors = [it for it in order.items if _item_seller(it) != int(seller_id)]
            removed_ids = [int(it.id) for it in removed]

            if order.stock_reserved:
                still_held = [it for it in removed if it.item_status != ItemStatus.CANCELLED.value]
                await InventoryReservationService.release(session, coalesce_demand(still_held))

            meta: Dict[str, Any] = {"seller_id": int(seller_id), "removed_items": removed_ids}

            if not survivors:
                await session.delete(order)
                await session.flush()
                logger.info("order=%s deleted after removing seller=%s", order_id, seller_id)
                await AuditEventWriter.write(
                    session,
                    flow=FLOW_ORDER,
                    event="SELLER_ITEMS_REMOVED",
                    ref=order_ref(order_id),
                    trace_id=trace.trace_id,
                    meta={**meta, "order_deleted": True},
                )
                return SellerRemovalResult(
                    order_id=int(order_id), removed_items=removed_ids, order_deleted=True
                )

            for it in removed:
                order.items.remove(it)
            await OrderStatusService._reprice(session, order, survivors)
            await session.flush()

            await AuditEventWriter.write(
                session,
                flow=FLOW_ORDER,
                event="SELLER_ITEMS_REMOVED",
                ref=order_ref(order.id),
                trace_id=trace.trace_id,
                meta={**meta, "order_deleted": False, "total": money_str(order.total_amount)},
            )
            return SellerRemovalResult(
                order_id=order.id,
                removed_items=removed_ids,
                order_deleted=False,
                total=money_str(order.total_amount),
            )

        return await TxManager.run(session, _run, op="remove_seller_items")

    @staticmethod
    async def _reprice(session: AsyncSession, order: Order, survivors: List[OrderItem]) -> None:
        lines = [
            LineItem(
                variant_id=it.variant_id,
                seller_id=_item_seller(it),
                unit_price=it.unit_price,
                quantity=it.quantity,
            )
            for it in survivors
        ]

        discount = to_money(order.discount_amount)
        if order.voucher_id is not None and discount > 0:
            voucher = await session.get(Voucher, order.voucher_id)
            seller_sub = sum(
                (to_money(ln.unit_price) * ln.quantity for ln in lines
                 if voucher is not None and ln.seller_id == int(voucher.seller_id)),
                to_money(0),
            )
            if seller_sub > 0:
                discount = min(discount, seller_sub)
            else:
                discount = to_money(0)
                order.voucher_id = None
        else:
            discount = to_money(0)

        shipping = to_money(order.shipping_amount)
        totals = compute_totals(
            lines,
            discount=discount,
            shipping=ShippingConfig(
                free_shipping=shipping <= 0,
                flat_shipping=shipping > 0,
                flat_rate_amount=shipping,
            ),
        )
        order.subtotal = round2(totals.subtotal)
        order.discount_amount = round2(totals.discount)
        order.tax_amount = round2(totals.tax)
        order.shipping_amount = round2(totals.shipping)
        order.total_amount = totals.total

    # ------------------------------------------------------------------
    # 读模型
    # ------------------------------------------------------------------
    @staticmethod
    async def get_order(
        session: AsyncSession,
        *,
        order_id: int,
        buyer_id: Optional[int] = None,
    ) -> Order:
        order = (
            await session.execute(
                select(Order).where(Order.id == int(order_id)).execution_options(populate_existing=True)
            )
        ).scalars().first()
        if order is None or (buyer_id is not None and int(order.buyer_id) != int(buyer_id)):
            raise NotFoundError(f"order {order_id} not found", context={"order_id": int(order_id)})
        return order
