# app/services/inventory_reservation_service.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.tx import apply_lock_timeout
from app.domain.errors import InsufficientStockError
from app.metrics import RESERVATION_FAILURES
from app.models.product import ProductVariant

logger = logging.getLogger("techora.inventory")


def coalesce_demand(lines: Iterable[Any]) -> Dict[int, int]:
    """
    把原始行（LineItem / OrderItem / dict）合并为 {variant_id: 总需求}。
    同一 variant 在原始行里可能出现多次，只有合计量有意义；qty <= 0 的行忽略。
    """
    demand: Dict[int, int] = {}
    for row in lines or ():
        if isinstance(row, Mapping):
            vid, qty = row.get("variant_id"), row.get("quantity")
        else:
            vid, qty = getattr(row, "variant_id", None), getattr(row, "quantity", None)
        if vid is None or qty is None or int(qty) <= 0:
            continue
        vid = int(vid)
        demand[vid] = demand.get(vid, 0) + int(qty)
    return demand


class InventoryReservationService:
    """
    库存预占（核心并发原语），必须在调用方事务内执行：

    1) 需求按 variant 合并
    2) 按 variant_id 升序逐行 FOR UPDATE 加锁（稳定加锁顺序，两笔重叠预占不会互相死锁）
    3) 读取锁定后的库存
    4) 任一 variant 不足 → 整体失败，不做任何扣减
    5) 全部满足 → 持锁扣减；锁随外层事务 commit/rollback 释放

    第二笔并发预占会阻塞在行锁上，等第一笔提交后读到已扣减的库存，因此不会联合超卖。
    每单生命周期只调用一次：COD 在下单时，外部网关在 capture 时。
    """

    @staticmethod
    async def _lock_in_order(session: AsyncSession, variant_ids: Iterable[int]) -> Dict[int, int]:
        locked: Dict[int, int] = {}
        for vid in sorted(set(int(v) for v in variant_ids)):
            row = (
                await session.execute(
                    select(ProductVariant.id, ProductVariant.stock_quantity)
                    .where(ProductVariant.id == vid)
                    .with_for_update()
                )
            ).first()
            if row is not None:
                locked[int(row[0])] = int(row[1])
        return locked

    @staticmethod
    async def reserve(
        session: AsyncSession,
        demand: Mapping[int, int],
        *,
        lock_timeout_ms: Optional[int] = None,
    ) -> Dict[int, int]:
        """
        扣减 demand 中所有 variant 的库存；返回 {variant_id: 扣减后库存}。
        库存不足（含 variant 不存在，视为可用 0）抛 InsufficientStockError。
        """
        need = {int(k): int(v) for k, v in demand.items() if int(v) > 0}
        if not need:
            return {}

        await apply_lock_timeout(session, lock_timeout_ms)
        have = await InventoryReservationService._lock_in_order(session, need.keys())

        for vid in sorted(need):
            available = have.get(vid, 0)
            if need[vid] > available:
                RESERVATION_FAILURES.labels(reason="insufficient_stock").inc()
                logger.info(
                    "reserve rejected: variant=%s need=%s have=%s", vid, need[vid], available
                )
                raise InsufficientStockError(vid, need[vid], available)

        remaining: Dict[int, int] = {}
        for vid in sorted(need):
            res = await session.execute(
                update(ProductVariant)
                .where(ProductVariant.id == vid)
                .where(ProductVariant.stock_quantity >= need[vid])
                .values(stock_quantity=ProductVariant.stock_quantity - need[vid])
                .execution_options(synchronize_session=False)
            )
            if (res.rowcount or 0) != 1:
                # 持锁期间不应出现；出现即说明有人绕过了行锁
                RESERVATION_FAILURES.labels(reason="guard_miss").inc()
                raise InsufficientStockError(vid, need[vid], have.get(vid, 0))
            remaining[vid] = have[vid] - need[vid]

        logger.debug("reserved %s", need)
        return remaining

    @staticmethod
    async def release(
        session: AsyncSession,
        demand: Mapping[int, int],
        *,
        lock_timeout_ms: Optional[int] = None,
    ) -> Dict[int, int]:
        """
        归还已预占的库存（取消 / 按卖家移除明细时），同样按升序加锁。
        仅在订单确实预占过库存时调用。
        """
        back = {int(k): int(v) for k, v in demand.items() if int(v) > 0}
        if not back:
            return {}

        await apply_lock_timeout(session, lock_timeout_ms)
        have = await InventoryReservationService._lock_in_order(session, back.keys())

        restored: Dict[int, int] = {}
        for vid in sorted(back):
            if vid not in have:
                logger.warning("release skipped: variant=%s no longer exists", vid)
                continue
            await session.execute(
                update(ProductVariant)
                .where(ProductVariant.id == vid)
                .values(stock_quantity=ProductVariant.stock_quantity + back[vid])
                .execution_options(synchronize_session=False)
            )
            restored[vid] = have[vid] + back[vid]
        return restored
