# app/services/voucher_service.py
from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import DiscountType, VoucherStatus
from app.models.voucher import Voucher
from app.services.checkout_types import LineItem, VoucherCheck
from app.services.pricing_calculator import round2, to_money

logger = logging.getLogger("techora.voucher")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def is_eligible(voucher: Voucher, *, today: date) -> bool:
    """status=active、未过期（expiry_date 为空或 >= today）、未用满。"""
    if str(voucher.status or "").lower() != VoucherStatus.ACTIVE.value:
        return False
    if voucher.expiry_date is not None and voucher.expiry_date < today:
        return False
    if voucher.usage_limit is not None and int(voucher.used_count or 0) >= int(voucher.usage_limit):
        return False
    return True


def compute_discount(voucher: Voucher, seller_subtotal: Decimal) -> Decimal:
    """
    按卖家小计算折扣，并夹到 [0, seller_subtotal]：
      - percentage：seller_subtotal × value / 100
      - fixed：value
    """
    value = to_money(voucher.discount_value)
    kind = str(voucher.discount_type or "").lower()
    if kind == DiscountType.PERCENTAGE.value:
        raw = seller_subtotal * value / _HUNDRED
    elif kind == DiscountType.FIXED.value:
        raw = value
    else:
        raise ValueError(f"unknown discount_type={voucher.discount_type!r} on voucher id={voucher.id}")
    return round2(max(_ZERO, min(seller_subtotal, raw)))


def evaluate_voucher(
    voucher: Optional[Voucher],
    items: Sequence[LineItem],
    *,
    today: date,
) -> VoucherCheck:
    """
    纯规则（不读库）：

    1) 券不存在 → not-found
    2) 不可用（状态 / 过期 / 用满）→ ineligible
    3) 购物车里没有该券卖家的商品 → not-applicable
    4) 折扣只作用于该卖家的小计
    """
    if voucher is None:
        return VoucherCheck.rejected("not-found")
    if not is_eligible(voucher, today=today):
        return VoucherCheck.rejected("ineligible", code=voucher.voucher_code)

    seller_subtotal = sum(
        (
            to_money(it.unit_price) * int(it.quantity)
            for it in items
            if int(it.seller_id) == int(voucher.seller_id)
        ),
        _ZERO,
    )
    if seller_subtotal <= 0:
        return VoucherCheck.rejected("not-applicable", code=voucher.voucher_code)

    return VoucherCheck(
        applicable=True,
        discount=compute_discount(voucher, seller_subtotal),
        seller_id=int(voucher.seller_id),
        voucher_id=int(voucher.id),
        code=voucher.voucher_code,
    )


class VoucherValidator:
    """
    券校验：

    - 结算页预览：事务外调用，允许读到稍旧的数据
    - 最终下单：必须在下单事务内再调一次，实时重读券行；绝不复用预览结果
    """

    @staticmethod
    async def find_by_code(session: AsyncSession, code: str) -> Optional[Voucher]:
        stmt = (
            select(Voucher)
            .where(func.lower(Voucher.voucher_code) == code.strip().lower())
            .limit(1)
            # 同一 session 内多次校验时，覆盖 identity map 里的旧值，读到库里的最新行
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalars().first()

    @staticmethod
    async def validate(
        session: AsyncSession,
        code: Optional[str],
        items: Sequence[LineItem],
        *,
        today: Optional[date] = None,
    ) -> VoucherCheck:
        trimmed = str(code or "").strip()
        if not trimmed:
            return VoucherCheck.rejected("empty-code")

        voucher = await VoucherValidator.find_by_code(session, trimmed)
        return evaluate_voucher(voucher, items, today=today or date.today())


class VoucherRedeemer:
    """
    核销：无锁乐观并发。

    条件 UPDATE 一条语句完成“检查 + 自增”，并发核销时最多 usage_limit 次命中，
    未命中（rowcount=0）即视为核销失败，由调用方决定回滚还是降级。
    """

    @staticmethod
    async def redeem(
        session: AsyncSession,
        voucher_id: int,
        *,
        today: Optional[date] = None,
    ) -> bool:
        day = today or date.today()
        stmt = (
            update(Voucher)
            .where(Voucher.id == int(voucher_id))
            .where(or_(Voucher.usage_limit.is_(None), Voucher.used_count < Voucher.usage_limit))
            .where(or_(Voucher.expiry_date.is_(None), Voucher.expiry_date >= day))
            .where(func.lower(Voucher.status) == VoucherStatus.ACTIVE.value)
            .values(used_count=Voucher.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        ok = (res.rowcount or 0) == 1
        if not ok:
            logger.info("voucher redeem refused: voucher_id=%s", voucher_id)
        return ok
