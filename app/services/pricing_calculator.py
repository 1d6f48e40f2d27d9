# app/services/pricing_calculator.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable

from app.domain.errors import ValidationError
from app.services.checkout_types import LineItem

# 固定 3% 税率（不做配置项）
TAX_RATE = Decimal("0.03")

_TWO = Decimal("0.01")
_ZERO = Decimal("0")


def to_money(val: Any) -> Decimal:
    """
    金额规范化：接受 str/int/float/Decimal，转为 Decimal（不做舍入）。
    float 走 str() 以避免二进制误差。
    """
    if val is None:
        return _ZERO
    if isinstance(val, Decimal):
        return val
    try:
        return Decimal(str(val))
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid decimal: {val!r}")


def round2(val: Decimal) -> Decimal:
    return Decimal(val).quantize(_TWO, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ShippingConfig:
    free_shipping: bool = False
    flat_shipping: bool = False
    flat_rate_amount: Decimal = _ZERO


@dataclass(frozen=True)
class Totals:
    """
    一次计价结果。subtotal / discount / tax 保留原始精度，只有 total 做 2dp 舍入，
    保证 total == round(max(0, subtotal - discount) + tax + shipping, 2)。
    """

    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal

    def as_dict(self) -> Dict[str, str]:
        return {
            "subtotal": f"{round2(self.subtotal):.2f}",
            "discount": f"{round2(self.discount):.2f}",
            "tax": f"{round2(self.tax):.2f}",
            "shipping": f"{round2(self.shipping):.2f}",
            "total": f"{self.total:.2f}",
        }


def compute_subtotal(items: Iterable[LineItem]) -> Decimal:
    return sum((to_money(it.unit_price) * int(it.quantity) for it in items), _ZERO)


def compute_shipping(subtotal: Decimal, cfg: ShippingConfig) -> Decimal:
    if cfg.free_shipping:
        return _ZERO
    if cfg.flat_shipping and subtotal > 0:
        return to_money(cfg.flat_rate_amount)
    return _ZERO


def compute_totals(
    items: Iterable[LineItem],
    *,
    discount: Any = 0,
    shipping: ShippingConfig,
) -> Totals:
    """
    纯函数计价（预览与最终落单共用，入参相同则结果相同）：

      subtotal = Σ(unit_price × quantity)
      tax      = 3% × subtotal
      shipping = 0（包邮）| flat_rate_amount（统一运费且 subtotal > 0）| 0
      total    = round(max(0, subtotal − discount) + tax + shipping, 2)
    """
    subtotal = compute_subtotal(items)
    disc = to_money(discount)
    if disc < 0:
        raise ValidationError(
            f"negative discount not allowed: {disc}",
            context={"discount": str(disc)},
        )

    tax = subtotal * TAX_RATE
    ship = compute_shipping(subtotal, shipping)
    total = round2(max(_ZERO, subtotal - disc) + tax + ship)

    return Totals(subtotal=subtotal, discount=disc, tax=tax, shipping=ship, total=total)
