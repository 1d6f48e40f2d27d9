# app/domain/errors.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """
    下单/支付/状态机统一业务异常基类：

    - code:    机器可读错误码（Problem.error_code）
    - status:  HTTP 状态码
    - context: 结构化上下文（variant_id / needed / available / reason ...）

    API 层统一翻译为 Problem 形状；服务层只负责抛出。
    """

    code = "checkout_error"
    status = 400

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        if code:
            self.code = code
        if status:
            self.status = status
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})


class ValidationError(CheckoutError):
    """缺字段 / 空购物车 / 支付方式未开放等：不触碰任何状态。"""

    code = "validation_error"
    status = 422


class NotFoundError(CheckoutError):
    code = "not_found"
    status = 404


class InsufficientStockError(CheckoutError):
    """库存不足：整个下单或 capture 事务回滚。"""

    code = "insufficient_stock"
    status = 409

    def __init__(self, variant_id: int, needed: int, available: int):
        self.variant_id = int(variant_id)
        self.needed = int(needed)
        self.available = int(available)
        super().__init__(
            f"insufficient stock for variant={self.variant_id}: "
            f"need {self.needed}, have {self.available}",
            context={
                "variant_id": self.variant_id,
                "needed": self.needed,
                "available": self.available,
            },
        )


class VoucherIneligibleError(CheckoutError):
    """结算页预校验拒绝（最终下单时不抛，改为静默不打折）。"""

    code = "voucher_ineligible"
    status = 400

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or f"voucher rejected: {reason}", context={"reason": reason})


class PaymentGatewayError(CheckoutError):
    """外部网关调用失败：订单保持 pending/unpaid，不动库存，可重试。"""

    code = "payment_gateway_error"
    status = 502


class ConcurrencyConflictError(CheckoutError):
    """锁等待超时 / 死锁 / 条件更新未命中：无部分副作用，调用方可重试。"""

    code = "concurrency_conflict"
    status = 409


class StateTransitionError(CheckoutError):
    """非法状态迁移：拒绝并说明原因，不做任何修改。"""

    code = "state_transition_error"
    status = 409

    def __init__(self, current: str, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(
            message or f"cannot move from {current!r} to {target!r}",
            context={"current": current, "target": target},
        )


def money_str(v: Decimal) -> str:
    """Decimal → '123.45'（context/日志用）。"""
    return f"{Decimal(v):.2f}"
