# app/models/enums.py
from __future__ import annotations

from enum import StrEnum


class PaymentMethod(StrEnum):
    """
    支付方式（落库 orders.payment_method / payments.payment_method）：

    - COD     货到付款：下单即结算（Immediate），下单事务内扣库存
    - PAYPAL  外部网关：延迟结算（Deferred），capture 回调后才扣库存
    """

    COD = "cod"
    PAYPAL = "paypal"


class SettlementTiming(StrEnum):
    """结算时机：决定库存预占发生在下单时还是 capture 时。"""

    IMMEDIATE = "immediate"
    DEFERRED = "deferred"


class OrderStatus(StrEnum):
    """
    订单级状态（由明细状态汇总得出）：

    pending → confirmed → shipped → completed
    cancelled / return 为终态
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURN = "return"


class ItemStatus(StrEnum):
    """
    明细状态机：

    - pending → confirmed → shipped → completed（终态）
    - {pending, confirmed} → cancelled（终态；发货后不可取消）
    - shipped → return（终态；买家发起退款/退货）
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURN = "return"


class PaymentStatus(StrEnum):
    """订单上的付款状态。"""

    UNPAID = "unpaid"
    PAID = "paid"


class PaymentRecordStatus(StrEnum):
    """payments 行上的状态。"""

    PENDING = "pending"
    COMPLETED = "completed"


class DiscountType(StrEnum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class VoucherStatus(StrEnum):
    ACTIVE = "active"
    DISABLED = "disabled"
    EXPIRED = "expired"
