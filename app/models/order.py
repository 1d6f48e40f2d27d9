# app/models/order.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.enums import OrderStatus, PaymentStatus

if TYPE_CHECKING:
    from app.models.order_item import OrderItem
    from app.models.payment import Payment


class Order(Base):
    """
    订单主档

    - total_amount 在创建时由 PricingCalculator 一次性算定；
      之后只有“管理员按卖家移除明细”会重算
    - order_status 为明细状态的汇总结果（见 order_status_service.rollup_order_status）
    - stock_reserved：该订单是否已经走过一次库存预占（每单生命周期内最多一次）
    - 价格拆分（subtotal / discount / tax / shipping）一并落库，便于重算与对账
    """

    __tablename__ = "orders"
    __table_args__ = (Index("ix_orders_buyer_created", "buyer_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    buyer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    order_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.UNPAID.value
    )

    # 金额（2dp）
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    shipping_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    voucher_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("promotions.id", ondelete="SET NULL"),
        nullable=True,
    )

    shipping_address: Mapped[str] = mapped_column(Text, nullable=False)

    # 外部网关单号（authorize 时写入；capture 回调据此校验）
    gateway_ref: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    stock_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    # 关系：订单 ↔ 明细（按 id 有序）
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OrderItem.id",
        lazy="selectin",
    )
    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Payment.id",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<Order id={self.id} buyer={self.buyer_id} status={self.order_status} "
            f"pay={self.payment_method}/{self.payment_status} total={self.total_amount}>"
        )
