# app/models/order_item.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.enums import ItemStatus

if TYPE_CHECKING:
    from .order import Order
    from .product import ProductVariant


class OrderItem(Base):
    """
    订单明细：下单时每个购物车行一条，之后 item_status 各自独立演进。

    卖家归属不落在明细上：通过 variant → product.seller_id 查找（弱引用，仅用于查询）。
    """

    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_qty_pos"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("product_variant.id", ondelete="RESTRICT"),
        nullable=False,
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    item_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ItemStatus.PENDING.value
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")
    variant: Mapped["ProductVariant"] = relationship("ProductVariant", lazy="selectin")

    @property
    def line_amount(self) -> Decimal:
        return Decimal(self.unit_price) * int(self.quantity)

    def __repr__(self) -> str:
        return (
            f"<OrderItem id={self.id} order_id={self.order_id} "
            f"variant={self.variant_id} qty={self.quantity} status={self.item_status}>"
        )
