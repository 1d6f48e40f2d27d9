# app/models/cart.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class CartItem(Base):
    """
    购物车行（协作方 Cart Store 的存储）

    - 价格不落在购物车：结算时一律按 variant 当前价格取“实时行”
    """

    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("buyer_id", "variant_id", name="uq_cart_items_buyer_variant"),
        CheckConstraint("quantity > 0", name="ck_cart_items_qty_pos"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    buyer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    variant_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("product_variant.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<CartItem buyer={self.buyer_id} variant={self.variant_id} qty={self.quantity}>"
