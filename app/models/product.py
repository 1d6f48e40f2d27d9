# app/models/product.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class Product(Base):
    """
    商品主档（只读协作方：目录管理不在本服务范围内）

    - seller_id：卖家归属；订单明细通过 variant → product 查到卖家（仅查找，不持有）
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    variants: Mapped[List["ProductVariant"]] = relationship(
        "ProductVariant",
        back_populates="product",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} seller={self.seller_id} name={self.name!r}>"


class ProductVariant(Base):
    """
    可售 SKU（颜色 / 内存 / 存储组合），库存的最小单位。

    - stock_quantity >= 0（DB CHECK + 预占前加锁校验，双保险）
    - 扣减只发生在 InventoryReservationService 内；补货由目录协作方负责
    """

    __tablename__ = "product_variant"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_product_variant_stock_nonneg"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    color: Mapped[str | None] = mapped_column(String(64), nullable=True)
    storage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ram: Mapped[str | None] = mapped_column(String(64), nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    product: Mapped["Product"] = relationship("Product", back_populates="variants", lazy="selectin")

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} product={self.product_id} stock={self.stock_quantity}>"
