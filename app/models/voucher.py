# app/models/voucher.py
from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, Index, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class Voucher(Base):
    """
    卖家券（表名沿用 promotions）

    - voucher_code 大小写不敏感唯一（lower(voucher_code) 唯一索引）
    - used_count 只增不减，且只通过条件 UPDATE 自增：
        used_count < usage_limit 才会命中，保证 used_count <= usage_limit
    """

    __tablename__ = "promotions"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_promotions_used_nonneg"),
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_promotions_used_within_limit",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    voucher_code: Mapped[str] = mapped_column(String(64), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(16), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    def __repr__(self) -> str:
        return (
            f"<Voucher id={self.id} code={self.voucher_code!r} seller={self.seller_id} "
            f"used={self.used_count}/{self.usage_limit}>"
        )


# 大小写不敏感唯一：lower(voucher_code)
Index("uq_promotions_code_lower", func.lower(Voucher.voucher_code), unique=True)
