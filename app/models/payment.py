# app/models/payment.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base

if TYPE_CHECKING:
    from .order import Order


class Payment(Base):
    """
    付款记录

    - COD：订单完成时由 COD 结算补记（或把 pending 行改为 completed）
    - 外部网关：capture 回调时写入
    - 每单最多一条 completed 行（部分唯一索引兜底，重复 capture 在 DB 层也写不进来）
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_order_completed",
            "order_id",
            unique=True,
            postgresql_where=text("payment_status = 'completed'"),
            sqlite_where=text("payment_status = 'completed'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount_paid: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    payment_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payments")

    def __repr__(self) -> str:
        return (
            f"<Payment id={self.id} order={self.order_id} {self.payment_method}/"
            f"{self.payment_status} txn={self.transaction_id!r} amount={self.amount_paid}>"
        )
