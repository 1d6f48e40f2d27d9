# app/models/site_settings.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Integer, Numeric, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class SiteSettings(Base):
    """
    站点级配置（单行表，id 固定为 1；后台设置页维护，本服务只读）

    - ship_free / ship_flat / flat_rate_amount：运费策略
    - pay_cod / pay_paypal：支付方式开关
    """

    __tablename__ = "site_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    ship_free: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    ship_flat: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    flat_rate_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, server_default=text("0")
    )

    pay_cod: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    pay_paypal: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
