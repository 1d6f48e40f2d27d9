# app/services/site_settings_provider.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import PaymentMethod
from app.models.site_settings import SiteSettings
from app.services.pricing_calculator import ShippingConfig, to_money

logger = logging.getLogger("techora.settings")

SETTINGS_ROW_ID = 1


@dataclass(frozen=True)
class SiteConfig:
    free_shipping: bool = False
    flat_shipping: bool = False
    flat_rate_amount: Decimal = Decimal("0")
    cod_enabled: bool = True
    external_payment_enabled: bool = True

    @property
    def shipping(self) -> ShippingConfig:
        return ShippingConfig(
            free_shipping=self.free_shipping,
            flat_shipping=self.flat_shipping,
            flat_rate_amount=self.flat_rate_amount,
        )

    def is_method_enabled(self, method: PaymentMethod) -> bool:
        if method is PaymentMethod.COD:
            return self.cod_enabled
        return self.external_payment_enabled


class SiteSettingsProvider:
    """
    站点配置读取（短 TTL 缓存）。

    实例挂在 app.state 上，经依赖注入使用，不做模块级单例；
    用自己的短会话读取，不占用调用方事务。
    表里没有 id=1 的行时，按默认值（不包邮、无统一运费、COD / 网关均开启）。
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._cached: Optional[SiteConfig] = None
        self._cached_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._cached = None
        self._cached_at = 0.0

    def _fresh(self) -> bool:
        return self._cached is not None and (self._clock() - self._cached_at) <= self._ttl

    async def get(self) -> SiteConfig:
        if self._fresh():
            return self._cached  # type: ignore[return-value]
        async with self._lock:
            if self._fresh():
                return self._cached  # type: ignore[return-value]
            self._cached = await self._load()
            self._cached_at = self._clock()
            return self._cached

    async def _load(self) -> SiteConfig:
        async with self._session_factory() as session:
            row = (
                await session.execute(select(SiteSettings).where(SiteSettings.id == SETTINGS_ROW_ID))
            ).scalars().first()
        if row is None:
            logger.info("site_settings row missing, using defaults")
            return SiteConfig()
        return SiteConfig(
            free_shipping=bool(row.ship_free),
            flat_shipping=bool(row.ship_flat),
            flat_rate_amount=to_money(row.flat_rate_amount),
            cod_enabled=bool(row.pay_cod),
            external_payment_enabled=bool(row.pay_paypal),
        )
