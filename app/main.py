# app/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from app.core.config import get_settings
from app.core.logging import setup_logging
from app.db.session import AsyncSessionLocal, close_engines
from app.http_problem_handlers import register_exception_handlers
from app.router_mount import mount_routers
from app.services.payment_gateway import HttpPaymentGateway, PaymentGateway
from app.services.site_settings_provider import SiteSettingsProvider

logger = logging.getLogger("techora")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    进程级共享状态挂到 app.state（不做模块级单例）：
    - site_settings：短 TTL 的站点配置读取器
    - payment_gateway：复用一个 httpx.AsyncClient 的网关客户端
    已经预先注入（例如测试）的不覆盖。
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    if getattr(app.state, "site_settings", None) is None:
        app.state.site_settings = SiteSettingsProvider(
            AsyncSessionLocal, ttl_seconds=settings.SITE_SETTINGS_TTL_SECONDS
        )
    if getattr(app.state, "payment_gateway", None) is None:
        app.state.payment_gateway = HttpPaymentGateway(
            settings.PAYMENT_GATEWAY_URL,
            client_id=settings.PAYMENT_GATEWAY_CLIENT_ID,
            client_secret=settings.PAYMENT_GATEWAY_CLIENT_SECRET,
            currency=settings.PAYMENT_CURRENCY,
            timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        )
    logger.info("techora-checkout started env=%s", settings.ENV)
    try:
        yield
    finally:
        await app.state.payment_gateway.aclose()
        await close_engines()


def create_app(
    *,
    site_settings: Optional[SiteSettingsProvider] = None,
    payment_gateway: Optional[PaymentGateway] = None,
) -> FastAPI:
    app = FastAPI(
        title="Techora Checkout",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.site_settings = site_settings
    app.state.payment_gateway = payment_gateway

    register_exception_handlers(app)
    mount_routers(app)
    return app


app = create_app()
