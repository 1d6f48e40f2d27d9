# tests/conftest.py
from __future__ import annotations

import os
from decimal import Decimal
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

# 在 import app.* 之前指定：进程级默认引擎不要指向开发库
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-checkout.db")

from app.api.deps import get_session  # noqa: E402
from app.db.base import Base, init_models  # noqa: E402
from app.db.engine import create_async_engine_safe  # noqa: E402
from app.main import create_app  # noqa: E402
from app.services.checkout_types import ShippingFields  # noqa: E402
from app.services.payment_gateway import HttpPaymentGateway  # noqa: E402
from app.services.site_settings_provider import SiteConfig, SiteSettingsProvider  # noqa: E402
from tests.fakes import FakePayPal  # noqa: E402


# =========================================
# 每用例独立的临时 SQLite 文件库（NullPool，避免跨 loop）
#   每个事务以 BEGIN IMMEDIATE 开始：并发写按库级写锁串行，
#   第二个事务阻塞到第一个提交后再读，语义与 PG 的 FOR UPDATE 一致
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine_safe(
        f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        lock_timeout_ms=10_000,
        poolclass=NullPool,
    )
    init_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def async_session_maker(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(async_session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    一次性会话：服务自己管理事务边界，这里只负责收尾回滚。
    """
    async with async_session_maker() as sess:
        try:
            yield sess
        finally:
            if sess.in_transaction():
                await sess.rollback()


# =========================================
# 通用入参
# =========================================
@pytest.fixture
def shipping() -> ShippingFields:
    return ShippingFields(
        first_name="Juan",
        last_name="Dela Cruz",
        address="123 Rizal St",
        city="Quezon City",
        province="Metro Manila",
        zip_code="1100",
        phone="09171234567",
        email="juan@example.com",
    )


@pytest.fixture
def site_config() -> SiteConfig:
    return SiteConfig(flat_shipping=True, flat_rate_amount=Decimal("50"))


# =========================================
# 外部网关：真实 HttpPaymentGateway + httpx.MockTransport
# =========================================
@pytest.fixture
def fake_paypal() -> FakePayPal:
    return FakePayPal()


@pytest_asyncio.fixture
async def gateway(fake_paypal: FakePayPal) -> AsyncGenerator[HttpPaymentGateway, None]:
    gw = HttpPaymentGateway(
        "https://gateway.test",
        client_id="client-id",
        client_secret="client-secret",
        currency="PHP",
        transport=httpx.MockTransport(fake_paypal.handler),
    )
    try:
        yield gw
    finally:
        await gw.aclose()


# =========================================
# HTTP 客户端（ASGITransport，不走 lifespan，app.state 预先注入）
# =========================================
@pytest_asyncio.fixture
async def client(async_session_maker, gateway) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(
        site_settings=SiteSettingsProvider(async_session_maker, ttl_seconds=0),
        payment_gateway=gateway,
    )

    async def _session_override() -> AsyncGenerator[AsyncSession, None]:
        async with async_session_maker() as sess:
            yield sess

    app.dependency_overrides[get_session] = _session_override

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
