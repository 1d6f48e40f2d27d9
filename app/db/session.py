# app/db/session.py
# 异步会话工厂 + FastAPI 依赖（get_session）
from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.db.engine import create_async_engine_safe

_settings = get_settings()

async_engine: AsyncEngine = create_async_engine_safe(
    _settings.DATABASE_URL,
    echo=_settings.SQL_ECHO,
    lock_timeout_ms=_settings.LOCK_TIMEOUT_MS,
)

AsyncSessionLocal: async_sessionmaker[AsyncSession] = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---- FastAPI 依赖 ----
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


# ---- 关闭引擎（测试/生命周期） ----
async def close_engines() -> None:
    await async_engine.dispose()
