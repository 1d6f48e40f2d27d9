# app/db/engine.py
# 统一引擎工厂：PG 走 psycopg3；SQLite 走 aiosqlite，且每个事务以 BEGIN IMMEDIATE 开始
from __future__ import annotations

import re
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

__all__ = ["normalize_async_dsn", "create_async_engine_safe", "is_sqlite"]


def normalize_async_dsn(url: str) -> str:
    """把常见 DSN 写法统一到 psycopg3 / aiosqlite。"""
    url = (url or "").strip()
    # 有些环境会把值写成 '"postgresql+psycopg://..."'，这里统一剥掉两侧引号
    if (url.startswith('"') and url.endswith('"')) or (url.startswith("'") and url.endswith("'")):
        url = url[1:-1].strip()
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite:///") - 1 :]
    if url.startswith("postgresql+asyncpg://") or url.startswith("postgres+asyncpg://"):
        return re.sub(r"^postgres(?:ql)?\+asyncpg://", "postgresql+psycopg://", url)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def is_sqlite(url_str: str) -> bool:
    return make_url(url_str).get_backend_name().startswith("sqlite")


def _connect_args_for(url_str: str, *, lock_timeout_ms: int) -> dict[str, Any]:
    """
    后端专属 connect_args：
    - PostgreSQL: application_name（lock_timeout 在事务内 SET LOCAL，不在这里全局设置）
    - SQLite: busy timeout（秒）= 锁等待上限
    """
    u = make_url(url_str)
    backend = u.get_backend_name()

    if backend.startswith("postgresql"):
        return {"application_name": "techora-checkout"}

    if backend.startswith("sqlite"):
        return {"timeout": max(lock_timeout_ms, 1) / 1000.0, "check_same_thread": False}

    return {}


def _install_sqlite_immediate_begin(engine: AsyncEngine) -> None:
    """
    SQLite 没有行锁，FOR UPDATE 会被方言忽略。
    这里让 pysqlite/aiosqlite 不再自行发 BEGIN，改由我们在事务开始时发 BEGIN IMMEDIATE：
    写锁在事务开头即取得、持有到 commit/rollback，第二个事务阻塞等待（busy timeout），
    拿到锁后读到的是已经扣减后的库存，与 PG 的 FOR UPDATE 语义一致。
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):  # pragma: no cover - 驱动回调
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # pragma: no cover - 驱动回调
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_async_engine_safe(
    url_str: str,
    *,
    echo: bool = False,
    lock_timeout_ms: int = 5000,
    **extra: Any,
) -> AsyncEngine:
    """Async 引擎（'postgresql+psycopg' 或 'sqlite+aiosqlite'）。"""
    url_str = normalize_async_dsn(url_str)
    u = make_url(url_str)

    kwargs: dict[str, Any] = {"echo": echo}
    if u.get_backend_name().startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    connect_args = _connect_args_for(url_str, lock_timeout_ms=lock_timeout_ms)
    if connect_args:
        kwargs["connect_args"] = connect_args
    kwargs.update(extra)

    engine = create_async_engine(url_str, **kwargs)
    if is_sqlite(url_str):
        _install_sqlite_immediate_begin(engine)
    return engine
