# app/core/tx.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.domain.errors import ConcurrencyConflictError

logger = logging.getLogger("techora.tx")

T = TypeVar("T")

# PG: lock_not_available / deadlock_detected / serialization_failure
_RETRYABLE_SQLSTATES = {"55P03", "40P01", "40001"}


def is_lock_conflict(exc: DBAPIError) -> bool:
    """锁等待超时 / 死锁 / SQLite 写锁忙，统一视为可重试冲突。"""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    msg = str(orig or exc).lower()
    return "database is locked" in msg or "lock timeout" in msg or "deadlock" in msg


async def apply_lock_timeout(session: AsyncSession, lock_timeout_ms: Optional[int] = None) -> None:
    """
    PG：SET LOCAL lock_timeout，本事务内任何行锁等待都有上限，超时抛 55P03。
    SQLite 的锁等待由连接 busy timeout 控制（见 app.db.engine）。
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    ms = int(lock_timeout_ms or get_settings().LOCK_TIMEOUT_MS)
    await session.execute(text(f"SET LOCAL lock_timeout = '{ms}ms'"))


@asynccontextmanager
async def tx_commit(session: AsyncSession):
    """
    事务边界：
    - session 未开事务：begin/commit，异常整体回滚
    - session 已在事务中：用 SAVEPOINT 包裹，失败只回滚本段，外层提交权归调用方
    进入后先设置锁等待上限，之后取的订单行 / 库存行锁都受其约束。
    """
    ctx = session.begin_nested() if session.in_transaction() else session.begin()
    async with ctx:
        await apply_lock_timeout(session)
        yield


@asynccontextmanager
async def conflicts_as_retryable(op: str):
    """把 DB 层的锁冲突翻译成 ConcurrencyConflictError（事务已回滚，无部分副作用）。"""
    try:
        yield
    except DBAPIError as e:
        if not is_lock_conflict(e):
            raise
        logger.warning("%s: lock conflict, caller may retry (%s)", op, e.orig or e)
        raise ConcurrencyConflictError(
            f"{op}: concurrent update in progress, please retry",
            context={"operation": op},
        ) from e


class TxManager:
    """
    统一的事务执行器：fn 在一个事务（或保存点）内执行，锁冲突翻译为可重试错误。
    fn 内部不得自行 commit / rollback。
    """

    @staticmethod
    async def run(
        session: AsyncSession,
        fn: Callable[..., Awaitable[T]],
        *,
        op: str,
        **kwargs: Any,
    ) -> T:
        async with conflicts_as_retryable(op):
            async with tx_commit(session):
                return await fn(session=session, **kwargs)
