# tests/unit/test_tx_lock_timeout.py
from __future__ import annotations

from types import SimpleNamespace
from typing import List

import pytest
from sqlalchemy.exc import DBAPIError

from app.core.config import get_settings
from app.core.tx import TxManager
from app.domain.errors import ConcurrencyConflictError


class FakeTx:
    def __init__(self, session: "RecordingSession", kind: str):
        self.session = session
        self.kind = kind

    async def __aenter__(self):
        self.session.events.append(f"{self.kind}:enter")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.session.events.append(f"{self.kind}:{'rollback' if exc_type else 'commit'}")
        return False


class RecordingSession:
    """只记录 begin / SQL 顺序的假会话，用来观察事务边界上发出的语句。"""

    def __init__(self, dialect: str, *, in_tx: bool = False):
        self._dialect = dialect
        self._in_tx = in_tx
        self.events: List[str] = []

    def in_transaction(self) -> bool:
        return self._in_tx

    def begin(self) -> FakeTx:
        return FakeTx(self, "begin")

    def begin_nested(self) -> FakeTx:
        return FakeTx(self, "savepoint")

    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name=self._dialect))

    async def execute(self, stmt, *args, **kwargs):
        self.events.append(str(stmt))


class LockNotAvailable(Exception):
    sqlstate = "55P03"


def _set_lock_timeout() -> str:
    return f"SET LOCAL lock_timeout = '{get_settings().LOCK_TIMEOUT_MS}ms'"


@pytest.mark.asyncio
async def test_pg_transaction_bounds_lock_wait_before_any_row_lock():
    sess = RecordingSession("postgresql")

    async def _work(*, session):
        await session.execute("SELECT * FROM orders WHERE id = 1 FOR UPDATE")
        return "ok"

    assert await TxManager.run(sess, _work, op="capture") == "ok"
    assert sess.events == [
        "begin:enter",
        _set_lock_timeout(),
        "SELECT * FROM orders WHERE id = 1 FOR UPDATE",
        "begin:commit",
    ]


@pytest.mark.asyncio
async def test_pg_savepoint_also_bounds_lock_wait():
    # 会话已被之前的读自动开启事务：走 SAVEPOINT，同样先设上限
    sess = RecordingSession("postgresql", in_tx=True)

    async def _work(*, session):
        await session.execute("SELECT 1 FOR UPDATE")

    await TxManager.run(sess, _work, op="cancel_item")
    assert sess.events[:2] == ["savepoint:enter", _set_lock_timeout()]


@pytest.mark.asyncio
async def test_sqlite_transaction_issues_no_set_local():
    sess = RecordingSession("sqlite")

    async def _work(*, session):
        return None

    await TxManager.run(sess, _work, op="place_order")
    assert sess.events == ["begin:enter", "begin:commit"]


@pytest.mark.asyncio
async def test_lock_wait_timeout_surfaces_as_concurrency_conflict():
    sess = RecordingSession("postgresql")

    async def _work(*, session):
        raise DBAPIError("SELECT ... FOR UPDATE", {}, LockNotAvailable("canceling statement due to lock timeout"))

    with pytest.raises(ConcurrencyConflictError) as ei:
        await TxManager.run(sess, _work, op="capture")

    assert ei.value.context == {"operation": "capture"}
    assert sess.events[-1] == "begin:rollback"
