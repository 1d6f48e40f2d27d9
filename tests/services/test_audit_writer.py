# tests/services/test_audit_writer.py
from __future__ import annotations

import json

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.audit_writer import FLOW_CHECKOUT, AuditEventWriter, order_ref


@pytest.mark.asyncio
async def test_audit_event_writer_inserts_row(session: AsyncSession):
    """
    验证 AuditEventWriter.write 能正确写入 audit_events 表，
    且 meta.flow / meta.event / trace_id 字段对齐。
    """
    ref = order_ref(123)
    trace_id = "TRACE-UNIT-123"

    async with session.begin():
        ok = await AuditEventWriter.write(
            session,
            flow=FLOW_CHECKOUT,
            event="UNIT_TEST_EVENT",
            ref=ref,
            trace_id=trace_id,
            meta={"foo": "bar"},
        )
    assert ok is True

    row = (
        await session.execute(
            text(
                """
                SELECT category, ref, meta, trace_id
                  FROM audit_events
                 WHERE ref = :ref
                 ORDER BY id DESC
                 LIMIT 1
                """
            ),
            {"ref": ref},
        )
    ).first()
    await session.rollback()

    assert row is not None
    category, ref_db, meta_db, trace_db = row
    assert category == FLOW_CHECKOUT
    assert ref_db == "ORD:123"
    assert trace_db == trace_id

    # raw SQL 读出来的 JSON 列在 SQLite 上是字符串
    meta = json.loads(meta_db) if isinstance(meta_db, str) else meta_db
    assert meta["flow"] == FLOW_CHECKOUT
    assert meta["event"] == "UNIT_TEST_EVENT"
    assert meta["foo"] == "bar"
    assert meta["trace_id"] == trace_id


@pytest.mark.asyncio
async def test_audit_failure_never_breaks_outer_transaction(session: AsyncSession, caplog):
    """
    meta 里塞一个不可 JSON 序列化的对象：写入失败只回滚 SAVEPOINT，
    外层事务里的其它写入照常提交。
    """
    async with session.begin():
        ok_before = await AuditEventWriter.write(
            session, flow=FLOW_CHECKOUT, event="BEFORE", ref="ORD:1"
        )
        with caplog.at_level("INFO", logger="techora.audit"):
            bad = await AuditEventWriter.write(
                session,
                flow=FLOW_CHECKOUT,
                event="BROKEN",
                ref="ORD:1",
                meta={"obj": object()},
            )
        ok_after = await AuditEventWriter.write(
            session, flow=FLOW_CHECKOUT, event="AFTER", ref="ORD:1"
        )

    assert ok_before is True
    assert bad is False
    assert ok_after is True
    assert "[audit-fallback]" in caplog.text

    n = (
        await session.execute(text("SELECT COUNT(*) FROM audit_events WHERE ref = 'ORD:1'"))
    ).scalar_one()
    await session.rollback()
    assert n == 2
