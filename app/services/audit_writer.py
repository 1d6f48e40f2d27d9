# app/services/audit_writer.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_event import AuditEvent

logger = logging.getLogger("techora.audit")

# flow（= audit_events.category）
FLOW_CHECKOUT = "CHECKOUT"
FLOW_PAYMENT = "PAYMENT"
FLOW_ORDER = "ORDER"


def order_ref(order_id: int) -> str:
    return f"ORD:{int(order_id)}"


class AuditEventWriter:
    """
    统一审计写入器（fire-and-forget）：

    - 唯一职责：往 audit_events 表写一行。
    - 语义约定：
        * category = flow（CHECKOUT / PAYMENT / ORDER）
        * ref      = 业务引用（ORD:123）
        * meta     = json，至少包含 flow / event，其余字段任意扩展
        * trace_id = 链路 ID
    - 写入包在 SAVEPOINT 里：失败只回滚这一行，外层事务照常提交；
      审计失败永远不会让主操作失败。
    """

    @staticmethod
    async def write(
        session: AsyncSession,
        *,
        flow: str,
        event: str,
        ref: str,
        trace_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        payload: Dict[str, Any] = dict(meta or {})
        payload.setdefault("flow", flow)
        payload.setdefault("event", event)
        if trace_id:
            payload.setdefault("trace_id", trace_id)

        try:
            async with session.begin_nested():
                await session.execute(
                    insert(AuditEvent).values(
                        category=flow,
                        ref=ref,
                        trace_id=trace_id,
                        meta=payload,
                    )
                )
            return True
        except Exception as e:
            logger.debug("audit_events insert failed: %s", e)
            logger.info(
                "[audit-fallback] %s | %s | %s",
                flow,
                ref,
                json.dumps(payload, ensure_ascii=False, default=str),
            )
            return False
