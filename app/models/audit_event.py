from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AuditEvent(Base):
    """
    审计事件表 audit_events

    字段：
      - id: BIGINT 主键（SQLite 下退化为 INTEGER 以便自增）
      - category: VARCHAR(64) NOT NULL   ← flow，例如 CHECKOUT / PAYMENT / ORDER
      - ref: VARCHAR(128) NOT NULL       ← 业务引用，例如 ORD:123
      - trace_id: VARCHAR(64) NULL       ← 用于跨表 trace 聚合
      - created_at: timestamptz NOT NULL DEFAULT now()
      - meta: JSONB NOT NULL（SQLite 下为 JSON）
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    ref: Mapped[str] = mapped_column(String(128), nullable=False)
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    meta: Mapped[dict] = mapped_column(JSON().with_variant(JSONB, "postgresql"), nullable=False)

    __table_args__ = (
        Index("ix_audit_events_cat_ref_time", "category", "ref", "created_at"),
        Index("ix_audit_events_ref", "ref"),
        Index("ix_audit_events_trace_id", "trace_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEvent id={self.id} category={self.category} "
            f"ref={self.ref} trace_id={self.trace_id}>"
        )
