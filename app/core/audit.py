# app/core/audit.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import uuid4


@dataclass
class TraceContext:
    """
    轻量级 Trace 上下文：

    - trace_id: 全局唯一字符串（UUID4 hex）
    - source: 可选，记录生成来源（例如 'http:/checkout/orders', 'gateway:capture'）
    """

    trace_id: str
    source: Optional[str] = None


def new_trace(source: str) -> TraceContext:
    """为一次操作生成新的 TraceContext。"""
    return TraceContext(trace_id=uuid4().hex, source=source)


def ensure_trace(ctx: Optional[TraceContext], source: str) -> TraceContext:
    """若已有 TraceContext 则用之，否则生成新的。"""
    return ctx if ctx is not None else new_trace(source)
