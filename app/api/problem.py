# app/api/problem.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, TypedDict

from fastapi import Request
from fastapi.responses import JSONResponse


class ProblemDetail(TypedDict, total=False):
    # validation | shortage | voucher | state | gateway | conflict | http
    type: str
    # 出错字段，例如 shipping.city
    path: str
    reason: str

    # 库存不足时定位到具体 variant
    variant_id: int
    needed: int
    available: int


def new_trace_id() -> str:
    return f"t_{uuid.uuid4().hex[:12]}"


def request_context(req: Request) -> Dict[str, Any]:
    return {"path": getattr(req.url, "path", ""), "method": req.method}


@dataclass(frozen=True)
class Problem:
    """
    统一错误体：

        {error_code, message, http_status, trace_id, context, details[]}

    所有异常处理器（业务异常 / 请求校验 / HTTPException / 兜底 500）都输出这一形状，
    前端只需按 error_code 分支、按 details 做行内提示。
    """

    error_code: str
    message: str
    http_status: int
    context: Dict[str, Any] = field(default_factory=dict)
    details: List[ProblemDetail] = field(default_factory=list)
    trace_id: str = field(default_factory=new_trace_id)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
            "trace_id": self.trace_id,
            "context": dict(self.context),
        }
        if self.details:
            out["details"] = list(self.details)
        return out

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=int(self.http_status), content=self.to_dict())
