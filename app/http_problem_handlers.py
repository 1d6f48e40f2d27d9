# app/http_problem_handlers.py
from __future__ import annotations

import logging
from typing import List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException

from app.api.errors import register_checkout_error_handler
from app.api.problem import Problem, ProblemDetail, request_context

logger = logging.getLogger("techora")


def _problem_from_http_exc(req: Request, exc: HTTPException) -> Problem:
    """HTTPException（鉴权头缺失、路由 404 等）→ http_error。"""
    msg = str(exc.detail) if exc.detail is not None else "request rejected"
    return Problem(
        error_code="http_error",
        message=msg,
        http_status=int(exc.status_code),
        context=request_context(req),
        details=[{"type": "http", "reason": msg}],
    )


def _problem_from_validation(req: Request, exc: RequestValidationError) -> Problem:
    details: List[ProblemDetail] = []
    for i, e in enumerate(exc.errors()):
        loc = ".".join(str(p) for p in (e.get("loc") or ()) if p != "body")
        details.append(
            {
                "type": "validation",
                "path": loc or f"validation[{i}]",
                "reason": str(e.get("msg") or e.get("type") or "invalid"),
            }
        )
    return Problem(
        error_code="request_validation_error",
        message="invalid request parameters",
        http_status=422,
        context=request_context(req),
        details=details,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    异常 → Problem 的统一出口：
    - CheckoutError（业务异常）：按 code / status 翻译，见 app.api.errors
    - RequestValidationError：422 request_validation_error
    - HTTPException：原状态码 + http_error
    - 其它未捕获异常：500 internal_error（只记日志，不回显内部信息）
    """
    register_checkout_error_handler(app)

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(req: Request, exc: RequestValidationError):
        return _problem_from_validation(req, exc).to_response()

    @app.exception_handler(HTTPException)
    async def _http_exc(req: Request, exc: HTTPException):
        return _problem_from_http_exc(req, exc).to_response()

    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        problem = Problem(
            error_code="internal_error",
            message="internal error, please retry later",
            http_status=500,
            context=request_context(req),
        )
        logger.exception("UNHANDLED_EXC[%s]: %s", problem.trace_id, exc)
        return problem.to_response()
