# app/api/errors.py
from __future__ import annotations

import logging
from typing import List

from fastapi import FastAPI, Request

from app.api.problem import Problem, ProblemDetail, request_context
from app.domain.errors import (
    CheckoutError,
    ConcurrencyConflictError,
    InsufficientStockError,
    PaymentGatewayError,
    StateTransitionError,
    ValidationError,
    VoucherIneligibleError,
)

logger = logging.getLogger("techora.api")


def _details_for(exc: CheckoutError) -> List[ProblemDetail]:
    if isinstance(exc, InsufficientStockError):
        return [
            {
                "type": "shortage",
                "reason": "insufficient_stock",
                "variant_id": exc.variant_id,
                "needed": exc.needed,
                "available": exc.available,
            }
        ]
    if isinstance(exc, ValidationError):
        missing = exc.context.get("missing") or []
        if missing:
            return [{"type": "validation", "path": f"shipping.{m}", "reason": "required"} for m in missing]
        return [{"type": "validation", "reason": exc.message}]
    if isinstance(exc, VoucherIneligibleError):
        return [{"type": "voucher", "reason": exc.reason}]
    if isinstance(exc, StateTransitionError):
        return [{"type": "state", "reason": f"{exc.current} -> {exc.target}"}]
    if isinstance(exc, PaymentGatewayError):
        return [{"type": "gateway", "reason": exc.message}]
    if isinstance(exc, ConcurrencyConflictError):
        return [{"type": "conflict", "reason": "retry"}]
    return []


def problem_from_checkout_error(req: Request, exc: CheckoutError) -> Problem:
    ctx = request_context(req)
    ctx.update(exc.context)
    return Problem(
        error_code=exc.code,
        message=exc.message,
        http_status=exc.status,
        context=ctx,
        details=_details_for(exc),
    )


def register_checkout_error_handler(app: FastAPI) -> None:
    @app.exception_handler(CheckoutError)
    async def _checkout_exc(req: Request, exc: CheckoutError):
        problem = problem_from_checkout_error(req, exc)
        level = logging.WARNING if exc.status >= 500 else logging.INFO
        logger.log(level, "%s %s → %s %s [%s]", req.method, req.url.path, exc.status, exc.code, problem.trace_id)
        return problem.to_response()
