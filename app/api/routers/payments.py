# app/api/routers/payments.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_buyer_id, get_payment_gateway, get_session
from app.core.audit import new_trace
from app.schemas.payments import CaptureIn, CaptureOut, GatewayOrderIn, GatewayOrderOut
from app.services.payment_capture import PaymentCaptureService
from app.services.payment_gateway import PaymentGateway

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/gateway/orders", response_model=GatewayOrderOut, status_code=201)
async def create_gateway_order(
    payload: GatewayOrderIn,
    buyer_id: int = Depends(get_buyer_id),
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """金额一律取库里的 total_amount，不接受客户端金额。"""
    ref = await PaymentCaptureService.create_gateway_order(
        session, order_id=payload.order_id, gateway=gateway, buyer_id=buyer_id
    )
    return GatewayOrderOut(order_id=payload.order_id, gateway_ref=ref)


@router.post("/capture", response_model=CaptureOut)
async def capture(
    payload: CaptureIn,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """网关确认回调；重复回调幂等（已付款订单直接返回 already_paid=true）。"""
    outcome = await PaymentCaptureService.capture_callback(
        session,
        order_id=payload.order_id,
        gateway_ref=payload.gateway_ref,
        gateway=gateway,
        trace=new_trace("http:/payments/capture"),
    )
    return outcome.as_dict()
