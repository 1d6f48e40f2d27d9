# app/api/routers/orders.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_buyer_id, get_session
from app.core.audit import new_trace
from app.schemas.orders import OrderOut, TransitionOut
from app.services.order_status_service import OrderStatusService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: int,
    buyer_id: int = Depends(get_buyer_id),
    session: AsyncSession = Depends(get_session),
):
    return await OrderStatusService.get_order(session, order_id=order_id, buyer_id=buyer_id)


@router.post("/items/{order_item_id}/cancel", response_model=TransitionOut)
async def cancel_item(
    order_item_id: int,
    buyer_id: int = Depends(get_buyer_id),
    session: AsyncSession = Depends(get_session),
):
    res = await OrderStatusService.cancel_item(
        session,
        order_item_id=order_item_id,
        buyer_id=buyer_id,
        trace=new_trace("http:/orders/items/cancel"),
    )
    return res.as_dict()


@router.post("/{order_id}/received", response_model=TransitionOut)
async def mark_received(
    order_id: int,
    buyer_id: int = Depends(get_buyer_id),
    session: AsyncSession = Depends(get_session),
):
    res = await OrderStatusService.mark_received(
        session, order_id=order_id, buyer_id=buyer_id, trace=new_trace("http:/orders/received")
    )
    return res.as_dict()


@router.post("/{order_id}/refund", response_model=TransitionOut)
async def request_refund(
    order_id: int,
    buyer_id: int = Depends(get_buyer_id),
    session: AsyncSession = Depends(get_session),
):
    res = await OrderStatusService.request_refund(
        session, order_id=order_id, buyer_id=buyer_id, trace=new_trace("http:/orders/refund")
    )
    return res.as_dict()
