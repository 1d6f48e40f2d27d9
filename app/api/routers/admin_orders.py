# app/api/routers/admin_orders.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_session
from app.core.audit import new_trace
from app.schemas.orders import ItemStatusIn, SellerRemovalOut, TransitionOut
from app.services.order_status_service import OrderStatusService

# 管理后台的鉴权由上游负责
router = APIRouter(prefix="/admin/orders", tags=["admin-orders"])


@router.post("/items/{order_item_id}/status", response_model=TransitionOut)
async def advance_item(
    order_item_id: int,
    payload: ItemStatusIn,
    session: AsyncSession = Depends(get_session),
):
    res = await OrderStatusService.advance_item(
        session,
        order_item_id=order_item_id,
        target=payload.status,
        trace=new_trace("http:/admin/orders/items/status"),
    )
    return res.as_dict()


@router.delete("/{order_id}/sellers/{seller_id}", response_model=SellerRemovalOut)
async def remove_seller_items(
    order_id: int,
    seller_id: int,
    session: AsyncSession = Depends(get_session),
):
    res = await OrderStatusService.remove_seller_items(
        session,
        order_id=order_id,
        seller_id=seller_id,
        trace=new_trace("http:/admin/orders/sellers"),
    )
    return res.as_dict()
