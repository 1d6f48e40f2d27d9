# app/api/routers/checkout.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_buyer_id, get_session, get_site_settings
from app.core.audit import new_trace
from app.domain.errors import money_str
from app.schemas.checkout import (
    CheckoutPreviewOut,
    PlaceOrderIn,
    PlaceOrderOut,
    VoucherValidateIn,
    VoucherValidateOut,
)
from app.services.order_assembler import OrderAssembler
from app.services.site_settings_provider import SiteSettingsProvider

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("/voucher/validate", response_model=VoucherValidateOut)
async def validate_voucher(
    payload: VoucherValidateIn,
    buyer_id: int = Depends(get_buyer_id),
    session: AsyncSession = Depends(get_session),
):
    """结算页券预校验（事务外）；拒绝时返回 rejected_reason，不报错。"""
    check = await OrderAssembler.validate_voucher(session, buyer_id=buyer_id, code=payload.code)
    if not check.applicable:
        return VoucherValidateOut(applicable=False, code=check.code, rejected_reason=check.reason)
    return VoucherValidateOut(
        applicable=True,
        discount=money_str(check.discount),
        seller_id=check.seller_id,
        code=check.code,
    )


@router.get("/preview", response_model=CheckoutPreviewOut)
async def preview(
    voucher_code: Optional[str] = Query(default=None, max_length=64),
    buyer_id: int = Depends(get_buyer_id),
    session: AsyncSession = Depends(get_session),
    settings: SiteSettingsProvider = Depends(get_site_settings),
):
    cfg = await settings.get()
    pv = await OrderAssembler.preview(
        session, buyer_id=buyer_id, site_config=cfg, voucher_code=voucher_code
    )
    return pv.as_dict()


@router.post("/orders", response_model=PlaceOrderOut, status_code=201)
async def place_order(
    payload: PlaceOrderIn,
    buyer_id: int = Depends(get_buyer_id),
    session: AsyncSession = Depends(get_session),
    settings: SiteSettingsProvider = Depends(get_site_settings),
):
    cfg = await settings.get()
    result = await OrderAssembler.place_order(
        session,
        buyer_id=buyer_id,
        payment_method=payload.payment_method,
        shipping=payload.shipping.to_fields(),
        site_config=cfg,
        voucher_code=payload.voucher_code,
        trace=new_trace("http:/checkout/orders"),
    )
    return result.as_dict()
