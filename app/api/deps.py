# app/api/deps.py
from __future__ import annotations

from typing import Annotated

from fastapi import Header, HTTPException, Request, status

from app.db.session import get_session
from app.services.payment_gateway import PaymentGateway
from app.services.site_settings_provider import SiteSettingsProvider


# ---------------------------
# 买家身份（会话 / 鉴权由上游网关负责，这里只读透传头）
# ---------------------------


async def get_buyer_id(
    x_buyer_id: Annotated[str | None, Header(alias="X-Buyer-Id")] = None,
) -> int:
    raw = (x_buyer_id or "").strip()
    if not raw.isdigit() or int(raw) <= 0:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing or invalid X-Buyer-Id header",
        )
    return int(raw)


# ---------------------------
# app.state 上的共享状态（lifespan 中创建）
# ---------------------------


def get_site_settings(request: Request) -> SiteSettingsProvider:
    return request.app.state.site_settings


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway


__all__ = (
    "get_session",
    "get_buyer_id",
    "get_site_settings",
    "get_payment_gateway",
)
