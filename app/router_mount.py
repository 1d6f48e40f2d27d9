# app/router_mount.py
from __future__ import annotations

from fastapi import FastAPI


def mount_routers(app: FastAPI) -> None:
    # ---------------------------------------------------------------------------
    # routers imports
    # ---------------------------------------------------------------------------
    from app.api.routers.admin_orders import router as admin_orders_router
    from app.api.routers.checkout import router as checkout_router
    from app.api.routers.orders import router as orders_router
    from app.api.routers.payments import router as payments_router
    from app.metrics import router as metrics_router

    # ---------------------------------------------------------------------------
    # 买家侧：结算 / 支付 / 订单
    # ---------------------------------------------------------------------------
    app.include_router(checkout_router)
    app.include_router(payments_router)
    app.include_router(orders_router)

    # ---------------------------------------------------------------------------
    # 管理后台
    # ---------------------------------------------------------------------------
    app.include_router(admin_orders_router)

    # ---------------------------------------------------------------------------
    # 观测
    # ---------------------------------------------------------------------------
    app.include_router(metrics_router)
