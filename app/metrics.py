# app/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import REGISTRY, CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest, multiprocess

# 业务指标：成功类计数在事务提交后自增，拒绝类在拒绝点自增
ORDERS_PLACED = Counter(
    "orders_placed_total", "Orders placed", ["payment_method", "settlement"]
)
RESERVATION_FAILURES = Counter(
    "stock_reservation_failures_total", "Stock reservations rejected", ["reason"]
)
CAPTURES = Counter("payment_captures_total", "Payment capture callbacks", ["result"])
VOUCHER_REDEMPTIONS = Counter(
    "voucher_redemptions_total", "Voucher redemption attempts", ["result"]
)

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程：直接导出默认 REGISTRY；
    多进程（设置了 PROMETHEUS_MULTIPROC_DIR）：临时 CollectorRegistry 合并各 worker 分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
