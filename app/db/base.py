# app/db/base.py
from __future__ import annotations

import importlib
import logging
from typing import Iterable, List, Set

from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("techora.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


_INITIALIZED: bool = False  # 防重复初始化

_MODEL_MODULES = [
    "app.models.product",
    "app.models.cart",
    "app.models.voucher",
    "app.models.order",
    "app.models.order_item",
    "app.models.payment",
    "app.models.site_settings",
    "app.models.audit_event",
]


def init_models(*, exclude: Iterable[str] | None = None, force: bool = False) -> None:
    """
    集中导入模型 + 固化关系映射：
      1) 按依赖顺序显式导入（保证字符串关系目标类已注册）
      2) 最后统一 configure_mappers()

    模型缺失直接抛错，不做静默跳过。
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        return

    ex: Set[str] = set(exclude or [])
    loaded: List[str] = []
    for mod in _MODEL_MODULES:
        if mod in ex:
            continue
        importlib.import_module(mod)
        loaded.append(mod)

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized & mappers configured (loaded %d modules)", len(loaded))
