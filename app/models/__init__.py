# app/models/__init__.py
"""
统一导出 ORM 模型。
"""

from importlib import import_module


def _export(module_name: str, class_name: str) -> None:
    module = import_module(module_name)
    globals()[class_name] = getattr(module, class_name)


MODEL_SPECS = [
    # -------- 目录 / 库存 --------
    ("app.models.product", "Product"),
    ("app.models.product", "ProductVariant"),
    # -------- 购物车 / 券 --------
    ("app.models.cart", "CartItem"),
    ("app.models.voucher", "Voucher"),
    # -------- 订单 & 付款 --------
    ("app.models.order", "Order"),
    ("app.models.order_item", "OrderItem"),
    ("app.models.payment", "Payment"),
    # -------- 站点配置 & 审计 --------
    ("app.models.site_settings", "SiteSettings"),
    ("app.models.audit_event", "AuditEvent"),
]

for _module, _name in MODEL_SPECS:
    _export(_module, _name)

__all__ = [
    "Product",
    "ProductVariant",
    "CartItem",
    "Voucher",
    "Order",
    "OrderItem",
    "Payment",
    "SiteSettings",
    "AuditEvent",
]
