# app/schemas/orders.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer


class _Base(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore", populate_by_name=True)


# 金额：JSON 输出统一为 2 位小数字符串
Money = Annotated[Decimal, PlainSerializer(lambda v: f"{v:.2f}", return_type=str, when_used="json")]


# ===== 读模型 =====
class OrderItemOut(_Base):
    id: int
    variant_id: int
    quantity: int
    unit_price: Money
    item_status: str


class PaymentOut(_Base):
    id: int
    payment_method: str
    payment_status: str
    transaction_id: Optional[str] = None
    amount_paid: Optional[Money] = None
    payment_date: Optional[datetime] = None


class OrderOut(_Base):
    id: int
    buyer_id: int
    order_status: str
    payment_method: str
    payment_status: str
    subtotal: Money
    discount_amount: Money
    tax_amount: Money
    shipping_amount: Money
    total_amount: Money
    shipping_address: str
    gateway_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    items: List[OrderItemOut] = Field(default_factory=list)
    payments: List[PaymentOut] = Field(default_factory=list)


# ===== 状态迁移 =====
class ItemStatusIn(_Base):
    status: str = Field(min_length=1, max_length=16)


class TransitionOut(_Base):
    success: bool = True
    order_id: int
    order_status: str
    payment_status: Optional[str] = None
    changed_items: List[int] = Field(default_factory=list)


class SellerRemovalOut(_Base):
    order_id: int
    removed_items: List[int]
    order_deleted: bool
    total: Optional[str] = None
