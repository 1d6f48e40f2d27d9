# app/schemas/checkout.py
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.services.checkout_types import ShippingFields


class _Base(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore", populate_by_name=True)


# ===== 券预校验 =====
class VoucherValidateIn(_Base):
    code: Annotated[str, Field(max_length=64)] = ""


class VoucherValidateOut(_Base):
    applicable: bool
    discount: Optional[str] = None
    seller_id: Optional[int] = None
    code: Optional[str] = None
    rejected_reason: Optional[str] = None


# ===== 预览 =====
class PreviewLineOut(_Base):
    variant_id: int
    seller_id: int
    unit_price: str
    quantity: int


class CheckoutPreviewOut(_Base):
    items: List[PreviewLineOut]
    subtotal: str
    discount: str
    tax: str
    shipping: str
    total: str
    voucher_code: Optional[str] = None


# ===== 下单 =====
class ShippingIn(_Base):
    """
    收货信息：全部必填；空值交给业务层统一报 validation_error（列出缺失字段）。
    同时接受 camelCase（firstName / zipCode ...）。
    """

    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    address: str = ""
    city: str = ""
    province: str = ""
    zip_code: str = Field(default="", alias="zipCode")
    phone: str = ""
    email: str = ""

    def to_fields(self) -> ShippingFields:
        return ShippingFields(**self.model_dump(by_alias=False))


class PlaceOrderIn(_Base):
    payment_method: str = Field(alias="paymentMethod")
    shipping: ShippingIn
    voucher_code: Optional[str] = Field(default=None, alias="voucherCode", max_length=64)

    @field_validator("voucher_code")
    @classmethod
    def _trim_code(cls, v: str | None):
        if v is None:
            return v
        s = v.strip()
        return s or None


class PlaceOrderOut(_Base):
    order_id: int
    total: str
    settlement: str
    voucher_applied: Optional[Dict[str, Any]] = None
