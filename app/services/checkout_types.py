# app/services/checkout_types.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from app.domain.errors import ValidationError


@dataclass(frozen=True)
class LineItem:
    """结算用的临时行（购物车实时读取的快照，本服务不直接落库）。"""

    variant_id: int
    seller_id: int
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True)
class ShippingFields:
    first_name: str
    last_name: str
    address: str
    city: str
    province: str
    zip_code: str
    phone: str
    email: str

    def validate(self) -> None:
        missing = [name for name, val in self.__dict__.items() if not str(val or "").strip()]
        if missing:
            raise ValidationError(
                "missing shipping fields: " + ", ".join(sorted(missing)),
                context={"missing": sorted(missing)},
            )

    def compose(self) -> str:
        """单行收货地址（与历史订单的 shipping_address 格式保持一致）。"""
        f = {k: str(v).strip() for k, v in self.__dict__.items()}
        return (
            f"{f['first_name']} {f['last_name']}, {f['address']}, {f['city']}, "
            f"{f['province']}, {f['zip_code']}, Tel {f['phone']}, Email {f['email']}"
        )


@dataclass(frozen=True)
class VoucherCheck:
    """
    券校验结果：

    - applicable=True：discount / seller_id / voucher_id 有效
    - applicable=False：reason ∈ {empty-code, not-found, ineligible, not-applicable, empty-cart}
    """

    applicable: bool
    discount: Decimal = Decimal("0")
    seller_id: Optional[int] = None
    voucher_id: Optional[int] = None
    code: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str, *, code: Optional[str] = None) -> "VoucherCheck":
        return cls(applicable=False, reason=reason, code=code)


@dataclass
class PlaceOrderResult:
    order_id: int
    total: Decimal
    settlement: str
    voucher: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "total": f"{self.total:.2f}",
            "settlement": self.settlement,
            "voucher_applied": self.voucher,
        }
