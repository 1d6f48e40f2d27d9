# app/schemas/payments.py
from __future__ import annotations

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Base(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GatewayOrderIn(_Base):
    order_id: Annotated[int, Field(ge=1, alias="orderId")]


class GatewayOrderOut(_Base):
    order_id: int
    gateway_ref: str


class CaptureIn(_Base):
    """网关确认回调：{gateway_ref, order_id}"""

    gateway_ref: Annotated[str, Field(min_length=1, max_length=64, alias="gatewayRef")]
    order_id: Annotated[int, Field(ge=1, alias="orderId")]


class CaptureOut(_Base):
    order_id: int
    success: bool
    already_paid: bool = False
    transaction_id: Optional[str] = None
