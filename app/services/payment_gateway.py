# app/services/payment_gateway.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from app.domain.errors import PaymentGatewayError, money_str
from app.services.pricing_calculator import to_money

logger = logging.getLogger("techora.gateway")

ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"


@dataclass(frozen=True)
class CaptureResult:
    amount: Decimal
    transaction_id: str
    # True：网关侧早已 capture（回调重投），本次只是把已有结果取回来
    replayed: bool = False


class PaymentGateway(Protocol):
    async def authorize(self, amount: Decimal, reference: str) -> str: ...

    async def capture(self, gateway_ref: str) -> CaptureResult: ...

    async def aclose(self) -> None: ...


class HttpPaymentGateway:
    """
    外部支付网关客户端（PayPal Orders v2 兼容接口）：

    - authorize(amount, reference) → 创建 CAPTURE 意图的网关订单，返回 gateway_ref
    - capture(gateway_ref) → {amount, transaction_id}
      网关返回 ORDER_ALREADY_CAPTURED 时，改为读取网关订单，取回既有 capture，
      保证“网关已扣款、本地未提交”后的回调重投能把本地一侧补完
    - 任何网络错误 / 非 2xx 都翻译为 PaymentGatewayError

    实例挂在 app.state 上，进程内复用一个 httpx.AsyncClient。
    """

    def __init__(
        self,
        base_url: str,
        *,
        client_id: str,
        client_secret: str,
        currency: str = "PHP",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._currency = currency
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------ 内部辅助 ------------

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        data = await self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self._client_id, self._client_secret),
            data={"grant_type": "client_credentials"},
            with_token=False,
        )
        token = data.get("access_token")
        if not token:
            raise PaymentGatewayError("gateway token response has no access_token")
        # 提前 60s 过期，避免临界点上拿到刚失效的 token
        ttl = max(0, int(data.get("expires_in") or 0) - 60)
        self._token = str(token)
        self._token_expires_at = time.monotonic() + ttl
        return self._token

    async def _request(
        self,
        method: str,
        url: str,
        *,
        with_token: bool = True,
        allow_already_captured: bool = False,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        headers = dict(kwargs.pop("headers", None) or {})
        if with_token:
            headers["Authorization"] = f"Bearer {await self._access_token()}"
        try:
            resp = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("gateway %s %s failed: %s", method, url, e)
            raise PaymentGatewayError(
                f"payment gateway unreachable: {e.__class__.__name__}",
                context={"url": url},
            ) from e

        if resp.status_code == 422 and allow_already_captured and _issue(resp) == ALREADY_CAPTURED:
            return {"_already_captured": True}

        if resp.is_error:
            logger.warning("gateway %s %s → HTTP %s: %s", method, url, resp.status_code, resp.text[:300])
            raise PaymentGatewayError(
                f"payment gateway returned HTTP {resp.status_code}",
                context={"url": url, "gateway_status": resp.status_code, "issue": _issue(resp)},
            )
        try:
            return resp.json()
        except ValueError as e:
            raise PaymentGatewayError("payment gateway returned a non-JSON body") from e

    # ------------ 对外接口 ------------

    async def authorize(self, amount: Decimal, reference: str) -> str:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(reference),
                    "amount": {"currency_code": self._currency, "value": money_str(amount)},
                }
            ],
        }
        data = await self._request("POST", "/v2/checkout/orders", json=body)
        ref = data.get("id")
        if not ref:
            raise PaymentGatewayError("gateway order response has no id")
        logger.info("gateway order created: ref=%s reference=%s amount=%s", ref, reference, money_str(amount))
        return str(ref)

    async def capture(self, gateway_ref: str) -> CaptureResult:
        data = await self._request(
            "POST",
            f"/v2/checkout/orders/{gateway_ref}/capture",
            json={},
            allow_already_captured=True,
        )
        replayed = bool(data.get("_already_captured"))
        if replayed:
            logger.info("gateway ref=%s already captured, fetching existing capture", gateway_ref)
            data = await self._request("GET", f"/v2/checkout/orders/{gateway_ref}")
        return _parse_capture(data, gateway_ref, replayed=replayed)


def _issue(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    # 代理 / 负载均衡返回的错误体不一定是对象
    details = body.get("details") if isinstance(body, dict) else None
    if not isinstance(details, list):
        return None
    for d in details:
        if isinstance(d, dict) and d.get("issue"):
            return str(d["issue"])
    return None


def _parse_capture(data: Dict[str, Any], gateway_ref: str, *, replayed: bool) -> CaptureResult:
    try:
        unit = (data.get("purchase_units") or [])[0]
        cap = (unit.get("payments") or {}).get("captures")[0]
        amount = to_money(cap["amount"]["value"])
        txn = str(cap.get("id") or data.get("id") or gateway_ref)
    except (IndexError, KeyError, TypeError, ValueError) as e:
        raise PaymentGatewayError(
            "gateway capture response is missing capture details",
            context={"gateway_ref": gateway_ref},
        ) from e
    if str(cap.get("status") or "COMPLETED").upper() != "COMPLETED":
        raise PaymentGatewayError(
            f"gateway capture not completed: status={cap.get('status')}",
            context={"gateway_ref": gateway_ref},
        )
    return CaptureResult(amount=amount, transaction_id=txn, replayed=replayed)
