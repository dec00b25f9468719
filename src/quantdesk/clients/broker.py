"""브로커 REST API 연동 클라이언트."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, List, Mapping, Optional

import httpx
from loguru import logger

from ..config.settings import AppSettings, get_settings
from ..data import BalanceSnapshot, Candle, OrderExecution, OrderSide
from ..errors import BrokerAPIError, BrokerCredentialsError


@dataclass(slots=True)
class _SignedRequest:
    method: str
    path: str
    body: str
    headers: Mapping[str, str]


class BrokerClient:
    """HMAC 서명 기반 브로커 API 를 호출하는 비동기 클라이언트."""

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        nonce_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._api_key = self._settings.broker_api_key
        self._api_secret = self._settings.broker_api_secret
        self._client = client or httpx.AsyncClient(
            base_url=str(self._settings.broker_base_url),
            timeout=self._settings.http_timeout,
        )
        self._owns_client = client is None
        self._nonce_factory = nonce_factory or self._default_nonce

    async def __aenter__(self) -> "BrokerClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """내부 HTTP 클라이언트를 종료한다."""

        if self._owns_client:
            await self._client.aclose()

    async def get_candles(self, symbol: str, interval: str, count: int = 60) -> List[Candle]:
        """심볼의 캔들 데이터를 조회한다."""

        if count <= 0:
            raise ValueError("count 값은 1 이상이어야 합니다.")
        response = await self._client.get(
            f"/v1/markets/{symbol.upper()}/candles",
            params={"interval": interval, "limit": count},
        )
        payload = self._decode_response(response)
        data = payload.get("data")
        if not isinstance(data, list):
            raise BrokerAPIError("invalid", "candles 데이터 형식이 올바르지 않습니다.")
        return [Candle.from_payload(symbol, entry) for entry in data[-count:]]

    async def get_balance(self, symbol: str) -> BalanceSnapshot:
        """현금과 심볼 보유 수량을 조회한다."""

        payload = await self.signed_request("GET", "/v1/account/balance")
        data = payload.get("data")
        if not isinstance(data, Mapping):
            raise BrokerAPIError("invalid", "balance 데이터 형식이 올바르지 않습니다.")
        return BalanceSnapshot.from_payload(symbol, data)

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        *,
        units: Decimal,
        price: Decimal,
    ) -> OrderExecution:
        """지정가 주문을 생성한다."""

        body = {
            "symbol": symbol.upper(),
            "side": side.value,
            "type": "limit",
            "units": self._stringify(units),
            "price": self._stringify(price),
        }
        payload = await self.signed_request("POST", "/v1/orders", body)
        data = payload.get("data")
        info = data if isinstance(data, Mapping) else {}
        order_id = info.get("order_id")
        if not order_id:
            raise BrokerAPIError("invalid", "주문 응답에 order_id 가 없습니다.")
        ordered_units = Decimal(str(info.get("units", body["units"])))
        filled = Decimal(str(info.get("filled_units", "0")))
        fee = Decimal(str(info.get("fee", "0")))
        price_value = Decimal(str(info.get("price", body["price"])))
        logger.info("주문 접수: {} {} {} @ {} (id={})", symbol.upper(), side.value, ordered_units, price_value, order_id)
        return OrderExecution(
            order_id=str(order_id),
            market=symbol.upper(),
            side=side,
            price=price_value,
            ordered_units=ordered_units,
            executed_units=filled,
            fee=fee,
            created_at=datetime.now(timezone.utc),
        )

    async def cancel_order(self, order_id: str) -> bool:
        """기존 주문을 취소한다."""

        payload = await self.signed_request("DELETE", f"/v1/orders/{order_id}")
        return payload.get("status") == "ok"

    async def signed_request(
        self,
        method: str,
        path: str,
        body: Optional[Mapping[str, Any]] = None,
    ) -> Mapping[str, Any]:
        """인증이 필요한 요청을 전송한다."""

        request = self._sign(method, path, body)
        response = await self._client.request(
            request.method,
            request.path,
            content=request.body.encode() if request.body else None,
            headers=request.headers,
        )
        return self._decode_response(response)

    def _require_api_key(self) -> str:
        if not self._api_key:
            raise BrokerCredentialsError()
        return self._api_key

    def _require_api_secret(self) -> str:
        if not self._api_secret:
            raise BrokerCredentialsError()
        return self._api_secret

    def _sign(self, method: str, path: str, body: Optional[Mapping[str, Any]]) -> _SignedRequest:
        api_key = self._require_api_key()
        secret = self._require_api_secret()
        method = method.upper()
        path = self._normalize_endpoint(path)
        encoded_body = json.dumps(body, separators=(",", ":"), sort_keys=True) if body else ""
        nonce = self._nonce_factory()
        signature = hmac.new(
            secret.encode(),
            f"{nonce}{method}{path}{encoded_body}".encode(),
            hashlib.sha256,
        ).hexdigest()
        headers = {
            "Accept": "application/json",
            "X-API-KEY": api_key,
            "X-API-NONCE": nonce,
            "X-API-SIGNATURE": signature,
        }
        if encoded_body:
            headers["Content-Type"] = "application/json"
        return _SignedRequest(method=method, path=path, body=encoded_body, headers=headers)

    def _decode_response(self, response: httpx.Response) -> Mapping[str, Any]:
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, Mapping):
            raise BrokerAPIError("invalid", "응답 형식이 올바르지 않습니다.")
        if payload.get("status") == "error":
            raise BrokerAPIError(str(payload.get("code", "error")), payload.get("message"))
        return payload

    @staticmethod
    def _normalize_endpoint(path: str) -> str:
        if not path:
            raise ValueError("엔드포인트 경로가 비어 있습니다.")
        return path if path.startswith("/") else f"/{path}"

    @staticmethod
    def _default_nonce() -> str:
        return str(int(time.time() * 1000))

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, Decimal):
            return format(value, "f")
        return str(value)


__all__ = ["BrokerClient"]
