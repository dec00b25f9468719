import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest
import respx

from quantdesk.clients.broker import BrokerClient
from quantdesk.config.settings import AppSettings
from quantdesk.data import Candle, OrderSide
from quantdesk.errors import BrokerAPIError, BrokerCredentialsError

BASE_URL = "https://broker.test"


def make_settings(**overrides: object) -> AppSettings:
    values = {"broker_base_url": BASE_URL, "broker_api_key": "test-key", "broker_api_secret": "secret"}
    values.update(overrides)
    return AppSettings(**values)


def expected_signature(nonce: str, method: str, path: str, body: str) -> str:
    return hmac.new(b"secret", f"{nonce}{method}{path}{body}".encode(), hashlib.sha256).hexdigest()


@pytest.mark.asyncio
async def test_get_candles_parses_objects_and_arrays(respx_mock: respx.MockRouter) -> None:
    route = respx_mock.get(f"{BASE_URL}/v1/markets/BTC_USD/candles").mock(
        return_value=httpx.Response(
            200,
            json={
                "status": "ok",
                "data": [
                    {"timestamp": 1700000000000, "open": "1", "high": "3", "low": "0.5", "close": "2", "volume": "10"},
                    [1700000060, "2", "4", "2", "3", "5"],
                ],
            },
        )
    )
    async with BrokerClient(settings=make_settings()) as client:
        candles = await client.get_candles("btc_usd", "1m", 2)

    assert route.called
    request = route.calls.last.request
    assert request.url.params["interval"] == "1m"
    assert request.url.params["limit"] == "2"
    assert all(isinstance(candle, Candle) for candle in candles)
    assert candles[0].market == "BTC_USD"
    assert candles[0].close == Decimal("2")
    assert candles[1].high == Decimal("4")
    assert candles[0].timestamp < candles[1].timestamp


@pytest.mark.asyncio
async def test_get_balance_signs_request(respx_mock: respx.MockRouter) -> None:
    route = respx_mock.get(f"{BASE_URL}/v1/account/balance").mock(
        return_value=httpx.Response(
            200,
            json={
                "status": "ok",
                "data": {"available_cash": "900", "total_cash": "1000", "positions": {"BTC_USD": "0.5"}},
            },
        )
    )
    async with BrokerClient(settings=make_settings(), nonce_factory=lambda: "12345") as client:
        balance = await client.get_balance("BTC_USD")

    headers = route.calls.last.request.headers
    assert headers["X-API-KEY"] == "test-key"
    assert headers["X-API-NONCE"] == "12345"
    assert headers["X-API-SIGNATURE"] == expected_signature("12345", "GET", "/v1/account/balance", "")
    assert balance.quantity == Decimal("0.5")
    assert balance.available_cash == Decimal("900")
    assert balance.total_cash == Decimal("1000")


@pytest.mark.asyncio
async def test_place_order_sends_signed_json_body(respx_mock: respx.MockRouter) -> None:
    route = respx_mock.post(f"{BASE_URL}/v1/orders").mock(
        return_value=httpx.Response(
            200,
            json={
                "status": "ok",
                "data": {"order_id": "A1", "units": "0.1", "filled_units": "0.1", "fee": "0.05", "price": "100"},
            },
        )
    )
    async with BrokerClient(settings=make_settings(), nonce_factory=lambda: "1") as client:
        execution = await client.place_order("btc_usd", OrderSide.BUY, units=Decimal("0.1"), price=Decimal("100"))

    request = route.calls.last.request
    body = request.content.decode()
    assert json.loads(body) == {"price": "100", "side": "buy", "symbol": "BTC_USD", "type": "limit", "units": "0.1"}
    assert request.headers["X-API-SIGNATURE"] == expected_signature("1", "POST", "/v1/orders", body)
    assert request.headers["Content-Type"] == "application/json"
    assert execution.order_id == "A1"
    assert execution.market == "BTC_USD"
    assert execution.is_filled
    assert execution.fee == Decimal("0.05")


@pytest.mark.asyncio
async def test_cancel_order(respx_mock: respx.MockRouter) -> None:
    respx_mock.delete(f"{BASE_URL}/v1/orders/A1").mock(return_value=httpx.Response(200, json={"status": "ok"}))
    async with BrokerClient(settings=make_settings()) as client:
        assert await client.cancel_order("A1") is True


@pytest.mark.asyncio
async def test_error_payload_raises_broker_error(respx_mock: respx.MockRouter) -> None:
    respx_mock.post(f"{BASE_URL}/v1/orders").mock(
        return_value=httpx.Response(200, json={"status": "error", "code": "insufficient_funds", "message": "no cash"})
    )
    async with BrokerClient(settings=make_settings()) as client:
        with pytest.raises(BrokerAPIError) as exc_info:
            await client.place_order("BTC_USD", OrderSide.BUY, units=Decimal("1"), price=Decimal("1"))

    assert exc_info.value.status == "insufficient_funds"


@pytest.mark.asyncio
async def test_signed_request_requires_credentials() -> None:
    settings = make_settings(broker_api_key=None, broker_api_secret=None)
    async with BrokerClient(settings=settings) as client:
        with pytest.raises(BrokerCredentialsError):
            await client.get_balance("BTC_USD")


@pytest.mark.asyncio
async def test_get_candles_rejects_non_positive_count() -> None:
    async with BrokerClient(settings=make_settings()) as client:
        with pytest.raises(ValueError):
            await client.get_candles("BTC_USD", "1m", 0)
