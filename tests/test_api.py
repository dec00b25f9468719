import json
from decimal import Decimal
from typing import Any, List, Tuple

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from quantdesk.api.app import MAX_BACKTEST_BARS, ApplicationContext, create_app
from quantdesk.api.security import build_authority
from quantdesk.api.websocket import ConnectionManager
from quantdesk.clients.paper import PaperBroker
from quantdesk.config.settings import AppSettings
from quantdesk.data.database import create_engine, create_session_factory, init_models
from quantdesk.data.repository import TradingRepository
from quantdesk.runtime.orchestrator import TradingOrchestrator
from quantdesk.services.alerts import AlertService
from quantdesk.services.market_data import MarketDataService
from quantdesk.services.portfolio import PortfolioState
from quantdesk.services.reporting import PerformanceReporter
from quantdesk.services.strategy_runner import StrategyRunner
from quantdesk.services.trading import TradingEngine
from quantdesk.strategies.builtin import builtin_definition

THRESHOLD = {
    "id": "threshold",
    "name": "Threshold",
    "entry": "close > entry_level",
    "exit": "close < exit_level",
    "parameters": {"entry_level": "100", "exit_level": "95"},
}


def build_context(tmp_path, **overrides: Any) -> Tuple[ApplicationContext, Any]:
    values = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        "redis_enabled": False,
        "rate_limit_burst": 1000,
        "jwt_secret": None,
        "api_access_key": None,
    }
    values.update(overrides)
    settings = AppSettings(**values)
    db_engine = create_engine(str(settings.database_url))
    repository = TradingRepository(create_session_factory(db_engine))
    connections = ConnectionManager()
    alerts = AlertService(connections, repository=repository)
    runner = StrategyRunner()
    engine = TradingEngine(
        client=PaperBroker(interval="1m"),
        strategy=runner.compile(builtin_definition("momentum_breakout")),
        portfolio=PortfolioState(),
        market=settings.trading_symbol,
    )
    orchestrator = TradingOrchestrator(
        engine,
        repository,
        alerts,
        PerformanceReporter(repository),
        runner,
        settings=settings,
    )
    context = ApplicationContext(
        orchestrator=orchestrator,
        repository=repository,
        runner=runner,
        market_data=MarketDataService(),
        alerts=alerts,
        connections=connections,
        settings=settings,
        token_authority=build_authority(settings),
    )
    return context, db_engine


@pytest_asyncio.fixture
async def api(tmp_path):
    context, db_engine = build_context(tmp_path)
    await init_models(db_engine)
    app = create_app(context)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client, context
    await db_engine.dispose()


@pytest.mark.asyncio
async def test_health_and_status(api) -> None:
    client, _ = api

    assert (await client.get("/health")).json() == {"status": "ok"}
    status = (await client.get("/status")).json()
    assert status["running"] is False
    assert status["symbol"] == "BTC_USD"
    assert status["strategy_id"] == "momentum_breakout"
    assert status["risk"]["halted"] is False
    assert "X-Content-Type-Options" in (await client.get("/health")).headers


@pytest.mark.asyncio
async def test_strategy_lifecycle(api) -> None:
    client, context = api

    created = await client.post("/strategies", json=THRESHOLD)
    assert created.status_code == 201
    fingerprint = created.json()["fingerprint"]

    listing = (await client.get("/strategies")).json()
    assert listing["active"] == "momentum_breakout"
    sources = {item["id"]: item["source"] for item in listing["items"]}
    assert sources["threshold"] == "stored"
    assert sources["rsi_reversion"] == "builtin"

    detail = (await client.get("/strategies/threshold")).json()
    assert detail["source"] == "stored"
    assert detail["definition"]["entry"] == "close > entry_level"
    assert detail["performance"]["trade_count"] == 0

    activated = await client.post("/strategies/threshold/activate")
    assert activated.json() == {"status": "active", "id": "threshold", "fingerprint": fingerprint}
    assert context.orchestrator.engine.strategy_id == "threshold"
    assert (await client.delete("/strategies/threshold")).status_code == 409

    await client.post("/strategies/sma_crossover/activate")
    deleted = await client.delete("/strategies/threshold")
    assert deleted.json() == {"status": "deleted", "id": "threshold"}
    assert (await client.get("/strategies/threshold")).status_code == 404


@pytest.mark.asyncio
async def test_builtin_strategies_are_protected(api) -> None:
    client, _ = api
    builtin = dict(THRESHOLD, id="momentum_breakout")

    assert (await client.post("/strategies", json=builtin)).status_code == 409
    assert (await client.delete("/strategies/rsi_reversion")).status_code == 409


@pytest.mark.asyncio
async def test_invalid_expression_reports_location(api) -> None:
    client, _ = api
    broken = dict(THRESHOLD, entry="close >")

    response = await client.post("/strategies/validate", json=broken)

    assert response.status_code == 422
    assert response.json()["expression"] == "close >"
    assert (await client.post("/strategies", json=broken)).status_code == 422
    valid = await client.post("/strategies/validate", json=THRESHOLD)
    assert valid.json()["valid"] is True


@pytest.mark.asyncio
async def test_backtest_with_supplied_candles(api) -> None:
    client, _ = api
    await client.post("/strategies", json=THRESHOLD)
    candles = [[1704067200 + 60 * idx, price, price, price, price, "1"] for idx, price in enumerate(["99", "101", "94"])]

    response = await client.post("/strategies/threshold/backtest", json={"candles": candles})

    body = response.json()
    assert response.status_code == 200
    assert body["bars"] == 3
    assert body["trade_count"] == 1
    assert Decimal(body["total_pnl"]) == Decimal("-7")

    bad = await client.post("/strategies/threshold/backtest", json={"candles": [[1, "x"]]})
    assert bad.status_code == 422
    assert (await client.post("/strategies/missing/backtest", json={})).status_code == 404

    oversized = [[1704067200 + 60 * idx, "1", "1", "1", "1", "1"] for idx in range(MAX_BACKTEST_BARS + 1)]
    assert (await client.post("/strategies/threshold/backtest", json={"candles": oversized})).status_code == 422


@pytest.mark.asyncio
async def test_backtest_from_recorded_ticks(api) -> None:
    client, _ = api
    await client.post("/strategies", json=THRESHOLD)
    for minute, price in enumerate(["99", "101", "94"]):
        response = await client.post(
            "/market/ticks",
            json={"symbol": "btc_usd", "price": price, "volume": "1", "timestamp": f"2024-01-01T00:0{minute}:00Z"},
        )
        assert response.status_code == 202

    latest = (await client.get("/market/btc_usd/latest")).json()
    assert latest["price"] == "94"
    assert (await client.get("/market/ETH_USD/latest")).status_code == 404

    body = (await client.post("/strategies/threshold/backtest", json={})).json()
    assert body["bars"] == 3
    assert Decimal(body["total_pnl"]) == Decimal("-7")


@pytest.mark.asyncio
async def test_price_rule_fires_on_published_tick(api) -> None:
    client, _ = api

    created = await client.post("/alerts/rules", json={"symbol": "eth_usd", "direction": "above", "threshold": "200"})
    assert created.status_code == 201
    rules = (await client.get("/alerts/rules")).json()["items"]
    assert rules == [{"id": created.json()["id"], "symbol": "ETH_USD", "direction": "above", "threshold": "200"}]

    published = await client.post("/market/ticks", json={"symbol": "ETH_USD", "price": "250"})
    assert published.json()["receivers"] == 1

    alerts = (await client.get("/alerts")).json()["items"]
    assert alerts[0]["kind"] == "price"
    assert alerts[0]["symbol"] == "ETH_USD"
    assert (await client.get("/alerts/rules")).json()["items"] == []
    assert (await client.delete("/alerts/rules/99")).status_code == 404


@pytest.mark.asyncio
async def test_cycles_and_daily_performance(api) -> None:
    client, context = api

    result = await context.orchestrator.run_cycle()
    assert result is not None

    cycles = (await client.get("/cycles")).json()["items"]
    assert len(cycles) == 1
    assert cycles[0]["action"] == "hold"
    performance = (await client.get("/performance/daily", params={"target": "2024-01-01"})).json()
    assert performance["date"] == "2024-01-01"
    assert performance["trade_count"] == 0
    assert (await client.get("/trades")).json() == {"items": []}
    assert (await client.post("/pause")).json() == {"status": "paused"}
    assert (await client.post("/resume")).json() == {"status": "running"}


@pytest.mark.asyncio
async def test_token_flow(tmp_path) -> None:
    context, db_engine = build_context(tmp_path, jwt_secret="top-secret", api_access_key="access")
    await init_models(db_engine)
    transport = httpx.ASGITransport(app=create_app(context))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        denied = await client.get("/status")
        assert denied.status_code == 401
        assert denied.headers["WWW-Authenticate"] == "Bearer"

        assert (await client.post("/auth/token", json={"access_key": "wrong"})).status_code == 401
        issued = (await client.post("/auth/token", json={"access_key": "access"})).json()
        assert issued["token_type"] == "bearer"
        assert issued["expires_in"] == 3600

        headers = {"Authorization": f"Bearer {issued['access_token']}"}
        assert (await client.get("/status", headers=headers)).status_code == 200
        assert (await client.get("/health")).status_code == 200
    await db_engine.dispose()


@pytest.mark.asyncio
async def test_token_endpoint_disabled_without_secret(api) -> None:
    client, _ = api

    assert (await client.post("/auth/token", json={"access_key": "x"})).status_code == 404


def test_websocket_session(tmp_path) -> None:
    context, _ = build_context(tmp_path)
    client = TestClient(create_app(context))

    with client.websocket_connect("/ws") as websocket:
        websocket.send_text(json.dumps({"action": "ping"}))
        assert websocket.receive_json() == {"type": "pong"}
        websocket.send_text(json.dumps({"action": "subscribe", "topics": ["market", "alerts"]}))
        assert websocket.receive_json() == {"type": "subscribed", "data": ["alerts", "market"]}
        websocket.send_text("not json")
        assert websocket.receive_json()["type"] == "error"
        websocket.send_text(json.dumps({"action": "dance"}))
        assert websocket.receive_json()["type"] == "error"
        for topics in (5, ["market", 1], {"market": True}):
            websocket.send_text(json.dumps({"action": "subscribe", "topics": topics}))
            assert websocket.receive_json()["type"] == "error"
        websocket.send_text(json.dumps({"action": "ping"}))
        assert websocket.receive_json() == {"type": "pong"}


def test_websocket_requires_token_when_auth_enabled(tmp_path) -> None:
    context, _ = build_context(tmp_path, jwt_secret="top-secret")
    client = TestClient(create_app(context))

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_text()
    assert exc_info.value.code == 1008

    token = context.token_authority.issue("api")
    with client.websocket_connect(f"/ws?token={token}") as websocket:
        websocket.send_text(json.dumps({"action": "ping"}))
        assert websocket.receive_json() == {"type": "pong"}


class FakeSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: List[str] = []
        self.fail = fail

    async def accept(self) -> None:
        return None

    async def send_text(self, message: str) -> None:
        if self.fail:
            raise RuntimeError("closed")
        self.sent.append(message)


@pytest.mark.asyncio
async def test_connection_manager_routes_topics() -> None:
    manager = ConnectionManager()
    everything, market_only, broken = FakeSocket(), FakeSocket(), FakeSocket(fail=True)
    for socket in (everything, market_only, broken):
        await manager.connect(socket)
    manager.subscribe(market_only, ["market"])

    await manager.broadcast("alerts", {"message": "hi"})

    assert json.loads(everything.sent[0]) == {"type": "alerts", "data": {"message": "hi"}}
    assert market_only.sent == []
    assert broken not in manager.active_connections
    assert manager.topics_of(market_only) == {"market"}
