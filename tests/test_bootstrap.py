import asyncio
from typing import Any, Dict, List

import httpx
import pytest

from quantdesk.config.settings import AppSettings
from quantdesk.data.repository import TradingRepository
from quantdesk.runtime.bootstrap import build_application


def settings_for(tmp_path, **overrides: Any) -> AppSettings:
    values = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
        "redis_enabled": False,
        "jwt_secret": None,
        "api_access_key": None,
        "rate_limit_burst": 1000,
        "trading_interval_seconds": 3600,
    }
    values.update(overrides)
    return AppSettings(**values)


async def wait_for_cycles(repository: TradingRepository, timeout: float = 5.0) -> List[Dict[str, object]]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        cycles = await repository.recent_cycles()
        if cycles:
            return cycles
        if loop.time() > deadline:
            raise AssertionError("스케줄러가 사이클을 실행하지 않았습니다.")
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_startup_activates_strategy_before_first_scheduled_cycle(tmp_path) -> None:
    app = await build_application(settings_for(tmp_path, trading_strategy_id="sma_crossover"))
    context = app.state.context

    await app.router.startup()
    try:
        cycles = await wait_for_cycles(context.repository)
        assert cycles[-1]["strategy_id"] == "sma_crossover"
        assert cycles[-1]["reason"] == "시세 데이터 없음"

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            status = (await client.get("/status")).json()
            assert status["running"] is True
            assert status["strategy_id"] == "sma_crossover"

            published = await client.post("/market/ticks", json={"symbol": "btc_usd", "price": "100", "volume": "1"})
            # 페이퍼 브로커와 알림/웹소켓 브리지가 모두 구독 중
            assert published.json()["receivers"] == 2
    finally:
        await app.router.shutdown()

    assert not context.orchestrator.is_running()


@pytest.mark.asyncio
async def test_unusable_stored_strategy_falls_back_to_default(tmp_path) -> None:
    first = await build_application(settings_for(tmp_path))
    await first.state.context.repository.save_strategy(
        "broken", "Broken", "0" * 64, {"id": "broken", "name": "Broken", "entry": "close >"}
    )
    await first.router.shutdown()

    app = await build_application(settings_for(tmp_path, trading_strategy_id="broken"))
    await app.router.startup()
    try:
        assert app.state.context.orchestrator.engine.strategy_id == "momentum_breakout"
        assert app.state.context.orchestrator.is_running()
    finally:
        await app.router.shutdown()


@pytest.mark.asyncio
async def test_missing_startup_strategy_falls_back_to_default(tmp_path) -> None:
    app = await build_application(settings_for(tmp_path, trading_strategy_id="ghost"))
    await app.router.startup()
    try:
        assert app.state.context.orchestrator.engine.strategy_id == "momentum_breakout"
    finally:
        await app.router.shutdown()
