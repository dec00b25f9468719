"""런타임 구성과 FastAPI 애플리케이션 부트스트랩."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Union

import redis.asyncio as aioredis
from loguru import logger
from pydantic import ValidationError

from ..api.app import ApplicationContext, create_app
from ..api.security import build_authority
from ..api.websocket import ConnectionManager
from ..clients.broker import BrokerClient
from ..clients.broker_ws import BrokerStreamCollector
from ..clients.paper import PaperBroker
from ..config.logging_setup import configure_logging
from ..config.settings import AppSettings, get_settings
from ..data.database import create_engine, create_session_factory, init_models
from ..data.repository import TradingRepository
from ..errors import StrategyCompileError, StrategyNotFoundError
from ..services.alerts import AlertService
from ..services.market_data import MarketDataService
from ..services.notifications import SlackNotifier
from ..services.portfolio import PortfolioState
from ..services.reporting import PerformanceReporter
from ..services.risk import RiskParameters
from ..services.strategy_runner import StrategyRunner
from ..services.trading import TradingEngine
from ..strategies.builtin import builtin_definition
from .orchestrator import TradingOrchestrator

if TYPE_CHECKING:
    from fastapi import FastAPI

DEFAULT_STRATEGY_ID = "momentum_breakout"


def build_broker(settings: AppSettings) -> Union[PaperBroker, BrokerClient]:
    if settings.broker_mode == "live":
        logger.info("실거래 브로커 사용: {}", settings.broker_base_url)
        return BrokerClient(settings=settings)
    logger.info("페이퍼 브로커 사용 (시작 현금 {})", settings.paper_starting_cash)
    return PaperBroker(
        starting_cash=settings.paper_starting_cash,
        fee_rate=settings.paper_fee_rate,
        interval=settings.candle_interval,
        max_candles=max(settings.candle_count * 4, 1000),
    )


async def build_application(settings: Optional[AppSettings] = None) -> "FastAPI":
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    engine = create_engine(str(settings.database_url))
    await init_models(engine)
    repository = TradingRepository(create_session_factory(engine))

    redis_client: Optional[aioredis.Redis] = None
    if settings.redis_enabled:
        redis_client = aioredis.from_url(str(settings.redis_url))
    market_data = MarketDataService(
        redis_client,
        prefix=settings.market_channel_prefix,
        history_size=settings.market_history_size,
    )

    connections = ConnectionManager()
    notifier = SlackNotifier(str(settings.slack_webhook_url) if settings.slack_webhook_url else None)
    alerts = AlertService(
        connections,
        redis=redis_client,
        repository=repository,
        notifier=notifier,
        channel=settings.alert_channel,
    )

    broker = build_broker(settings)
    runner = StrategyRunner(max_size=settings.strategy_cache_size)
    default_strategy = runner.compile(builtin_definition(DEFAULT_STRATEGY_ID))
    trading_engine = TradingEngine(
        client=broker,
        strategy=default_strategy,
        portfolio=PortfolioState(),
        market=settings.trading_symbol,
        candle_interval=settings.candle_interval,
        candle_count=settings.candle_count,
        risk=RiskParameters.from_settings(settings),
    )
    orchestrator = TradingOrchestrator(
        engine=trading_engine,
        repository=repository,
        alerts=alerts,
        reporter=PerformanceReporter(repository),
        runner=runner,
        settings=settings,
    )

    context = ApplicationContext(
        orchestrator=orchestrator,
        repository=repository,
        runner=runner,
        market_data=market_data,
        alerts=alerts,
        connections=connections,
        settings=settings,
        token_authority=build_authority(settings),
    )
    app = create_app(context)

    collector: Optional[BrokerStreamCollector] = None
    if settings.broker_ws_url:
        collector = BrokerStreamCollector(
            str(settings.broker_ws_url),
            [settings.trading_symbol],
            market_data,
            repository=repository,
        )

    async def _prepare() -> None:
        if settings.trading_strategy_id != DEFAULT_STRATEGY_ID:
            try:
                orchestrator.activate(await context.load_definition(settings.trading_strategy_id))
            except (StrategyNotFoundError, StrategyCompileError, ValidationError) as exc:
                logger.warning(
                    "전략 {} 을 불러오지 못해 {} 로 시작합니다: {}",
                    settings.trading_strategy_id,
                    DEFAULT_STRATEGY_ID,
                    exc,
                )
        if isinstance(broker, PaperBroker):
            await market_data.subscribe(settings.trading_symbol, broker.on_tick)
        if collector is not None:
            await collector.start()

    context.startup_hooks.append(_prepare)

    @app.on_event("shutdown")
    async def _close() -> None:
        if collector is not None:
            await collector.stop()
        await broker.aclose()
        await notifier.aclose()
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()

    return app


__all__ = ["build_application", "build_broker"]
