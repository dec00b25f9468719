"""FastAPI HTTP/웹소켓 엔드포인트."""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Set, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from loguru import logger
from pydantic import BaseModel, Field

from ..config.settings import AppSettings
from ..data import Candle, MarketTick
from ..data.repository import TradingRepository
from ..errors import AuthenticationError, BrokerAPIError, StrategyCompileError, StrategyNotFoundError
from ..runtime.orchestrator import TradingOrchestrator
from ..services.alerts import AlertService
from ..services.market_data import CandleAggregator, MarketDataService, parse_interval
from ..services.strategy_runner import StrategyRunner
from ..strategies.builtin import builtin_definition, builtin_ids
from ..strategies.definition import StrategyDefinition
from .security import TokenAuthority, install_security, require_auth
from .websocket import ConnectionManager, websocket_endpoint


class TokenRequest(BaseModel):
    access_key: str


MAX_BACKTEST_BARS = 5000


class BacktestRequest(BaseModel):
    symbol: Optional[str] = Field(default=None, description="캔들 심볼 (없으면 기본 트레이딩 심볼)")
    candles: Optional[List[Union[Dict[str, Any], List[Any]]]] = Field(
        default=None,
        max_length=MAX_BACKTEST_BARS,
        description="OHLCV 캔들 목록. 없으면 저장된 틱으로 캔들을 만든다.",
    )
    quantity: Decimal = Field(default=Decimal("1"), gt=Decimal("0"))
    fee_rate: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), lt=Decimal("1"))


class PriceRuleRequest(BaseModel):
    symbol: str = Field(min_length=1)
    direction: Literal["above", "below"]
    threshold: Decimal = Field(gt=Decimal("0"))


class TickRequest(BaseModel):
    symbol: str = Field(min_length=1)
    price: Decimal = Field(gt=Decimal("0"))
    volume: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    timestamp: Optional[datetime] = None


@dataclass
class ApplicationContext:
    orchestrator: TradingOrchestrator
    repository: TradingRepository
    runner: StrategyRunner
    market_data: MarketDataService
    alerts: AlertService
    connections: ConnectionManager
    settings: AppSettings
    token_authority: Optional[TokenAuthority] = None
    startup_hooks: List[Callable[[], Awaitable[None]]] = field(default_factory=list)
    _bridged: Set[str] = field(default_factory=set, init=False, repr=False)

    async def load_definition(self, strategy_id: str) -> StrategyDefinition:
        """기본 제공 전략을 먼저 찾고, 없으면 저장소에서 읽는다."""

        builtin = builtin_definition(strategy_id)
        if builtin is not None:
            return builtin
        stored = await self.repository.get_strategy(strategy_id)
        return StrategyDefinition.model_validate(stored.definition)

    async def bridge_market(self, symbol: str) -> None:
        """심볼 시세를 가격 알림 규칙과 웹소켓 ``market`` 토픽으로 연결한다."""

        symbol = symbol.upper()
        if symbol in self._bridged:
            return
        self._bridged.add(symbol)
        await self.market_data.subscribe(symbol, self._on_tick)

    async def _on_tick(self, tick: MarketTick) -> None:
        await self.alerts.check_tick(tick)
        await self.connections.broadcast("market", tick.to_payload())


def _error(status_code: int, detail: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"detail": detail, **extra}, status_code=status_code)


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StrategyCompileError)
    async def _compile_error(request: Request, exc: StrategyCompileError) -> JSONResponse:
        return _error(422, exc.message, expression=exc.expression)

    @app.exception_handler(StrategyNotFoundError)
    async def _not_found(request: Request, exc: StrategyNotFoundError) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(AuthenticationError)
    async def _unauthorized(request: Request, exc: AuthenticationError) -> JSONResponse:
        response = _error(401, str(exc))
        response.headers["WWW-Authenticate"] = "Bearer"
        return response

    @app.exception_handler(BrokerAPIError)
    async def _broker_error(request: Request, exc: BrokerAPIError) -> JSONResponse:
        logger.warning("브로커 오류: {}", exc)
        return _error(502, str(exc), status=exc.status)


def _definition_summary(definition: StrategyDefinition, source: str) -> Dict[str, Any]:
    return {"id": definition.id, "name": definition.name, "source": source}


def create_app(context: ApplicationContext) -> FastAPI:
    app = FastAPI(title="QuantDesk Trading API", version="0.1.0")
    app.state.context = context
    app.state.token_authority = context.token_authority
    install_security(app, context.settings)
    _install_exception_handlers(app)

    def get_context() -> ApplicationContext:
        return app.state.context

    @app.on_event("startup")
    async def _startup() -> None:
        # 스케줄러의 첫 사이클 전에 전략 활성화와 시세 구독을 마친다.
        for hook in context.startup_hooks:
            await hook()
        await context.market_data.start()
        await context.bridge_market(context.settings.trading_symbol)
        context.orchestrator.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await context.orchestrator.shutdown()
        await context.market_data.stop()

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/auth/token")
    async def issue_token(body: TokenRequest, ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        authority = ctx.token_authority
        if authority is None:
            raise HTTPException(status_code=404, detail="인증이 비활성화되어 있습니다.")
        expected = ctx.settings.api_access_key or ""
        if not expected or not hmac.compare_digest(body.access_key.encode(), expected.encode()):
            raise AuthenticationError("접근 키가 올바르지 않습니다.")
        return {
            "access_token": authority.issue("api"),
            "token_type": "bearer",
            "expires_in": authority.ttl_seconds,
        }

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket) -> None:
        await websocket_endpoint(websocket, context.connections, context.token_authority)

    router = APIRouter(dependencies=[Depends(require_auth)])

    @router.get("/status")
    async def status(ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        return ctx.orchestrator.status()

    @router.post("/pause")
    async def pause(ctx: ApplicationContext = Depends(get_context)) -> Dict[str, str]:
        ctx.orchestrator.pause()
        return {"status": "paused"}

    @router.post("/resume")
    async def resume(ctx: ApplicationContext = Depends(get_context)) -> Dict[str, str]:
        ctx.orchestrator.resume()
        return {"status": "running"}

    @router.get("/cycles")
    async def recent_cycles(
        ctx: ApplicationContext = Depends(get_context),
        limit: int = Query(20, ge=1, le=100),
    ) -> Dict[str, Any]:
        cycles = await ctx.repository.recent_cycles(limit)
        return {"items": cycles}

    @router.get("/trades")
    async def recent_trades(
        ctx: ApplicationContext = Depends(get_context),
        limit: int = Query(50, ge=1, le=500),
        symbol: Optional[str] = Query(None),
        strategy_id: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        trades = await ctx.repository.recent_trades(limit, symbol=symbol, strategy_id=strategy_id)
        return {"items": [trade.to_payload() for trade in trades]}

    @router.get("/performance/daily")
    async def daily_performance(
        ctx: ApplicationContext = Depends(get_context),
        target: Optional[date] = Query(None, description="기준 일자 (YYYY-MM-DD)"),
        strategy_id: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        target_date = target or datetime.now(timezone.utc).date()
        performance = await ctx.repository.daily_performance(target_date, strategy_id=strategy_id)
        return {
            "date": performance.trade_date.isoformat(),
            "strategy_id": strategy_id,
            "realized_pnl": str(performance.realized_pnl),
            "total_fees": str(performance.total_fees),
            "trade_count": performance.trade_count,
            "winning_trades": performance.winning_trades,
            "losing_trades": performance.losing_trades,
            "best_trade": str(performance.best_trade) if performance.best_trade is not None else None,
            "worst_trade": str(performance.worst_trade) if performance.worst_trade is not None else None,
        }

    @router.get("/strategies")
    async def list_strategies(ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        items = [_definition_summary(builtin_definition(sid), "builtin") for sid in builtin_ids()]
        for stored in await ctx.repository.list_strategies():
            items.append(
                {
                    "id": stored.id,
                    "name": stored.name,
                    "source": "stored",
                    "fingerprint": stored.fingerprint,
                    "updated_at": stored.updated_at.isoformat(),
                }
            )
        return {"items": items, "active": ctx.orchestrator.engine.strategy_id}

    @router.post("/strategies/validate")
    async def validate_strategy(
        definition: StrategyDefinition,
        ctx: ApplicationContext = Depends(get_context),
    ) -> Dict[str, Any]:
        compiled = ctx.runner.compile(definition)
        return {"id": definition.id, "valid": True, "fingerprint": compiled.fingerprint}

    @router.post("/strategies", status_code=201)
    async def save_strategy(
        definition: StrategyDefinition,
        ctx: ApplicationContext = Depends(get_context),
    ) -> Dict[str, Any]:
        if builtin_definition(definition.id) is not None:
            raise HTTPException(status_code=409, detail=f"기본 제공 전략 ID 는 덮어쓸 수 없습니다: {definition.id}")
        compiled = ctx.runner.compile(definition)
        try:
            previous = await ctx.repository.get_strategy(definition.id)
        except StrategyNotFoundError:
            previous = None
        if previous is not None and previous.fingerprint != compiled.fingerprint:
            ctx.runner.invalidate(previous.fingerprint)
        stored = await ctx.repository.save_strategy(
            definition.id,
            definition.name,
            compiled.fingerprint,
            definition.model_dump(mode="json"),
        )
        return {"id": stored.id, "fingerprint": stored.fingerprint}

    @router.get("/strategies/{strategy_id}")
    async def get_strategy(strategy_id: str, ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        definition = await ctx.load_definition(strategy_id)
        source = "builtin" if builtin_definition(strategy_id) is not None else "stored"
        return {
            "source": source,
            "definition": definition.model_dump(mode="json"),
            "performance": await ctx.repository.strategy_performance(strategy_id),
        }

    @router.delete("/strategies/{strategy_id}")
    async def delete_strategy(strategy_id: str, ctx: ApplicationContext = Depends(get_context)) -> Dict[str, str]:
        if builtin_definition(strategy_id) is not None:
            raise HTTPException(status_code=409, detail="기본 제공 전략은 삭제할 수 없습니다.")
        if strategy_id == ctx.orchestrator.engine.strategy_id:
            raise HTTPException(status_code=409, detail="활성 전략은 삭제할 수 없습니다.")
        stored = await ctx.repository.get_strategy(strategy_id)
        await ctx.repository.delete_strategy(strategy_id)
        ctx.runner.invalidate(stored.fingerprint)
        return {"status": "deleted", "id": strategy_id}

    @router.post("/strategies/{strategy_id}/activate")
    async def activate_strategy(strategy_id: str, ctx: ApplicationContext = Depends(get_context)) -> Dict[str, str]:
        definition = await ctx.load_definition(strategy_id)
        fingerprint = ctx.orchestrator.activate(definition)
        return {"status": "active", "id": strategy_id, "fingerprint": fingerprint}

    @router.post("/strategies/{strategy_id}/backtest")
    async def backtest_strategy(
        strategy_id: str,
        body: BacktestRequest,
        ctx: ApplicationContext = Depends(get_context),
    ) -> Dict[str, Any]:
        definition = await ctx.load_definition(strategy_id)
        symbol = (body.symbol or ctx.settings.trading_symbol).upper()
        if body.candles is not None:
            try:
                candles = [Candle.from_payload(symbol, item) for item in body.candles]
            except (KeyError, IndexError, TypeError, ValueError, ArithmeticError) as exc:
                raise HTTPException(status_code=422, detail=f"캔들 형식 오류: {exc}") from exc
            candles.sort(key=lambda candle: candle.timestamp)
        else:
            ticks = await ctx.repository.recent_ticks(symbol, limit=10_000)
            interval = parse_interval(ctx.settings.candle_interval)
            aggregator = CandleAggregator(symbol, interval, max_candles=MAX_BACKTEST_BARS)
            for tick in ticks:
                aggregator.add(tick)
            candles = aggregator.candles()
        result = await run_in_threadpool(
            ctx.runner.backtest, definition, candles, quantity=body.quantity, fee_rate=body.fee_rate
        )
        return result.to_payload()

    @router.get("/market/{symbol}/latest")
    async def latest_tick(symbol: str, ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        tick = ctx.market_data.latest(symbol)
        if tick is None:
            raise HTTPException(status_code=404, detail=f"시세가 없습니다: {symbol.upper()}")
        return tick.to_payload()

    @router.post("/market/ticks", status_code=202)
    async def publish_tick(body: TickRequest, ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        tick = MarketTick(
            symbol=body.symbol.upper(),
            price=body.price,
            volume=body.volume,
            timestamp=body.timestamp or datetime.now(timezone.utc),
        )
        await ctx.repository.record_tick(tick)
        receivers = await ctx.market_data.publish(tick)
        return {"status": "published", "receivers": receivers, "tick": tick.to_payload()}

    @router.get("/alerts")
    async def recent_alerts(
        ctx: ApplicationContext = Depends(get_context),
        limit: int = Query(50, ge=1, le=500),
    ) -> Dict[str, Any]:
        return {"items": await ctx.repository.recent_alerts(limit)}

    @router.get("/alerts/rules")
    async def price_rules(ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        return {"items": [rule.to_payload() for rule in ctx.alerts.price_rules()]}

    @router.post("/alerts/rules", status_code=201)
    async def add_price_rule(body: PriceRuleRequest, ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        rule_id = ctx.alerts.add_price_rule(body.symbol, body.direction, body.threshold)
        await ctx.bridge_market(body.symbol)
        return {"id": rule_id}

    @router.delete("/alerts/rules/{rule_id}")
    async def remove_price_rule(rule_id: int, ctx: ApplicationContext = Depends(get_context)) -> Dict[str, Any]:
        if not ctx.alerts.remove_price_rule(rule_id):
            raise HTTPException(status_code=404, detail=f"알림 규칙이 없습니다: {rule_id}")
        return {"status": "deleted", "id": rule_id}

    app.include_router(router)
    return app


__all__ = ["MAX_BACKTEST_BARS", "ApplicationContext", "create_app"]
