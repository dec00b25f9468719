"""전략 시그널을 주문 실행으로 연결하는 트레이딩 엔진."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import List, Optional, Protocol

from loguru import logger

from ..data import (
    BalanceSnapshot,
    Candle,
    OrderExecution,
    OrderSide,
    Position,
    SignalAction,
    StrategySignal,
    TradingCycleResult,
)
from ..strategies.base import TradingStrategy
from .portfolio import PortfolioState
from .risk import RiskController, RiskParameters


class ExecutionVenue(Protocol):
    """엔진이 사용하는 브로커 인터페이스 (실거래/페이퍼 공통)."""

    async def get_candles(self, symbol: str, interval: str, count: int) -> List[Candle]: ...

    async def get_balance(self, symbol: str) -> BalanceSnapshot: ...

    async def place_order(self, symbol: str, side: OrderSide, *, units: Decimal, price: Decimal) -> OrderExecution: ...


class TradingEngine:
    """단일 심볼에 대해 전략을 실행하고 주문을 전송한다."""

    def __init__(
        self,
        *,
        client: ExecutionVenue,
        strategy: TradingStrategy,
        portfolio: PortfolioState,
        market: str,
        candle_interval: str = "1m",
        candle_count: int = 60,
        risk: Optional[RiskParameters] = None,
        risk_controller: Optional[RiskController] = None,
    ) -> None:
        if candle_count < 10:
            raise ValueError("candle_count는 최소 10 이상이어야 합니다.")
        self._client = client
        self._strategy = strategy
        self._portfolio = portfolio
        self._market = market.upper()
        self._interval = candle_interval
        self._candle_count = candle_count
        self._risk = risk or RiskParameters()
        self._risk_controller = risk_controller or RiskController(self._risk, portfolio)
        self._last_result: Optional[TradingCycleResult] = None

    @property
    def market(self) -> str:
        return self._market

    @property
    def strategy_id(self) -> str:
        return self._strategy.strategy_id

    @property
    def portfolio(self) -> PortfolioState:
        return self._portfolio

    @property
    def risk_controller(self) -> RiskController:
        return self._risk_controller

    def set_strategy(self, strategy: TradingStrategy) -> None:
        """다음 사이클부터 사용할 전략을 교체한다."""

        strategy.reset()
        self._strategy = strategy
        logger.info("활성 전략 변경: {}", strategy.strategy_id)

    async def run_cycle(self) -> TradingCycleResult:
        """단일 주기 실행: 데이터 조회 → 전략 판단 → 리스크 확인 → 주문."""

        strategy_id = self._strategy.strategy_id
        candles = await self._client.get_candles(self._market, self._interval, self._candle_count)
        if not candles:
            hold = StrategySignal.hold(self._market, Decimal("0"), datetime.now(timezone.utc), "시세 데이터 없음")
            return self._finish(TradingCycleResult(signal=hold, strategy_id=strategy_id))
        balance = await self._client.get_balance(self._market)
        self._portfolio.update_from_balance(balance)
        position = self._portfolio.get_position(self._market)
        signal = self._strategy.evaluate(candles, position)
        block_reason = self._risk_controller.evaluate_signal(signal)
        if block_reason:
            hold = StrategySignal.hold(self._market, signal.price, signal.timestamp, block_reason)
            return self._finish(TradingCycleResult(signal=hold, notes="risk_halt", strategy_id=strategy_id))

        if signal.action is SignalAction.BUY:
            result = await self._handle_buy(signal, position)
        elif signal.action is SignalAction.SELL:
            result = await self._handle_sell(signal, position)
        else:
            result = TradingCycleResult(signal=signal, strategy_id=strategy_id)
        return self._finish(result)

    def _finish(self, result: TradingCycleResult) -> TradingCycleResult:
        halt_reason = self._risk_controller.record_cycle(result)
        if halt_reason and result.notes is None:
            result = replace(result, notes="risk_halt")
        self._last_result = result
        return result

    async def _handle_buy(self, signal: StrategySignal, position: Optional[Position]) -> TradingCycleResult:
        strategy_id = self._strategy.strategy_id
        if position is not None:
            hold = StrategySignal.hold(self._market, signal.price, signal.timestamp, "이미 포지션 보유 중")
            return TradingCycleResult(signal=hold, strategy_id=strategy_id)
        units = self._calculate_order_units(signal.price)
        if units <= Decimal("0"):
            hold = StrategySignal.hold(self._market, signal.price, signal.timestamp, "주문 수량 부족")
            return TradingCycleResult(signal=hold, strategy_id=strategy_id)
        try:
            execution = await self._execute_with_retry(OrderSide.BUY, units, signal.price)
        except Exception as exc:
            logger.error("매수 주문 실패: {}", exc)
            return TradingCycleResult(signal=signal, error=str(exc), strategy_id=strategy_id)
        outcome = self._portfolio.apply_execution(execution, strategy_id)
        return TradingCycleResult(signal=signal, execution=execution, pnl=outcome.realized_pnl, strategy_id=strategy_id)

    async def _handle_sell(self, signal: StrategySignal, position: Optional[Position]) -> TradingCycleResult:
        strategy_id = self._strategy.strategy_id
        if position is None or position.quantity <= Decimal("0"):
            hold = StrategySignal.hold(self._market, signal.price, signal.timestamp, "매도 가능한 포지션 없음")
            return TradingCycleResult(signal=hold, strategy_id=strategy_id)
        try:
            execution = await self._execute_with_retry(OrderSide.SELL, position.quantity, signal.price)
        except Exception as exc:
            logger.error("매도 주문 실패: {}", exc)
            return TradingCycleResult(signal=signal, error=str(exc), strategy_id=strategy_id)
        outcome = self._portfolio.apply_execution(execution, strategy_id)
        return TradingCycleResult(
            signal=signal,
            execution=execution,
            pnl=outcome.realized_pnl,
            trade=outcome.trade,
            strategy_id=strategy_id,
        )

    async def _execute_with_retry(self, side: OrderSide, units: Decimal, price: Decimal) -> OrderExecution:
        attempts = 0
        while True:
            try:
                return await self._client.place_order(self._market, side, units=units, price=price)
            except Exception as exc:
                attempts += 1
                if attempts > self._risk.order_retry_limit:
                    raise
                logger.warning(
                    "주문 재시도 {}/{}: {}", attempts, self._risk.order_retry_limit, exc
                )
                await asyncio.sleep(self._risk.order_retry_delay)

    def _calculate_order_units(self, price: Decimal) -> Decimal:
        if price <= Decimal("0"):
            return Decimal("0")
        cash = self._portfolio.available_cash()
        if cash <= Decimal("0"):
            return Decimal("0")
        reserve = cash * self._risk.min_cash_reserve_pct
        investable = min(cash - reserve, cash * self._risk.max_allocation_pct)
        if self._risk.max_order_value is not None:
            investable = min(investable, self._risk.max_order_value)
        if investable < self._risk.min_order_value:
            return Decimal("0")
        units = investable / price
        return units.quantize(Decimal("0.00000001"), rounding=ROUND_DOWN)

    def risk_status(self) -> dict[str, object]:
        return self._risk_controller.status()

    @property
    def last_result(self) -> Optional[TradingCycleResult]:
        return self._last_result


__all__ = ["ExecutionVenue", "RiskParameters", "TradingEngine"]
