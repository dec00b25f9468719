"""컴파일 캐시와 백테스트를 제공하는 전략 실행기."""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence, Union

from loguru import logger

from ..data import Candle, ClosedTrade, OrderExecution, OrderSide, Position, SignalAction, StrategySignal
from ..strategies.compiler import CompiledStrategy, compile_strategy
from ..strategies.definition import StrategyDefinition, fingerprint


@dataclass(frozen=True)
class BacktestResult:
    """백테스트 결과 요약."""

    strategy_id: str
    fingerprint: str
    bars: int
    trades: List[ClosedTrade] = field(default_factory=list)

    @property
    def total_pnl(self) -> Decimal:
        return sum((trade.pnl for trade in self.trades), Decimal("0"))

    @property
    def win_rate(self) -> float:
        if not self.trades:
            return 0.0
        wins = sum(1 for trade in self.trades if trade.pnl > Decimal("0"))
        return wins / len(self.trades)

    @property
    def max_drawdown(self) -> Decimal:
        """실현 손익 누적 곡선의 최대 낙폭."""

        peak = Decimal("0")
        equity = Decimal("0")
        drawdown = Decimal("0")
        for trade in self.trades:
            equity += trade.pnl
            peak = max(peak, equity)
            drawdown = max(drawdown, peak - equity)
        return drawdown

    def to_payload(self) -> dict[str, object]:
        return {
            "strategy_id": self.strategy_id,
            "fingerprint": self.fingerprint,
            "bars": self.bars,
            "trade_count": len(self.trades),
            "total_pnl": str(self.total_pnl),
            "win_rate": self.win_rate,
            "max_drawdown": str(self.max_drawdown),
            "trades": [trade.to_payload() for trade in self.trades],
        }


class StrategyRunner:
    """SHA-256 지문을 키로 하는 LRU 캐시를 통해 전략을 컴파일/실행한다."""

    def __init__(self, max_size: int = 128) -> None:
        if max_size < 0:
            raise ValueError("max_size 는 0 이상이어야 합니다.")
        self._max_size = max_size
        self._cache: "OrderedDict[str, CompiledStrategy]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        # 백테스트는 워커 스레드에서도 컴파일한다.
        self._lock = threading.RLock()

    def compile(self, definition: StrategyDefinition) -> CompiledStrategy:
        with self._lock:
            return self._compile(definition)

    def _compile(self, definition: StrategyDefinition) -> CompiledStrategy:
        key = fingerprint(definition)
        cached = self._cache.get(key)
        if cached is not None:
            # 지문 충돌이라도 다른 전략을 돌려주지 않는다.
            if cached.definition.canonical() == definition.canonical():
                self._hits += 1
                self._cache.move_to_end(key)
                logger.debug("전략 캐시 적중: {} ({})", definition.id, key[:12])
                return cached
            logger.warning("전략 지문 충돌 감지: {}", key)
        self._misses += 1
        compiled = compile_strategy(definition)
        logger.debug("전략 컴파일: {} ({})", definition.id, key[:12])
        if self._max_size > 0:
            self._cache[key] = compiled
            self._cache.move_to_end(key)
            while len(self._cache) > self._max_size:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug("전략 캐시 제거: {}", evicted[:12])
        return compiled

    def evaluate(
        self,
        definition: StrategyDefinition,
        candles: Sequence[Candle],
        position: Optional[Position] = None,
    ) -> StrategySignal:
        return self.compile(definition).evaluate(candles, position)

    def backtest(
        self,
        definition: StrategyDefinition,
        candles: Sequence[Candle],
        *,
        quantity: Decimal = Decimal("1"),
        fee_rate: Decimal = Decimal("0"),
    ) -> BacktestResult:
        """캔들을 한 봉씩 재생하며 시그널 봉의 종가로 체결한다."""

        if quantity <= Decimal("0"):
            raise ValueError("quantity 는 양수여야 합니다.")
        if not (Decimal("0") <= fee_rate < Decimal("1")):
            raise ValueError("fee_rate 는 0 이상 1 미만이어야 합니다.")
        strategy = self.compile(definition)
        trades: List[ClosedTrade] = []
        position: Optional[Position] = None
        entry_fee = Decimal("0")
        for index in range(1, len(candles) + 1):
            window = candles[:index]
            latest = window[-1]
            signal = strategy.evaluate(window, position)
            if signal.action is SignalAction.BUY and position is None:
                position = Position(
                    market=latest.market,
                    quantity=quantity,
                    average_price=latest.close,
                    opened_at=latest.timestamp,
                )
                entry_fee = latest.close * quantity * fee_rate
            elif signal.action is SignalAction.SELL and position is not None:
                trades.append(self._close(position, latest, definition.id, entry_fee, fee_rate))
                position = None
        if position is not None and candles:
            trades.append(self._close(position, candles[-1], definition.id, entry_fee, fee_rate))
        return BacktestResult(
            strategy_id=definition.id,
            fingerprint=strategy.fingerprint,
            bars=len(candles),
            trades=trades,
        )

    @staticmethod
    def _close(
        position: Position,
        candle: Candle,
        strategy_id: str,
        entry_fee: Decimal,
        fee_rate: Decimal,
    ) -> ClosedTrade:
        execution = OrderExecution(
            order_id="backtest",
            market=position.market,
            side=OrderSide.SELL,
            price=candle.close,
            ordered_units=position.quantity,
            executed_units=position.quantity,
            fee=candle.close * position.quantity * fee_rate,
            created_at=candle.timestamp,
        )
        return ClosedTrade.close(position, execution, strategy_id, entry_fee=entry_fee)

    def invalidate(self, target: Union[StrategyDefinition, str]) -> bool:
        key = fingerprint(target) if isinstance(target, StrategyDefinition) else target
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def cache_info(self) -> dict[str, int]:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "size": len(self._cache),
            "max_size": self._max_size,
        }


__all__ = ["BacktestResult", "StrategyRunner"]
