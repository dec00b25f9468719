"""트레이딩 엔진이 호출하는 전략 인터페이스."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from ..data import Candle, Position, StrategySignal


class TradingStrategy(ABC):
    """캔들과 현재 포지션으로 다음 행동을 정하는 전략.

    ``strategy_id`` 는 사이클 기록과 거래 기록에 그대로 남는다.
    ``min_bars`` 보다 캔들이 적으면 구현체는 HOLD 를 돌려줘야 한다.
    """

    strategy_id: str = "custom"
    min_bars: int = 1

    @abstractmethod
    def evaluate(self, candles: Sequence[Candle], position: Optional[Position]) -> StrategySignal:
        """최신 캔들 기준으로 BUY/SELL/HOLD 시그널을 만든다."""

    def is_ready(self, candles: Sequence[Candle]) -> bool:
        return len(candles) >= self.min_bars

    def reset(self) -> None:
        """엔진이 이 전략으로 교체할 때 호출된다."""


__all__ = ["TradingStrategy"]
