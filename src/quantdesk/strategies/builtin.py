"""기본 제공 전략 정의."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional

from .definition import StrategyDefinition

BUILTIN_DEFINITIONS: Dict[str, StrategyDefinition] = {
    definition.id: definition
    for definition in (
        StrategyDefinition(
            id="momentum_breakout",
            name="모멘텀 돌파",
            entry=(
                "close > prev(close) and close >= highest(high, lookback, 1) * (1 + breakout_buffer) "
                "and volume >= sma(volume, volume_window) * volume_multiplier"
            ),
            exit="close < sma(close, lookback)",
            stop_loss_pct=Decimal("0.02"),
            take_profit_pct=Decimal("0.05"),
            min_bars=21,
            parameters={
                "lookback": Decimal("20"),
                "breakout_buffer": Decimal("0.01"),
                "volume_window": Decimal("10"),
                "volume_multiplier": Decimal("1.2"),
            },
        ),
        StrategyDefinition(
            id="sma_crossover",
            name="이동평균 교차",
            entry="crossover(sma(close, fast), sma(close, slow))",
            exit="crossunder(sma(close, fast), sma(close, slow))",
            stop_loss_pct=Decimal("0.03"),
            min_bars=31,
            parameters={"fast": Decimal("10"), "slow": Decimal("30")},
        ),
        StrategyDefinition(
            id="rsi_reversion",
            name="RSI 역추세",
            entry="rsi(close, period) < oversold",
            exit="rsi(close, period) > overbought",
            stop_loss_pct=Decimal("0.05"),
            min_bars=15,
            parameters={"period": Decimal("14"), "oversold": Decimal("30"), "overbought": Decimal("70")},
        ),
    )
}


def builtin_definition(strategy_id: str) -> Optional[StrategyDefinition]:
    return BUILTIN_DEFINITIONS.get(strategy_id)


def builtin_ids() -> List[str]:
    return sorted(BUILTIN_DEFINITIONS)


__all__ = ["BUILTIN_DEFINITIONS", "builtin_definition", "builtin_ids"]
