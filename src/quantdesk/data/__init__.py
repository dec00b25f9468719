"""데이터 모델 서브패키지."""

from .models import (
    Alert,
    AlertKind,
    BalanceSnapshot,
    Candle,
    ClosedTrade,
    MarketTick,
    OrderExecution,
    OrderSide,
    Position,
    SignalAction,
    StrategySignal,
    TradingCycleResult,
)
from .repository import (
    DailyPerformance,
    StoredStrategy,
    TradingRepository,
)

__all__ = [
    "Alert",
    "AlertKind",
    "BalanceSnapshot",
    "Candle",
    "ClosedTrade",
    "MarketTick",
    "OrderExecution",
    "OrderSide",
    "Position",
    "SignalAction",
    "StrategySignal",
    "StoredStrategy",
    "TradingCycleResult",
    "TradingRepository",
    "DailyPerformance",
]
