"""QuantDesk 전략 실행/시세 배포 서비스 패키지."""

from .clients.broker import BrokerClient  # noqa: F401
from .clients.paper import PaperBroker  # noqa: F401
from .config.settings import AppSettings, get_settings  # noqa: F401
from .data import (  # noqa: F401
    Alert,
    AlertKind,
    BalanceSnapshot,
    Candle,
    ClosedTrade,
    DailyPerformance,
    MarketTick,
    OrderExecution,
    OrderSide,
    Position,
    SignalAction,
    StrategySignal,
    TradingCycleResult,
    TradingRepository,
)
from .errors import (  # noqa: F401
    AuthenticationError,
    BrokerAPIError,
    BrokerCredentialsError,
    QuantDeskError,
    StrategyCompileError,
    StrategyNotFoundError,
)
from .runtime.bootstrap import build_application  # noqa: F401
from .runtime.orchestrator import TradingOrchestrator  # noqa: F401
from .services.alerts import AlertService  # noqa: F401
from .services.market_data import MarketDataService  # noqa: F401
from .services.portfolio import PortfolioState  # noqa: F401
from .services.risk import RiskController, RiskParameters  # noqa: F401
from .services.strategy_runner import BacktestResult, StrategyRunner  # noqa: F401
from .services.trading import TradingEngine  # noqa: F401
from .strategies.compiler import CompiledStrategy, compile_strategy  # noqa: F401
from .strategies.definition import StrategyDefinition, fingerprint  # noqa: F401

__all__ = [
    "Alert",
    "AlertKind",
    "AlertService",
    "AppSettings",
    "AuthenticationError",
    "BacktestResult",
    "BalanceSnapshot",
    "BrokerAPIError",
    "BrokerClient",
    "BrokerCredentialsError",
    "Candle",
    "ClosedTrade",
    "CompiledStrategy",
    "DailyPerformance",
    "MarketDataService",
    "MarketTick",
    "OrderExecution",
    "OrderSide",
    "PaperBroker",
    "PortfolioState",
    "Position",
    "QuantDeskError",
    "RiskController",
    "RiskParameters",
    "SignalAction",
    "StrategyCompileError",
    "StrategyDefinition",
    "StrategyNotFoundError",
    "StrategyRunner",
    "StrategySignal",
    "TradingCycleResult",
    "TradingEngine",
    "TradingOrchestrator",
    "TradingRepository",
    "build_application",
    "compile_strategy",
    "fingerprint",
    "get_settings",
]
