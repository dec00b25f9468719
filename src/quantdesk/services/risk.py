"""리스크 한도 설정과 일별 중단 통제."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from loguru import logger

from ..config.settings import AppSettings
from ..data import SignalAction, StrategySignal, TradingCycleResult
from .portfolio import PortfolioState

DAILY_LOSS_REASON = "일일 손실 한도 초과"


@dataclass(frozen=True)
class RiskParameters:
    """주문 크기, 현금 비중, 손실 한도에 대한 설정."""

    max_allocation_pct: Decimal = Decimal("0.3")
    min_cash_reserve_pct: Decimal = Decimal("0.1")
    min_order_value: Decimal = Decimal("10")
    max_order_value: Optional[Decimal] = None
    daily_loss_limit_pct: Decimal = Decimal("0.05")
    daily_loss_limit_value: Optional[Decimal] = None
    max_consecutive_losses: int = 3
    order_retry_limit: int = 2
    order_retry_delay: float = 1.5

    def __post_init__(self) -> None:
        if not (Decimal("0") < self.max_allocation_pct <= Decimal("1")):
            raise ValueError("max_allocation_pct는 0과 1 사이여야 합니다.")
        if not (Decimal("0") <= self.min_cash_reserve_pct < Decimal("1")):
            raise ValueError("min_cash_reserve_pct는 0 이상 1 미만이어야 합니다.")
        if self.min_order_value < Decimal("0"):
            raise ValueError("min_order_value는 음수일 수 없습니다.")
        if self.max_order_value is not None and self.max_order_value <= Decimal("0"):
            raise ValueError("max_order_value는 양수여야 합니다.")
        if self.daily_loss_limit_pct < Decimal("0"):
            raise ValueError("daily_loss_limit_pct는 음수일 수 없습니다.")
        if self.daily_loss_limit_value is not None and self.daily_loss_limit_value < Decimal("0"):
            raise ValueError("daily_loss_limit_value는 음수일 수 없습니다.")
        if self.max_consecutive_losses < 0:
            raise ValueError("max_consecutive_losses는 0 이상이어야 합니다.")
        if self.order_retry_limit < 0:
            raise ValueError("order_retry_limit는 0 이상이어야 합니다.")
        if self.order_retry_delay < 0:
            raise ValueError("order_retry_delay는 0 이상이어야 합니다.")

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "RiskParameters":
        return cls(
            max_allocation_pct=settings.max_allocation_pct,
            min_cash_reserve_pct=settings.min_cash_reserve_pct,
            min_order_value=settings.min_order_value,
            max_order_value=settings.max_order_value,
            daily_loss_limit_pct=settings.daily_loss_limit_pct,
            daily_loss_limit_value=settings.daily_loss_limit_value,
            max_consecutive_losses=settings.max_consecutive_losses,
            order_retry_limit=settings.order_retry_limit,
            order_retry_delay=settings.order_retry_delay,
        )


@dataclass
class RiskState:
    """일별 리스크 상태 추적."""

    trading_day: date
    starting_equity: Decimal
    realized_pnl: Decimal = Decimal("0")
    consecutive_losses: int = 0
    halted: bool = False
    halt_reason: Optional[str] = None


class RiskController:
    """일일 손실 한도와 연속 손실 제약을 추적한다. 날짜가 바뀌면 초기화된다."""

    def __init__(
        self,
        params: RiskParameters,
        portfolio: PortfolioState,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._params = params
        self._portfolio = portfolio
        self._clock = clock
        self._state: Optional[RiskState] = None

    @property
    def params(self) -> RiskParameters:
        return self._params

    def _current(self) -> RiskState:
        trading_day = self._clock().date()
        if self._state is None or self._state.trading_day != trading_day:
            self._state = RiskState(trading_day=trading_day, starting_equity=self._portfolio.total_equity())
        elif self._state.starting_equity <= Decimal("0"):
            # 첫 잔고 동기화 전에 만들어진 상태는 실제 자산으로 다시 잡는다.
            self._state.starting_equity = self._portfolio.total_equity()
        return self._state

    def evaluate_signal(self, signal: StrategySignal) -> Optional[str]:
        """주문 실행 전 한도를 확인하고, 막아야 하면 사유를 반환한다."""

        state = self._current()
        if state.halted:
            return state.halt_reason or "리스크 제한으로 중단됨"
        if signal.action is SignalAction.HOLD:
            return None
        return self._check_limits(state)

    def record_cycle(self, result: TradingCycleResult) -> Optional[str]:
        """사이클 손익을 누적하고, 이번 결과로 새로 중단되면 사유를 반환한다."""

        state = self._current()
        if result.pnl < Decimal("0"):
            state.consecutive_losses += 1
        elif result.pnl > Decimal("0"):
            state.consecutive_losses = 0
        state.realized_pnl += result.pnl
        if state.halted:
            return None
        return self._check_limits(state)

    def _check_limits(self, state: RiskState) -> Optional[str]:
        limit = self.daily_loss_limit()
        if limit is not None and state.realized_pnl <= -limit:
            return self._halt(state, DAILY_LOSS_REASON)
        max_losses = self._params.max_consecutive_losses
        if max_losses and state.consecutive_losses >= max_losses:
            return self._halt(state, f"연속 손실 {state.consecutive_losses}회 초과")
        return None

    def _halt(self, state: RiskState, reason: str) -> str:
        state.halted = True
        state.halt_reason = reason
        logger.warning("트레이딩 중단: {}", reason)
        return reason

    def halt(self, reason: str) -> None:
        """수동으로 트레이딩을 중단한다."""

        self._halt(self._current(), reason)

    def resume(self) -> None:
        """중단 상태를 해제하고 연속 손실을 초기화한다."""

        state = self._current()
        state.halted = False
        state.halt_reason = None
        state.consecutive_losses = 0

    def is_halted(self) -> bool:
        return self._current().halted

    def daily_loss_limit(self) -> Optional[Decimal]:
        if self._params.daily_loss_limit_value and self._params.daily_loss_limit_value > Decimal("0"):
            return self._params.daily_loss_limit_value
        state = self._state
        if state is None or self._params.daily_loss_limit_pct <= Decimal("0"):
            return None
        if state.starting_equity <= Decimal("0"):
            return None
        return state.starting_equity * self._params.daily_loss_limit_pct

    def status(self) -> dict[str, object]:
        state = self._current()
        limit = self.daily_loss_limit()
        return {
            "trading_day": state.trading_day.isoformat(),
            "starting_equity": str(state.starting_equity),
            "realized_pnl": str(state.realized_pnl),
            "consecutive_losses": state.consecutive_losses,
            "halted": state.halted,
            "halt_reason": state.halt_reason,
            "daily_loss_limit": str(limit) if limit is not None else None,
        }


__all__ = ["DAILY_LOSS_REASON", "RiskController", "RiskParameters", "RiskState"]
