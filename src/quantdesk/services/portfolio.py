"""포트폴리오 상태와 주문 체결 반영 로직."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from ..data import BalanceSnapshot, ClosedTrade, OrderExecution, OrderSide, Position


@dataclass(frozen=True)
class ExecutionOutcome:
    """체결 반영 결과. 매도로 포지션이 줄면 거래 기록이 생긴다."""

    realized_pnl: Decimal = Decimal("0")
    trade: Optional[ClosedTrade] = None


@dataclass
class PortfolioState:
    """현금, 포지션과 진입 수수료를 관리하는 단순 포트폴리오."""

    cash: Decimal = Decimal("0")
    positions: Dict[str, Position] = field(default_factory=dict)
    entry_fees: Dict[str, Decimal] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def get_position(self, market: str) -> Optional[Position]:
        return self.positions.get(market.upper())

    def update_from_balance(self, balance: BalanceSnapshot) -> None:
        """브로커 잔고 응답으로 현금과 보유 수량을 맞춘다."""

        self.cash = balance.available_cash
        market = balance.symbol.upper()
        position = self.positions.get(market)
        if balance.quantity <= Decimal("0"):
            self.positions.pop(market, None)
            self.entry_fees.pop(market, None)
        elif position is None:
            self.positions[market] = Position(
                market=market,
                quantity=balance.quantity,
                average_price=balance.last_price or Decimal("0"),
                opened_at=datetime.now(timezone.utc),
            )
        else:
            # 평균 단가는 체결 기준으로만 갱신한다.
            position.quantity = balance.quantity
        self.last_updated = datetime.now(timezone.utc)

    def apply_execution(self, execution: OrderExecution, strategy_id: str = "manual") -> ExecutionOutcome:
        """주문 체결 결과를 반영하고 실현 손익과 거래 기록을 반환한다."""

        if execution.executed_units <= Decimal("0"):
            return ExecutionOutcome()
        market = execution.market.upper()
        position = self.positions.get(market)
        if execution.side is OrderSide.BUY:
            cost = execution.price * execution.executed_units + execution.fee
            if self.cash < cost:
                raise ValueError("현금 잔고가 부족하여 매수 체결을 반영할 수 없습니다.")
            self.cash -= cost
            self.entry_fees[market] = self.entry_fees.get(market, Decimal("0")) + execution.fee
            if position is None:
                self.positions[market] = Position(
                    market=market,
                    quantity=execution.executed_units,
                    average_price=execution.price,
                    opened_at=execution.created_at,
                )
            else:
                total_qty = position.quantity + execution.executed_units
                weighted_cost = position.average_price * position.quantity + execution.price * execution.executed_units
                position.quantity = total_qty
                position.average_price = weighted_cost / total_qty
            self.last_updated = execution.created_at
            return ExecutionOutcome()

        if position is None:
            raise ValueError("보유하지 않은 자산을 매도할 수 없습니다.")
        if execution.executed_units > position.quantity:
            raise ValueError("보유 수량보다 많은 수량을 매도했습니다.")
        # 진입 수수료는 매도 수량 비율만큼 배분한다.
        total_entry_fee = self.entry_fees.get(market, Decimal("0"))
        entry_fee = total_entry_fee * execution.executed_units / position.quantity
        trade = ClosedTrade.close(position, execution, strategy_id, entry_fee=entry_fee)
        self.cash += execution.price * execution.executed_units - execution.fee
        if execution.executed_units == position.quantity:
            self.positions.pop(market, None)
            self.entry_fees.pop(market, None)
        else:
            position.reduce(execution.executed_units)
            self.entry_fees[market] = total_entry_fee - entry_fee
        self.last_updated = execution.created_at
        return ExecutionOutcome(realized_pnl=trade.pnl, trade=trade)

    def total_exposure(self) -> Decimal:
        """보유 포지션의 명목 가치 합계를 계산한다."""

        return sum(
            (position.average_price * position.quantity for position in self.positions.values()),
            Decimal("0"),
        )

    def available_cash(self) -> Decimal:
        return self.cash

    def total_equity(self) -> Decimal:
        """현금과 포지션의 명목 가치를 합산한 추정 자산."""

        return self.cash + self.total_exposure()

    def snapshot(self) -> dict[str, object]:
        return {
            "cash": str(self.cash),
            "equity": str(self.total_equity()),
            "positions": [
                {
                    "symbol": position.market,
                    "quantity": str(position.quantity),
                    "average_price": str(position.average_price),
                    "opened_at": position.opened_at.isoformat(),
                }
                for position in self.positions.values()
            ],
        }


__all__ = ["ExecutionOutcome", "PortfolioState"]
