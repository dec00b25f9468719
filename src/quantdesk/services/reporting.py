"""청산 거래 기준 성과 리포트 생성기."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from ..data import ClosedTrade, DailyPerformance
from ..data.repository import TradingRepository


@dataclass(frozen=True)
class ReportContext:
    performance: DailyPerformance
    strategy_id: Optional[str] = None
    trades: List[ClosedTrade] = field(default_factory=list)

    @property
    def win_rate(self) -> float:
        if not self.performance.trade_count:
            return 0.0
        return self.performance.winning_trades / self.performance.trade_count * 100

    def format_markdown(self) -> str:
        perf = self.performance
        lines = [f"* 거래일: {perf.trade_date.isoformat()}"]
        if self.strategy_id:
            lines.append(f"* 전략: {self.strategy_id}")
        lines.extend(
            [
                f"* 실현 손익: {perf.realized_pnl:.2f}",
                f"* 수수료 합계: {perf.total_fees:.2f}",
                f"* 거래 횟수: {perf.trade_count} (승 {perf.winning_trades} / 패 {perf.losing_trades})",
                f"* 승률: {self.win_rate:.1f}%",
            ]
        )
        if perf.best_trade is not None:
            lines.append(f"* 최대 이익: {perf.best_trade:.2f}")
        if perf.worst_trade is not None:
            lines.append(f"* 최대 손실: {perf.worst_trade:.2f}")
        for trade in self.trades:
            lines.append(
                f"  - {trade.symbol} {trade.quantity} @ {trade.entry_price} → {trade.exit_price} ({trade.pnl:.2f})"
            )
        return "\n".join(lines)


class PerformanceReporter:
    """일일 성과 리포트를 생성한다."""

    def __init__(self, repository: TradingRepository) -> None:
        self._repository = repository

    async def generate(
        self,
        target_date: date,
        *,
        strategy_id: Optional[str] = None,
        include_trades: bool = False,
    ) -> ReportContext:
        performance = await self._repository.daily_performance(target_date, strategy_id=strategy_id)
        trades: List[ClosedTrade] = []
        if include_trades and performance.trade_count:
            recent = await self._repository.recent_trades(200, strategy_id=strategy_id)
            trades = [trade for trade in recent if trade.closed_at.date() == target_date]
        return ReportContext(performance=performance, strategy_id=strategy_id, trades=trades)


__all__ = ["PerformanceReporter", "ReportContext"]
