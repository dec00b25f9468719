"""트레이딩 데이터 저장소."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Mapping, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, case, delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..errors import StrategyNotFoundError
from .database import Base
from .models import Alert, ClosedTrade, MarketTick, TradingCycleResult


class TradeRecord(Base):
    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(20), index=True)
    strategy_id: Mapped[str] = mapped_column(String(64), index=True)
    entry_price: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    exit_price: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    quantity: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    fee: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    pnl: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    duration_seconds: Mapped[int] = mapped_column(Integer)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StrategyRecord(Base):
    __tablename__ = "strategies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    fingerprint: Mapped[str] = mapped_column(String(64), index=True)
    definition: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TickRecord(Base):
    __tablename__ = "market_ticks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(20), index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    volume: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("symbol", "timestamp", name="uq_market_tick"),)


class AlertRecord(Base):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), index=True)
    symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    message: Mapped[str] = mapped_column(Text)
    payload: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class SignalRecord(Base):
    __tablename__ = "strategy_signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    market: Mapped[str] = mapped_column(String(20), index=True)
    action: Mapped[str] = mapped_column(String(10))
    price: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    confidence: Mapped[Decimal] = mapped_column(Numeric(10, 5))
    reason: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class ExecutionRecord(Base):
    __tablename__ = "order_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    market: Mapped[str] = mapped_column(String(20), index=True)
    side: Mapped[str] = mapped_column(String(5))
    price: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    ordered_units: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    executed_units: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    fee: Mapped[Decimal] = mapped_column(Numeric(30, 10))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class CycleRecord(Base):
    __tablename__ = "trading_cycles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    market: Mapped[str] = mapped_column(String(20), index=True)
    strategy_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    signal_id: Mapped[int] = mapped_column(ForeignKey("strategy_signals.id"))
    execution_id: Mapped[Optional[int]] = mapped_column(ForeignKey("order_executions.id"), nullable=True)
    pnl: Mapped[Decimal] = mapped_column(Numeric(30, 10), default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20))
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    signal: Mapped[SignalRecord] = relationship("SignalRecord")
    execution: Mapped[Optional[ExecutionRecord]] = relationship("ExecutionRecord")


@dataclass(frozen=True)
class DailyPerformance:
    trade_date: date
    realized_pnl: Decimal
    trade_count: int
    winning_trades: int
    losing_trades: int
    best_trade: Optional[Decimal]
    worst_trade: Optional[Decimal]
    total_fees: Decimal = Decimal("0")


@dataclass(frozen=True)
class StoredStrategy:
    id: str
    name: str
    fingerprint: str
    definition: Mapping[str, Any]
    created_at: datetime
    updated_at: datetime


def _ensure_utc(value: datetime) -> datetime:
    # SQLite 는 tzinfo 를 저장하지 않는다.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class TradingRepository:
    """전략 실행 결과, 거래 기록, 시세와 알림을 저장한다."""

    def __init__(self, session_factory: "async_sessionmaker[AsyncSession]") -> None:
        self._session_factory = session_factory

    async def record_tick(self, tick: MarketTick) -> None:
        async with self._session_factory() as session:
            stmt = sqlite_insert(TickRecord).values(
                symbol=tick.symbol,
                price=tick.price,
                volume=tick.volume,
                timestamp=tick.timestamp,
            ).on_conflict_do_nothing(index_elements=["symbol", "timestamp"])
            await session.execute(stmt)
            await session.commit()

    async def recent_ticks(self, symbol: str, limit: int = 1000) -> List[MarketTick]:
        stmt = (
            select(TickRecord)
            .where(TickRecord.symbol == symbol.upper())
            .order_by(TickRecord.timestamp.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        ticks = [
            MarketTick(
                symbol=row.symbol,
                price=Decimal(str(row.price)),
                volume=Decimal(str(row.volume)),
                timestamp=_ensure_utc(row.timestamp),
            )
            for row in rows
        ]
        ticks.reverse()
        return ticks

    async def record_cycle(self, result: TradingCycleResult) -> None:
        async with self._session_factory() as session:
            signal = result.signal
            signal_row = SignalRecord(
                market=signal.market,
                action=signal.action.value,
                price=signal.price,
                confidence=signal.confidence,
                reason=signal.reason,
                created_at=signal.timestamp,
            )
            session.add(signal_row)
            await session.flush()

            execution_row: Optional[ExecutionRecord] = None
            if result.execution is not None:
                execution = result.execution
                execution_row = ExecutionRecord(
                    order_id=execution.order_id,
                    market=execution.market,
                    side=execution.side.value,
                    price=execution.price,
                    ordered_units=execution.ordered_units,
                    executed_units=execution.executed_units,
                    fee=execution.fee,
                    created_at=execution.created_at,
                )
                session.add(execution_row)
                await session.flush()

            cycle_row = CycleRecord(
                market=signal.market,
                strategy_id=result.strategy_id,
                run_at=signal.timestamp,
                signal_id=signal_row.id,
                execution_id=execution_row.id if execution_row else None,
                pnl=result.pnl,
                status=self._determine_status(result),
                error=result.error,
                notes=result.notes,
            )
            session.add(cycle_row)
            if result.trade is not None:
                session.add(self._trade_row(result.trade))
            await session.commit()

    def _determine_status(self, result: TradingCycleResult) -> str:
        if result.error:
            return "error"
        if result.execution is None:
            return "skipped"
        if result.execution.executed_units <= Decimal("0"):
            return "placed"
        return "filled"

    async def recent_cycles(self, limit: int = 20) -> List[dict[str, object]]:
        stmt = (
            select(
                CycleRecord.run_at,
                CycleRecord.strategy_id,
                SignalRecord.market,
                SignalRecord.action,
                SignalRecord.price,
                SignalRecord.reason,
                CycleRecord.status,
                CycleRecord.pnl,
                CycleRecord.error,
            )
            .join(SignalRecord, CycleRecord.signal_id == SignalRecord.id)
            .order_by(CycleRecord.run_at.desc(), CycleRecord.id.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [
            {
                "run_at": row.run_at,
                "strategy_id": row.strategy_id,
                "market": row.market,
                "action": row.action,
                "price": row.price,
                "reason": row.reason,
                "status": row.status,
                "pnl": row.pnl,
                "error": row.error,
            }
            for row in rows
        ]

    @staticmethod
    def _trade_row(trade: ClosedTrade) -> TradeRecord:
        return TradeRecord(
            symbol=trade.symbol,
            strategy_id=trade.strategy_id,
            entry_price=trade.entry_price,
            exit_price=trade.exit_price,
            quantity=trade.quantity,
            fee=trade.fee,
            pnl=trade.pnl,
            duration_seconds=trade.duration_seconds,
            opened_at=trade.opened_at,
            closed_at=trade.closed_at,
        )

    async def record_trade(self, trade: ClosedTrade) -> int:
        async with self._session_factory() as session:
            row = self._trade_row(trade)
            session.add(row)
            await session.commit()
            return row.id

    async def recent_trades(
        self,
        limit: int = 50,
        *,
        symbol: Optional[str] = None,
        strategy_id: Optional[str] = None,
    ) -> List[ClosedTrade]:
        stmt = select(TradeRecord).order_by(TradeRecord.closed_at.desc(), TradeRecord.id.desc()).limit(limit)
        if symbol:
            stmt = stmt.where(TradeRecord.symbol == symbol.upper())
        if strategy_id:
            stmt = stmt.where(TradeRecord.strategy_id == strategy_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            ClosedTrade(
                symbol=row.symbol,
                strategy_id=row.strategy_id,
                entry_price=Decimal(str(row.entry_price)),
                exit_price=Decimal(str(row.exit_price)),
                quantity=Decimal(str(row.quantity)),
                fee=Decimal(str(row.fee)),
                pnl=Decimal(str(row.pnl)),
                opened_at=_ensure_utc(row.opened_at),
                closed_at=_ensure_utc(row.closed_at),
            )
            for row in rows
        ]

    async def daily_performance(self, target_date: date, *, strategy_id: Optional[str] = None) -> DailyPerformance:
        stmt = select(
            func.count(TradeRecord.id),
            func.sum(TradeRecord.pnl),
            func.sum(case((TradeRecord.pnl > 0, 1), else_=0)),
            func.sum(case((TradeRecord.pnl < 0, 1), else_=0)),
            func.max(TradeRecord.pnl),
            func.min(TradeRecord.pnl),
            func.sum(TradeRecord.fee),
        ).where(func.date(TradeRecord.closed_at) == target_date.isoformat())
        if strategy_id:
            stmt = stmt.where(TradeRecord.strategy_id == strategy_id)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).one()
        return self._performance_from_row(target_date, row)

    async def strategy_performance(self, strategy_id: str) -> dict[str, object]:
        stmt = select(
            func.count(TradeRecord.id),
            func.sum(TradeRecord.pnl),
            func.sum(case((TradeRecord.pnl > 0, 1), else_=0)),
            func.avg(TradeRecord.duration_seconds),
        ).where(TradeRecord.strategy_id == strategy_id)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).one()
        trade_count = int(row[0] or 0)
        winning = int(row[2] or 0)
        return {
            "strategy_id": strategy_id,
            "trade_count": trade_count,
            "realized_pnl": str(Decimal(str(row[1])) if row[1] is not None else Decimal("0")),
            "win_rate": winning / trade_count if trade_count else 0.0,
            "average_duration_seconds": float(row[3]) if row[3] is not None else None,
        }

    @staticmethod
    def _performance_from_row(target_date: date, row: Any) -> DailyPerformance:
        return DailyPerformance(
            trade_date=target_date,
            realized_pnl=Decimal(str(row[1])) if row[1] is not None else Decimal("0"),
            trade_count=int(row[0] or 0),
            winning_trades=int(row[2] or 0),
            losing_trades=int(row[3] or 0),
            best_trade=Decimal(str(row[4])) if row[4] is not None else None,
            worst_trade=Decimal(str(row[5])) if row[5] is not None else None,
            total_fees=Decimal(str(row[6])) if row[6] is not None else Decimal("0"),
        )

    async def save_strategy(self, strategy_id: str, name: str, fingerprint: str, definition: Mapping[str, Any]) -> StoredStrategy:
        now = datetime.now(timezone.utc)
        encoded = json.dumps(definition, sort_keys=True)
        async with self._session_factory() as session:
            row = await session.get(StrategyRecord, strategy_id)
            if row is None:
                row = StrategyRecord(
                    id=strategy_id,
                    name=name,
                    fingerprint=fingerprint,
                    definition=encoded,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            else:
                row.name = name
                row.fingerprint = fingerprint
                row.definition = encoded
                row.updated_at = now
            await session.commit()
            return self._stored(row)

    async def get_strategy(self, strategy_id: str) -> StoredStrategy:
        async with self._session_factory() as session:
            row = await session.get(StrategyRecord, strategy_id)
        if row is None:
            raise StrategyNotFoundError(strategy_id)
        return self._stored(row)

    async def list_strategies(self) -> List[StoredStrategy]:
        async with self._session_factory() as session:
            rows = (await session.execute(select(StrategyRecord).order_by(StrategyRecord.id))).scalars().all()
        return [self._stored(row) for row in rows]

    async def delete_strategy(self, strategy_id: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(delete(StrategyRecord).where(StrategyRecord.id == strategy_id))
            await session.commit()
        if result.rowcount == 0:
            raise StrategyNotFoundError(strategy_id)

    @staticmethod
    def _stored(row: StrategyRecord) -> StoredStrategy:
        return StoredStrategy(
            id=row.id,
            name=row.name,
            fingerprint=row.fingerprint,
            definition=json.loads(row.definition),
            created_at=_ensure_utc(row.created_at),
            updated_at=_ensure_utc(row.updated_at),
        )

    async def record_alert(self, alert: Alert) -> None:
        async with self._session_factory() as session:
            session.add(
                AlertRecord(
                    kind=alert.kind.value,
                    symbol=alert.symbol,
                    message=alert.message,
                    payload=json.dumps(dict(alert.payload or {}), default=str),
                    created_at=alert.created_at,
                )
            )
            await session.commit()

    async def recent_alerts(self, limit: int = 50) -> List[dict[str, object]]:
        stmt = select(AlertRecord).order_by(AlertRecord.created_at.desc(), AlertRecord.id.desc()).limit(limit)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            {
                "kind": row.kind,
                "symbol": row.symbol,
                "message": row.message,
                "payload": json.loads(row.payload or "{}"),
                "created_at": _ensure_utc(row.created_at).isoformat(),
            }
            for row in rows
        ]


__all__ = [
    "AlertRecord",
    "CycleRecord",
    "DailyPerformance",
    "ExecutionRecord",
    "SignalRecord",
    "StoredStrategy",
    "StrategyRecord",
    "TickRecord",
    "TradeRecord",
    "TradingRepository",
]
