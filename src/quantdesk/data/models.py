"""거래 전략과 포트폴리오에서 사용하는 공용 데이터 모델."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Sequence


def to_decimal(value: object) -> Decimal:
    """다양한 입력을 Decimal 로 변환한다."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool 은 Decimal 로 변환할 수 없습니다.")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value)
    raise TypeError(f"Decimal 로 변환할 수 없는 타입: {type(value)!r}")


def parse_timestamp(value: object) -> datetime:
    """epoch(초/밀리초), ISO 문자열, datetime 을 UTC datetime 으로 변환한다."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value) / 1000 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        if value.isdigit():
            return parse_timestamp(int(value))
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"타임스탬프를 변환할 수 없습니다: {value!r}")


@dataclass(frozen=True, slots=True)
class Candle:
    """단일 캔들스틱 데이터."""

    market: str
    timestamp: datetime
    open: Decimal
    close: Decimal
    high: Decimal
    low: Decimal
    volume: Decimal
    value: Decimal = Decimal("0")

    @classmethod
    def from_payload(cls, market: str, payload: Mapping[str, Any] | Sequence[object]) -> "Candle":
        """브로커 캔들 응답(객체 또는 [t, o, h, l, c, v] 배열)을 Candle 로 변환한다."""

        if isinstance(payload, Mapping):
            timestamp_raw = payload.get("timestamp", payload.get("t"))
            open_ = payload.get("open", payload.get("o"))
            high = payload.get("high", payload.get("h"))
            low = payload.get("low", payload.get("l"))
            close = payload.get("close", payload.get("c"))
            volume = payload.get("volume", payload.get("v", "0"))
        else:
            if len(payload) < 6:
                raise ValueError("캔들 데이터의 요소 수가 부족합니다.")
            timestamp_raw, open_, high, low, close, volume = payload[:6]
        if None in (timestamp_raw, open_, high, low, close):
            raise ValueError("캔들 데이터에 필수 필드가 없습니다.")
        close_value = to_decimal(close)
        volume_value = to_decimal(volume)
        return cls(
            market=market.upper(),
            timestamp=parse_timestamp(timestamp_raw),
            open=to_decimal(open_),
            close=close_value,
            high=to_decimal(high),
            low=to_decimal(low),
            volume=volume_value,
            value=close_value * volume_value,
        )

    def to_payload(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": str(self.volume),
        }


@dataclass(frozen=True, slots=True)
class MarketTick:
    """pub/sub 으로 전달되는 체결 시세."""

    symbol: str
    price: Decimal
    volume: Decimal
    timestamp: datetime

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MarketTick":
        try:
            symbol = payload["symbol"]
            price = payload["price"]
        except KeyError as exc:
            raise ValueError(f"틱 데이터에 {exc.args[0]} 필드가 없습니다.") from exc
        if not isinstance(symbol, str) or not symbol:
            raise ValueError("symbol 필드가 올바르지 않습니다.")
        price_value = to_decimal(price)
        volume_value = to_decimal(payload.get("volume", "0"))
        if not price_value.is_finite() or price_value <= Decimal("0"):
            raise ValueError(f"가격이 올바르지 않습니다: {price!r}")
        if not volume_value.is_finite() or volume_value < Decimal("0"):
            raise ValueError(f"거래량이 올바르지 않습니다: {payload.get('volume')!r}")
        timestamp_raw = payload.get("timestamp")
        timestamp = parse_timestamp(timestamp_raw) if timestamp_raw is not None else datetime.now(timezone.utc)
        return cls(
            symbol=symbol.upper(),
            price=price_value,
            volume=volume_value,
            timestamp=timestamp,
        )

    def to_payload(self) -> dict[str, str]:
        return {
            "symbol": self.symbol,
            "price": str(self.price),
            "volume": str(self.volume),
            "timestamp": self.timestamp.isoformat(),
        }


class OrderSide(str, Enum):
    """주문 방향."""

    BUY = "buy"
    SELL = "sell"

    @property
    def is_buy(self) -> bool:
        return self is OrderSide.BUY

    @property
    def is_sell(self) -> bool:
        return self is OrderSide.SELL


class SignalAction(str, Enum):
    """전략 의사결정 종류."""

    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True, slots=True)
class StrategySignal:
    """전략에서 생성한 매매 시그널."""

    market: str
    action: SignalAction
    price: Decimal
    timestamp: datetime
    reason: str
    confidence: Decimal = Decimal("0")

    @classmethod
    def hold(cls, market: str, price: Decimal, timestamp: datetime, reason: str) -> "StrategySignal":
        return cls(market=market, action=SignalAction.HOLD, price=price, timestamp=timestamp, reason=reason)


@dataclass(slots=True)
class Position:
    """보유 포지션."""

    market: str
    quantity: Decimal
    average_price: Decimal
    opened_at: datetime

    def reduce(self, quantity: Decimal) -> None:
        new_quantity = self.quantity - quantity
        if new_quantity < Decimal("0"):
            raise ValueError("보유 수량보다 많은 수량을 차감할 수 없습니다.")
        self.quantity = new_quantity


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    """브로커 잔고 조회 결과."""

    symbol: str
    quantity: Decimal
    available_cash: Decimal
    total_cash: Decimal
    last_price: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, symbol: str, payload: Mapping[str, object]) -> "BalanceSnapshot":
        if not isinstance(payload, Mapping):
            raise TypeError("balance 응답 포맷이 올바르지 않습니다.")
        try:
            available_cash = to_decimal(payload["available_cash"])
        except KeyError as exc:
            raise KeyError(f"잔고 응답에 {exc.args[0]} 키가 없습니다.") from exc
        positions = payload.get("positions") or {}
        quantity_raw = positions.get(symbol.upper(), "0") if isinstance(positions, Mapping) else "0"
        last_price = payload.get("last_price")
        return cls(
            symbol=symbol.upper(),
            quantity=to_decimal(quantity_raw),
            available_cash=available_cash,
            total_cash=to_decimal(payload.get("total_cash", available_cash)),
            last_price=to_decimal(last_price) if last_price is not None else None,
        )


@dataclass(frozen=True, slots=True)
class OrderExecution:
    """주문 집행 결과."""

    order_id: str
    market: str
    side: OrderSide
    price: Decimal
    ordered_units: Decimal
    executed_units: Decimal
    fee: Decimal
    created_at: datetime

    @property
    def is_filled(self) -> bool:
        return self.executed_units > Decimal("0") and self.executed_units >= self.ordered_units


@dataclass(frozen=True, slots=True)
class ClosedTrade:
    """진입부터 청산까지 완료된 한 건의 거래."""

    symbol: str
    strategy_id: str
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    fee: Decimal
    pnl: Decimal
    opened_at: datetime
    closed_at: datetime

    @property
    def duration_seconds(self) -> int:
        return max(0, int((self.closed_at - self.opened_at).total_seconds()))

    @property
    def return_pct(self) -> Decimal:
        cost = self.entry_price * self.quantity
        if cost <= Decimal("0"):
            return Decimal("0")
        return self.pnl / cost

    @classmethod
    def close(
        cls,
        position: Position,
        execution: OrderExecution,
        strategy_id: str,
        *,
        entry_fee: Decimal = Decimal("0"),
    ) -> "ClosedTrade":
        """보유 포지션과 매도 체결로 거래 기록을 만든다."""

        quantity = execution.executed_units
        fee = execution.fee + entry_fee
        pnl = (execution.price - position.average_price) * quantity - fee
        return cls(
            symbol=position.market,
            strategy_id=strategy_id,
            entry_price=position.average_price,
            exit_price=execution.price,
            quantity=quantity,
            fee=fee,
            pnl=pnl,
            opened_at=position.opened_at,
            closed_at=execution.created_at,
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "symbol": self.symbol,
            "strategy_id": self.strategy_id,
            "entry_price": str(self.entry_price),
            "exit_price": str(self.exit_price),
            "quantity": str(self.quantity),
            "fee": str(self.fee),
            "pnl": str(self.pnl),
            "duration_seconds": self.duration_seconds,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class TradingCycleResult:
    """트레이딩 루프 한 사이클의 결과."""

    signal: StrategySignal
    execution: Optional[OrderExecution] = None
    pnl: Decimal = Decimal("0")
    error: Optional[str] = None
    notes: Optional[str] = None
    trade: Optional[ClosedTrade] = None
    strategy_id: Optional[str] = None


class AlertKind(str, Enum):
    """알림 분류."""

    TRADE = "trade"
    RISK = "risk"
    PRICE = "price"
    SYSTEM = "system"


@dataclass(frozen=True, slots=True)
class Alert:
    """실시간 채널로 전파되는 알림."""

    kind: AlertKind
    message: str
    symbol: Optional[str] = None
    payload: Optional[Mapping[str, Any]] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "symbol": self.symbol,
            "message": self.message,
            "payload": dict(self.payload) if self.payload else {},
            "created_at": self.created_at.isoformat(),
        }


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
    "TradingCycleResult",
    "parse_timestamp",
    "to_decimal",
]
