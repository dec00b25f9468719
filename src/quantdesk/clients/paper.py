"""시세 피드로 즉시 체결하는 페이퍼 브로커."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from loguru import logger

from ..data import BalanceSnapshot, Candle, MarketTick, OrderExecution, OrderSide
from ..errors import BrokerAPIError
from ..services.market_data import CandleAggregator, parse_interval


class PaperBroker:
    """:class:`BrokerClient` 와 같은 인터페이스의 모의 체결 브로커."""

    def __init__(
        self,
        *,
        starting_cash: Decimal = Decimal("100000"),
        fee_rate: Decimal = Decimal("0.001"),
        interval: str = "1m",
        max_candles: int = 1000,
    ) -> None:
        if starting_cash < Decimal("0"):
            raise ValueError("starting_cash 는 음수일 수 없습니다.")
        if not (Decimal("0") <= fee_rate < Decimal("1")):
            raise ValueError("fee_rate 는 0 이상 1 미만이어야 합니다.")
        self._cash = starting_cash
        self._fee_rate = fee_rate
        self._interval_seconds = parse_interval(interval)
        self._max_candles = max_candles
        self._holdings: Dict[str, Decimal] = {}
        self._aggregators: Dict[str, CandleAggregator] = {}
        self._last_prices: Dict[str, Decimal] = {}
        self.orders: List[OrderExecution] = []

    async def aclose(self) -> None:
        return None

    def _aggregator(self, symbol: str) -> CandleAggregator:
        symbol = symbol.upper()
        aggregator = self._aggregators.get(symbol)
        if aggregator is None:
            aggregator = CandleAggregator(symbol, self._interval_seconds, max_candles=self._max_candles)
            self._aggregators[symbol] = aggregator
        return aggregator

    async def on_tick(self, tick: MarketTick) -> None:
        """시세 구독 콜백. 틱을 캔들로 누적한다."""

        self._aggregator(tick.symbol).add(tick)
        self._last_prices[tick.symbol] = tick.price

    def load_candles(self, candles: Sequence[Candle]) -> None:
        for candle in candles:
            self._aggregator(candle.market).extend([candle])
            self._last_prices[candle.market.upper()] = candle.close

    async def get_candles(self, symbol: str, interval: str, count: int = 60) -> List[Candle]:
        if count <= 0:
            raise ValueError("count 값은 1 이상이어야 합니다.")
        if parse_interval(interval) != self._interval_seconds:
            raise BrokerAPIError("invalid", f"페이퍼 브로커는 {self._interval_seconds}초 캔들만 제공합니다.")
        return self._aggregator(symbol).candles()[-count:]

    async def get_balance(self, symbol: str) -> BalanceSnapshot:
        symbol = symbol.upper()
        return BalanceSnapshot(
            symbol=symbol,
            quantity=self._holdings.get(symbol, Decimal("0")),
            available_cash=self._cash,
            total_cash=self._cash,
            last_price=self._last_prices.get(symbol),
        )

    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        *,
        units: Decimal,
        price: Decimal,
    ) -> OrderExecution:
        symbol = symbol.upper()
        if units <= Decimal("0") or price <= Decimal("0"):
            raise BrokerAPIError("rejected", "주문 수량과 가격은 양수여야 합니다.")
        notional = price * units
        fee = notional * self._fee_rate
        held = self._holdings.get(symbol, Decimal("0"))
        if side is OrderSide.BUY:
            if notional + fee > self._cash:
                raise BrokerAPIError("rejected", "현금 잔고가 부족합니다.")
            self._cash -= notional + fee
            self._holdings[symbol] = held + units
        else:
            if units > held:
                raise BrokerAPIError("rejected", "보유 수량보다 많이 매도할 수 없습니다.")
            self._cash += notional - fee
            remaining = held - units
            if remaining > Decimal("0"):
                self._holdings[symbol] = remaining
            else:
                self._holdings.pop(symbol, None)
        execution = OrderExecution(
            order_id=f"paper-{uuid4().hex}",
            market=symbol,
            side=side,
            price=price,
            ordered_units=units,
            executed_units=units,
            fee=fee,
            created_at=datetime.now(timezone.utc),
        )
        self.orders.append(execution)
        logger.info("페이퍼 체결: {} {} {} @ {}", symbol, side.value, units, price)
        return execution

    async def cancel_order(self, order_id: str) -> bool:
        # 즉시 체결되므로 취소할 주문이 없다.
        return False

    @property
    def cash(self) -> Decimal:
        return self._cash

    def holding(self, symbol: str) -> Optional[Decimal]:
        return self._holdings.get(symbol.upper())


__all__ = ["PaperBroker"]
