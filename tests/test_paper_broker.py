from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import make_candles
from quantdesk.clients.paper import PaperBroker
from quantdesk.data import MarketTick, OrderSide, SignalAction, StrategySignal, TradingCycleResult
from quantdesk.errors import BrokerAPIError

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def tick(price: str, seconds: int) -> MarketTick:
    return MarketTick(symbol="BTC_USD", price=Decimal(price), volume=Decimal("1"), timestamp=START + timedelta(seconds=seconds))


@pytest.mark.asyncio
async def test_ticks_build_candles() -> None:
    broker = PaperBroker(interval="1m")
    for price, seconds in (("100", 0), ("105", 10), ("99", 30), ("101", 65)):
        await broker.on_tick(tick(price, seconds))

    candles = await broker.get_candles("btc_usd", "1m", 10)

    assert len(candles) == 2
    first = candles[0]
    assert (first.open, first.high, first.low, first.close) == (
        Decimal("100"),
        Decimal("105"),
        Decimal("99"),
        Decimal("99"),
    )
    assert first.volume == Decimal("3")
    assert candles[1].open == Decimal("101")
    balance = await broker.get_balance("BTC_USD")
    assert balance.last_price == Decimal("101")


@pytest.mark.asyncio
async def test_rejects_mismatched_interval() -> None:
    broker = PaperBroker(interval="1m")
    with pytest.raises(BrokerAPIError):
        await broker.get_candles("BTC_USD", "5m", 10)


@pytest.mark.asyncio
async def test_orders_fill_immediately_with_fee() -> None:
    broker = PaperBroker(starting_cash=Decimal("1000"), fee_rate=Decimal("0.01"))
    broker.load_candles(make_candles([Decimal("100")] * 3))

    buy = await broker.place_order("BTC_USD", OrderSide.BUY, units=Decimal("2"), price=Decimal("100"))
    assert buy.is_filled
    assert buy.fee == Decimal("2")
    assert broker.cash == Decimal("798")
    assert broker.holding("btc_usd") == Decimal("2")

    sell = await broker.place_order("BTC_USD", OrderSide.SELL, units=Decimal("2"), price=Decimal("110"))
    assert sell.order_id.startswith("paper-")
    assert sell.order_id != buy.order_id
    assert broker.cash == Decimal("798") + Decimal("220") - Decimal("2.2")
    assert broker.holding("BTC_USD") is None
    assert len(broker.orders) == 2
    assert await broker.cancel_order(sell.order_id) is False


@pytest.mark.asyncio
async def test_rejects_orders_beyond_cash_or_holdings() -> None:
    broker = PaperBroker(starting_cash=Decimal("100"), fee_rate=Decimal("0"))
    with pytest.raises(BrokerAPIError):
        await broker.place_order("BTC_USD", OrderSide.BUY, units=Decimal("2"), price=Decimal("100"))
    with pytest.raises(BrokerAPIError):
        await broker.place_order("BTC_USD", OrderSide.SELL, units=Decimal("1"), price=Decimal("100"))
    with pytest.raises(BrokerAPIError):
        await broker.place_order("BTC_USD", OrderSide.BUY, units=Decimal("0"), price=Decimal("100"))
    assert broker.cash == Decimal("100")


def test_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        PaperBroker(starting_cash=Decimal("-1"))
    with pytest.raises(ValueError):
        PaperBroker(fee_rate=Decimal("1"))


@pytest.mark.asyncio
async def test_order_ids_stay_unique_across_broker_restarts(repository) -> None:
    for _ in range(2):
        broker = PaperBroker(starting_cash=Decimal("1000"), fee_rate=Decimal("0"))
        execution = await broker.place_order("BTC_USD", OrderSide.BUY, units=Decimal("1"), price=Decimal("100"))
        signal = StrategySignal(market="BTC_USD", action=SignalAction.BUY, price=Decimal("100"), timestamp=START, reason="진입")
        await repository.record_cycle(TradingCycleResult(signal=signal, execution=execution))

    cycles = await repository.recent_cycles()
    assert [cycle["status"] for cycle in cycles] == ["filled", "filled"]
