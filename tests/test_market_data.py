import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from quantdesk.clients.broker_ws import BrokerStreamCollector
from quantdesk.data import MarketTick
from quantdesk.services.market_data import CandleAggregator, MarketDataService, parse_interval

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_tick(price: str, seconds: int = 0, symbol: str = "BTC_USD") -> MarketTick:
    return MarketTick(
        symbol=symbol,
        price=Decimal(price),
        volume=Decimal("1"),
        timestamp=START + timedelta(seconds=seconds),
    )


@pytest.mark.parametrize(
    ("interval", "seconds"),
    [("30s", 30), ("1m", 60), ("4h", 14400), ("1d", 86400)],
)
def test_parse_interval(interval: str, seconds: int) -> None:
    assert parse_interval(interval) == seconds


@pytest.mark.parametrize("interval", ["", "1w", "0m", "m1"])
def test_parse_interval_rejects_unknown_formats(interval: str) -> None:
    with pytest.raises(ValueError):
        parse_interval(interval)


def test_aggregator_closes_bucket_on_new_interval() -> None:
    aggregator = CandleAggregator("btc_usd", 60)

    assert aggregator.add(make_tick("10", 0)) is None
    assert aggregator.add(make_tick("12", 20)) is None
    closed = aggregator.add(make_tick("11", 61))

    assert closed is not None
    assert closed.market == "BTC_USD"
    assert (closed.open, closed.high, closed.low, closed.close) == (
        Decimal("10"),
        Decimal("12"),
        Decimal("10"),
        Decimal("12"),
    )
    assert closed.volume == Decimal("2")
    assert len(aggregator.candles()) == 2
    assert len(aggregator.candles(include_open=False)) == 1


def test_aggregator_ignores_late_ticks() -> None:
    aggregator = CandleAggregator("BTC_USD", 60)
    aggregator.add(make_tick("10", 120))

    assert aggregator.add(make_tick("99", 10)) is None
    assert aggregator.candles()[-1].high == Decimal("10")


@pytest.mark.asyncio
async def test_local_dispatch_without_redis() -> None:
    service = MarketDataService(history_size=2)
    received: List[MarketTick] = []

    async def on_tick(tick: MarketTick) -> None:
        received.append(tick)

    await service.subscribe("btc_usd", on_tick)
    for price in ("1", "2", "3"):
        assert await service.publish(make_tick(price)) == 1

    assert [tick.price for tick in received] == [Decimal("1"), Decimal("2"), Decimal("3")]
    assert service.latest("BTC_USD").price == Decimal("3")
    assert [tick.price for tick in service.history("btc_usd")] == [Decimal("2"), Decimal("3")]
    assert service.subscriptions == {"BTC_USD"}

    await service.unsubscribe("BTC_USD", on_tick)
    assert service.subscriptions == set()
    assert await service.publish(make_tick("4")) == 0
    assert len(received) == 3


@pytest.mark.asyncio
async def test_failing_callback_does_not_block_others() -> None:
    service = MarketDataService()
    received: List[MarketTick] = []

    async def broken(tick: MarketTick) -> None:
        raise RuntimeError("boom")

    async def healthy(tick: MarketTick) -> None:
        received.append(tick)

    await service.subscribe("BTC_USD", broken)
    await service.subscribe("BTC_USD", healthy)
    await service.publish(make_tick("1"))

    assert len(received) == 1


@pytest.mark.asyncio
async def test_redis_round_trip(fake_redis) -> None:
    service = MarketDataService(fake_redis, prefix="ticks")
    delivered = asyncio.Event()
    received: List[MarketTick] = []

    async def on_tick(tick: MarketTick) -> None:
        received.append(tick)
        delivered.set()

    await service.subscribe("BTC_USD", on_tick)
    assert "ticks:BTC_USD" in fake_redis.subscribers

    receivers = await service.publish(make_tick("101"))
    await asyncio.wait_for(delivered.wait(), timeout=1.0)
    await service.stop()

    assert receivers == 1
    channel, payload = fake_redis.published[0]
    assert channel == "ticks:BTC_USD"
    assert json.loads(payload)["price"] == "101"
    assert received[0].price == Decimal("101")
    assert received[0].timestamp == START


@pytest.mark.asyncio
async def test_handle_message_skips_malformed_payloads() -> None:
    service = MarketDataService()

    assert await service.handle_message({"type": "subscribe", "data": 1}) is None
    assert await service.handle_message({"type": "message", "data": b"not-json"}) is None
    assert await service.handle_message({"type": "message", "data": json.dumps({"price": "1"})}) is None
    tick = await service.handle_message(
        {"type": "message", "data": json.dumps({"symbol": "eth_usd", "price": "5", "volume": "2"})}
    )

    assert tick is not None
    assert tick.symbol == "ETH_USD"
    assert service.latest("ETH_USD") == tick


@pytest.mark.asyncio
@pytest.mark.parametrize(("price", "volume"), [("NaN", "1"), ("Infinity", "1"), ("-5", "1"), ("0", "1"), ("5", "-1"), ("5", "sNaN")])
async def test_handle_message_rejects_unusable_numbers(price: str, volume: str) -> None:
    service = MarketDataService()
    received = []

    async def collect(tick) -> None:
        received.append(tick)

    await service.subscribe("BTC_USD", collect)
    payload = json.dumps({"symbol": "BTC_USD", "price": price, "volume": volume})

    assert await service.handle_message({"type": "message", "data": payload}) is None
    assert service.latest("BTC_USD") is None
    assert received == []
    assert BrokerStreamCollector.parse_message(json.dumps({"type": "trade", "symbol": "BTC_USD", "price": price, "volume": volume})) is None


def test_broker_stream_parses_trade_messages() -> None:
    nested = json.dumps({"type": "trade", "data": {"symbol": "btc_usd", "price": "10", "timestamp": 1704067200}})
    flat = json.dumps({"type": "trade", "symbol": "BTC_USD", "price": "11"})

    tick = BrokerStreamCollector.parse_message(nested)
    assert tick is not None
    assert tick.symbol == "BTC_USD"
    assert tick.timestamp == START
    assert BrokerStreamCollector.parse_message(flat).price == Decimal("11")
    assert BrokerStreamCollector.parse_message("{broken") is None
    assert BrokerStreamCollector.parse_message(json.dumps({"type": "status"})) is None
    assert BrokerStreamCollector.parse_message(json.dumps({"type": "trade", "data": {"price": "1"}})) is None


@pytest.mark.asyncio
async def test_broker_stream_records_and_publishes(repository) -> None:
    service = MarketDataService()
    received: List[MarketTick] = []

    async def on_tick(tick: MarketTick) -> None:
        received.append(tick)

    await service.subscribe("BTC_USD", on_tick)
    collector = BrokerStreamCollector("wss://broker.test/ws", ["btc_usd"], service, repository=repository)
    await collector.handle_tick(make_tick("42"))

    assert received[0].price == Decimal("42")
    stored = await repository.recent_ticks("BTC_USD")
    assert [tick.price for tick in stored] == [Decimal("42")]
