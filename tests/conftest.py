from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio

from quantdesk.data import Candle
from quantdesk.data.database import create_engine, create_session_factory, init_models
from quantdesk.data.repository import TradingRepository

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_candles(
    prices: Sequence[Decimal],
    volumes: Optional[Sequence[Decimal]] = None,
    *,
    market: str = "BTC_USD",
    step: timedelta = timedelta(hours=1),
) -> List[Candle]:
    volumes = volumes if volumes is not None else [Decimal("1")] * len(prices)
    candles = []
    for idx, (price, volume) in enumerate(zip(prices, volumes, strict=True)):
        candles.append(
            Candle(
                market=market,
                timestamp=BASE_TIME + step * idx,
                open=price,
                close=price,
                high=price,
                low=price,
                volume=volume,
                value=price * volume,
            )
        )
    return candles


class FakePubSub:
    """``redis.asyncio`` PubSub 의 테스트 대역."""

    def __init__(self, broker: "FakeRedis") -> None:
        self._broker = broker
        self.channels: set[str] = set()
        self._queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        for channel in channels:
            self.channels.add(channel)
            self._broker.subscribers.setdefault(channel, []).append(self)

    async def unsubscribe(self, *channels: str) -> None:
        for channel in channels:
            self.channels.discard(channel)
            listeners = self._broker.subscribers.get(channel, [])
            if self in listeners:
                listeners.remove(self)

    def deliver(self, channel: str, data: bytes) -> None:
        self._queue.put_nowait({"type": "message", "channel": channel.encode(), "data": data})

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout or 0.01)
        except asyncio.TimeoutError:
            return None

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    def __init__(self) -> None:
        self.published: List[tuple[str, str]] = []
        self.subscribers: Dict[str, List[FakePubSub]] = {}

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        listeners = self.subscribers.get(channel, [])
        for pubsub in listeners:
            pubsub.deliver(channel, message.encode())
        return len(listeners)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def repository(tmp_path) -> TradingRepository:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'repo.db'}")
    await init_models(engine)
    yield TradingRepository(create_session_factory(engine))
    await engine.dispose()
