"""Redis pub/sub 기반 시세 배포 서비스."""

from __future__ import annotations

import asyncio
import json
import re
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from loguru import logger
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from ..data import Candle, MarketTick

TickCallback = Callable[[MarketTick], Awaitable[None]]

_INTERVAL_PATTERN = re.compile(r"^(\d+)([smhd])$")
_INTERVAL_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(interval: str) -> int:
    """``30s``/``1m``/``4h``/``1d`` 형식의 간격을 초로 변환한다."""

    match = _INTERVAL_PATTERN.match(interval.strip())
    if match is None:
        raise ValueError(f"지원하지 않는 캔들 간격: {interval}")
    seconds = int(match.group(1)) * _INTERVAL_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError("캔들 간격은 0보다 커야 합니다.")
    return seconds


class CandleAggregator:
    """틱을 고정 간격 OHLCV 캔들로 접는다."""

    def __init__(self, symbol: str, interval_seconds: int, *, max_candles: int = 1000) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds 는 양수여야 합니다.")
        self.symbol = symbol.upper()
        self.interval_seconds = interval_seconds
        self._closed: Deque[Candle] = deque(maxlen=max_candles)
        self._bucket: Optional[int] = None
        self._open = self._high = self._low = self._close = Decimal("0")
        self._volume = Decimal("0")

    def _bucket_of(self, timestamp: datetime) -> int:
        epoch = int(timestamp.timestamp())
        return epoch - epoch % self.interval_seconds

    def add(self, tick: MarketTick) -> Optional[Candle]:
        """틱을 반영하고, 새 구간이 시작되면 마감된 캔들을 돌려준다."""

        bucket = self._bucket_of(tick.timestamp)
        if self._bucket is not None and bucket < self._bucket:
            return None
        if self._bucket == bucket:
            self._high = max(self._high, tick.price)
            self._low = min(self._low, tick.price)
            self._close = tick.price
            self._volume += tick.volume
            return None
        closed = self._current()
        if closed is not None:
            self._closed.append(closed)
        self._bucket = bucket
        self._open = self._high = self._low = self._close = tick.price
        self._volume = tick.volume
        return closed

    def extend(self, candles: List[Candle]) -> None:
        for candle in candles:
            self._closed.append(candle)

    def _current(self) -> Optional[Candle]:
        if self._bucket is None:
            return None
        return Candle(
            market=self.symbol,
            timestamp=datetime.fromtimestamp(self._bucket, tz=timezone.utc),
            open=self._open,
            close=self._close,
            high=self._high,
            low=self._low,
            volume=self._volume,
            value=self._close * self._volume,
        )

    def candles(self, *, include_open: bool = True) -> List[Candle]:
        result = list(self._closed)
        if include_open:
            current = self._current()
            if current is not None:
                result.append(current)
        return result


class MarketDataService:
    """심볼별 채널(``{prefix}:{SYMBOL}``)로 틱을 발행/구독한다.

    ``redis`` 가 없으면 발행한 틱을 같은 프로세스의 콜백에만 전달한다.
    """

    def __init__(
        self,
        redis: Optional[Redis] = None,
        *,
        prefix: str = "market",
        history_size: int = 500,
        reconnect_interval: float = 5.0,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self._history_size = history_size
        self._reconnect_interval = reconnect_interval
        self._pubsub: Optional[PubSub] = None
        self._callbacks: Dict[str, List[TickCallback]] = {}
        self._subscribed: Set[str] = set()
        self._latest: Dict[str, MarketTick] = {}
        self._history: Dict[str, Deque[MarketTick]] = {}
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    def channel(self, symbol: str) -> str:
        return f"{self._prefix}:{symbol.upper()}"

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscribed)

    async def publish(self, tick: MarketTick) -> int:
        """틱을 발행하고 수신자 수를 돌려준다."""

        if self._redis is None:
            await self._dispatch(tick)
            return len(self._callbacks.get(tick.symbol, ()))
        payload = json.dumps(tick.to_payload())
        return int(await self._redis.publish(self.channel(tick.symbol), payload))

    async def subscribe(self, symbol: str, callback: TickCallback) -> None:
        symbol = symbol.upper()
        callbacks = self._callbacks.setdefault(symbol, [])
        if callback not in callbacks:
            callbacks.append(callback)
        if symbol in self._subscribed:
            return
        self._subscribed.add(symbol)
        if self._redis is None:
            return
        pubsub = self._ensure_pubsub(self._redis)
        await pubsub.subscribe(self.channel(symbol))
        logger.info("시세 채널 구독: {}", self.channel(symbol))
        self._ensure_listener(pubsub)

    async def unsubscribe(self, symbol: str, callback: Optional[TickCallback] = None) -> None:
        symbol = symbol.upper()
        callbacks = self._callbacks.get(symbol, [])
        if callback is not None:
            if callback in callbacks:
                callbacks.remove(callback)
        else:
            callbacks.clear()
        if callbacks or symbol not in self._subscribed:
            return
        self._subscribed.discard(symbol)
        self._callbacks.pop(symbol, None)
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel(symbol))

    def latest(self, symbol: str) -> Optional[MarketTick]:
        return self._latest.get(symbol.upper())

    def history(self, symbol: str) -> List[MarketTick]:
        return list(self._history.get(symbol.upper(), ()))

    async def start(self) -> None:
        if self._redis is not None and self._subscribed:
            self._ensure_listener(self._ensure_pubsub(self._redis))

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

    def _ensure_pubsub(self, redis: Redis) -> PubSub:
        if self._pubsub is None:
            self._pubsub = redis.pubsub()
        return self._pubsub

    def _ensure_listener(self, pubsub: PubSub) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._listen(pubsub))

    async def _listen(self, pubsub: PubSub) -> None:
        while not self._stop_event.is_set():
            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisError, OSError) as exc:
                logger.warning("시세 구독 연결 오류: {} ({}초 후 재시도)", exc, self._reconnect_interval)
                await asyncio.sleep(self._reconnect_interval)
                continue
            if message is None:
                continue
            await self.handle_message(message)

    async def handle_message(self, message: Any) -> Optional[MarketTick]:
        """pub/sub 메시지 하나를 해석해 콜백에 전달한다."""

        if not isinstance(message, dict) or message.get("type") != "message":
            return None
        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        try:
            tick = MarketTick.from_payload(json.loads(data))
        except (ValueError, TypeError, ArithmeticError) as exc:
            logger.warning("잘못된 시세 메시지 무시: {}", exc)
            return None
        await self._dispatch(tick)
        return tick

    async def _dispatch(self, tick: MarketTick) -> None:
        symbol = tick.symbol
        self._latest[symbol] = tick
        history = self._history.get(symbol)
        if history is None:
            history = deque(maxlen=self._history_size)
            self._history[symbol] = history
        history.append(tick)
        for callback in list(self._callbacks.get(symbol, ())):
            try:
                await callback(tick)
            except Exception:
                logger.exception("시세 콜백 실패: {}", symbol)


__all__ = ["CandleAggregator", "MarketDataService", "TickCallback", "parse_interval"]
