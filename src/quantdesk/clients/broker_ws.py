"""브로커 웹소켓 체결 스트림 수집기."""

from __future__ import annotations

import asyncio
import json
from typing import Optional, Sequence

from loguru import logger
from websockets.asyncio.client import ClientConnection, connect

from ..data import MarketTick
from ..data.repository import TradingRepository
from ..services.market_data import MarketDataService


class BrokerStreamCollector:
    """브로커 체결 스트림을 구독해 시세 채널로 재발행한다."""

    def __init__(
        self,
        url: str,
        symbols: Sequence[str],
        market_data: MarketDataService,
        *,
        repository: Optional[TradingRepository] = None,
        reconnect_interval: float = 5.0,
    ) -> None:
        self._url = url
        self._symbols = [symbol.upper() for symbol in symbols]
        self._market_data = market_data
        self._repository = repository
        self._reconnect_interval = reconnect_interval
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                async with connect(self._url, ping_interval=30) as websocket:
                    logger.info("브로커 스트림 연결: {}", self._url)
                    await self._subscribe(websocket)
                    await self._consume(websocket)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - 네트워크 오류 대비
                logger.warning("브로커 스트림 끊김: {} ({}초 후 재연결)", exc, self._reconnect_interval)
                await asyncio.sleep(self._reconnect_interval)

    async def _subscribe(self, websocket: ClientConnection) -> None:
        payload = {"action": "subscribe", "channel": "trades", "symbols": self._symbols}
        await websocket.send(json.dumps(payload))

    async def _consume(self, websocket: ClientConnection) -> None:
        async for message in websocket:
            if self._stop_event.is_set():
                break
            tick = self.parse_message(message)
            if tick is None:
                continue
            await self.handle_tick(tick)

    async def handle_tick(self, tick: MarketTick) -> None:
        if self._repository is not None:
            await self._repository.record_tick(tick)
        await self._market_data.publish(tick)

    @staticmethod
    def parse_message(message: str | bytes) -> Optional[MarketTick]:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or data.get("type") != "trade":
            return None
        content = data.get("data") if isinstance(data.get("data"), dict) else data
        try:
            return MarketTick.from_payload(content)
        except (ValueError, TypeError, ArithmeticError):
            return None


__all__ = ["BrokerStreamCollector"]
