"""알림 서비스: 실시간 채널, Redis, 저장소, Slack 으로 알림을 전파한다."""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Protocol

from loguru import logger
from redis.asyncio import Redis

from ..data import Alert, AlertKind, MarketTick, TradingCycleResult
from ..data.repository import TradingRepository
from .notifications import SlackNotifier

Direction = Literal["above", "below"]


class Broadcaster(Protocol):
    async def broadcast(self, topic: str, data: Any) -> None: ...


@dataclass(frozen=True)
class PriceRule:
    """가격이 임계값을 넘으면 한 번 발동하는 알림 규칙."""

    id: int
    symbol: str
    direction: Direction
    threshold: Decimal

    def matches(self, price: Decimal) -> bool:
        if self.direction == "above":
            return price >= self.threshold
        return price <= self.threshold

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "direction": self.direction,
            "threshold": str(self.threshold),
        }


class AlertService:
    """알림을 여러 채널로 전파한다. 한 채널의 실패는 다른 채널을 막지 않는다."""

    topic = "alerts"

    def __init__(
        self,
        broadcaster: Broadcaster,
        redis: Optional[Redis] = None,
        repository: Optional[TradingRepository] = None,
        notifier: Optional[SlackNotifier] = None,
        *,
        channel: str = "alerts",
    ) -> None:
        self._broadcaster = broadcaster
        self._redis = redis
        self._repository = repository
        self._notifier = notifier
        self._channel = channel
        self._rules: Dict[int, PriceRule] = {}
        self._rule_ids = itertools.count(1)

    async def emit(self, alert: Alert) -> None:
        payload = alert.to_payload()
        logger.info("알림 [{}] {}", alert.kind.value, alert.message)
        try:
            await self._broadcaster.broadcast(self.topic, payload)
        except Exception:
            logger.exception("웹소켓 알림 전파 실패")
        if self._redis is not None:
            try:
                await self._redis.publish(self._channel, json.dumps(payload))
            except Exception:
                logger.exception("Redis 알림 발행 실패")
        if self._repository is not None:
            try:
                await self._repository.record_alert(alert)
            except Exception:
                logger.exception("알림 저장 실패")
        if self._notifier is not None:
            try:
                await self._notifier.send_alert(alert)
            except Exception:
                logger.exception("Slack 알림 전송 실패")

    def add_price_rule(self, symbol: str, direction: Direction, threshold: Decimal) -> int:
        if direction not in ("above", "below"):
            raise ValueError("direction 은 above 또는 below 여야 합니다.")
        if threshold <= Decimal("0"):
            raise ValueError("threshold 는 양수여야 합니다.")
        rule = PriceRule(next(self._rule_ids), symbol.upper(), direction, threshold)
        self._rules[rule.id] = rule
        return rule.id

    def remove_price_rule(self, rule_id: int) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def price_rules(self) -> List[PriceRule]:
        return sorted(self._rules.values(), key=lambda rule: rule.id)

    async def check_tick(self, tick: MarketTick) -> List[Alert]:
        """시세 구독 콜백. 조건을 만족한 규칙은 알림 후 제거된다."""

        triggered = [
            rule for rule in self.price_rules() if rule.symbol == tick.symbol and rule.matches(tick.price)
        ]
        alerts: List[Alert] = []
        for rule in triggered:
            self._rules.pop(rule.id, None)
            word = "이상" if rule.direction == "above" else "이하"
            alert = Alert(
                kind=AlertKind.PRICE,
                symbol=tick.symbol,
                message=f"가격 {tick.price} (기준 {rule.threshold} {word})",
                payload={"rule": rule.to_payload(), "price": str(tick.price)},
            )
            await self.emit(alert)
            alerts.append(alert)
        return alerts

    async def trade_alert(self, result: TradingCycleResult) -> Optional[Alert]:
        """체결 또는 주문 실패가 있을 때만 거래 알림을 보낸다."""

        symbol = result.signal.market
        if result.error:
            alert = Alert(
                kind=AlertKind.SYSTEM,
                symbol=symbol,
                message=f"주문 실패: {result.error}",
                payload={"strategy_id": result.strategy_id},
            )
        elif result.execution is not None:
            execution = result.execution
            side = "매수" if execution.side.is_buy else "매도"
            text = f"{side} {execution.executed_units} @ {execution.price}"
            if result.pnl != Decimal("0"):
                text += f" / 실현손익 {result.pnl:.2f}"
            payload: dict[str, object] = {
                "order_id": execution.order_id,
                "side": execution.side.value,
                "units": str(execution.executed_units),
                "price": str(execution.price),
                "pnl": str(result.pnl),
                "strategy_id": result.strategy_id,
            }
            if result.trade is not None:
                payload["trade"] = result.trade.to_payload()
            alert = Alert(kind=AlertKind.TRADE, symbol=symbol, message=text, payload=payload)
        else:
            return None
        await self.emit(alert)
        return alert

    async def risk_alert(self, reason: str, *, symbol: Optional[str] = None) -> Alert:
        alert = Alert(kind=AlertKind.RISK, symbol=symbol, message=f"트레이딩 중단: {reason}")
        await self.emit(alert)
        return alert

    async def system_alert(self, message: str) -> Alert:
        alert = Alert(kind=AlertKind.SYSTEM, message=message)
        await self.emit(alert)
        return alert


__all__ = ["AlertService", "Broadcaster", "PriceRule"]
