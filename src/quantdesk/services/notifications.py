"""Slack 알림 채널."""

from __future__ import annotations

from typing import Any, Optional, Sequence

import httpx
from loguru import logger

from ..data import Alert

_KIND_LABELS = {
    "trade": "거래",
    "risk": "리스크",
    "price": "가격",
    "system": "시스템",
}


class SlackNotifier:
    """Slack Webhook 으로 메시지를 전송한다. URL 이 없으면 아무것도 하지 않는다."""

    def __init__(self, webhook_url: Optional[str], *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._webhook_url = webhook_url
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self, text: str, *, blocks: Optional[Sequence[dict[str, Any]]] = None) -> None:
        if not self._webhook_url:
            return
        payload: dict[str, Any] = {"text": text}
        if blocks:
            payload["blocks"] = list(blocks)
        response = await self._client.post(self._webhook_url, json=payload)
        response.raise_for_status()
        logger.debug("Slack 전송 완료 ({} bytes)", len(text))

    async def send_alert(self, alert: Alert) -> None:
        label = _KIND_LABELS.get(alert.kind.value, alert.kind.value)
        prefix = f"[{label}]" if alert.symbol is None else f"[{label}] {alert.symbol}"
        await self.send(f"{prefix} {alert.message}")


__all__ = ["SlackNotifier"]
