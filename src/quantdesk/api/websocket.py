"""실시간 알림과 시세를 전달하는 웹소켓 게이트웨이."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger
from starlette.status import WS_1008_POLICY_VIOLATION

from ..errors import AuthenticationError
from .security import TokenAuthority


class ConnectionManager:
    """연결된 웹소켓과 토픽 구독을 관리한다. 구독이 없는 클라이언트는 모든 토픽을 받는다."""

    def __init__(self) -> None:
        self.active_connections: Set[WebSocket] = set()
        self._topics: Dict[WebSocket, Set[str]] = {}

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info("웹소켓 연결. 현재 {}개", len(self.active_connections))

    def disconnect(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)
        self._topics.pop(websocket, None)
        logger.info("웹소켓 종료. 현재 {}개", len(self.active_connections))

    def subscribe(self, websocket: WebSocket, topics: Iterable[str]) -> Set[str]:
        subscribed = self._topics.setdefault(websocket, set())
        subscribed.update(str(topic) for topic in topics)
        return set(subscribed)

    def topics_of(self, websocket: WebSocket) -> Set[str]:
        return set(self._topics.get(websocket, set()))

    def _wants(self, websocket: WebSocket, topic: str) -> bool:
        topics = self._topics.get(websocket)
        return not topics or topic in topics

    async def broadcast(self, topic: str, data: Any) -> None:
        if not self.active_connections:
            return
        message = json.dumps({"type": topic, "data": data}, default=str)
        disconnected = set()
        for connection in list(self.active_connections):
            if not self._wants(connection, topic):
                continue
            try:
                await connection.send_text(message)
            except Exception as exc:
                logger.warning("웹소켓 전송 실패: {}", exc)
                disconnected.add(connection)
        for connection in disconnected:
            self.disconnect(connection)


async def websocket_endpoint(
    websocket: WebSocket,
    manager: ConnectionManager,
    authority: Optional[TokenAuthority] = None,
) -> None:
    """``/ws`` 세션 처리. 인증이 켜져 있으면 ``token`` 쿼리 파라미터를 검사한다."""

    if authority is not None:
        try:
            authority.verify(websocket.query_params.get("token", ""))
        except AuthenticationError as exc:
            logger.warning("웹소켓 인증 실패: {}", exc)
            await websocket.close(code=WS_1008_POLICY_VIOLATION)
            return
    await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "data": "JSON 형식이 아닙니다."})
                continue
            action = message.get("action") if isinstance(message, dict) else None
            if action == "ping":
                await websocket.send_json({"type": "pong"})
            elif action == "subscribe":
                topics = message.get("topics") or []
                if isinstance(topics, str):
                    topics = [topics]
                if not isinstance(topics, list) or not all(isinstance(topic, str) for topic in topics):
                    await websocket.send_json({"type": "error", "data": "topics 는 문자열 목록이어야 합니다."})
                    continue
                subscribed = manager.subscribe(websocket, topics)
                await websocket.send_json({"type": "subscribed", "data": sorted(subscribed)})
            else:
                await websocket.send_json({"type": "error", "data": f"알 수 없는 action: {action}"})
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)


__all__ = ["ConnectionManager", "websocket_endpoint"]
