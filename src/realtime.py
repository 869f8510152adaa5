"""WebSocket delivery of user notifications.

One connection per session at ``/ws/notifications?token=<jwt>``.  The token
is checked once, before the socket is accepted; the session is closed when
the token expires and clients are expected to reconnect with a fresh one.

Protocol (server → client):
    {"event": "connected", "data": {"userId": "..."}}
    {"event": "notification", "data": {...notification...}}
    {"event": "pong", "data": {}}

Protocol (client → server):
    {"action": "ping"}

Close codes:
    4401 — token missing, invalid or expired
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from auth import InvalidTokenError, decode_access_token

WS_UNAUTHORIZED = 4401


@dataclass
class _Client:
    ws: WebSocket
    user_id: uuid.UUID
    loop: asyncio.AbstractEventLoop
    connected_at: float = field(default_factory=time.time)


class NotificationHub:
    """Keeps one room per user and pushes notification events into it.

    Usage::

        hub = NotificationHub()
        bus.subscribe(NOTIFICATION_TOPIC, hub.on_notification)

        # In a FastAPI WebSocket endpoint:
        await hub.handle_connection(websocket, token)
    """

    def __init__(self) -> None:
        self._rooms: Dict[uuid.UUID, Dict[int, _Client]] = {}
        self._lock = threading.Lock()

    def connection_count(self, user_id: Optional[uuid.UUID] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._rooms.get(user_id, {}))
            return sum(len(room) for room in self._rooms.values())

    async def handle_connection(self, websocket: WebSocket, token: Optional[str]) -> None:
        """Authenticate, join the user's room and serve until disconnect or expiry."""
        try:
            claims = decode_access_token(token or "")
        except InvalidTokenError as exc:
            logger.info("WS rejected: {}", exc)
            await websocket.close(code=WS_UNAUTHORIZED, reason=str(exc))
            return

        await websocket.accept()
        client = _Client(ws=websocket, user_id=claims.principal.id, loop=asyncio.get_running_loop())
        self._join(client)
        try:
            await websocket.send_text(json.dumps({
                "event": "connected",
                "data": {"userId": str(client.user_id)},
            }))
            await asyncio.wait_for(self._read_loop(client), timeout=max(claims.seconds_left(), 0.0))
        except asyncio.TimeoutError:
            logger.info("WS token expired for user {}", client.user_id)
            await self._close(websocket, WS_UNAUTHORIZED, "Token expired")
        except WebSocketDisconnect:
            pass
        finally:
            self._leave(client)

    async def emit(self, user_id: uuid.UUID, payload: Dict[str, Any]) -> None:
        """Push *payload* to every open session of *user_id*."""
        for client in self._clients_of(user_id):
            await self._send(client, payload)

    def emit_sync(self, user_id: uuid.UUID, payload: Dict[str, Any]) -> None:
        """Fire-and-forget push from synchronous code.

        Each session is served on its own event loop; the send is scheduled
        there, so delivery order per session follows call order.
        """
        for client in self._clients_of(user_id):
            try:
                asyncio.run_coroutine_threadsafe(self._send(client, payload), client.loop)
            except RuntimeError:
                # loop already closed
                self._drop(client)

    def on_notification(self, payload: Dict[str, Any]) -> None:
        """Event bus handler for {"userId": ..., "notification": {...}}."""
        self.emit_sync(
            uuid.UUID(payload["userId"]),
            {"event": "notification", "data": payload["notification"]},
        )

    # -- internals ---------------------------------------------------------

    async def _read_loop(self, client: _Client) -> None:
        while True:
            raw = await client.ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict) and msg.get("action") == "ping":
                await client.ws.send_text(json.dumps({"event": "pong", "data": {}}))

    async def _send(self, client: _Client, payload: Dict[str, Any]) -> None:
        try:
            await client.ws.send_text(json.dumps(payload))
        except Exception:
            logger.debug("WS send failed, dropping stale client of user {}", client.user_id)
            self._drop(client)

    async def _close(self, websocket: WebSocket, code: int, reason: str) -> None:
        try:
            await websocket.close(code=code, reason=reason)
        except RuntimeError:
            # already closed by the peer
            pass

    def _clients_of(self, user_id: uuid.UUID) -> List[_Client]:
        with self._lock:
            return list(self._rooms.get(user_id, {}).values())

    def _join(self, client: _Client) -> None:
        with self._lock:
            self._rooms.setdefault(client.user_id, {})[id(client.ws)] = client
        logger.debug("WS user {} connected (sessions={})", client.user_id, self.connection_count(client.user_id))

    def _leave(self, client: _Client) -> None:
        self._drop(client)
        logger.debug("WS user {} disconnected (sessions={})", client.user_id, self.connection_count(client.user_id))

    def _drop(self, client: _Client) -> None:
        with self._lock:
            room = self._rooms.get(client.user_id)
            if not room:
                return
            room.pop(id(client.ws), None)
            if not room:
                self._rooms.pop(client.user_id, None)
