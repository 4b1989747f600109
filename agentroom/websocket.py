"""AgentRoom — WebSocket connection manager.

Observers subscribe per channel and receive every message insert and every
incremental content update.
"""

import logging
from typing import Dict, Set

from fastapi import WebSocket

logger = logging.getLogger("agentroom.ws")


class ConnectionManager:
    """Manages WebSocket connections per channel."""

    def __init__(self):
        # channel -> set of websocket connections
        self._channels: Dict[str, Set[WebSocket]] = {}
        # ws -> set of channels subscribed
        self._subscriptions: Dict[WebSocket, Set[str]] = {}

    async def connect(self, ws: WebSocket, channel_id: str):
        await ws.accept()
        self._channels.setdefault(channel_id, set()).add(ws)
        self._subscriptions.setdefault(ws, set()).add(channel_id)
        logger.info("Client connected to #%s", channel_id)

    def disconnect(self, ws: WebSocket):
        channels = self._subscriptions.pop(ws, set())
        for ch in channels:
            self._channels.get(ch, set()).discard(ws)
        logger.info("Client disconnected")

    def subscriber_count(self, channel_id: str) -> int:
        return len(self._channels.get(channel_id, ()))

    async def broadcast(self, channel_id: str, message: dict):
        """Send to every client on a channel. Dead sockets are dropped."""
        dead = []
        for ws in list(self._channels.get(channel_id, set())):
            try:
                await ws.send_json(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    async def send_personal(self, ws: WebSocket, message: dict):
        try:
            await ws.send_json(message)
        except Exception:
            self.disconnect(ws)


manager = ConnectionManager()
