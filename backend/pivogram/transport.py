import json
import logging
from typing import Any, Dict, Iterable
from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

class WebSocketHub:
    """Owns the live sockets and frames every outbound event as
    `{"event": name, "data": payload}` JSON text."""

    def __init__(self) -> None:
        self.sockets: Dict[str, WebSocket] = {}

    def attach(self, conn_id: str, ws: WebSocket) -> None:
        self.sockets[conn_id] = ws

    def detach(self, conn_id: str) -> None:
        self.sockets.pop(conn_id, None)

    def connections(self) -> list[str]:
        return list(self.sockets.keys())

    def is_connected(self, conn_id: str) -> bool:
        return conn_id in self.sockets

    async def send(self, conn_id: str, event: str, data: Any = None) -> bool:
        ws = self.sockets.get(conn_id)
        if ws is None:
            logger.debug("drop %s for unknown connection %s", event, conn_id)
            return False
        try:
            await ws.send_text(json.dumps({"event": event, "data": data}, default=str))
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("failed to send %s to %s: %s", event, conn_id, e)
            return False

    async def broadcast(self, conn_ids: Iterable[str], event: str, data: Any = None) -> None:
        for conn_id in list(conn_ids):
            await self.send(conn_id, event, data)

    async def broadcast_all(self, event: str, data: Any = None) -> None:
        await self.broadcast(self.connections(), event, data)

    def clear(self) -> None:
        self.sockets.clear()
