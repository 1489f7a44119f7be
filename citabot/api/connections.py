"""WebSocket connection registry for live observers."""

import asyncio
import logging
from typing import Any, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Tracks connected WebSocket clients and the session each one follows.

    A client that fails a send is dropped from the registry.
    """

    def __init__(self) -> None:
        self._clients: dict[WebSocket, Optional[str]] = {}
        self._pending: set[asyncio.Task] = set()

    @property
    def count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients[websocket] = None
        logger.info("WebSocket client connected (%d total)", self.count)

    def disconnect(self, websocket: WebSocket) -> None:
        self._clients.pop(websocket, None)
        logger.info("WebSocket client disconnected (%d total)", self.count)

    def join(self, websocket: WebSocket, session_id: str) -> None:
        self._clients[websocket] = session_id

    async def _send(self, websocket: WebSocket, message: dict[str, Any]) -> bool:
        try:
            await websocket.send_json(message)
            return True
        except Exception as exc:
            logger.warning("Dropping WebSocket client after failed send: %s", exc)
            self.disconnect(websocket)
            return False

    async def broadcast(self, message: dict[str, Any]) -> None:
        for websocket in list(self._clients):
            await self._send(websocket, message)

    async def send_to_session(
        self, session_id: str, message: dict[str, Any], exclude: Optional[WebSocket] = None
    ) -> None:
        """Send to every client following ``session_id``."""
        for websocket, followed in list(self._clients.items()):
            if followed == session_id and websocket is not exclude:
                await self._send(websocket, message)

    def publish(self, message: dict[str, Any]) -> None:
        """Broadcast from synchronous code running inside the event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; dropping broadcast of %s", message.get("type"))
            return
        task = loop.create_task(self.broadcast(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
