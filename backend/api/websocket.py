"""WebSocket client hub for the signaling server."""

import asyncio
import json
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def envelope(event: str, data: dict) -> str:
    """Serialize one {"event", "data"} message."""
    return json.dumps({"event": event, "data": data})


class ClientHub:
    """Every connected signaling socket, registered or not.

    Sends are serialized through one lock so a broadcast never interleaves
    with a direct reply on the same socket.
    """

    def __init__(self) -> None:
        self._clients: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.append(websocket)
        logger.info(f"Signaling client connected. Total: {self.client_count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._forget(websocket)
        logger.info(f"Signaling client disconnected. Total: {self.client_count}")

    async def send(self, websocket: WebSocket, event: str, data: dict) -> bool:
        """Send an event to one client. Returns False if the client is gone."""
        message = envelope(event, data)
        async with self._lock:
            if websocket not in self._clients:
                return False
            return await self._deliver(websocket, message)

    async def broadcast(self, event: str, data: dict) -> int:
        """Send an event to every client. Returns how many received it."""
        message = envelope(event, data)
        async with self._lock:
            delivered = 0
            for websocket in list(self._clients):
                if await self._deliver(websocket, message):
                    delivered += 1
        logger.debug(f"Broadcast {event} to {delivered} client(s)")
        return delivered

    async def _deliver(self, websocket: WebSocket, message: str) -> bool:
        # Caller holds the lock
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.debug(f"Dropping dead signaling client: {e}")
            self._forget(websocket)
            return False

    def _forget(self, websocket: WebSocket) -> None:
        if websocket in self._clients:
            self._clients.remove(websocket)
