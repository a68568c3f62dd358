"""
Signaling client.

Keeps one websocket to the signaling server: registers this device, sends
heartbeats, requests device lists and carries negotiation messages.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed as WebSocketClosed

from config import HEARTBEAT_INTERVAL, SIGNAL_URL
from discovery.models import NegotiationMessage
from errors import ConnectionClosed, RegistrationFailure

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None] | None]

REGISTER_TIMEOUT = 10.0


class SignalingClient:
    """Websocket client for the signaling server's event protocol."""

    def __init__(
        self, url: str = SIGNAL_URL, heartbeat_interval: float = HEARTBEAT_INTERVAL
    ) -> None:
        self.url = url
        self.device_id: str | None = None
        self.device_name: str | None = None
        self._heartbeat_interval = heartbeat_interval
        self._ws = None
        self._recv_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._handlers: dict[str, list[Handler]] = {}
        self._registered: asyncio.Future | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, event: str, handler: Handler) -> None:
        """Register a handler for a server event (devices_updated, signal, error, ...)."""
        self._handlers.setdefault(event, []).append(handler)

    async def connect(self) -> None:
        if self._ws is not None:
            logger.debug("Already connected")
            return
        self._ws = await websockets.connect(self.url)
        self._recv_task = asyncio.create_task(self._recv_loop())
        logger.info(f"Connected to signaling server {self.url}")

    async def register(self, name: str) -> tuple[str, str]:
        """Register this device and start heartbeats. Returns (device_id, name)."""
        self._registered = asyncio.get_running_loop().create_future()
        await self.send("register", {"name": name})
        try:
            data = await asyncio.wait_for(self._registered, timeout=REGISTER_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise RegistrationFailure("Signaling server did not confirm registration") from e

        self.device_id = data["device_id"]
        self.device_name = data["name"]
        logger.info(f"Device registered with ID: {self.device_id}")

        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        return self.device_id, self.device_name

    async def request_devices(self) -> None:
        await self.send("get_devices", {})

    async def send_signal(self, message: NegotiationMessage) -> None:
        await self.send("signal", message.model_dump(mode="json"))

    async def send(self, event: str, data: dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionClosed("Not connected to the signaling server")
        try:
            await self._ws.send(json.dumps({"event": event, "data": data}))
        except WebSocketClosed as e:
            raise ConnectionClosed(f"Signaling connection closed: {e}") from e

    async def close(self) -> None:
        for task in (self._heartbeat_task, self._recv_task):
            if task:
                task.cancel()
        self._heartbeat_task = None
        self._recv_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self.device_id = None
        logger.info("Disconnected from signaling server")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self.device_id is None:
                continue
            try:
                await self.send("heartbeat", {"device_id": self.device_id})
            except ConnectionClosed:
                return

    async def _recv_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    envelope = json.loads(raw)
                    event = envelope["event"]
                    data = envelope.get("data") or {}
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning(f"Ignoring malformed server message: {e}")
                    continue

                if event == "registered":
                    # Set before later events are dispatched so they can filter on it
                    self.device_id = data.get("device_id")
                    self.device_name = data.get("name")
                    if self._registered and not self._registered.done():
                        self._registered.set_result(data)
                await self._dispatch(event, data)
        except WebSocketClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            self._ws = None
            if self._heartbeat_task:
                self._heartbeat_task.cancel()
                self._heartbeat_task = None
            await self._dispatch("disconnected", {})

    async def _dispatch(self, event: str, data: dict) -> None:
        # Handlers run one at a time so signals reach the state machines in order
        for handler in self._handlers.get(event, []):
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for '{event}' failed: {e}", exc_info=True)
