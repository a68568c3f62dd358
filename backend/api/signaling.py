"""
Signaling protocol over the /ws websocket.

Every message in both directions is {"event": <name>, "data": {...}}.
"""

import json
import logging
from typing import Literal

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from api.websocket import ClientHub
from discovery.models import NegotiationMessage
from discovery.registry import Registry
from discovery.relay import Relay
from errors import BadRequest, PeerDropError, TargetNotFound

logger = logging.getLogger(__name__)


class ClientEnvelope(BaseModel):
    event: Literal["register", "get_devices", "heartbeat", "signal"]
    data: dict = {}


class RegisterRequest(BaseModel):
    name: str = ""


class HeartbeatRequest(BaseModel):
    device_id: str


class ClientSession:
    """Per-socket state: which device this websocket registered, if any."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.device_id: str | None = None


class SignalingServer:
    """Serves registry, heartbeat, device list and relay events to one socket each."""

    def __init__(self, registry: Registry, relay: Relay, hub: ClientHub) -> None:
        self._registry = registry
        self._relay = relay
        self._hub = hub

    async def serve(self, websocket: WebSocket) -> None:
        await self._hub.connect(websocket)
        session = ClientSession(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    await self._dispatch(session, raw)
                except PeerDropError as e:
                    await self._hub.send(websocket, "error", e.to_dict())
        except WebSocketDisconnect:
            pass
        finally:
            await self._hub.disconnect(websocket)
            await self._drop_device(session)

    async def _dispatch(self, session: ClientSession, raw: str) -> None:
        try:
            envelope = ClientEnvelope.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise BadRequest(f"Malformed message: {e}") from e

        if envelope.event == "register":
            await self._handle_register(session, envelope.data)
        elif envelope.event == "get_devices":
            devices = await self._registry.list_devices()
            await self._hub.send(
                session.websocket, "devices_updated",
                {"devices": [d.model_dump(mode="json") for d in devices]},
            )
        elif envelope.event == "heartbeat":
            request = self._parse(HeartbeatRequest, envelope.data)
            await self._registry.heartbeat(request.device_id)
        elif envelope.event == "signal":
            await self._handle_signal(session, envelope.data)

    async def _handle_register(self, session: ClientSession, data: dict) -> None:
        request = self._parse(RegisterRequest, data)
        # One device per socket; re-registering replaces the old identity
        await self._drop_device(session)

        device = await self._registry.register(request.name)
        session.device_id = device.id
        websocket = session.websocket

        async def deliver(message: NegotiationMessage) -> None:
            await self._hub.send(websocket, "signal", message.model_dump(mode="json"))

        self._relay.attach(device.id, deliver)
        await self._hub.send(
            websocket, "registered", {"device_id": device.id, "name": device.display_name}
        )

    async def _handle_signal(self, session: ClientSession, data: dict) -> None:
        message = self._parse(NegotiationMessage, data)
        if session.device_id is None:
            raise BadRequest("Register before sending signals")
        if message.source_device_id != session.device_id:
            raise BadRequest("Signal source does not match the registered device")
        logger.debug(
            f"Signal: {message.kind.value} from {message.source_device_id} "
            f"to {message.target_device_id}"
        )
        try:
            await self._relay.forward(message)
        except TargetNotFound as e:
            await self._hub.send(session.websocket, "error", e.to_dict())

    async def _drop_device(self, session: ClientSession) -> None:
        if session.device_id is None:
            return
        self._relay.detach(session.device_id)
        await self._registry.unregister(session.device_id)
        session.device_id = None

    @staticmethod
    def _parse(model: type[BaseModel], data: dict):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise BadRequest(f"Invalid {model.__name__}: {e.error_count()} error(s)") from e
