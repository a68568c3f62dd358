"""
Device-side orchestrator.

Wires the signaling client to one ConnectionManager per remote device and
publishes everything a UI or CLI needs on a single EventBus.
"""

import logging

from pydantic import ValidationError

from config import CHUNK_SIZE, DEVICE_NAME, NEGOTIATION_TIMEOUT, SIGNAL_URL
from connection.manager import TERMINAL_STATES, ConnectionManager, PeerState
from connection.signaling import SignalingClient
from discovery.models import DeviceSummary, NegotiationKind, NegotiationMessage
from errors import ChannelNotReady, ErrorCategory, TargetNotFound
from events import (
    ConnectionStateChanged,
    DeviceRegistered,
    DevicesUpdated,
    ErrorOccurred,
    EventBus,
    FileReceived,
)
from transfer.models import ReceivedFile, SendSession

logger = logging.getLogger(__name__)


class PeerNode:
    """One device taking part in discovery and transfer."""

    def __init__(
        self,
        device_name: str = DEVICE_NAME,
        signal_url: str = SIGNAL_URL,
        negotiation_timeout: float = NEGOTIATION_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
        client: SignalingClient | None = None,
    ) -> None:
        self.device_name = device_name
        self.device_id: str | None = None
        self.devices: list[DeviceSummary] = []
        self.received_files: list[ReceivedFile] = []
        self.events = EventBus()
        self._negotiation_timeout = negotiation_timeout
        self._chunk_size = chunk_size
        self._client = client or SignalingClient(signal_url)
        self._connections: dict[str, ConnectionManager] = {}

        self._client.on("devices_updated", self._on_devices_updated)
        self._client.on("signal", self._on_signal)
        self._client.on("error", self._on_server_error)
        self._client.on("disconnected", self._on_disconnected)
        self.events.subscribe(self._track)

    async def start(self) -> str:
        """Connect to the signaling server and register. Returns the device id."""
        await self._client.connect()
        self.device_id, self.device_name = await self._client.register(self.device_name)
        self.devices = [d for d in self.devices if d.id != self.device_id]
        self.events.publish(DeviceRegistered(device_id=self.device_id, name=self.device_name))
        await self._client.request_devices()
        return self.device_id

    async def stop(self) -> None:
        for manager in list(self._connections.values()):
            manager.close()
        self._connections.clear()
        await self._client.close()
        self.device_id = None

    async def refresh_devices(self) -> None:
        await self._client.request_devices()

    def connection(self, remote_device_id: str) -> ConnectionManager | None:
        return self._connections.get(remote_device_id)

    def connection_state(self, remote_device_id: str) -> PeerState:
        manager = self._connections.get(remote_device_id)
        return manager.state if manager else PeerState.IDLE

    async def connect(self, remote_device_id: str, wait: bool = True) -> PeerState:
        """Open a channel to a remote device. Reuses an existing attempt."""
        if self.device_id is None:
            raise ChannelNotReady("Not registered with the signaling server")
        if remote_device_id == self.device_id:
            raise ValueError("Cannot connect to self")

        manager = self._manager_for(remote_device_id)
        try:
            await manager.initiate()
        except TargetNotFound:
            self._forget(manager)
            raise
        if wait:
            await manager.wait_open()
        return manager.state

    async def send_file(self, remote_device_id: str, file_path: str) -> SendSession:
        manager = self._connections.get(remote_device_id)
        if manager is None:
            raise ChannelNotReady(f"No connection to {remote_device_id}")
        return await manager.send_file(file_path)

    def disconnect(self, remote_device_id: str) -> None:
        manager = self._connections.pop(remote_device_id, None)
        if manager:
            manager.close()

    def clear_received_files(self) -> None:
        """Drop references to received files once the caller has stored them."""
        self.received_files.clear()

    def _manager_for(self, remote_device_id: str) -> ConnectionManager:
        manager = self._connections.get(remote_device_id)
        if manager is None:
            manager = ConnectionManager(
                local_device_id=self._client.device_id,
                remote_device_id=remote_device_id,
                send_signal=self._client.send_signal,
                events=self.events,
                negotiation_timeout=self._negotiation_timeout,
                chunk_size=self._chunk_size,
            )
            self._connections[remote_device_id] = manager
        return manager

    def _forget(self, manager: ConnectionManager) -> None:
        if self._connections.get(manager.remote_device_id) is manager:
            del self._connections[manager.remote_device_id]

    def _track(self, event) -> None:
        """Keep local state in step with what the connections publish."""
        if isinstance(event, ConnectionStateChanged):
            manager = self._connections.get(event.remote_device_id)
            # Failed and closed connections leave the active set
            if manager and manager.state in TERMINAL_STATES:
                self._forget(manager)
        elif isinstance(event, FileReceived):
            self.received_files.append(event.file)

    async def _on_devices_updated(self, data: dict) -> None:
        try:
            devices = [DeviceSummary.model_validate(d) for d in data.get("devices", [])]
        except ValidationError as e:
            logger.warning(f"Ignoring malformed device list: {e}")
            return
        own_id = self._client.device_id
        self.devices = [d for d in devices if d.id != own_id]
        self.events.publish(DevicesUpdated(devices=self.devices))

    async def _on_signal(self, data: dict) -> None:
        try:
            message = NegotiationMessage.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed signal: {e}")
            return
        own_id = self._client.device_id
        if own_id is None or message.target_device_id != own_id:
            logger.warning(f"Signal for {message.target_device_id} is not for this device")
            return
        if message.kind == NegotiationKind.OFFER:
            manager = self._manager_for(message.source_device_id)
        else:
            manager = self._connections.get(message.source_device_id)
            if manager is None:
                logger.debug(f"Stray {message.kind.value} from {message.source_device_id} dropped")
                return
        await manager.handle(message)

    async def _on_server_error(self, data: dict) -> None:
        category = data.get("category")
        message = data.get("message", "")
        target = data.get("target_device_id")
        logger.warning(f"Signaling error ({category}): {message}")

        if category == ErrorCategory.TARGET_NOT_FOUND.value and target:
            manager = self._connections.get(target)
            if manager:
                manager.target_not_found(TargetNotFound(target))
                self._forget(manager)
                return
        try:
            category = ErrorCategory(category)
        except ValueError:
            category = ErrorCategory.BAD_REQUEST
        self.events.publish(ErrorOccurred(category=category, message=message, remote_device_id=target))

    async def _on_disconnected(self, data: dict) -> None:
        logger.warning("Lost the signaling server; open channels stay up")
        self.device_id = None
