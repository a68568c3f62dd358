"""
Global test fixtures for PeerDrop tests
"""
import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from connection.manager import ConnectionManager
from connection.transport import TcpTransport
from discovery.models import NegotiationMessage
from discovery.registry import Registry
from discovery.relay import Relay
from events import EventBus


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel:
    """Channel stand-in that records outbound frames in order"""

    def __init__(self):
        self.frames: list[str | bytes] = []
        self.is_open = True

    async def send_text(self, text: str) -> None:
        self._check()
        self.frames.append(text)

    async def send_bytes(self, data: bytes) -> None:
        self._check()
        self.frames.append(bytes(data))

    def _check(self) -> None:
        from errors import ConnectionClosed
        if not self.is_open:
            raise ConnectionClosed("closed")

    @property
    def chunks(self) -> list[bytes]:
        return [f for f in self.frames if isinstance(f, bytes)]

    @property
    def texts(self) -> list[str]:
        return [f for f in self.frames if isinstance(f, str)]


class EventLog:
    """Subscribes to an EventBus and keeps every event"""

    def __init__(self, bus: EventBus):
        self.events: list = []
        bus.subscribe(self.events.append)

    def of(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]


class Device:
    """A peer in the in-process signaling network"""

    def __init__(self, network: "SignalNetwork", device_id: str, name: str):
        self.network = network
        self.device_id = device_id
        self.name = name
        self.events = EventBus()
        self.log = EventLog(self.events)
        self.managers: dict[str, ConnectionManager] = {}
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[NegotiationMessage] = []
        self.pump = asyncio.create_task(self._pump())

    def manager(self, remote_id: str) -> ConnectionManager:
        if remote_id not in self.managers:
            self.managers[remote_id] = ConnectionManager(
                local_device_id=self.device_id,
                remote_device_id=remote_id,
                send_signal=self._send_signal,
                events=self.events,
                negotiation_timeout=self.network.negotiation_timeout,
                transport_factory=lambda channel, on_candidate: TcpTransport(
                    channel, on_candidate, bind_host="127.0.0.1", advertise_hosts=["127.0.0.1"]
                ),
                chunk_size=self.network.chunk_size,
            )
        return self.managers[remote_id]

    async def _send_signal(self, message: NegotiationMessage) -> None:
        self.sent.append(message)
        await self.network.relay.forward(message)

    async def _pump(self) -> None:
        # Delivers relayed messages one at a time, like a websocket receive loop
        while True:
            message = await self.inbox.get()
            await self.manager(message.source_device_id).handle(message)

    def close(self) -> None:
        for manager in self.managers.values():
            manager.close()
        self.pump.cancel()


class SignalNetwork:
    """Registry + relay wired to in-process devices"""

    def __init__(self, negotiation_timeout: float = 5.0, chunk_size: int = 16384):
        self.registry = Registry()
        self.relay = Relay(self.registry)
        self.negotiation_timeout = negotiation_timeout
        self.chunk_size = chunk_size
        self.devices: list[Device] = []

    async def add_device(self, name: str) -> Device:
        record = await self.registry.register(name)
        device = Device(self, record.id, name)

        async def deliver(message: NegotiationMessage) -> None:
            await device.inbox.put(message)

        self.relay.attach(record.id, deliver)
        self.devices.append(device)
        return device

    def close(self) -> None:
        for device in self.devices:
            device.close()


async def wait_for_state(manager: ConnectionManager, state, timeout: float = 5.0) -> None:
    async def poll():
        while manager.state != state:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files"""
    path = Path(tempfile.mkdtemp(prefix="peerdrop_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def event_log(bus: EventBus) -> EventLog:
    return EventLog(bus)


@pytest.fixture
def recording_channel() -> RecordingChannel:
    return RecordingChannel()
