"""
Consumer-facing events and the subscription bus that delivers them.

The core publishes typed events; UI, CLI and websocket layers subscribe.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Literal, Union

from pydantic import BaseModel

from discovery.models import DeviceSummary
from errors import ErrorCategory, PeerDropError
from transfer.models import ReceivedFile, TransferDirection

logger = logging.getLogger(__name__)


class DevicesUpdated(BaseModel):
    type: Literal["devices_updated"] = "devices_updated"
    devices: list[DeviceSummary]


class DeviceRegistered(BaseModel):
    type: Literal["device_registered"] = "device_registered"
    device_id: str
    name: str


class ConnectionStateChanged(BaseModel):
    type: Literal["connection_state_changed"] = "connection_state_changed"
    remote_device_id: str
    state: str
    error: str | None = None


class TransferProgress(BaseModel):
    type: Literal["transfer_progress"] = "transfer_progress"
    remote_device_id: str
    direction: TransferDirection
    file_name: str
    total_size: int
    transferred_bytes: int
    progress: float  # 0.0 - 1.0
    speed_bps: float = 0.0


class FileReceived(BaseModel):
    type: Literal["file_received"] = "file_received"
    remote_device_id: str
    file: ReceivedFile


class ErrorOccurred(BaseModel):
    type: Literal["error"] = "error"
    category: ErrorCategory
    message: str
    remote_device_id: str | None = None

    @classmethod
    def from_error(cls, error: PeerDropError, remote_device_id: str | None = None) -> "ErrorOccurred":
        return cls(category=error.category, message=error.message, remote_device_id=remote_device_id)


Event = Union[
    DevicesUpdated,
    DeviceRegistered,
    ConnectionStateChanged,
    TransferProgress,
    FileReceived,
    ErrorOccurred,
]


def event_payload(event: Event) -> dict[str, Any]:
    """JSON-safe body of an event (file payloads are replaced by their metadata)."""
    if isinstance(event, FileReceived):
        return {"remote_device_id": event.remote_device_id, "file": event.file.describe()}
    return event.model_dump(mode="json", exclude={"type"})


class EventBus:
    """Fan-out of events to subscribers.

    Plain callables run inline; coroutine functions are scheduled on the
    running loop. A failing subscriber never affects the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callable[[Any], Any]] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, callback: Callable[[Any], Any]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Any) -> None:
        for cb in list(self._subscribers):
            try:
                result = cb(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(self._guard(result))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.error(f"Event subscriber error: {e}", exc_info=True)

    @staticmethod
    async def _guard(awaitable) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error(f"Event subscriber error: {e}", exc_info=True)
