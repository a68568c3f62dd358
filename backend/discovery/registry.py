"""
Device registry.

Process-wide table of known devices. All mutations run under one lock;
membership changes are published so the owning server can broadcast them.
"""

import asyncio
import logging
import time
import uuid
from typing import Callable

from config import EXPIRY_TIMEOUT, ONLINE_WINDOW, SWEEP_INTERVAL
from discovery.models import Device, DeviceSummary
from events import DevicesUpdated, EventBus

logger = logging.getLogger(__name__)


class Registry:
    """Owns device identity assignment, liveness tracking and membership events."""

    def __init__(
        self,
        online_window: float = ONLINE_WINDOW,
        expiry_timeout: float = EXPIRY_TIMEOUT,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._devices: dict[str, Device] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None
        self._membership = EventBus()
        self._clock = clock
        self.online_window = online_window
        self.expiry_timeout = expiry_timeout
        self.sweep_interval = sweep_interval

    def on_membership_changed(self, callback) -> Callable[[], None]:
        """Register a callback: fn(DevicesUpdated). Returns an unsubscribe function."""
        return self._membership.subscribe(callback)

    async def start(self) -> None:
        """Start the background expiry sweep."""
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Registry started (online window {self.online_window}s, "
            f"expiry {self.expiry_timeout}s, sweep every {self.sweep_interval}s)"
        )

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Registry stopped")

    async def register(self, display_name: str) -> Device:
        """Allocate a fresh id and store the device."""
        device_id = str(uuid.uuid4())
        async with self._lock:
            while device_id in self._devices:
                device_id = str(uuid.uuid4())
            device = Device(
                id=device_id,
                display_name=display_name.strip() or f"Device-{device_id[:8]}",
                last_seen_at=self._clock(),
            )
            self._devices[device_id] = device
            snapshot = self._snapshot()

        logger.info(f"Device registered: {device.display_name} ({device_id})")
        self._publish(snapshot)
        return device

    async def heartbeat(self, device_id: str) -> None:
        """Refresh last_seen_at. Unknown ids are ignored."""
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                logger.debug(f"Heartbeat for unknown device {device_id}")
                return
            device.last_seen_at = self._clock()

    async def unregister(self, device_id: str) -> Device | None:
        async with self._lock:
            device = self._devices.pop(device_id, None)
            if device is None:
                return None
            snapshot = self._snapshot()

        logger.info(f"Device removed: {device.display_name} ({device_id})")
        self._publish(snapshot)
        return device

    async def get(self, device_id: str) -> Device | None:
        async with self._lock:
            device = self._devices.get(device_id)
            return device.model_copy() if device else None

    async def contains(self, device_id: str) -> bool:
        async with self._lock:
            return device_id in self._devices

    async def list_online(self) -> list[Device]:
        """Devices seen within the online window. No side effects."""
        async with self._lock:
            now = self._clock()
            return [
                d.model_copy()
                for d in self._devices.values()
                if d.is_online(now, self.online_window)
            ]

    async def list_devices(self) -> list[DeviceSummary]:
        """Every known device with its derived status."""
        async with self._lock:
            return self._snapshot()

    async def sweep_expired(self, timeout: float | None = None) -> list[Device]:
        """Remove devices silent for longer than timeout and return them."""
        timeout = self.expiry_timeout if timeout is None else timeout
        async with self._lock:
            now = self._clock()
            expired = [
                d for d in self._devices.values() if now - d.last_seen_at > timeout
            ]
            for device in expired:
                del self._devices[device.id]
            snapshot = self._snapshot() if expired else None

        for device in expired:
            logger.info(f"Device timed out: {device.display_name} ({device.id})")
        if snapshot is not None:
            self._publish(snapshot)
        return expired

    def _snapshot(self) -> list[DeviceSummary]:
        # Caller holds the lock
        now = self._clock()
        return [d.summary(now, self.online_window) for d in self._devices.values()]

    def _publish(self, snapshot: list[DeviceSummary]) -> None:
        self._membership.publish(DevicesUpdated(devices=snapshot))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error(f"Registry sweep failed: {e}", exc_info=True)
