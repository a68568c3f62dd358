"""
Signaling relay.

Forwards negotiation messages verbatim to the target device's transport.
Store-less: no queueing for absent devices and no retries.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from discovery.models import NegotiationMessage
from discovery.registry import Registry
from errors import TargetNotFound

logger = logging.getLogger(__name__)

# async fn(message) that pushes a message down one device's transport
Sink = Callable[[NegotiationMessage], Awaitable[None]]


class Relay:
    """Routes negotiation messages by target device id."""

    def __init__(self, registry: Registry) -> None:
        self._registry = registry
        self._sinks: dict[str, Sink] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def attach(self, device_id: str, sink: Sink) -> None:
        """Bind a registered device to the transport that reaches it."""
        self._sinks[device_id] = sink
        self._locks.setdefault(device_id, asyncio.Lock())

    def detach(self, device_id: str) -> None:
        self._sinks.pop(device_id, None)
        self._locks.pop(device_id, None)

    async def forward(self, message: NegotiationMessage) -> None:
        """Deliver message to its target. Raises TargetNotFound if unknown."""
        target = message.target_device_id
        sink = self._sinks.get(target)
        lock = self._locks.get(target)
        if sink is None or lock is None or not await self._registry.contains(target):
            logger.info(
                f"Signal {message.kind.value} from {message.source_device_id}: "
                f"target {target} not found"
            )
            raise TargetNotFound(target)

        logger.debug(
            f"Relaying {message.kind.value} from {message.source_device_id} to {target}"
        )
        # asyncio.Lock wakes waiters in FIFO order, so per-target order is the call order
        async with lock:
            await sink(message)
