"""
Ordered, reliable message channel between two peers.

Runs over an asyncio TCP stream using a type-length-payload frame header.
Text frames carry JSON control messages, binary frames carry file chunks.
"""

import asyncio
import logging
import struct
from enum import Enum
from typing import Awaitable, Callable

from errors import ChannelNotReady, ConnectionClosed

logger = logging.getLogger(__name__)

# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
MAX_FRAME_SIZE = 16 * 1024 * 1024


class FrameType:
    HELLO = 0x01
    HELLO_ACK = 0x02
    TEXT = 0x03
    BINARY = 0x04


async def send_frame(
    writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, frame_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ConnectionError(f"Frame of {length} bytes exceeds limit")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


MessageHandler = Callable[[str | bytes], Awaitable[None]]


class Channel:
    """Bidirectional message channel. Created connecting, opened by attach()."""

    def __init__(self, label: str = "file-transfer") -> None:
        self.label = label
        self._state = ChannelState.CONNECTING
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()
        self._message_handler: MessageHandler | None = None
        self._open_listeners: list[Callable[[], None]] = []
        self._close_listeners: list[Callable[[], None]] = []

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ChannelState.OPEN

    def on_open(self, callback: Callable[[], None]) -> None:
        self._open_listeners.append(callback)

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_listeners.append(callback)

    def on_message(self, handler: MessageHandler) -> None:
        """Set the coroutine that receives every inbound message, in order."""
        self._message_handler = handler

    def attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Bind an established stream and open the channel."""
        if self._state != ChannelState.CONNECTING:
            writer.close()
            raise ChannelNotReady(f"Channel is {self._state.value}, cannot attach a stream")

        self._reader = reader
        self._writer = writer
        self._state = ChannelState.OPEN
        self._read_task = asyncio.create_task(self._read_loop())

        peer = writer.get_extra_info("peername")
        logger.info(f"Channel '{self.label}' open with {peer}")
        for cb in list(self._open_listeners):
            cb()

    async def send_text(self, text: str) -> None:
        await self._send(FrameType.TEXT, text.encode("utf-8"))

    async def send_bytes(self, data: bytes) -> None:
        await self._send(FrameType.BINARY, bytes(data))

    async def _send(self, frame_type: int, payload: bytes) -> None:
        self._require_open()
        async with self._send_lock:
            self._require_open()
            try:
                await send_frame(self._writer, frame_type, payload)
            except (ConnectionError, OSError) as e:
                logger.warning(f"Channel '{self.label}' send failed: {e}")
                self.close()
                raise ConnectionClosed(f"Channel closed while sending: {e}") from e

    def _require_open(self) -> None:
        if self._state == ChannelState.CONNECTING:
            raise ChannelNotReady("Channel is not open yet")
        if self._state != ChannelState.OPEN:
            raise ConnectionClosed(f"Channel is {self._state.value}")

    async def _read_loop(self) -> None:
        try:
            while True:
                frame_type, payload = await recv_frame(self._reader)
                if frame_type == FrameType.TEXT:
                    message: str | bytes = payload.decode("utf-8", errors="replace")
                elif frame_type == FrameType.BINARY:
                    message = payload
                else:
                    logger.warning(f"Unexpected frame type on open channel: {frame_type:#x}")
                    continue

                if self._message_handler is None:
                    logger.debug(f"No handler for message on '{self.label}', dropping")
                    continue
                try:
                    await self._message_handler(message)
                except Exception as e:
                    logger.error(f"Channel message handler error: {e}", exc_info=True)
        except asyncio.IncompleteReadError:
            logger.info(f"Channel '{self.label}' closed by peer")
        except (ConnectionError, OSError) as e:
            logger.warning(f"Channel '{self.label}' read error: {e}")
        except asyncio.CancelledError:
            return
        self.close()

    def close(self) -> None:
        """Close the channel and notify listeners. Safe to call repeatedly."""
        if self._state in (ChannelState.CLOSING, ChannelState.CLOSED):
            return
        self._state = ChannelState.CLOSING

        if self._read_task and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
        if self._writer:
            if self._send_lock.locked():
                # A send may be parked in drain() on a peer that stopped reading
                self._writer.transport.abort()
            else:
                self._writer.close()

        self._state = ChannelState.CLOSED
        logger.info(f"Channel '{self.label}' closed")
        for cb in list(self._close_listeners):
            try:
                cb()
            except Exception as e:
                logger.error(f"Channel close listener error: {e}", exc_info=True)

    async def wait_closed(self) -> None:
        if self._writer:
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
