"""
Chunked file transfer over an open Channel.

Protocol: one `meta` text frame, the file as binary frames of at most
CHUNK_SIZE bytes in order, then one `end` text frame. At most one file is
in flight per direction per channel.
"""

import asyncio
import logging
import mimetypes
import os
import time
from typing import Awaitable, Callable

from pydantic import ValidationError

from config import CHUNK_SIZE
from connection.channel import Channel
from errors import ChannelNotReady, ConnectionClosed, ProtocolViolation, TransferAborted
from events import ErrorOccurred, EventBus, FileReceived, TransferProgress
from transfer.models import (
    EndMessage,
    MetaMessage,
    ReceivedFile,
    ReceiveSession,
    SendSession,
    TransferDirection,
    decode_control,
    encode_control,
)

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0):
        self._window = window
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = time.monotonic()
        self._samples.append((now, byte_count))
        # Trim old samples
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed


class TransferEngine:
    """Sender and receiver state for one Channel."""

    def __init__(
        self,
        channel: Channel,
        remote_device_id: str,
        events: EventBus,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._channel = channel
        self._remote_device_id = remote_device_id
        self._events = events
        self._chunk_size = chunk_size
        self._outgoing: SendSession | None = None
        self._incoming: ReceiveSession | None = None
        self._incoming_tracker = SpeedTracker()
        # Set after a protocol violation: drop frames until the rejected file's `end`
        self._discarding = False
        self._aborted = False

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    @property
    def outgoing(self) -> SendSession | None:
        return self._outgoing

    @property
    def incoming(self) -> ReceiveSession | None:
        return self._incoming

    # --- Sender ---

    async def send_file(self, file_path: str, mime_type: str | None = None) -> SendSession:
        """Stream a file from disk. Returns once `end` has been sent."""
        file_name = os.path.basename(file_path)
        file_size = os.path.getsize(file_path)
        mime_type = mime_type or mimetypes.guess_type(file_name)[0] or DEFAULT_MIME_TYPE

        with open(file_path, "rb") as f:
            return await self._send(
                file_name, file_size, mime_type, lambda n: asyncio.to_thread(f.read, n)
            )

    async def send_bytes(
        self, file_name: str, data: bytes, mime_type: str = DEFAULT_MIME_TYPE
    ) -> SendSession:
        """Send an in-memory payload as a file."""
        view = memoryview(data)
        offset = 0

        async def read(n: int) -> bytes:
            nonlocal offset
            chunk = bytes(view[offset:offset + n])
            offset += len(chunk)
            return chunk

        return await self._send(file_name, len(data), mime_type, read)

    async def _send(
        self,
        file_name: str,
        file_size: int,
        mime_type: str,
        read: Callable[[int], Awaitable[bytes]],
    ) -> SendSession:
        if self._aborted:
            raise TransferAborted("Channel already closed")
        if not self._channel.is_open:
            raise ChannelNotReady("Cannot send before the channel is open")
        if self._outgoing is not None:
            raise ProtocolViolation(
                f"Cannot send '{file_name}' while '{self._outgoing.file_name}' is in flight"
            )

        session = SendSession(file_name=file_name, total_size=file_size, mime_type=mime_type)
        self._outgoing = session
        tracker = SpeedTracker()
        logger.info(f"Sending {file_name} ({file_size} bytes, {mime_type}) to {self._remote_device_id}")

        try:
            # 1. Metadata
            meta = MetaMessage(name=file_name, size=file_size, mime_type=mime_type)
            await self._channel.send_text(encode_control(meta))

            # 2. Chunks, never more than the declared size
            remaining = file_size
            while remaining > 0:
                if self._aborted:
                    raise TransferAborted(f"Channel closed while sending '{file_name}'")
                chunk = await read(min(self._chunk_size, remaining))
                if not chunk:
                    # Source shrank; the short `end` makes the receiver discard it
                    await self._channel.send_text(encode_control(EndMessage()))
                    raise TransferAborted(
                        f"'{file_name}' ended after {session.bytes_sent} of {file_size} bytes"
                    )
                await self._channel.send_bytes(chunk)

                session.bytes_sent += len(chunk)
                remaining -= len(chunk)
                tracker.record(len(chunk))
                self._events.publish(TransferProgress(
                    remote_device_id=self._remote_device_id,
                    direction=TransferDirection.SENDING,
                    file_name=file_name,
                    total_size=file_size,
                    transferred_bytes=session.bytes_sent,
                    progress=session.bytes_sent / file_size,
                    speed_bps=tracker.get_speed(),
                ))

            # 3. Completion
            await self._channel.send_text(encode_control(EndMessage()))
            logger.info(f"Sent {file_name} to {self._remote_device_id}")
            return session

        except (ConnectionClosed, ChannelNotReady) as e:
            raise TransferAborted(f"Channel closed while sending '{file_name}'") from e
        finally:
            self._outgoing = None

    # --- Receiver ---

    async def handle_message(self, message: str | bytes) -> None:
        """Feed one inbound channel message. Raises ProtocolViolation on bad input."""
        if self._aborted:
            return
        if isinstance(message, str):
            self._handle_control(message)
        else:
            self._handle_chunk(message)

    def _handle_control(self, raw: str) -> None:
        try:
            message = decode_control(raw)
        except ValidationError as e:
            raise ProtocolViolation(f"Unrecognized control message: {raw[:80]!r}") from e

        if isinstance(message, MetaMessage):
            self._start_incoming(message)
        else:
            self._finish_incoming()

    def _start_incoming(self, meta: MetaMessage) -> None:
        if self._incoming is not None:
            active = self._incoming.file_name
            self._drop_incoming()
            self._discarding = True
            raise ProtocolViolation(
                f"Received metadata for '{meta.name}' while '{active}' is still in flight"
            )

        self._discarding = False
        self._incoming = ReceiveSession(
            file_name=meta.name, total_size=meta.size, mime_type=meta.mime_type
        )
        self._incoming_tracker = SpeedTracker()
        logger.info(
            f"Receiving {meta.name} ({meta.size} bytes, {meta.mime_type}) "
            f"from {self._remote_device_id}"
        )

    def _handle_chunk(self, chunk: bytes) -> None:
        if self._discarding:
            logger.debug(f"Discarding {len(chunk)} byte chunk of a rejected transfer")
            return
        session = self._incoming
        if session is None:
            raise ProtocolViolation("Received a binary chunk with no transfer in progress")

        if session.bytes_received + len(chunk) > session.total_size:
            self._drop_incoming()
            self._discarding = True
            raise ProtocolViolation(
                f"'{session.file_name}' exceeded its declared size of {session.total_size} bytes"
            )

        session.chunks.append(chunk)
        session.bytes_received += len(chunk)
        self._incoming_tracker.record(len(chunk))
        logger.debug(
            f"Received chunk: {len(chunk)} bytes ({session.progress * 100:.1f}% complete)"
        )
        self._events.publish(TransferProgress(
            remote_device_id=self._remote_device_id,
            direction=TransferDirection.RECEIVING,
            file_name=session.file_name,
            total_size=session.total_size,
            transferred_bytes=session.bytes_received,
            progress=session.progress,
            speed_bps=self._incoming_tracker.get_speed(),
        ))

    def _finish_incoming(self) -> None:
        if self._discarding:
            self._discarding = False
            return
        session = self._incoming
        if session is None:
            raise ProtocolViolation("Received end with no transfer in progress")

        if session.bytes_received != session.total_size:
            self._drop_incoming()
            raise ProtocolViolation(
                f"'{session.file_name}' ended after {session.bytes_received} "
                f"of {session.total_size} bytes"
            )

        received = ReceivedFile(
            name=session.file_name,
            size=session.total_size,
            mime_type=session.mime_type,
            data=b"".join(session.chunks),
            from_device_id=self._remote_device_id,
        )
        self._drop_incoming()
        logger.info(f"File received: {received.name} ({received.size} bytes)")
        self._events.publish(FileReceived(remote_device_id=self._remote_device_id, file=received))

    def _drop_incoming(self) -> None:
        if self._incoming is not None:
            self._incoming.chunks.clear()
        self._incoming = None

    # --- Cancellation ---

    def abort(self, reason: str = "channel closed") -> None:
        """Discard every in-flight session. No partial file is ever delivered."""
        if self._aborted:
            return
        self._aborted = True
        self._discarding = False

        if self._incoming is not None:
            error = TransferAborted(
                f"Receiving '{self._incoming.file_name}' aborted after "
                f"{self._incoming.bytes_received} of {self._incoming.total_size} bytes: {reason}"
            )
            self._drop_incoming()
            logger.warning(error.message)
            self._events.publish(ErrorOccurred.from_error(error, self._remote_device_id))
