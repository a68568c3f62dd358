"""
Peer connection state machine.

One ConnectionManager per remote device. It drives the offer/answer/candidate
exchange through the relay until the Channel opens, then hands the channel
to a TransferEngine.

    idle -> negotiating -> channel_opening -> open -> closed
                 \\_______________\\____________________-> failed
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

from config import CHUNK_SIZE, NEGOTIATION_TIMEOUT
from connection.channel import Channel
from connection.transport import TcpTransport
from discovery.models import NegotiationKind, NegotiationMessage
from errors import (
    ChannelNotReady,
    ConnectionClosed,
    NegotiationFailed,
    NegotiationTimeout,
    PeerDropError,
    ProtocolViolation,
    TargetNotFound,
)
from events import ConnectionStateChanged, ErrorOccurred, EventBus
from transfer.engine import TransferEngine
from transfer.models import SendSession

logger = logging.getLogger(__name__)

SignalSender = Callable[[NegotiationMessage], Awaitable[None]]
TransportFactory = Callable[[Channel, Callable[[dict], Any]], TcpTransport]


class PeerState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CHANNEL_OPENING = "channel_opening"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


ACTIVE_STATES = (PeerState.NEGOTIATING, PeerState.CHANNEL_OPENING, PeerState.OPEN)
TERMINAL_STATES = (PeerState.CLOSED, PeerState.FAILED)


class ConnectionManager:
    """Connection to one remote device."""

    def __init__(
        self,
        local_device_id: str,
        remote_device_id: str,
        send_signal: SignalSender,
        events: EventBus,
        negotiation_timeout: float = NEGOTIATION_TIMEOUT,
        transport_factory: TransportFactory = TcpTransport,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.local_device_id = local_device_id
        self.remote_device_id = remote_device_id
        self._send_signal = send_signal
        self._events = events
        self._negotiation_timeout = negotiation_timeout
        self._transport_factory = transport_factory
        self._chunk_size = chunk_size

        self._state = PeerState.IDLE
        self._is_initiator = False
        self._channel: Channel | None = None
        self._transport: TcpTransport | None = None
        self._engine: TransferEngine | None = None
        self._pending_candidates: list[Any] = []
        self._timer: asyncio.Task | None = None
        self._opened: asyncio.Future | None = None
        self._tearing_down = False

    @property
    def state(self) -> PeerState:
        return self._state

    @property
    def is_initiator(self) -> bool:
        return self._is_initiator

    @property
    def channel(self) -> Channel | None:
        return self._channel

    @property
    def engine(self) -> TransferEngine | None:
        return self._engine

    # --- Negotiation ---

    async def initiate(self) -> PeerState:
        """Start negotiating as the offerer. No-op if already connecting or open."""
        if self._state in ACTIVE_STATES:
            logger.debug(f"Connection to {self.remote_device_id} already {self._state.value}")
            return self._state

        self._setup(initiator=True)
        self._set_state(PeerState.NEGOTIATING)
        self._start_timer()

        try:
            offer = await self._transport.create_offer()
            await self._send(NegotiationKind.OFFER, offer)
            if self._transport and self._state in (
                PeerState.NEGOTIATING, PeerState.CHANNEL_OPENING
            ):
                await self._transport.gather_candidates()
        except TargetNotFound as e:
            self.target_not_found(e)
            raise
        except PeerDropError as e:
            # Signaling failures end this attempt; callers see them as events
            self._fail(e)
        except OSError as e:
            self._fail(NegotiationFailed(f"Could not create offer: {e}"))
        return self._state

    async def wait_open(self) -> None:
        """Wait for the channel to open. Raises the failure or ConnectionClosed."""
        if self._state == PeerState.OPEN:
            return
        if self._opened is None:
            raise ChannelNotReady(f"No connection attempt to {self.remote_device_id}")
        await asyncio.shield(self._opened)

    async def handle(self, message: NegotiationMessage) -> None:
        """Apply one relayed negotiation message from the remote device."""
        try:
            if message.kind == NegotiationKind.OFFER:
                await self.handle_offer(message)
            elif message.kind == NegotiationKind.ANSWER:
                await self.handle_answer(message)
            elif message.kind == NegotiationKind.CANDIDATE:
                await self.handle_candidate(message)
            else:
                raise NegotiationFailed(f"Unknown negotiation message kind: {message.kind!r}")
        except TargetNotFound as e:
            self._fail(NegotiationFailed(str(e)))
        except PeerDropError as e:
            self._fail(e)

    async def handle_offer(self, message: NegotiationMessage) -> None:
        if self._state in ACTIVE_STATES:
            if self._state != PeerState.OPEN and self._is_initiator:
                # Both sides initiated: the larger id yields and answers
                if self.local_device_id < self.remote_device_id:
                    logger.info(f"Ignoring crossing offer from {self.remote_device_id}")
                    return
                logger.info(f"Yielding to crossing offer from {self.remote_device_id}")
            elif self._state != PeerState.OPEN:
                logger.warning(f"Duplicate offer from {self.remote_device_id} ignored")
                return
            else:
                logger.info(f"Remote {self.remote_device_id} restarted the connection")
            self._teardown()

        self._setup(initiator=False)
        self._set_state(PeerState.NEGOTIATING)
        self._start_timer()

        answer = await self._transport.accept_offer(message.payload)
        await self._send(NegotiationKind.ANSWER, answer)
        if self._state == PeerState.NEGOTIATING:
            self._set_state(PeerState.CHANNEL_OPENING)
        await self._flush_candidates()

    async def handle_answer(self, message: NegotiationMessage) -> None:
        if not self._is_initiator or self._state != PeerState.NEGOTIATING:
            logger.warning(
                f"Unexpected answer from {self.remote_device_id} in state {self._state.value}"
            )
            return
        await self._transport.accept_answer(message.payload)
        self._set_state(PeerState.CHANNEL_OPENING)
        await self._flush_candidates()

    async def handle_candidate(self, message: NegotiationMessage) -> None:
        if self._transport is None or self._state not in (
            PeerState.NEGOTIATING, PeerState.CHANNEL_OPENING
        ):
            logger.debug(f"Stale candidate from {self.remote_device_id} ignored")
            return
        if not self._transport.has_remote_description:
            self._pending_candidates.append(message.payload)
            return
        await self._transport.add_candidate(message.payload)

    def target_not_found(self, error: TargetNotFound | None = None) -> None:
        """The relay could not reach the remote device. Back to idle, not failed."""
        error = error or TargetNotFound(self.remote_device_id)
        if self._state not in (PeerState.NEGOTIATING, PeerState.CHANNEL_OPENING):
            return
        logger.info(f"Connection to {self.remote_device_id} abandoned: {error.message}")
        self._teardown()
        self._resolve_opened(error)
        self._set_state(PeerState.IDLE)
        self._events.publish(ErrorOccurred.from_error(error, self.remote_device_id))

    # --- Transfers ---

    async def send_file(self, file_path: str, mime_type: str | None = None) -> SendSession:
        return await self._require_engine().send_file(file_path, mime_type)

    async def send_bytes(self, file_name: str, data: bytes, mime_type: str = "application/octet-stream") -> SendSession:
        return await self._require_engine().send_bytes(file_name, data, mime_type)

    def _require_engine(self) -> TransferEngine:
        if self._state != PeerState.OPEN or self._engine is None:
            raise ChannelNotReady(
                f"Connection to {self.remote_device_id} is {self._state.value}, not open"
            )
        return self._engine

    # --- Shutdown ---

    def close(self) -> None:
        """Close the connection, aborting any transfer in flight."""
        if self._state in (PeerState.IDLE,) + TERMINAL_STATES and self._channel is None:
            return
        self._teardown()
        self._resolve_opened(ConnectionClosed(f"Connection to {self.remote_device_id} closed"))
        self._set_state(PeerState.CLOSED)

    # --- Internals ---

    def _setup(self, initiator: bool) -> None:
        self._is_initiator = initiator
        self._pending_candidates = []
        self._tearing_down = False
        self._channel = Channel(label=f"file-transfer:{self.remote_device_id[:8]}")
        self._channel.on_open(self._on_channel_open)
        self._channel.on_close(self._on_channel_closed)
        self._transport = self._transport_factory(self._channel, self._on_local_candidate)
        # A pending waiter carries over when a crossing offer replaces our own
        if self._opened is None or self._opened.done():
            self._opened = asyncio.get_running_loop().create_future()
            # Nobody may be waiting; keep asyncio from logging unretrieved failures
            self._opened.add_done_callback(lambda f: f.cancelled() or f.exception())

    def _teardown(self) -> None:
        """Release channel, transport, engine and timer without changing state."""
        self._tearing_down = True
        self._cancel_timer()
        if self._engine:
            self._engine.abort()
            self._engine = None
        if self._channel:
            self._channel.close()
            self._channel = None
        if self._transport:
            self._transport.close()
            self._transport = None
        self._pending_candidates = []

    def _fail(self, error: PeerDropError) -> None:
        if self._state in TERMINAL_STATES or self._state == PeerState.IDLE:
            logger.warning(f"Error for {self.remote_device_id} in state {self._state.value}: {error}")
            return
        logger.warning(f"Connection to {self.remote_device_id} failed: {error.message}")
        self._teardown()
        self._resolve_opened(error)
        self._set_state(PeerState.FAILED, error=error.message)
        self._events.publish(ErrorOccurred.from_error(error, self.remote_device_id))

    def _set_state(self, state: PeerState, error: str | None = None) -> None:
        if state == self._state and error is None:
            return
        logger.info(f"Connection to {self.remote_device_id}: {self._state.value} -> {state.value}")
        self._state = state
        self._events.publish(ConnectionStateChanged(
            remote_device_id=self.remote_device_id, state=state.value, error=error
        ))

    def _resolve_opened(self, error: Exception | None = None) -> None:
        if self._opened is None or self._opened.done():
            return
        if error is None:
            self._opened.set_result(None)
        else:
            self._opened.set_exception(error)

    async def _send(self, kind: NegotiationKind, payload: Any) -> None:
        await self._send_signal(NegotiationMessage(
            kind=kind,
            payload=payload,
            source_device_id=self.local_device_id,
            target_device_id=self.remote_device_id,
        ))

    async def _on_local_candidate(self, candidate: dict) -> None:
        await self._send(NegotiationKind.CANDIDATE, candidate)

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            if self._transport is None:
                return
            await self._transport.add_candidate(candidate)

    def _start_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._negotiation_timer())

    def _cancel_timer(self) -> None:
        if self._timer and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None

    async def _negotiation_timer(self) -> None:
        await asyncio.sleep(self._negotiation_timeout)
        if self._state in (PeerState.NEGOTIATING, PeerState.CHANNEL_OPENING):
            self._fail(NegotiationTimeout(
                f"No channel to {self.remote_device_id} after {self._negotiation_timeout}s"
            ))

    def _on_channel_open(self) -> None:
        self._cancel_timer()
        self._engine = TransferEngine(
            self._channel, self.remote_device_id, self._events, chunk_size=self._chunk_size
        )
        self._channel.on_message(self._on_channel_message)
        if self._transport:
            self._transport.close()
        self._set_state(PeerState.OPEN)
        self._resolve_opened()

    def _on_channel_closed(self) -> None:
        if self._tearing_down:
            return
        if self._engine:
            self._engine.abort()
            self._engine = None
        if self._state == PeerState.OPEN:
            self._teardown()
            self._set_state(PeerState.CLOSED)
            self._resolve_opened(ConnectionClosed(f"Channel to {self.remote_device_id} closed"))
        elif self._state in (PeerState.NEGOTIATING, PeerState.CHANNEL_OPENING):
            self._fail(NegotiationFailed("Channel closed before it opened"))

    async def _on_channel_message(self, message: str | bytes) -> None:
        engine = self._engine
        if engine is None:
            return
        try:
            await engine.handle_message(message)
        except ProtocolViolation as e:
            logger.warning(f"Protocol violation from {self.remote_device_id}: {e.message}")
            self._events.publish(ErrorOccurred.from_error(e, self.remote_device_id))
