"""
TCP negotiation transport.

Turns an offer/answer/candidate exchange into an open Channel:
the offerer listens on an ephemeral port and trickles one candidate per
reachable address; the answerer dials candidates in arrival order and
proves the session token before either end opens the channel.
"""

import asyncio
import inspect
import logging
import secrets
import socket
from typing import Any, Callable

from config import ADVERTISE_HOSTS, CHANNEL_BIND_HOST
from connection.channel import Channel, ChannelState, FrameType, recv_frame, send_frame
from errors import NegotiationFailed

logger = logging.getLogger(__name__)

DIAL_TIMEOUT = 5.0  # seconds per candidate
HELLO_TIMEOUT = 10.0


def local_addresses() -> list[str]:
    """Best-effort list of this host's LAN addresses, loopback last."""
    hosts: list[str] = []
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        hosts.extend(ip for ip in ips if not ip.startswith("127."))
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")
    hosts.append("127.0.0.1")
    return list(dict.fromkeys(hosts))


class TcpTransport:
    """One negotiation attempt for one Channel."""

    def __init__(
        self,
        channel: Channel,
        on_candidate: Callable[[dict], Any],
        bind_host: str = CHANNEL_BIND_HOST,
        advertise_hosts: list[str] | None = None,
    ) -> None:
        self._channel = channel
        self._on_candidate = on_candidate
        self._bind_host = bind_host
        self._advertise_hosts = advertise_hosts if advertise_hosts is not None else ADVERTISE_HOSTS
        self.role: str | None = None
        self.session: str | None = None
        self.local_description: dict | None = None
        self.remote_description: dict | None = None
        self.remote_candidates: list[dict] = []
        self._remote_set = asyncio.Event()
        self._server: asyncio.Server | None = None
        self._port = 0
        self._pending_dials: list[tuple[str, int]] = []
        self._dial_task: asyncio.Task | None = None
        self._closed = False

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    async def create_offer(self) -> dict:
        """Start listening and describe the session for the answerer."""
        self.role = "offerer"
        self.session = secrets.token_hex(16)
        self._server = await asyncio.start_server(
            self._handle_incoming, self._bind_host, 0
        )
        self._port = self._server.sockets[0].getsockname()[1]
        self.local_description = {"session": self.session, "role": "offer"}
        logger.debug(f"Offer created, listening on {self._bind_host}:{self._port}")
        return self.local_description

    async def accept_offer(self, offer: Any) -> dict:
        """Apply the remote offer and produce the answer."""
        session = self._session_of(offer)
        self.role = "answerer"
        self.session = session
        self.remote_description = offer
        self.local_description = {"session": session, "role": "answer"}
        self._remote_set.set()
        return self.local_description

    async def accept_answer(self, answer: Any) -> None:
        if self.role != "offerer":
            raise NegotiationFailed("Received an answer without a local offer")
        if self._session_of(answer) != self.session:
            raise NegotiationFailed("Answer does not match the offered session")
        self.remote_description = answer
        self._remote_set.set()

    async def gather_candidates(self) -> None:
        """Trickle one candidate per advertised address (offerer only)."""
        if self.role != "offerer" or self._closed:
            return
        hosts = self._advertise_hosts or local_addresses()
        for host in hosts:
            candidate = {"host": host, "port": self._port}
            logger.debug(f"Candidate gathered: {host}:{self._port}")
            result = self._on_candidate(candidate)
            if inspect.isawaitable(result):
                await result

    async def add_candidate(self, candidate: Any) -> None:
        """Apply a remote candidate. The answerer dials it."""
        if not isinstance(candidate, dict):
            raise NegotiationFailed(f"Malformed candidate: {candidate!r}")
        host = candidate.get("host")
        port = candidate.get("port")
        if not isinstance(host, str) or not isinstance(port, int):
            raise NegotiationFailed(f"Malformed candidate: {candidate!r}")

        self.remote_candidates.append(candidate)
        if self.role != "answerer":
            # Only the offerer listens; its peer's candidates are informational
            return

        self._pending_dials.append((host, port))
        if self._dial_task is None or self._dial_task.done():
            self._dial_task = asyncio.create_task(self._dial_loop())

    def close(self) -> None:
        self._closed = True
        if self._server:
            self._server.close()
            self._server = None
        if self._dial_task and self._dial_task is not asyncio.current_task():
            self._dial_task.cancel()

    @staticmethod
    def _session_of(description: Any) -> str:
        if isinstance(description, dict) and isinstance(description.get("session"), str):
            return description["session"]
        raise NegotiationFailed(f"Malformed session description: {description!r}")

    async def _dial_loop(self) -> None:
        """(Answerer side) Try candidates in order until one opens the channel."""
        while self._pending_dials and not self._closed:
            if self._channel.state != ChannelState.CONNECTING:
                return
            host, port = self._pending_dials.pop(0)
            writer: asyncio.StreamWriter | None = None
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, port), timeout=DIAL_TIMEOUT
                )
                await send_frame(writer, FrameType.HELLO, self.session.encode("utf-8"))
                frame_type, _ = await asyncio.wait_for(recv_frame(reader), timeout=HELLO_TIMEOUT)
                if frame_type != FrameType.HELLO_ACK:
                    raise ConnectionError(f"Expected HELLO_ACK, got {frame_type:#x}")
                if self._closed or self._channel.state != ChannelState.CONNECTING:
                    writer.close()
                    return
                self._channel.attach(reader, writer)
                return
            except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError) as e:
                logger.debug(f"Candidate {host}:{port} failed: {e}")
                if writer:
                    writer.close()

    async def _handle_incoming(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """(Offerer side) Accept the first dial that proves the session token."""
        try:
            frame_type, payload = await asyncio.wait_for(recv_frame(reader), timeout=HELLO_TIMEOUT)
            if frame_type != FrameType.HELLO or payload.decode("utf-8", "replace") != self.session:
                raise ConnectionError("Bad HELLO")
            # The channel cannot open before both descriptions are set
            await asyncio.wait_for(self._remote_set.wait(), timeout=HELLO_TIMEOUT)
            if self._closed or self._channel.state != ChannelState.CONNECTING:
                raise ConnectionError("Channel no longer accepting connections")
            await send_frame(writer, FrameType.HELLO_ACK)
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError) as e:
            logger.debug(f"Rejected incoming channel connection: {e}")
            writer.close()
            return

        if self._channel.state != ChannelState.CONNECTING:
            writer.close()
            return
        self._channel.attach(reader, writer)
        if self._server:
            self._server.close()
            self._server = None
