"""
Unit tests for connection/manager.py - Negotiation and channel lifecycle
"""
import asyncio

import pytest

from conftest import EventLog, SignalNetwork, wait_for_state
from connection.channel import Channel, ChannelState
from connection.manager import ConnectionManager, PeerState
from connection.transport import TcpTransport
from discovery.models import NegotiationKind, NegotiationMessage
from errors import (
    ChannelNotReady,
    ConnectionClosed,
    ErrorCategory,
    NegotiationFailed,
    NegotiationTimeout,
    TargetNotFound,
    TransferAborted,
)
from events import ConnectionStateChanged, ErrorOccurred, EventBus, FileReceived, TransferProgress


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


def states(device, remote_id):
    return [
        e.state for e in device.log.of(ConnectionStateChanged)
        if e.remote_device_id == remote_id
    ]


class TestConnect:
    """Two devices negotiating through the relay"""

    def test_connect_and_send(self):
        data = bytes(range(256)) * 156 + b"\x00" * 64  # 40000 bytes

        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            b = await network.add_device("B")
            try:
                to_b = a.manager(b.device_id)
                await to_b.initiate()
                await asyncio.wait_for(to_b.wait_open(), 5)
                await wait_until(lambda: a.device_id in b.managers)
                to_a = b.managers[a.device_id]
                await wait_for_state(to_a, PeerState.OPEN)

                await to_b.send_bytes("photo.jpg", data, "image/jpeg")
                await wait_until(lambda: b.log.of(FileReceived))
                # Teardown below appends "closed" to both histories
                assert states(a, b.device_id) == ["negotiating", "channel_opening", "open"]
                assert states(b, a.device_id) == ["negotiating", "channel_opening", "open"]
                return a, b, to_b, to_a
            finally:
                network.close()

        a, b, to_b, to_a = asyncio.run(scenario())

        assert to_b.is_initiator and not to_a.is_initiator

        sent = [p.transferred_bytes for p in a.log.of(TransferProgress)]
        received = [p.transferred_bytes for p in b.log.of(TransferProgress)]
        assert sent == [16384, 32768, 40000]
        assert received == [16384, 32768, 40000]

        files = b.log.of(FileReceived)
        assert len(files) == 1
        assert files[0].file.size == 40000
        assert files[0].file.data == data
        assert files[0].file.mime_type == "image/jpeg"
        assert files[0].file.from_device_id == a.device_id

    def test_signals_carry_both_ids(self):
        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            b = await network.add_device("B")
            try:
                await a.manager(b.device_id).initiate()
                await a.manager(b.device_id).wait_open()
                return a, b
            finally:
                network.close()

        a, b = asyncio.run(scenario())
        kinds = [m.kind for m in a.sent]
        assert kinds[0] == NegotiationKind.OFFER
        assert NegotiationKind.CANDIDATE in kinds
        assert all(m.source_device_id == a.device_id for m in a.sent)
        assert all(m.target_device_id == b.device_id for m in a.sent)
        assert b.sent[0].kind == NegotiationKind.ANSWER

    def test_initiate_is_idempotent(self):
        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            b = await network.add_device("B")
            try:
                manager = a.manager(b.device_id)
                await asyncio.gather(manager.initiate(), manager.initiate())
                channel = manager.channel
                await manager.wait_open()
                assert await manager.initiate() == PeerState.OPEN
                assert manager.channel is channel
                return a
            finally:
                network.close()

        a = asyncio.run(scenario())
        offers = [m for m in a.sent if m.kind == NegotiationKind.OFFER]
        assert len(offers) == 1

    def test_crossing_offers_open_one_channel(self):
        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            b = await network.add_device("B")
            try:
                to_b = a.manager(b.device_id)
                to_a = b.manager(a.device_id)
                await asyncio.gather(to_b.initiate(), to_a.initiate())
                await asyncio.wait_for(asyncio.gather(to_b.wait_open(), to_a.wait_open()), 5)
                await to_b.send_bytes("x", b"hello")
                await wait_until(lambda: b.log.of(FileReceived))
                return to_b, to_a
            finally:
                network.close()

        to_b, to_a = asyncio.run(scenario())
        # Exactly one side stays the initiator
        assert to_b.is_initiator != to_a.is_initiator
        smaller = to_b if to_b.local_device_id < to_b.remote_device_id else to_a
        assert smaller.is_initiator

    def test_unknown_target_returns_to_idle(self):
        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            try:
                manager = a.manager("no-such-device")
                with pytest.raises(TargetNotFound):
                    await manager.initiate()
                return a, manager
            finally:
                network.close()

        a, manager = asyncio.run(scenario())
        assert manager.state == PeerState.IDLE
        assert "failed" not in states(a, "no-such-device")
        errors = a.log.of(ErrorOccurred)
        assert [e.category for e in errors] == [ErrorCategory.TARGET_NOT_FOUND]

    def test_negotiation_timeout(self):
        async def scenario():
            network = SignalNetwork(negotiation_timeout=0.2)
            a = await network.add_device("A")
            silent = await network.registry.register("silent")

            async def drop(message):
                pass

            network.relay.attach(silent.id, drop)
            try:
                manager = a.manager(silent.id)
                await manager.initiate()
                with pytest.raises(NegotiationTimeout):
                    await asyncio.wait_for(manager.wait_open(), 5)
                return a, manager, silent.id
            finally:
                network.close()

        a, manager, silent_id = asyncio.run(scenario())
        assert manager.state == PeerState.FAILED
        assert manager.channel is None
        assert states(a, silent_id)[-1] == "failed"
        assert a.log.of(ErrorOccurred)[-1].category == ErrorCategory.NEGOTIATION_TIMEOUT


class TestChannelReadiness:
    """Sends before the channel is open"""

    def test_send_before_initiate(self):
        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            b = await network.add_device("B")
            try:
                with pytest.raises(ChannelNotReady):
                    await a.manager(b.device_id).send_bytes("x", b"data")
            finally:
                network.close()

        asyncio.run(scenario())

    def test_send_while_negotiating(self):
        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            b = await network.add_device("B")
            try:
                manager = a.manager(b.device_id)
                await manager.initiate()
                assert manager.state != PeerState.OPEN
                with pytest.raises(ChannelNotReady):
                    await manager.send_bytes("x", b"data")
            finally:
                network.close()

        asyncio.run(scenario())

    def test_wait_open_without_attempt(self):
        manager = ConnectionManager("a", "b", send_signal=None, events=EventBus())
        with pytest.raises(ChannelNotReady):
            asyncio.run(manager.wait_open())

    def test_channel_send_before_attach(self):
        channel = Channel()
        assert channel.state == ChannelState.CONNECTING
        with pytest.raises(ChannelNotReady):
            asyncio.run(channel.send_text("hi"))


class TestClose:
    """Closing a connection"""

    def test_close_mid_transfer_discards_partial_file(self):
        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            b = await network.add_device("B")
            try:
                to_b = a.manager(b.device_id)
                await to_b.initiate()
                await to_b.wait_open()
                await wait_until(lambda: a.device_id in b.managers)
                to_a = b.managers[a.device_id]
                await wait_for_state(to_a, PeerState.OPEN)

                def close_on_first_chunk(event):
                    if isinstance(event, TransferProgress):
                        to_a.close()

                b.events.subscribe(close_on_first_chunk)
                results = await asyncio.gather(
                    to_b.send_bytes("big.bin", b"\xab" * (16384 * 64)),
                    return_exceptions=True,
                )
                await wait_for_state(to_b, PeerState.CLOSED)
                return b, to_b, to_a, results
            finally:
                network.close()

        b, to_b, to_a, results = asyncio.run(scenario())
        assert to_a.state == PeerState.CLOSED
        assert to_b.state == PeerState.CLOSED
        assert b.log.of(FileReceived) == []
        assert ErrorCategory.TRANSFER_ABORTED in [e.category for e in b.log.of(ErrorOccurred)]
        # The sender either finished writing before noticing or was aborted
        assert not isinstance(results[0], Exception) or isinstance(results[0], TransferAborted)

    def test_close_is_idempotent(self):
        async def scenario():
            network = SignalNetwork()
            a = await network.add_device("A")
            b = await network.add_device("B")
            try:
                manager = a.manager(b.device_id)
                await manager.initiate()
                await manager.wait_open()
                manager.close()
                manager.close()
                with pytest.raises(ChannelNotReady):
                    await manager.send_bytes("x", b"y")
                return a, b, manager
            finally:
                network.close()

        a, b, manager = asyncio.run(scenario())
        assert manager.state == PeerState.CLOSED
        assert states(a, b.device_id).count("closed") == 1


class TestNegotiationErrors:
    """Malformed payloads and lost signaling fail the connection"""

    def test_bad_offer_payload(self):
        async def scenario():
            bus = EventBus()
            log = EventLog(bus)
            sent = []

            async def send_signal(message):
                sent.append(message)

            manager = ConnectionManager(
                "aaa", "bbb", send_signal, bus,
                transport_factory=lambda ch, cb: TcpTransport(
                    ch, cb, bind_host="127.0.0.1", advertise_hosts=["127.0.0.1"]
                ),
            )
            await manager.handle(NegotiationMessage(
                kind=NegotiationKind.OFFER, payload="garbage",
                source_device_id="bbb", target_device_id="aaa",
            ))
            return manager, log, sent

        manager, log, sent = asyncio.run(scenario())
        assert manager.state == PeerState.FAILED
        assert sent == []
        assert log.of(ErrorOccurred)[-1].category == NegotiationFailed.category

    @pytest.mark.parametrize("fail_on", [NegotiationKind.OFFER, NegotiationKind.CANDIDATE])
    def test_signaling_lost_during_initiate(self, fail_on):
        async def scenario():
            bus = EventBus()
            log = EventLog(bus)

            async def send_signal(message):
                if message.kind == fail_on:
                    raise ConnectionClosed("signaling socket closed")

            manager = ConnectionManager(
                "aaa", "bbb", send_signal, bus,
                transport_factory=lambda ch, cb: TcpTransport(
                    ch, cb, bind_host="127.0.0.1", advertise_hosts=["127.0.0.1"]
                ),
            )
            state = await manager.initiate()
            return state, manager, log

        state, manager, log = asyncio.run(scenario())
        assert state == PeerState.FAILED
        assert manager.state == PeerState.FAILED
        assert manager.channel is None
        assert log.of(ErrorOccurred)[-1].category == ErrorCategory.CONNECTION_CLOSED
