import asyncio
import logging
from typing import Any, List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from peerexchange.arbitration import Phase
from peerexchange.config import ExchangeConfig
from peerexchange.envelope import open_signal, seal_signal
from peerexchange.exchange import ExchangeDisposed, PeerExchange
from peerexchange.hub import SUBSCRIBED, RelayHub
from peerexchange.peer import Peer
from peerexchange.secret import InvalidConnectKey, Role, derive_secret, generate_connect_key
from peerexchange.transport import MemoryTransport, RelayError, RelayTransport


OFFER = {"type": "offer", "sdp": "fake-offer"}
ANSWER = {"type": "answer", "sdp": "fake-answer"}
FAST = ExchangeConfig(debounce=0.01)


class FakePeer(Peer):
    """Offer/answer handshake without a network.

    The initiator offers on creation and connects on the answer. The
    responder answers an offer and connects a little later, once its answer
    has had time to go out.
    """

    def __init__(self, initiator: bool) -> None:
        super().__init__()
        self.initiator = initiator
        self.received: List[Any] = []
        self.destroyed = False
        if initiator:
            asyncio.get_running_loop().call_soon(self.emit, "signal", OFFER)

    def signal(self, data: Any) -> None:
        self.received.append(data)
        loop = asyncio.get_running_loop()
        if data.get("type") == "offer":
            loop.call_soon(self.emit, "signal", ANSWER)
            loop.call_later(0.1, self.emit, "connect")
        elif data.get("type") == "answer":
            loop.call_soon(self.emit, "connect")

    def destroy(self) -> None:
        self.destroyed = True


class SilentPeer(FakePeer):
    """Takes signals and never answers."""

    def signal(self, data: Any) -> None:
        self.received.append(data)


class FailingPeer(FakePeer):
    def __init__(self, initiator: bool) -> None:
        Peer.__init__(self)
        self.initiator = initiator
        self.received = []
        self.destroyed = False
        asyncio.get_running_loop().call_soon(self.emit, "error", ConnectionError("ice failed"))


class PeerLog:
    def __init__(self, cls=FakePeer) -> None:
        self.cls = cls
        self.peers: List[FakePeer] = []

    def __call__(self, initiator: bool) -> FakePeer:
        peer = self.cls(initiator)
        self.peers.append(peer)
        return peer


class RecordingTransport(MemoryTransport):
    def __init__(self, hub=None, failing_broadcasts: int = 0) -> None:
        super().__init__(hub)
        self.handles = []
        self.tracked = []
        self.broadcasts = []
        self.failing_broadcasts = failing_broadcasts

    def subscribe(self, channel_id, on_status=None):
        handle = super().subscribe(channel_id, on_status)
        self.handles.append(handle)
        return handle

    async def track(self, handle, presence):
        self.tracked.append(presence)
        return await super().track(handle, presence)

    async def broadcast(self, handle, event, payload):
        self.broadcasts.append((event, payload))
        if self.failing_broadcasts:
            self.failing_broadcasts -= 1
            raise RelayError("relay unavailable")
        return await super().broadcast(handle, event, payload)


def test_end_to_end_exchange():
    async def run():
        hub = RelayHub()
        a_peers, b_peers = PeerLog(), PeerLog()
        a = PeerExchange(MemoryTransport(hub), a_peers, config=FAST)
        b = PeerExchange(MemoryTransport(hub), b_peers, a.connect_key, config=FAST)
        assert a.role is Role.INITIATOR
        assert b.role is Role.RESPONDER
        assert a.channel_id == b.channel_id

        async with a, b:
            peer_a, peer_b = await asyncio.wait_for(asyncio.gather(a.wait(), b.wait()), 2)
            assert a.phase is Phase.CONNECTED
            assert b.phase is Phase.CONNECTED

        assert peer_a is a_peers.peers[0] and peer_a.initiator
        assert peer_b is b_peers.peers[0] and not peer_b.initiator
        assert peer_b.received == [OFFER]
        assert peer_a.received == [ANSWER]
        # Connected peers belong to the caller now
        assert not peer_a.destroyed and not peer_b.destroyed
        assert a.closed.is_set() and b.closed.is_set()
        assert hub.channels() == []

    asyncio.run(run())


def test_only_one_request_with_two_counterparts():
    async def run():
        hub = RelayHub()
        a_peers, b_peers, c_peers = PeerLog(), PeerLog(), PeerLog()
        a = PeerExchange(MemoryTransport(hub), a_peers, config=FAST)
        b = PeerExchange(MemoryTransport(hub), b_peers, a.connect_key, config=FAST)
        c = PeerExchange(MemoryTransport(hub), c_peers, a.connect_key, config=FAST)

        async with a, b, c:
            await asyncio.wait_for(a.wait(), 2)
            # Whichever responder A picked connects; the other never hears from A
            winner, loser = (b, c) if b_peers.peers else (c, b)
            await asyncio.wait_for(winner.wait(), 2)
            assert len(a_peers.peers) == 1
            assert loser.phase is Phase.IDLE
            assert loser.request is None
        assert len(b_peers.peers) + len(c_peers.peers) == 1

    asyncio.run(run())


def test_self_echo_is_never_decrypted():
    async def run():
        hub = RelayHub()
        b = PeerExchange(MemoryTransport(hub), PeerLog(), generate_connect_key(), config=FAST)
        key = derive_secret(b.connect_key).key
        rogue = MemoryTransport(hub)

        with patch("peerexchange.exchange.open_signal", wraps=open_signal) as opened:
            async with b:
                handle = rogue.subscribe(b.channel_id)
                await asyncio.sleep(0.02)
                echo = seal_signal(OFFER, key, b.peer_id, b.peer_id).to_wire()
                await rogue.broadcast(handle, "signal", [echo])
                await asyncio.sleep(0.02)
                assert b.request is None
                assert b.phase is Phase.IDLE
            opened.assert_not_called()

    asyncio.run(run())


def test_relay_echo_of_own_signals_is_ignored():
    async def run():
        hub = RelayHub(echo=True)
        a_peers, b_peers = PeerLog(), PeerLog()
        a = PeerExchange(MemoryTransport(hub), a_peers, config=FAST)
        b = PeerExchange(MemoryTransport(hub), b_peers, a.connect_key, config=FAST)

        with patch("peerexchange.exchange.open_signal", wraps=open_signal) as opened:
            async with a, b:
                await asyncio.wait_for(asyncio.gather(a.wait(), b.wait()), 2)
        senders = {call.args[0].from_peer_id for call in opened.call_args_list}
        assert senders == {a.peer_id, b.peer_id}
        assert opened.call_count == 2
        assert a_peers.peers[0].received == [ANSWER]

    asyncio.run(run())


def test_forged_envelope_opens_no_request(caplog):
    caplog.set_level(logging.INFO)

    async def run():
        hub = RelayHub()
        peers = PeerLog()
        b = PeerExchange(MemoryTransport(hub), peers, generate_connect_key(), config=FAST)
        wrong_key = derive_secret(generate_connect_key()).key
        rogue = MemoryTransport(hub)

        async with b:
            handle = rogue.subscribe(b.channel_id)
            await asyncio.sleep(0.02)
            forged = seal_signal(OFFER, wrong_key, "mallory", b.peer_id).to_wire()
            await rogue.broadcast(handle, "signal", [forged, {"garbage": True}])
            await asyncio.sleep(0.02)
            assert b.request is None
            assert peers.peers == []

    asyncio.run(run())
    assert "Failed to decrypt signal" in caplog.text


def test_invalid_key_rejected_before_network():
    transport = MagicMock(spec=RelayTransport)
    with pytest.raises(InvalidConnectKey):
        PeerExchange(transport, PeerLog(), "not-hex")
    assert transport.method_calls == []


def test_presence_is_retracked_after_resubscribe():
    async def run():
        transport = RecordingTransport()
        exchange = PeerExchange(transport, PeerLog(), config=FAST)
        async with exchange:
            await asyncio.sleep(0.02)
            assert len(transport.tracked) == 1
            transport.handles[0].on_status(SUBSCRIBED)
            await asyncio.sleep(0.02)
            assert len(transport.tracked) == 2
        presence = transport.tracked[0]
        assert set(presence) == {"peerId", "peerNickname"}
        assert presence["peerId"] == exchange.peer_id
        assert exchange.connect_key not in presence.values()

    asyncio.run(run())


def test_dispose_before_connection():
    async def run():
        hub = RelayHub()
        a = PeerExchange(MemoryTransport(hub), PeerLog(), config=FAST).start()
        await asyncio.sleep(0.02)
        a.dispose()
        a.dispose()
        assert a.phase is Phase.DISPOSED
        assert a.closed.is_set()
        with pytest.raises(ExchangeDisposed):
            await a.wait()
        assert hub.channels() == []
        with pytest.raises(ExchangeDisposed):
            a.start()

    asyncio.run(run())


def test_dispose_destroys_inflight_peer():
    async def run():
        hub = RelayHub()
        a_peers = PeerLog()
        a = PeerExchange(MemoryTransport(hub), a_peers, config=FAST)
        b = PeerExchange(MemoryTransport(hub), PeerLog(SilentPeer), a.connect_key, config=FAST)
        async with a, b:
            await asyncio.sleep(0.1)
            assert a.phase is Phase.REQUESTING
            a.dispose()
            assert a_peers.peers[0].destroyed

    asyncio.run(run())


def test_dispose_after_resolution_makes_no_transport_calls():
    async def run():
        hub = RelayHub()
        a = PeerExchange(MemoryTransport(hub), PeerLog(), config=FAST)
        b = PeerExchange(MemoryTransport(hub), PeerLog(), a.connect_key, config=FAST)
        async with a, b:
            await asyncio.wait_for(asyncio.gather(a.wait(), b.wait()), 2)
            with patch.object(MemoryTransport, "subscribe") as subscribe, patch.object(
                MemoryTransport, "track", new_callable=AsyncMock
            ) as track, patch.object(
                MemoryTransport, "broadcast", new_callable=AsyncMock
            ) as broadcast, patch.object(MemoryTransport, "disconnect") as disconnect:
                a.dispose()
                a.dispose()
                b.dispose()
                await asyncio.sleep(0.05)
            for mock in (subscribe, track, broadcast, disconnect):
                mock.assert_not_called()
        assert (await a.wait()).initiator

    asyncio.run(run())


def test_request_timeout_and_retry():
    async def run():
        hub = RelayHub()
        a_peers = PeerLog()
        config = ExchangeConfig(debounce=0.01, request_timeout=0.05, retry_delay=0.01)
        a = PeerExchange(MemoryTransport(hub), a_peers, config=config)
        b = PeerExchange(MemoryTransport(hub), PeerLog(SilentPeer), a.connect_key, config=FAST)
        async with a, b:
            await asyncio.sleep(0.3)
            assert len(a_peers.peers) >= 2
            assert a_peers.peers[0].destroyed
            assert a.phase is Phase.IDLE or a.request.request_id >= 2

    asyncio.run(run())


def test_peer_error_returns_to_idle():
    async def run():
        hub = RelayHub()
        a_peers = PeerLog(FailingPeer)
        a = PeerExchange(MemoryTransport(hub), a_peers, config=FAST)
        b = PeerExchange(MemoryTransport(hub), PeerLog(), a.connect_key, config=FAST)
        async with a, b:
            await asyncio.sleep(0.1)
            assert a_peers.peers
            assert all(peer.destroyed for peer in a_peers.peers)
            assert a.phase is Phase.IDLE
            assert a.request is None

    asyncio.run(run())


def test_send_failure_does_not_stop_discovery(caplog):
    caplog.set_level(logging.INFO)

    async def run():
        hub = RelayHub()
        transport = RecordingTransport(hub, failing_broadcasts=1)
        a = PeerExchange(transport, PeerLog(), config=FAST)
        b = PeerExchange(MemoryTransport(hub), PeerLog(SilentPeer), a.connect_key, config=FAST)
        async with a, b:
            await asyncio.sleep(0.1)
            assert a.phase is Phase.REQUESTING
            assert not a.closed.is_set()
            assert transport.broadcasts[0][0] == "signal"
            assert b.request is None

    asyncio.run(run())
    assert "Relay send failed" in caplog.text


def test_third_party_signals_are_not_decrypted_while_requesting(caplog):
    caplog.set_level(logging.INFO)

    async def run():
        hub = RelayHub()
        a = PeerExchange(MemoryTransport(hub), PeerLog(), config=FAST)
        b = PeerExchange(MemoryTransport(hub), PeerLog(SilentPeer), a.connect_key, config=FAST)
        key = derive_secret(a.connect_key).key
        wrong_key = derive_secret(generate_connect_key()).key
        rogue = MemoryTransport(hub)

        async with a, b:
            handle = rogue.subscribe(b.channel_id)
            await asyncio.sleep(0.1)
            assert b.request.counterpart_id == a.peer_id
            with patch("peerexchange.exchange.open_signal", wraps=open_signal) as opened:
                batch = [
                    seal_signal(OFFER, key, "mallory", b.peer_id).to_wire(),
                    seal_signal(OFFER, wrong_key, "mallory", b.peer_id).to_wire(),
                ]
                await rogue.broadcast(handle, "signal", batch)
                await asyncio.sleep(0.02)
            opened.assert_not_called()
            assert b.request.counterpart_id == a.peer_id
            assert b.request.request_id == 1

    asyncio.run(run())
    assert "Failed to decrypt signal" not in caplog.text


def test_dispose_after_loop_closed_does_not_raise():
    exchanges = []

    async def run():
        hub = RelayHub()
        # A long window keeps the offer pending when the loop goes away
        slow = ExchangeConfig(debounce=30)
        a = PeerExchange(MemoryTransport(hub), PeerLog(), config=slow).start()
        b = PeerExchange(MemoryTransport(hub), PeerLog(SilentPeer), a.connect_key, config=slow)
        b.start()
        await asyncio.sleep(0.05)
        assert a.phase is Phase.REQUESTING
        exchanges.extend([a, b])

    asyncio.run(run())
    for exchange in exchanges:
        exchange.dispose()
        exchange.dispose()
        assert exchange.phase is Phase.DISPOSED
        assert exchange.closed.is_set()
