"""One signaling exchange: find a counterpart, trade encrypted signals, hand
over the connected peer.

Relay and peer callbacks never change state themselves. Each one is turned
into an arbitration event and queued; a single task takes events off the
queue, runs ``arbitration.step`` and then performs the returned effects.
Envelopes addressed to this peer are decrypted while being turned into
events, in batch order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from .arbitration import (
    ArbiterState,
    ConnectionRequest,
    DeliverSignal,
    DestroyRequest,
    Dispose,
    DropSignal,
    Effect,
    Event,
    OpenRequest,
    PeerConnected,
    PeerFailed,
    Phase,
    PresenceChanged,
    RequestTimedOut,
    ResolveRequest,
    RetryDiscovery,
    ScheduleRetry,
    SignalReceived,
    Teardown,
    step,
)
from .batching import SendBatchQueue
from .config import ExchangeConfig
from .envelope import SignalAuthenticationError, open_signal, parse_batch, seal_signal
from .hub import SUBSCRIBED
from .log import PeerLogAdapter
from .nicknames import random_nickname
from .peer import Peer, PeerFactory
from .secret import Role, derive_secret
from .transport import ChannelHandle, RelayError, RelayTransport


logger = logging.getLogger(__name__)

Logger = Union[logging.Logger, logging.LoggerAdapter]


class ExchangeDisposed(RuntimeError):
    """The exchange was disposed before a connection was established."""


def describe_signal(signal: Any) -> str:
    if isinstance(signal, dict):
        if signal.get("type"):
            return str(signal["type"])
        if "candidate" in signal:
            return "candidate"
    return "unknown"


class PeerExchange:
    """Signaling exchange between this process and exactly one counterpart.

    Without ``connect_key`` a new key is generated and this side initiates;
    share ``connect_key`` with the other side out of band. With a key this
    side responds to whoever signals it first on the derived channel.

    Usage::

        async with PeerExchange(transport, make_peer) as exchange:
            print(exchange.connect_key)
            peer = await exchange.wait()
    """

    def __init__(
        self,
        transport: RelayTransport,
        peer_factory: PeerFactory,
        connect_key: Optional[str] = None,
        config: Optional[ExchangeConfig] = None,
        log: Optional[Logger] = None,
    ) -> None:
        self.config = config or ExchangeConfig()
        secret = derive_secret(connect_key)
        self.connect_key = secret.connect_key
        self.channel_id = secret.channel_id
        self.role = secret.role
        self._key = secret.key

        self.peer_id = str(uuid4())
        self.peer_nickname = self.config.nickname or random_nickname()
        self.log = PeerLogAdapter(log or logger, {"peer": self.peer_id[:8]})

        self._transport = transport
        self._peer_factory = peer_factory
        self._state = ArbiterState(
            self_id=self.peer_id,
            role=self.role,
            retry_enabled=self.config.retry_delay is not None,
        )
        self._peers: Dict[int, Peer] = {}
        self._peer_handlers: Dict[int, List[Tuple[str, Callable]]] = {}
        self._request_timers: Dict[int, asyncio.TimerHandle] = {}
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set = set()
        self._channel: Optional[ChannelHandle] = None
        self._batch: Optional[SendBatchQueue] = None
        self._watched_send: Optional[asyncio.Future] = None
        self._events: Optional[asyncio.Queue] = None
        self._runner: Optional[asyncio.Task] = None
        self._result: Optional[asyncio.Future] = None
        self._torn_down = False
        self.closed = asyncio.Event()

    # --- public surface ---

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def request(self) -> Optional[ConnectionRequest]:
        return self._state.request

    @property
    def result(self) -> Optional[asyncio.Future]:
        return self._result

    def start(self) -> "PeerExchange":
        if self.phase is Phase.DISPOSED:
            raise ExchangeDisposed("exchange has been disposed")
        if self._result is not None:
            return self
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        self._events = asyncio.Queue()
        self._batch = SendBatchQueue(self._send_batch, delay=self.config.debounce)
        self._channel = self._transport.subscribe(self.channel_id, self._on_status)
        self._transport.on_presence_change(self._channel, self._on_presence)
        self._transport.on_broadcast(self._channel, self.config.signal_event, self._on_broadcast)
        self._runner = loop.create_task(self._run())
        self.log.info("Joining channel %s as %s", self.channel_id[:8], self.role.value)
        return self

    async def wait(self) -> Peer:
        """Return the connected peer, or raise ``ExchangeDisposed``."""
        if self._result is None:
            self.start()
        await asyncio.wait([self._result])
        if self._result.cancelled():
            raise ExchangeDisposed("exchange was disposed before connecting")
        return self._result.result()

    def dispose(self) -> None:
        """Stop signaling. Idempotent; a connected peer is left alone."""
        if self.phase is Phase.DISPOSED:
            return
        self._apply(Dispose())
        if self._result is not None and not self._result.done():
            self._quietly(self._result.cancel)

    async def __aenter__(self) -> "PeerExchange":
        return self.start()

    async def __aexit__(self, *exc_info) -> None:
        self.dispose()

    # --- relay callbacks ---

    def _on_status(self, status: str) -> None:
        self.log.info('Relay subscription status "%s"', status)
        # Re-delivered after every reconnect; presence has to be published again
        if status == SUBSCRIBED and not self._torn_down:
            self._spawn(self._track())

    async def _track(self) -> None:
        presence = {"peerId": self.peer_id, "peerNickname": self.peer_nickname}
        try:
            status = await self._transport.track(self._channel, presence)
        except RelayError as exc:
            self.log.warning("Relay track failed: %s", exc)
            return
        self.log.info('Relay track status "%s"', status)

    def _on_presence(self, state: List[dict]) -> None:
        peer_ids: List[str] = []
        for item in state:
            peer_id = item.get("peerId") if isinstance(item, dict) else None
            if isinstance(peer_id, str) and peer_id not in peer_ids:
                peer_ids.append(peer_id)
        self.log.info("Number of peers: %d", len(peer_ids))
        self._queue(PresenceChanged(tuple(peer_ids)))

    def _on_broadcast(self, payload: Any) -> None:
        for envelope in parse_batch(payload):
            sender = envelope.from_peer_id
            signal = None
            # Own echoes and other peers' traffic are dropped by step() unopened
            if sender != self.peer_id and envelope.to_peer_id == self.peer_id:
                request = self._state.request
                if request is not None and request.counterpart_id != sender:
                    self.log.debug(
                        "Ignoring signal from %s while requesting %s",
                        sender[:8],
                        request.counterpart_id[:8],
                    )
                    continue
                try:
                    signal = open_signal(envelope, self._key)
                except SignalAuthenticationError as exc:
                    self.log.warning("Failed to decrypt signal from %s: %s", sender[:8], exc)
                    continue
            self._queue(SignalReceived(sender, envelope.to_peer_id, signal))

    # --- event loop ---

    def _queue(self, event: Event) -> None:
        if not self._torn_down and self._events is not None:
            self._events.put_nowait(event)

    async def _run(self) -> None:
        while not self._torn_down:
            event = await self._events.get()
            self._apply(event)

    def _apply(self, event: Event) -> None:
        self._state, effects = step(self._state, event)
        for effect in effects:
            self._perform(effect)

    def _perform(self, effect: Effect) -> None:
        if isinstance(effect, OpenRequest):
            self._open_request(effect.request)
        elif isinstance(effect, DeliverSignal):
            self._deliver(effect.request_id, effect.signal)
        elif isinstance(effect, DestroyRequest):
            peer = self._release(effect.request_id)
            if peer is not None:
                self.log.info("Discarding connection request %d", effect.request_id)
                self._destroy_peer(peer)
        elif isinstance(effect, ResolveRequest):
            peer = self._release(effect.request_id)
            self.log.info("Connected")
            if peer is not None and self._result is not None and not self._result.done():
                self._result.set_result(peer)
        elif isinstance(effect, Teardown):
            self._teardown()
        elif isinstance(effect, ScheduleRetry):
            loop = asyncio.get_running_loop()
            self._retry_timer = loop.call_later(
                self.config.retry_delay, self._queue, RetryDiscovery()
            )
        elif isinstance(effect, DropSignal):
            self.log.debug("Dropped signal from %s: %s", effect.from_peer_id[:8], effect.reason)

    # --- connection requests ---

    def _open_request(self, request: ConnectionRequest) -> None:
        rid = request.request_id
        peer = self._peer_factory(request.role is Role.INITIATOR)
        handlers = [
            ("signal", lambda data: self._send_signal(rid, request.counterpart_id, data)),
            ("connect", lambda: self._queue(PeerConnected(rid))),
            ("error", lambda exc: self._on_peer_error(rid, exc)),
            ("close", lambda: self._queue(PeerFailed(rid, "closed"))),
        ]
        for event, handler in handlers:
            peer.on(event, handler)
        self._peers[rid] = peer
        self._peer_handlers[rid] = handlers
        if self.config.request_timeout is not None:
            self._request_timers[rid] = asyncio.get_running_loop().call_later(
                self.config.request_timeout, self._queue, RequestTimedOut(rid)
            )
        self.log.info(
            "Requesting connection with %s as %s", request.counterpart_id[:8], request.role.value
        )

    def _on_peer_error(self, rid: int, exc: Any) -> None:
        self.log.warning("WebRTC failure: %s", exc)
        self._queue(PeerFailed(rid, str(exc)))

    def _release(self, rid: int) -> Optional[Peer]:
        timer = self._request_timers.pop(rid, None)
        if timer is not None:
            timer.cancel()
        peer = self._peers.pop(rid, None)
        for event, handler in self._peer_handlers.pop(rid, []):
            peer.remove_listener(event, handler)
        return peer

    def _destroy_peer(self, peer: Peer) -> None:
        try:
            peer.destroy()
        except Exception:
            self.log.exception("Peer destroy failed")

    def _deliver(self, rid: int, signal: Any) -> None:
        peer = self._peers.get(rid)
        if peer is None:
            return
        self.log.info('Received signal "%s"', describe_signal(signal))
        try:
            peer.signal(signal)
        except Exception as exc:
            self._on_peer_error(rid, exc)

    # --- outbound ---

    def _send_signal(self, rid: int, to_peer_id: str, signal: Any) -> None:
        if self._torn_down or rid not in self._peers:
            return
        self.log.info('Send signal "%s"', describe_signal(signal))
        envelope = seal_signal(signal, self._key, self.peer_id, to_peer_id)
        future = self._batch.enqueue(envelope.to_wire())
        if future is not self._watched_send:
            self._watched_send = future
            future.add_done_callback(self._log_send_result)

    async def _send_batch(self, batch: List[dict]) -> str:
        return await self._transport.broadcast(self._channel, self.config.signal_event, batch)

    def _log_send_result(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self.log.warning("Relay send failed: %s", exc)
        else:
            self.log.info('Relay send status "%s"', future.result())

    # --- teardown ---

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _quietly(self, action: Callable, *args: Any) -> None:
        try:
            action(*args)
        except RuntimeError as exc:
            # Callbacks cannot be scheduled once the owning loop has closed
            self.log.debug("Teardown step skipped: %s", exc)

    def _teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        if self._retry_timer is not None:
            self._retry_timer.cancel()
        for rid in list(self._peers):
            # Only in-flight requests are left here; a resolved peer was released
            peer = self._release(rid)
            self._destroy_peer(peer)
        if self._batch is not None:
            self._quietly(self._batch.cancel)
        if self._channel is not None:
            self._quietly(self._transport.disconnect, self._channel)
        for task in list(self._tasks):
            self._quietly(task.cancel)
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if self._runner is not None and self._runner is not current:
            self._quietly(self._runner.cancel)
        self._quietly(self.closed.set)
        self.log.info("Signaling stopped")
