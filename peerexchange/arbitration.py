"""Discovery and role arbitration as a pure state machine.

``step`` takes the current ``ArbiterState`` and one event and returns the new
state plus the effects the caller has to carry out. It never touches the
network, the peer library or the clock, so every transition can be checked
directly.

Only the initiator opens connection requests from presence. The responder
waits for the first signal addressed to it and binds its request to the
sender. This keeps the two sides from opening duplicate attempts towards each
other.

``SignalReceived`` carries an already decrypted signal. Envelopes that fail
authentication never become events, so a forged envelope cannot bind the
responder to its sender.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Tuple, Union

from .secret import Role


class Phase(enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    CONNECTED = "connected"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class ConnectionRequest:
    request_id: int
    counterpart_id: str
    role: Role


@dataclass(frozen=True)
class ArbiterState:
    self_id: str
    role: Role
    phase: Phase = Phase.IDLE
    request: Optional[ConnectionRequest] = None
    known_peers: Tuple[str, ...] = ()
    retry_enabled: bool = False
    next_request_id: int = 1


# --- Events ---

@dataclass(frozen=True)
class PresenceChanged:
    peer_ids: Tuple[str, ...]


@dataclass(frozen=True)
class SignalReceived:
    from_peer_id: str
    to_peer_id: str
    signal: Any = field(default=None, compare=False)


@dataclass(frozen=True)
class PeerConnected:
    request_id: int


@dataclass(frozen=True)
class PeerFailed:
    request_id: int
    reason: str = ""


@dataclass(frozen=True)
class RequestTimedOut:
    request_id: int


@dataclass(frozen=True)
class RetryDiscovery:
    pass


@dataclass(frozen=True)
class Dispose:
    pass


Event = Union[
    PresenceChanged,
    SignalReceived,
    PeerConnected,
    PeerFailed,
    RequestTimedOut,
    RetryDiscovery,
    Dispose,
]


# --- Effects ---

@dataclass(frozen=True)
class OpenRequest:
    request: ConnectionRequest


@dataclass(frozen=True)
class DeliverSignal:
    request_id: int
    signal: Any = field(compare=False)


@dataclass(frozen=True)
class DestroyRequest:
    request_id: int


@dataclass(frozen=True)
class ResolveRequest:
    request_id: int


@dataclass(frozen=True)
class Teardown:
    pass


@dataclass(frozen=True)
class ScheduleRetry:
    pass


@dataclass(frozen=True)
class DropSignal:
    from_peer_id: str
    reason: str


Effect = Union[
    OpenRequest,
    DeliverSignal,
    DestroyRequest,
    ResolveRequest,
    Teardown,
    ScheduleRetry,
    DropSignal,
]


def _open(state: ArbiterState, counterpart_id: str) -> Tuple[ArbiterState, ConnectionRequest]:
    request = ConnectionRequest(state.next_request_id, counterpart_id, state.role)
    state = replace(
        state,
        phase=Phase.REQUESTING,
        request=request,
        next_request_id=state.next_request_id + 1,
    )
    return state, request


def _discover(state: ArbiterState) -> Tuple[ArbiterState, List[Effect]]:
    if state.role is not Role.INITIATOR or state.phase is not Phase.IDLE:
        return state, []
    # First other peer in presence order; later ones wait for this to settle
    counterpart = next((pid for pid in state.known_peers if pid != state.self_id), None)
    if counterpart is None:
        return state, []
    state, request = _open(state, counterpart)
    return state, [OpenRequest(request)]


def _on_signal(state: ArbiterState, event: SignalReceived) -> Tuple[ArbiterState, List[Effect]]:
    sender = event.from_peer_id
    if sender == state.self_id:
        return state, [DropSignal(sender, "self echo")]
    if event.to_peer_id != state.self_id:
        return state, [DropSignal(sender, "addressed to another peer")]
    if state.phase is Phase.IDLE:
        if state.role is not Role.RESPONDER:
            return state, [DropSignal(sender, "no active request")]
        state, request = _open(state, sender)
        return state, [OpenRequest(request), DeliverSignal(request.request_id, event.signal)]
    if state.phase is Phase.REQUESTING:
        if state.request.counterpart_id != sender:
            return state, [DropSignal(sender, "not the active counterpart")]
        return state, [DeliverSignal(state.request.request_id, event.signal)]
    return state, [DropSignal(sender, f"exchange is {state.phase.value}")]


def _is_active(state: ArbiterState, request_id: int) -> bool:
    return (
        state.phase is Phase.REQUESTING
        and state.request is not None
        and state.request.request_id == request_id
    )


def step(state: ArbiterState, event: Event) -> Tuple[ArbiterState, List[Effect]]:
    """Apply one event. Returns the next state and the effects to perform."""
    if state.phase is Phase.DISPOSED:
        return state, []

    if isinstance(event, Dispose):
        effects: List[Effect] = []
        if state.phase is Phase.REQUESTING:
            effects.append(DestroyRequest(state.request.request_id))
        effects.append(Teardown())
        return replace(state, phase=Phase.DISPOSED, request=None), effects

    if isinstance(event, PresenceChanged):
        state = replace(state, known_peers=tuple(event.peer_ids))
        return _discover(state)

    if isinstance(event, RetryDiscovery):
        return _discover(state)

    if isinstance(event, SignalReceived):
        return _on_signal(state, event)

    if isinstance(event, PeerConnected):
        if not _is_active(state, event.request_id):
            return state, []
        return (
            replace(state, phase=Phase.CONNECTED),
            [ResolveRequest(event.request_id), Teardown()],
        )

    if isinstance(event, (PeerFailed, RequestTimedOut)):
        if not _is_active(state, event.request_id):
            return state, []
        effects = [DestroyRequest(event.request_id)]
        if state.retry_enabled and state.role is Role.INITIATOR:
            effects.append(ScheduleRetry())
        return replace(state, phase=Phase.IDLE, request=None), effects

    raise TypeError(f"unknown event {event!r}")
