"""The contract the exchange expects from a peer-connection library.

A peer emits ``signal`` (a JSON-serialisable handshake fragment for the other
side), ``connect`` (data channel is live), ``error`` and ``close``. It takes
remote fragments through ``signal(data)`` and is torn down with ``destroy()``.
"""

from __future__ import annotations

import abc
from typing import Any, Callable

from pyee.asyncio import AsyncIOEventEmitter


class Peer(AsyncIOEventEmitter, abc.ABC):
    @abc.abstractmethod
    def signal(self, data: Any) -> None:
        """Feed a fragment produced by the remote peer."""

    @abc.abstractmethod
    def destroy(self) -> None:
        """Close the connection and release its resources."""


PeerFactory = Callable[[bool], Peer]
