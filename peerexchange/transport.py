"""Pub/sub relay adapters.

The exchange only needs six operations from a relay: subscribe, track,
on_presence_change, broadcast, on_broadcast and disconnect. ``RelayTransport``
names them; ``MemoryTransport`` runs them over an in-process ``RelayHub`` and
``HttpRelayTransport`` talks to the relay in ``server.py``.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import httpx

from .hub import CHANNEL_ERROR, NotSubscribed, RelayHub


logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]
PresenceCallback = Callable[[List[dict]], None]
BroadcastCallback = Callable[[Any], None]


class RelayError(RuntimeError):
    """Subscription, presence or broadcast failure on the relay."""


@dataclass
class ChannelHandle:
    channel_id: str
    client_id: str
    on_status: Optional[StatusCallback] = None
    presence_listeners: List[PresenceCallback] = field(default_factory=list)
    broadcast_listeners: Dict[str, List[BroadcastCallback]] = field(default_factory=dict)
    closed: bool = False
    task: Optional[asyncio.Task] = None


class RelayTransport(abc.ABC):
    @abc.abstractmethod
    def subscribe(self, channel_id: str, on_status: Optional[StatusCallback] = None) -> ChannelHandle:
        """Join ``channel_id``. Status arrives later through ``on_status``."""

    @abc.abstractmethod
    async def track(self, handle: ChannelHandle, presence: dict) -> str:
        """Publish this client's presence payload."""

    @abc.abstractmethod
    async def broadcast(self, handle: ChannelHandle, event: str, payload: Any) -> str:
        """Send ``payload`` to the other subscribers under ``event``."""

    @abc.abstractmethod
    def disconnect(self, handle: ChannelHandle) -> None:
        """Leave the channel. Safe to call more than once."""

    def on_presence_change(self, handle: ChannelHandle, callback: PresenceCallback) -> None:
        handle.presence_listeners.append(callback)

    def on_broadcast(self, handle: ChannelHandle, event: str, callback: BroadcastCallback) -> None:
        handle.broadcast_listeners.setdefault(event, []).append(callback)

    def _detach(self, handle: ChannelHandle) -> bool:
        if handle.closed:
            return False
        handle.closed = True
        handle.on_status = None
        handle.presence_listeners.clear()
        handle.broadcast_listeners.clear()
        return True

    def _dispatch(self, handle: ChannelHandle, message: dict) -> None:
        if handle.closed:
            return
        kind = message.get("type")
        try:
            if kind == "status":
                if handle.on_status is not None:
                    handle.on_status(message.get("status", ""))
            elif kind == "presence":
                for callback in list(handle.presence_listeners):
                    callback(list(message.get("state") or []))
            elif kind == "broadcast":
                for callback in list(handle.broadcast_listeners.get(message.get("event"), [])):
                    callback(message.get("payload"))
            else:
                logger.debug("Ignoring relay message of type %r", kind)
        except Exception:
            logger.exception("Relay listener failed on %s message", kind)


class MemoryTransport(RelayTransport):
    """Relay adapter over a ``RelayHub`` living in the same process."""

    def __init__(self, hub: Optional[RelayHub] = None) -> None:
        self.hub = hub or RelayHub()

    def subscribe(self, channel_id: str, on_status: Optional[StatusCallback] = None) -> ChannelHandle:
        handle = ChannelHandle(channel_id, uuid4().hex, on_status)
        loop = asyncio.get_running_loop()

        def deliver(message: dict) -> None:
            loop.call_soon(self._dispatch, handle, message)

        self.hub.join(channel_id, handle.client_id, deliver)
        return handle

    async def track(self, handle: ChannelHandle, presence: dict) -> str:
        try:
            return self.hub.track(handle.channel_id, handle.client_id, presence)
        except NotSubscribed as exc:
            raise RelayError(str(exc)) from exc

    async def broadcast(self, handle: ChannelHandle, event: str, payload: Any) -> str:
        try:
            return self.hub.broadcast(handle.channel_id, handle.client_id, event, payload)
        except NotSubscribed as exc:
            raise RelayError(str(exc)) from exc

    def disconnect(self, handle: ChannelHandle) -> None:
        if self._detach(handle):
            self.hub.leave(handle.channel_id, handle.client_id)


class HttpRelayTransport(RelayTransport):
    """Relay adapter for the FastAPI relay (SSE down, JSON POSTs up)."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
        reconnect_delay: float = 2.0,
    ) -> None:
        self.base_url = base_url
        self.reconnect_delay = reconnect_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=httpx.Timeout(10.0, read=None)
        )

    def subscribe(self, channel_id: str, on_status: Optional[StatusCallback] = None) -> ChannelHandle:
        handle = ChannelHandle(channel_id, uuid4().hex, on_status)
        handle.task = asyncio.get_running_loop().create_task(self._listen(handle))
        return handle

    async def _listen(self, handle: ChannelHandle) -> None:
        url = f"/channels/{handle.channel_id}/events"
        while not handle.closed:
            try:
                async with self._client.stream(
                    "GET", url, params={"client_id": handle.client_id}
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if line.startswith("data:"):
                            self._dispatch(handle, json.loads(line[5:].strip()))
                logger.info("Relay closed the event stream for %s", handle.channel_id[:8])
            except (httpx.HTTPError, json.JSONDecodeError) as exc:
                logger.warning("Relay event stream for %s failed: %s", handle.channel_id[:8], exc)
            if handle.closed:
                break
            self._dispatch(handle, {"type": "status", "status": CHANNEL_ERROR})
            await asyncio.sleep(self.reconnect_delay)

    async def _post(self, url: str, body: dict) -> str:
        try:
            response = await self._client.post(url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RelayError(f"relay request to {url} failed: {exc}") from exc
        return response.json().get("status", "ok")

    async def track(self, handle: ChannelHandle, presence: dict) -> str:
        return await self._post(
            f"/channels/{handle.channel_id}/presence",
            {"client_id": handle.client_id, "data": presence},
        )

    async def broadcast(self, handle: ChannelHandle, event: str, payload: Any) -> str:
        return await self._post(
            f"/channels/{handle.channel_id}/broadcast",
            {"client_id": handle.client_id, "event": event, "payload": payload},
        )

    def disconnect(self, handle: ChannelHandle) -> None:
        # Closing the event stream is enough: the relay drops presence with it
        if self._detach(handle) and handle.task is not None:
            handle.task.cancel()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
