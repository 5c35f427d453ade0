"""In-memory channel registry shared by the relay server and MemoryTransport."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)

Deliver = Callable[[dict], None]

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"


class NotSubscribed(LookupError):
    """The client has no subscription on the channel."""


class RelayHub:
    """Channels, their subscribers and presence.

    Every subscriber is a ``deliver`` callable receiving event dicts:

    - ``{"type": "status", "status": "SUBSCRIBED"}``
    - ``{"type": "presence", "state": [<presence payload>, ...]}``
    - ``{"type": "broadcast", "event": <name>, "payload": <payload>}``
    """

    def __init__(self, echo: bool = False) -> None:
        self.echo = echo
        self._subscribers: Dict[str, Dict[str, Deliver]] = {}
        self._presence: Dict[str, Dict[str, dict]] = {}

    def join(self, channel_id: str, client_id: str, deliver: Deliver) -> None:
        self._subscribers.setdefault(channel_id, {})[client_id] = deliver
        logger.debug("Client %s joined channel %s", client_id, channel_id[:8])
        deliver({"type": "status", "status": SUBSCRIBED})
        # Late joiners need the current presence to discover anybody
        if self._presence.get(channel_id):
            deliver({"type": "presence", "state": self.presence_state(channel_id)})

    def leave(self, channel_id: str, client_id: str) -> None:
        subscribers = self._subscribers.get(channel_id, {})
        if subscribers.pop(client_id, None) is None:
            return
        had_presence = self._presence.get(channel_id, {}).pop(client_id, None) is not None
        if not subscribers:
            self._subscribers.pop(channel_id, None)
            self._presence.pop(channel_id, None)
        elif had_presence:
            self._notify_presence(channel_id)
        logger.debug("Client %s left channel %s", client_id, channel_id[:8])

    def is_subscribed(self, channel_id: str, client_id: str) -> bool:
        return client_id in self._subscribers.get(channel_id, {})

    def track(self, channel_id: str, client_id: str, data: dict) -> str:
        if not self.is_subscribed(channel_id, client_id):
            raise NotSubscribed(f"{client_id} is not subscribed to {channel_id}")
        self._presence.setdefault(channel_id, {})[client_id] = dict(data)
        self._notify_presence(channel_id)
        return "ok"

    def broadcast(self, channel_id: str, client_id: str, event: str, payload: Any) -> str:
        if not self.is_subscribed(channel_id, client_id):
            raise NotSubscribed(f"{client_id} is not subscribed to {channel_id}")
        message = {"type": "broadcast", "event": event, "payload": payload}
        for other_id, deliver in list(self._subscribers.get(channel_id, {}).items()):
            if other_id == client_id and not self.echo:
                continue
            deliver(message)
        return "ok"

    def presence_state(self, channel_id: str) -> List[dict]:
        return [dict(data) for data in self._presence.get(channel_id, {}).values()]

    def channels(self) -> List[str]:
        return list(self._subscribers)

    def _notify_presence(self, channel_id: str) -> None:
        message = {"type": "presence", "state": self.presence_state(channel_id)}
        for deliver in list(self._subscribers.get(channel_id, {}).values()):
            deliver(message)
