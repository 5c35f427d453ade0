"""``Peer`` implementation on top of aiortc.

aiortc gathers ICE candidates before ``setLocalDescription`` returns and puts
them in the SDP, so a connection needs just two fragments: the initiator's
offer and the responder's answer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from aiortc import RTCConfiguration, RTCDataChannel, RTCIceServer, RTCPeerConnection
from aiortc.rtcsessiondescription import RTCSessionDescription

from .peer import Peer


logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ("stun:stun.l.google.com:19302",)


class AiortcPeer(Peer):
    def __init__(
        self,
        initiator: bool,
        ice_servers: Iterable[str] = DEFAULT_ICE_SERVERS,
        label: str = "data",
    ) -> None:
        super().__init__()
        self.initiator = initiator
        self.channel: Optional[RTCDataChannel] = None
        self.destroyed = False
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self.pc = RTCPeerConnection(config)

        @self.pc.on("connectionstatechange")
        def on_state() -> None:
            logger.debug("Connection state %s", self.pc.connectionState)
            if self.pc.connectionState == "failed":
                self._fail(ConnectionError("WebRTC connection failed"))
            elif self.pc.connectionState == "closed" and not self.destroyed:
                self.emit("close")

        if initiator:
            self._bind(self.pc.createDataChannel(label, ordered=True))
            self._run(self._offer())
        else:
            @self.pc.on("datachannel")
            def on_datachannel(channel: RTCDataChannel) -> None:
                self._bind(channel)

    def _bind(self, channel: RTCDataChannel) -> None:
        self.channel = channel

        @channel.on("open")
        def on_open() -> None:
            self.emit("connect")

        @channel.on("message")
        def on_message(message: Any) -> None:
            self.emit("data", message)

        if channel.readyState == "open":
            self.emit("connect")

    def _run(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(self._check)

    def _check(self, task: asyncio.Task) -> None:
        if task.cancelled() or self.destroyed:
            return
        if task.exception() is not None:
            self._fail(task.exception())

    def _fail(self, exc: BaseException) -> None:
        # pyee raises an unhandled "error" event, and a handed-over peer may have no listener
        if self.listeners("error"):
            self.emit("error", exc)
        else:
            logger.warning("Peer connection error with no listener: %s", exc)

    async def _offer(self) -> None:
        await self.pc.setLocalDescription(await self.pc.createOffer())
        self._emit_local()

    async def _apply(self, data: Any) -> None:
        if not isinstance(data, dict) or data.get("type") not in ("offer", "answer"):
            # Candidates travel inside the SDP; anything else is not ours
            logger.debug("Ignoring signal %r", data)
            return
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=data["sdp"], type=data["type"]))
        if data["type"] == "offer":
            await self.pc.setLocalDescription(await self.pc.createAnswer())
            self._emit_local()

    def _emit_local(self) -> None:
        description = self.pc.localDescription
        self.emit("signal", {"type": description.type, "sdp": description.sdp})

    def signal(self, data: Any) -> None:
        if self.destroyed:
            return
        self._run(self._apply(data))

    def send(self, data) -> None:
        if self.channel is None or self.channel.readyState != "open":
            raise ConnectionError("data channel is not open")
        self.channel.send(data)

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        self._run(self.pc.close())
