"""Coalesce signal fragments produced in a short window into one broadcast."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional


logger = logging.getLogger(__name__)

DEFAULT_DELAY = 0.1


class QueueClosed(RuntimeError):
    """Raised when enqueueing onto a cancelled queue."""


class SendBatchQueue:
    """Buffers payloads for ``delay`` seconds, then sends them in one call.

    The window opens on the first enqueue after idle and is not extended by
    later enqueues, so a steady stream of fragments still goes out every
    ``delay`` seconds. Everyone who enqueued into a window gets the same
    future, settled with the outcome of the single ``send`` call.
    """

    def __init__(
        self,
        send: Callable[[List[Any]], Awaitable[Any]],
        delay: float = DEFAULT_DELAY,
    ) -> None:
        self._send = send
        self.delay = delay
        self._buffer: List[Any] = []
        self._future: Optional[asyncio.Future] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: set = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def enqueue(self, payload: Any) -> asyncio.Future:
        if self._closed:
            raise QueueClosed("send queue has been cancelled")
        if self._future is None:
            loop = asyncio.get_running_loop()
            self._future = loop.create_future()
            self._timer = loop.call_later(self.delay, self._flush)
        self._buffer.append(payload)
        return self._future

    def _flush(self) -> None:
        batch, future = self._buffer, self._future
        self._buffer, self._future, self._timer = [], None, None
        task = asyncio.ensure_future(self._send(batch))
        self._inflight.add(task)
        task.add_done_callback(lambda t: self._settle(t, future))

    def _settle(self, task: asyncio.Task, future: asyncio.Future) -> None:
        self._inflight.discard(task)
        if future.done():
            return
        if task.cancelled():
            future.cancel()
        elif task.exception() is not None:
            future.set_exception(task.exception())
        else:
            future.set_result(task.result())

    def cancel(self) -> None:
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        future, self._future, self._buffer = self._future, None, []
        for task in list(self._inflight):
            task.cancel()
        if future is not None and not future.done():
            future.cancel()
