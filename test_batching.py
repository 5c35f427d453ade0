import asyncio
from unittest.mock import AsyncMock

import pytest

from peerexchange.batching import QueueClosed, SendBatchQueue


def test_three_enqueues_one_send_in_order():
    async def run():
        send = AsyncMock(return_value="ok")
        queue = SendBatchQueue(send, delay=0.05)
        futures = [queue.enqueue(n) for n in (1, 2, 3)]
        assert queue.pending == 3
        assert futures[0] is futures[1] is futures[2]
        assert await futures[0] == "ok"
        send.assert_awaited_once_with([1, 2, 3])
        assert queue.pending == 0

    asyncio.run(run())


def test_next_enqueue_after_flush_opens_new_window():
    async def run():
        send = AsyncMock(return_value="ok")
        queue = SendBatchQueue(send, delay=0.01)
        first = queue.enqueue("a")
        await first
        second = queue.enqueue("b")
        assert second is not first
        await second
        assert [c.args[0] for c in send.await_args_list] == [["a"], ["b"]]

    asyncio.run(run())


def test_window_is_fixed_from_first_enqueue():
    async def run():
        send = AsyncMock(return_value="ok")
        queue = SendBatchQueue(send, delay=0.2)
        future = queue.enqueue(1)
        await asyncio.sleep(0.12)
        assert queue.enqueue(2) is future
        await asyncio.sleep(0.18)
        # Later enqueues did not push the deadline back
        send.assert_awaited_once_with([1, 2])
        assert future.done()

    asyncio.run(run())


def test_steady_stream_is_still_sent():
    async def run():
        send = AsyncMock(return_value="ok")
        queue = SendBatchQueue(send, delay=0.1)
        for n in range(10):
            queue.enqueue(n)
            await asyncio.sleep(0.04)
        await asyncio.sleep(0.15)
        assert send.await_count >= 2
        sent = [item for call in send.await_args_list for item in call.args[0]]
        assert sent == list(range(10))
        assert queue.pending == 0

    asyncio.run(run())


def test_send_error_is_shared_by_all_callers():
    async def run():
        send = AsyncMock(side_effect=RuntimeError("relay down"))
        queue = SendBatchQueue(send, delay=0.01)
        futures = [queue.enqueue(n) for n in range(2)]
        for future in futures:
            with pytest.raises(RuntimeError, match="relay down"):
                await future
        # The queue keeps working after a failed batch
        send.side_effect = None
        send.return_value = "ok"
        assert await queue.enqueue(3) == "ok"

    asyncio.run(run())


def test_cancel_drops_pending_and_closes():
    async def run():
        send = AsyncMock(return_value="ok")
        queue = SendBatchQueue(send, delay=0.01)
        future = queue.enqueue(1)
        queue.cancel()
        assert future.cancelled()
        assert queue.pending == 0
        await asyncio.sleep(0.03)
        send.assert_not_awaited()
        with pytest.raises(QueueClosed):
            queue.enqueue(2)
        queue.cancel()

    asyncio.run(run())


def test_cancel_stops_inflight_send():
    async def run():
        started = asyncio.Event()

        async def send(batch):
            started.set()
            await asyncio.sleep(10)

        queue = SendBatchQueue(send, delay=0)
        future = queue.enqueue(1)
        await started.wait()
        queue.cancel()
        with pytest.raises(asyncio.CancelledError):
            await future

    asyncio.run(run())
