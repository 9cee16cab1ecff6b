import asyncio

import pytest

from tons.engine.errors import StreamClosedError
from tons.engine.stream import CANCELLED, DEADLINE_EXCEEDED, ResponseStream
from tons.engine.types import Response


def test_send_then_collect_in_order():
    async def main():
        s = ResponseStream()
        assert await s.send(Response.delta("a"))
        assert await s.send(Response.final("b"))
        s.close()
        return await s.collect()

    out = asyncio.run(main())
    assert out == [Response.delta("a"), Response.final("b")]


def test_send_after_terminal_raises():
    async def main():
        s = ResponseStream()
        await s.send(Response.final())
        with pytest.raises(StreamClosedError):
            await s.send(Response.delta("late"))

    asyncio.run(main())


def test_close_twice_raises():
    async def main():
        s = ResponseStream()
        s.close()
        with pytest.raises(StreamClosedError):
            s.close()
        with pytest.raises(StreamClosedError):
            await s.send(Response.final())

    asyncio.run(main())


def test_cancel_drops_deltas_but_keeps_terminal():
    async def main():
        s = ResponseStream()
        s.cancel()
        assert await s.send(Response.delta("dropped")) is False
        assert await s.send(Response(done=True, error="translation cancelled")) is True
        s.close()
        return s, await s.collect()

    s, out = asyncio.run(main())
    assert s.cancel_reason == CANCELLED
    assert len(out) == 1
    assert out[0].error == "translation cancelled"


def test_deadline_sets_reason_and_first_reason_wins():
    async def main():
        s = ResponseStream()
        s.set_deadline(0.01)
        await asyncio.wait_for(s.wait_cancelled(), 1.0)
        s.cancel()
        return s.cancel_reason

    assert asyncio.run(main()) == DEADLINE_EXCEEDED


def test_close_cancels_pending_deadline():
    async def main():
        s = ResponseStream()
        s.set_deadline(0.02)
        s.close()
        await asyncio.sleep(0.05)
        return s.cancelled

    assert asyncio.run(main()) is False


def test_send_blocks_while_buffer_full():
    async def main():
        s = ResponseStream(maxsize=1)
        await s.send(Response.delta("a"))
        pending = asyncio.ensure_future(s.send(Response.delta("b")))
        await asyncio.sleep(0.01)
        assert not pending.done()
        first = await s.__anext__()
        assert first.text == "a"
        assert await asyncio.wait_for(pending, 1.0) is True
        second = await s.__anext__()
        assert second.text == "b"

    asyncio.run(main())


def test_cancel_unblocks_a_waiting_send():
    async def main():
        s = ResponseStream(maxsize=1)
        await s.send(Response.delta("a"))
        pending = asyncio.ensure_future(s.send(Response.delta("b")))
        await asyncio.sleep(0.01)
        s.cancel()
        return await asyncio.wait_for(pending, 1.0)

    assert asyncio.run(main()) is False


def test_aclose_abandons_and_waits_for_producer():
    async def main():
        s = ResponseStream(maxsize=2)

        async def produce():
            try:
                i = 0
                while await s.send(Response.delta(str(i))):
                    i += 1
                await s.send(Response.final())
            finally:
                s.close()

        task = asyncio.ensure_future(produce())
        s.attach(task)
        first = await s.__anext__()
        await s.aclose()
        return first, task, s

    first, task, s = asyncio.run(main())
    assert first.text == "0"
    assert task.done()
    assert s.closed
    assert s.abandoned


def test_async_with_leaves_stream_early():
    async def main():
        s = ResponseStream()

        async def produce():
            try:
                while await s.send(Response.delta("x")):
                    await asyncio.sleep(0)
                await s.send(Response.final())
            finally:
                s.close()

        s.attach(asyncio.ensure_future(produce()))
        seen = 0
        async with s:
            async for _ in s:
                seen += 1
                if seen == 3:
                    break
        return s, seen

    s, seen = asyncio.run(main())
    assert seen == 3
    assert s.closed
    assert s.cancelled


def test_cancelled_consumer_abandons_stream():
    async def main():
        s = ResponseStream()
        consumer = asyncio.ensure_future(s.__anext__())
        await asyncio.sleep(0.01)
        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer
        return s

    s = asyncio.run(main())
    assert s.abandoned
    assert s.cancelled
