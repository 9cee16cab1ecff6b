"""Single-producer/single-consumer response channel.

A `ResponseStream` is what `translate_stream()` hands back to callers. The
engine's producer task writes into it with `send()` and closes it exactly once;
the caller drains it with `async for`. The stream also carries the call's
cancellation signal (explicit `cancel()`, a deadline, or the consumer leaving),
which every producer observes at its suspension points.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

from .errors import StreamClosedError
from .types import Response

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 16

DEADLINE_EXCEEDED = "deadline exceeded"
CANCELLED = "cancelled"
ABANDONED = "abandoned"


async def _first_of(*aws: Awaitable[Any]) -> set[asyncio.Future]:
    """Wait until the first awaitable completes; cancel the rest."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        raise
    for t in pending:
        t.cancel()
    return done


class ResponseStream:
    """Bounded async channel of `Response` values.

    Producer side:
        - `send()` blocks while the buffer is full.
        - Non-terminal sends are dropped (return False) once the stream is
          cancelled; the producer should then stop and send its terminal response.
        - The terminal send ignores cancellation so a draining consumer always
          sees why the stream ended; it only gives up if the consumer has left.
        - `close()` must be called exactly once.

    Consumer side:
        - `async for response in stream` until the stream is closed.
        - `async with stream:` abandons the stream on exit if it was not drained.
        - `cancel()` requests early termination but keeps the stream drainable.
    """

    def __init__(self, *, maxsize: int = DEFAULT_BUFFER_SIZE) -> None:
        self._queue: asyncio.Queue[Response] = asyncio.Queue(maxsize)
        self._cancelled = asyncio.Event()
        self._abandoned = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._cancel_reason: str | None = None
        self._terminal_sent = False
        self._closed = False
        self._deadline_handle: asyncio.TimerHandle | None = None
        self._producer: asyncio.Task | None = None

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    def cancel(self, reason: str = CANCELLED) -> None:
        """Request that the producer stop. The first reason wins."""
        if self._cancelled.is_set():
            return
        self._cancel_reason = reason
        self._cancelled.set()

    def set_deadline(self, timeout_s: float) -> None:
        """Cancel the stream with `DEADLINE_EXCEEDED` after `timeout_s` seconds."""
        loop = asyncio.get_running_loop()
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
        self._deadline_handle = loop.call_later(max(float(timeout_s), 0.0), self.cancel, DEADLINE_EXCEEDED)

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    def attach(self, producer: asyncio.Task) -> None:
        self._producer = producer

    async def send(self, response: Response) -> bool:
        """Deliver one response. Returns False if it was not delivered."""
        if self._closed:
            raise StreamClosedError("send on a closed stream")
        if self._terminal_sent:
            raise StreamClosedError("send after the terminal response")

        if response.terminal:
            self._terminal_sent = True
            stop_waiting = self._abandoned
        else:
            if self._cancelled.is_set() or self._abandoned.is_set():
                return False
            stop_waiting = self._cancelled

        if self._abandoned.is_set():
            return False
        if not self._queue.full():
            self._queue.put_nowait(response)
            return True

        put = asyncio.ensure_future(self._queue.put(response))
        done = await _first_of(put, stop_waiting.wait(), self._abandoned.wait())
        return put in done and not put.cancelled()

    def close(self) -> None:
        """Mark the stream finished. Raises `StreamClosedError` if already closed."""
        if self._closed:
            raise StreamClosedError("stream already closed")
        self._closed = True
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
            self._deadline_handle = None
        self._closed_event.set()

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def __aiter__(self) -> ResponseStream:
        return self

    async def __anext__(self) -> Response:
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._closed:
                raise StopAsyncIteration
            getter = asyncio.ensure_future(self._queue.get())
            try:
                done = await _first_of(getter, self._closed_event.wait())
            except asyncio.CancelledError:
                self._abandon()
                raise
            if getter in done and not getter.cancelled():
                return getter.result()

    async def __aenter__(self) -> ResponseStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _abandon(self) -> None:
        if not self._closed:
            logger.debug("response stream abandoned by consumer")
        self._abandoned.set()
        self.cancel(ABANDONED)

    async def aclose(self) -> None:
        """Stop consuming. Waits for the producer to finish its cleanup."""
        if self._closed and self._queue.empty():
            return
        self._abandon()
        producer = self._producer
        if producer is not None and not producer.done():
            await asyncio.wait({producer})

    async def collect(self) -> list[Response]:
        """Drain the stream and return every response in order."""
        return [response async for response in self]
