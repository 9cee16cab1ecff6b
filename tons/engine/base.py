"""Base engine interface shared by every translation backend."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from .errors import EngineError, EngineTimeoutError, StreamClosedError
from .stream import DEADLINE_EXCEEDED, ResponseStream
from .types import Request, Response

logger = logging.getLogger(__name__)


def effective_timeout(configured: float | None, requested: float | None) -> float | None:
    """Return the shorter of an engine's configured timeout and a caller deadline."""
    candidates = [t for t in (configured, requested) if t is not None and t > 0]
    return min(candidates) if candidates else None


def cancellation_message(reason: str | None) -> str:
    if reason == DEADLINE_EXCEEDED:
        return "translation timed out"
    return "translation cancelled"


class BaseEngine(ABC):
    """
    Abstract base class for translation engines.

    Each backend implements this interface so callers can translate without
    knowing whether the text comes from an in-process model, a command-line
    agent or a model server.

    Subclasses implement `name`, `available`, `_translate` and `_produce`. The
    base class handles the empty-text fast path, starts the producer task and
    guarantees that every stream ends with exactly one terminal response and is
    closed exactly once.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable identifier, optionally qualified by model or command."""

    @abstractmethod
    def available(self) -> bool:
        """
        Cheap reachability probe.

        Must not raise and must not run a generation.
        """

    async def translate(self, request: Request, *, timeout: float | None = None) -> Response:
        """
        Translate and return the complete result.

        Args:
            request: The translation request.
            timeout: Optional caller deadline in seconds.

        Returns:
            A single terminal Response holding the full text.

        Raises:
            EngineError: Any engine failure (see `tons.engine.errors`).
        """
        if not request.text:
            return Response.final("")
        return await self._translate(request, timeout)

    async def translate_stream(self, request: Request, *, timeout: float | None = None) -> ResponseStream:
        """
        Start a streaming translation.

        Returns as soon as the producer is running. The caller must drain the
        returned stream (or leave it via `async with` / `aclose()`).

        Raises:
            EngineError: Only for failures detected before streaming starts
                (e.g. a model that cannot be loaded).
        """
        stream = ResponseStream()
        if request.text:
            await self._prepare_stream()
            if timeout is not None and timeout > 0:
                stream.set_deadline(timeout)
        task = asyncio.get_running_loop().create_task(
            self._run_producer(request, stream), name=f"{self.name}-stream"
        )
        stream.attach(task)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return stream

    def close(self) -> None:
        """Release backend resources. Safe to call repeatedly."""

    async def _prepare_stream(self) -> None:
        """Hook for work that must succeed before a stream is handed out."""

    @abstractmethod
    async def _translate(self, request: Request, timeout: float | None) -> Response:
        """Blocking translation of a non-empty request."""

    @abstractmethod
    async def _produce(self, request: Request, stream: ResponseStream) -> None:
        """Fill `stream` for a non-empty request, ending with a terminal response."""

    async def _run_producer(self, request: Request, stream: ResponseStream) -> None:
        try:
            if not request.text:
                await stream.send(Response.final(""))
                return
            await self._produce(request, stream)
            if not stream.terminal_sent:
                if stream.cancelled:
                    raise EngineTimeoutError(cancellation_message(stream.cancel_reason))
                raise EngineError(f"{self.name} error: stream ended without a result")
        except EngineError as exc:
            if not stream.terminal_sent:
                await stream.send(Response.failure(exc))
        except StreamClosedError:
            logger.exception("%s: producer wrote past the end of its stream", self.name)
        except asyncio.CancelledError:
            logger.warning("%s: producer task cancelled", self.name)
            raise
        except Exception as exc:
            logger.exception("%s: unexpected producer failure", self.name)
            if not stream.terminal_sent:
                await stream.send(Response.failure(EngineError(f"{self.name} error: {exc}")))
        finally:
            stream.close()
