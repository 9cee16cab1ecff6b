"""Translation engine for a model server speaking the Ollama HTTP API."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from .base import BaseEngine, cancellation_message, effective_timeout
from .errors import EngineTimeoutError, TransportError
from .stream import DEADLINE_EXCEEDED, ResponseStream
from .types import Request, Response, SamplingConfig

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://localhost:11434"
DEFAULT_MODEL = "llama3.2"
DEFAULT_REMOTE_TIMEOUT_S = 120.0
LIST_TIMEOUT_S = 5.0

ChunkHandler = Callable[[str, bool], Awaitable[Any]]

# InvalidURL is not an HTTPError.
_CLIENT_ERRORS = (httpx.HTTPError, httpx.InvalidURL)


@dataclass(frozen=True)
class RemoteConfig:
    host: str = DEFAULT_HOST
    model: str = DEFAULT_MODEL
    timeout_s: float = DEFAULT_REMOTE_TIMEOUT_S
    sampling: SamplingConfig = field(default_factory=SamplingConfig)

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("host is required")
        try:
            url = httpx.URL(self.host)
        except httpx.InvalidURL as exc:
            raise ValueError(f"invalid host {self.host!r}: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"host must be an http(s) URL, got {self.host!r}")
        if not self.model:
            raise ValueError("model is required")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")


@dataclass(frozen=True)
class RemoteModel:
    name: str
    modified_at: str = ""
    size: int = 0


class RemoteModelEngine(BaseEngine):
    """
    Engine that delegates generation to an Ollama-compatible server.

    A fresh `httpx.AsyncClient` is opened per request. `transport` replaces the
    network layer (tests pass an `httpx.MockTransport`).
    """

    def __init__(self, config: RemoteConfig | None = None, *, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__()
        self.config = config or RemoteConfig()
        self._transport = transport

    @property
    def name(self) -> str:
        return f"ollama:{self.config.model}"

    @property
    def base_url(self) -> str:
        return self.config.host.rstrip("/")

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    def _payload(self, request: Request) -> dict[str, Any]:
        sampling = self.config.sampling
        payload: dict[str, Any] = {
            "model": self.config.model,
            "prompt": request.build_prompt(),
            "stream": True,
            "options": {
                "temperature": sampling.temperature,
                "top_p": sampling.top_p,
                "num_predict": sampling.max_tokens,
            },
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        return payload

    # -------------------------------------------------------------------------
    # Model listing
    # -------------------------------------------------------------------------

    def available(self) -> bool:
        sync_transport = self._transport if isinstance(self._transport, httpx.BaseTransport) else None
        try:
            with httpx.Client(base_url=self.base_url, timeout=LIST_TIMEOUT_S, transport=sync_transport) as client:
                resp = client.get("/api/tags")
        except _CLIENT_ERRORS as exc:
            logger.debug("%s unreachable: %s", self.base_url, exc)
            return False
        return resp.status_code < 400

    async def list_models(self) -> list[RemoteModel]:
        """Models installed on the server (`GET /api/tags`)."""
        try:
            async with self._client(LIST_TIMEOUT_S) as client:
                resp = await client.get("/api/tags")
        except httpx.TimeoutException as exc:
            raise EngineTimeoutError("listing models timed out") from exc
        except _CLIENT_ERRORS as exc:
            raise TransportError(f"ollama error: {exc}") from exc
        if resp.status_code >= 400:
            raise TransportError(
                f"ollama error: status {resp.status_code}: {resp.text.strip()}", status_code=resp.status_code
            )
        try:
            entries = resp.json().get("models") or []
        except (ValueError, AttributeError) as exc:
            raise TransportError(f"ollama error: invalid model list: {exc}") from exc
        return [
            RemoteModel(
                name=str(entry.get("name", "")),
                modified_at=str(entry.get("modified_at", "")),
                size=int(entry.get("size") or 0),
            )
            for entry in entries
            if isinstance(entry, dict)
        ]

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def _generate(self, request: Request, on_chunk: ChunkHandler) -> None:
        payload = self._payload(request)
        logger.info("%s: POST %s/api/generate", self.name, self.base_url)
        try:
            async with self._client(self.config.timeout_s) as client:
                async with client.stream("POST", "/api/generate", json=payload) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace").strip()
                        raise TransportError(
                            f"ollama error: status {resp.status_code}: {body}", status_code=resp.status_code
                        )
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            chunk = json.loads(line)
                        except json.JSONDecodeError as exc:
                            raise TransportError(f"ollama error: invalid response line: {line[:80]!r}") from exc
                        if not isinstance(chunk, dict):
                            raise TransportError(f"ollama error: unexpected response line: {line[:80]!r}")
                        if chunk.get("error"):
                            raise TransportError(f"ollama error: {chunk['error']}")
                        done = bool(chunk.get("done"))
                        await on_chunk(str(chunk.get("response") or ""), done)
                        if done:
                            return
        except httpx.TimeoutException as exc:
            raise EngineTimeoutError("translation timed out") from exc
        except _CLIENT_ERRORS as exc:
            raise TransportError(f"ollama error: {exc}") from exc
        raise TransportError("ollama error: stream ended before completion")

    async def _translate(self, request: Request, timeout: float | None) -> Response:
        parts: list[str] = []

        async def _collect(text: str, done: bool) -> None:
            parts.append(text)

        limit = effective_timeout(self.config.timeout_s, timeout)
        try:
            await asyncio.wait_for(self._generate(request, _collect), limit)
        except asyncio.TimeoutError:
            raise EngineTimeoutError("translation timed out") from None
        return Response.final("".join(parts).strip())

    async def _produce(self, request: Request, stream: ResponseStream) -> None:
        async def _relay(text: str, done: bool) -> None:
            if done:
                await stream.send(Response.final(text))
            elif text:
                await stream.send(Response.delta(text))

        loop = asyncio.get_running_loop()
        deadline = loop.call_later(self.config.timeout_s, stream.cancel, DEADLINE_EXCEEDED)
        relay = loop.create_task(self._generate(request, _relay), name=f"{self.name}-relay")
        cancel_waiter = asyncio.ensure_future(stream.wait_cancelled())
        try:
            done, _ = await asyncio.wait({relay, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if relay in done:
                relay.result()
                return
            logger.warning("%s: %s; aborting request", self.name, stream.cancel_reason)
            raise EngineTimeoutError(cancellation_message(stream.cancel_reason))
        finally:
            deadline.cancel()
            cancel_waiter.cancel()
            if not relay.done():
                relay.cancel()
                await asyncio.wait({relay})
