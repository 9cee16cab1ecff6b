"""FastAPI app exposing translation over HTTP (JSON and Server-Sent Events).

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All translation is delegated to the core service (`tons/service.py`).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from tons._version import __version__
from tons.engine.errors import EngineError
from tons.engine.stream import ResponseStream
from tons.service import TranslationService

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    "timeout": 504,
    "process": 502,
    "transport": 502,
    "initialization": 503,
    "acquisition": 503,
}


def status_for(kind: str | None) -> int:
    return _STATUS_BY_KIND.get(kind or "", 500)


def create_app(*, service: TranslationService, request_timeout_s: float | None = None) -> FastAPI:
    app = FastAPI(title="tons translation server", version=__version__)

    async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
        while True:
            if await request.is_disconnected():
                return
            await asyncio.sleep(poll_s)

    async def _run_with_disconnect_cancellation(request: Request, coro: Any) -> Any:
        task = asyncio.create_task(coro)
        disconnect_task = asyncio.create_task(_wait_for_disconnect(request))
        done, _ = await asyncio.wait({task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED)
        if disconnect_task in done:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, EngineError):
                pass
            raise HTTPException(status_code=499, detail="Client disconnected")

        disconnect_task.cancel()
        try:
            await disconnect_task
        except asyncio.CancelledError:
            pass
        return task.result()

    async def _json_dict(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
        if isinstance(payload, dict):
            return payload
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    # -------------------------------------------------------------------------
    # Health & engine info
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/engine")
    async def engine_info() -> dict[str, Any]:
        engine = service.engine
        available = await asyncio.to_thread(engine.available)
        return {"name": engine.name, "kind": service.settings.engine, "available": available}

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        try:
            models = await service.list_models()
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except EngineError as exc:
            raise HTTPException(status_code=status_for(exc.kind), detail=str(exc)) from exc
        return {
            "object": "list",
            "data": [{"name": m.name, "modified_at": m.modified_at, "size": m.size} for m in models],
        }

    # -------------------------------------------------------------------------
    # Translation
    # -------------------------------------------------------------------------

    @app.post("/v1/translate")
    async def translate(request: Request) -> Any:
        payload = await _json_dict(request)
        text = payload.get("text")
        if not isinstance(text, str):
            raise HTTPException(status_code=400, detail="'text' is required and must be a string.")
        source_lang = payload.get("source_lang") or "auto"
        target_lang = payload.get("target_lang")
        if not isinstance(target_lang, str) or not target_lang:
            raise HTTPException(status_code=400, detail="'target_lang' is required and must be a string.")
        if not isinstance(source_lang, str):
            raise HTTPException(status_code=400, detail="'source_lang' must be a string.")

        if payload.get("stream"):
            try:
                stream = await service.translate_stream(text, source_lang, target_lang, timeout=request_timeout_s)
            except EngineError as exc:
                raise HTTPException(status_code=status_for(exc.kind), detail=str(exc)) from exc
            return StreamingResponse(_stream_events(stream, request), media_type="text/event-stream")

        try:
            result = await _run_with_disconnect_cancellation(
                request, service.translate(text, source_lang, target_lang, timeout=request_timeout_s)
            )
        except HTTPException:
            raise
        except EngineError as exc:
            raise HTTPException(status_code=status_for(exc.kind), detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("translate failed")
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return JSONResponse(result.to_dict())

    return app


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


async def _stream_events(stream: ResponseStream, request: Request) -> AsyncIterator[str]:
    async with stream:
        async for response in stream:
            # If the client disconnects mid-stream, stop consuming promptly.
            # Leaving the `async with` block cancels the engine stream.
            if await request.is_disconnected():
                logger.info("client disconnected; cancelling translation")
                break
            yield _sse(json.dumps(response.to_dict(), ensure_ascii=False))
    yield _sse("[DONE]")
