"""Application-facing translation service.

Owns one engine chosen from settings and builds requests from the configured
prompt template and system prompt.
"""

from __future__ import annotations

import logging

from tons.config import Settings
from tons.engine.base import BaseEngine
from tons.engine.registry import create_engine
from tons.engine.remote import RemoteModel, RemoteModelEngine
from tons.engine.stream import ResponseStream
from tons.engine.types import Request, Response

logger = logging.getLogger(__name__)


class TranslationService:
    def __init__(self, settings: Settings | None = None, *, engine: BaseEngine | None = None) -> None:
        self.settings = settings or Settings()
        self._engine = engine
        self._closed = False

    @property
    def engine(self) -> BaseEngine:
        if self._engine is None:
            self._engine = create_engine(self.settings)
            logger.info("using engine %s", self._engine.name)
        return self._engine

    def build_request(self, text: str, source_lang: str, target_lang: str) -> Request:
        prompt = self.settings.prompt
        return Request(
            text=text,
            source_lang=source_lang,
            target_lang=target_lang,
            prompt=prompt.template,
            system_prompt=prompt.system_prompt,
        )

    async def translate(
        self, text: str, source_lang: str, target_lang: str, *, timeout: float | None = None
    ) -> Response:
        return await self.engine.translate(self.build_request(text, source_lang, target_lang), timeout=timeout)

    async def translate_stream(
        self, text: str, source_lang: str, target_lang: str, *, timeout: float | None = None
    ) -> ResponseStream:
        return await self.engine.translate_stream(self.build_request(text, source_lang, target_lang), timeout=timeout)

    async def list_models(self) -> list[RemoteModel]:
        """Models offered by the remote server. Only valid for the remote engine."""
        engine = self.engine
        if not isinstance(engine, RemoteModelEngine):
            raise ValueError(f"engine {engine.name!r} does not list models")
        return await engine.list_models()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._engine is not None:
            self._engine.close()
