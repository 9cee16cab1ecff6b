"""Decoders for command-line agent output.

Agents either print plain text (`OutputFormat.RAW`) or line-delimited JSON
events (`OutputFormat.EVENT_STREAM`). Both decoders are fed raw byte chunks as
they arrive from the pipe; neither assumes a chunk ends on a UTF-8 or line
boundary.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class OutputFormat(str, Enum):
    RAW = "raw"
    EVENT_STREAM = "event-stream"


@dataclass(frozen=True)
class AgentEvent:
    """One decoded unit of agent output.

    kind is "delta" (incremental text) or "result" (final record).
    """

    kind: str
    text: str
    is_error: bool = False


class RawDecoder:
    """Incremental UTF-8 decoder; every non-empty chunk becomes one delta."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: bytes) -> list[AgentEvent]:
        text = self._decoder.decode(data)
        return [AgentEvent("delta", text)] if text else []

    def finish(self) -> list[AgentEvent]:
        text = self._decoder.decode(b"", final=True)
        return [AgentEvent("delta", text)] if text else []


def parse_event_line(line: str) -> AgentEvent | None:
    """Decode one JSON line. Returns None for anything not recognized."""
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("skipping non-JSON agent line: %.80s", line)
        return None
    if not isinstance(obj, dict):
        return None

    kind = obj.get("type")
    if kind == "delta":
        text = obj.get("text")
        return AgentEvent("delta", text) if isinstance(text, str) else None
    if kind == "stream_event":
        return _parse_stream_event(obj.get("event"))
    if kind == "result":
        result = obj.get("result")
        return AgentEvent("result", result if isinstance(result, str) else "", bool(obj.get("is_error")))

    logger.debug("skipping agent event of type %r", kind)
    return None


def _parse_stream_event(event: Any) -> AgentEvent | None:
    # claude --output-format stream-json --include-partial-messages
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta")
    if not isinstance(delta, dict) or delta.get("type") != "text_delta":
        return None
    text = delta.get("text")
    return AgentEvent("delta", text) if isinstance(text, str) else None


class EventStreamDecoder:
    """Line-delimited JSON decoder that tracks the cumulative text."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self.accumulated = ""
        self.seen_delta = False
        self.result: AgentEvent | None = None

    def feed(self, data: bytes) -> list[AgentEvent]:
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        return self._consume(lines)

    def finish(self) -> list[AgentEvent]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return self._consume([tail])

    def _consume(self, lines: list[str]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for line in lines:
            event = parse_event_line(line)
            if event is None:
                continue
            if event.kind == "delta":
                self.seen_delta = True
                self.accumulated += event.text
            elif self.result is None:
                self.result = event
            events.append(event)
        return events

    @property
    def text(self) -> str:
        """Final text: the result record when present, else the accumulated deltas."""
        if self.result is not None and self.result.text:
            return self.result.text
        return self.accumulated


def make_decoder(output_format: OutputFormat) -> RawDecoder | EventStreamDecoder:
    if output_format == OutputFormat.EVENT_STREAM:
        return EventStreamDecoder()
    return RawDecoder()
