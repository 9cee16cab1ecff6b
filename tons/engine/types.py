"""Engine request and response types.

These types are shared by every engine and are independent of any HTTP/CLI layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .errors import EngineError
from .prompt import build_prompt


@dataclass(frozen=True)
class Request:
    """A single translation request."""

    text: str
    source_lang: str
    target_lang: str
    prompt: str
    system_prompt: str = ""

    def build_prompt(self) -> str:
        return build_prompt(self.prompt, self.text, self.source_lang, self.target_lang)


@dataclass(frozen=True)
class Response:
    """An incremental translation payload.

    Non-streaming calls produce exactly one Response with `done=True` holding the
    complete text. Streaming calls produce non-terminal deltas (`done=False`)
    followed by one terminal Response. A Response carrying `error` is terminal
    regardless of `done`.
    """

    text: str = ""
    done: bool = False
    error: str | None = None
    error_kind: str | None = None

    @property
    def terminal(self) -> bool:
        return self.done or bool(self.error)

    @classmethod
    def delta(cls, text: str) -> Response:
        return cls(text=text, done=False)

    @classmethod
    def final(cls, text: str = "") -> Response:
        return cls(text=text, done=True)

    @classmethod
    def failure(cls, exc: EngineError) -> Response:
        return cls(done=True, error=str(exc) or exc.__class__.__name__, error_kind=exc.kind)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"text": self.text, "done": self.done}
        if self.error:
            out["error"] = self.error
            out["error_kind"] = self.error_kind
        return out


@dataclass(frozen=True)
class SamplingConfig:
    """Sampling parameters for generation. Defaults apply whenever a value is unset."""

    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 512
    seed: int | None = None

    def __post_init__(self) -> None:
        if self.temperature < 0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")
        if not 0 < self.top_p <= 1:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be > 0, got {self.max_tokens}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> SamplingConfig:
        data = data or {}

        def _pick(key: str, cast: Any) -> Any:
            value = data.get(key)
            return getattr(cls, key) if value is None else cast(value)

        seed = data.get("seed")
        return cls(
            temperature=_pick("temperature", float),
            top_p=_pick("top_p", float),
            max_tokens=_pick("max_tokens", int),
            seed=None if seed is None else int(seed),
        )
