"""Settings resolution.

Settings are read-only values resolved from a plain mapping (usually a JSON
file). Missing or null keys fall back to the defaults below. Nothing here is
ever written back.

Example file:

    {
      "engine": "agent",
      "agent": {"name": "claude-code", "timeout_s": 90},
      "remote": {"host": "http://localhost:11434", "model": "llama3.2"},
      "sampling": {"temperature": 0.2},
      "prompt": {"system_prompt": ""}
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from tons.engine.embedded import DEFAULT_CONTEXT_SIZE, EmbeddedConfig
from tons.engine.process import AgentConfig
from tons.engine.prompt import DEFAULT_PROMPT, DEFAULT_SYSTEM_PROMPT
from tons.engine.registry import agent_config, list_engine_kinds
from tons.engine.remote import DEFAULT_HOST, DEFAULT_MODEL, DEFAULT_REMOTE_TIMEOUT_S, RemoteConfig
from tons.engine.types import SamplingConfig

CONFIG_ENV_VAR = "TONS_CONFIG"


@dataclass(frozen=True)
class PromptConfig:
    template: str = DEFAULT_PROMPT
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass(frozen=True)
class EmbeddedSettings:
    model_path: str = ""
    context_size: int = DEFAULT_CONTEXT_SIZE
    device: str = "cpu"
    dtype: str = "auto"


@dataclass(frozen=True)
class AgentSettings:
    """Which agent to run. Unset overrides keep the preset's values."""

    name: str = "claude-code"
    command: str | None = None
    args: tuple[str, ...] | None = None
    timeout_s: float | None = None


@dataclass(frozen=True)
class RemoteSettings:
    host: str = DEFAULT_HOST
    model: str = DEFAULT_MODEL
    timeout_s: float = DEFAULT_REMOTE_TIMEOUT_S


@dataclass(frozen=True)
class Settings:
    """Everything needed to build one engine and its requests."""

    engine: str = "embedded"
    embedded: EmbeddedSettings = field(default_factory=EmbeddedSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)

    def __post_init__(self) -> None:
        kinds = list_engine_kinds()
        if self.engine not in kinds:
            raise ValueError(f"engine must be one of {', '.join(kinds)}, got {self.engine!r}")

    def embedded_config(self) -> EmbeddedConfig:
        return EmbeddedConfig(
            model_path=self.embedded.model_path,
            context_size=self.embedded.context_size,
            device=self.embedded.device,
            dtype=self.embedded.dtype,
            sampling=self.sampling,
        )

    def agent_config(self) -> AgentConfig:
        return agent_config(
            self.agent.name,
            command=self.agent.command,
            args=self.agent.args,
            timeout_s=self.agent.timeout_s,
        )

    def remote_config(self) -> RemoteConfig:
        return RemoteConfig(
            host=self.remote.host,
            model=self.remote.model,
            timeout_s=self.remote.timeout_s,
            sampling=self.sampling,
        )


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"'{key}' must be an object")
    return value


def _pick(section: Mapping[str, Any], cls: type, *, convert: Mapping[str, Any] | None = None) -> dict[str, Any]:
    # Only keys the dataclass knows about; None means "use the default".
    convert = convert or {}
    out: dict[str, Any] = {}
    for name in cls.__dataclass_fields__:
        value = section.get(name)
        if value is None:
            continue
        out[name] = convert[name](value) if name in convert else value
    return out


def load_settings(data: Mapping[str, Any] | None = None) -> Settings:
    """Resolve settings from a mapping. Unknown keys are ignored."""
    data = data or {}
    agent = _pick(_section(data, "agent"), AgentSettings, convert={"args": tuple, "timeout_s": float})
    return Settings(
        engine=str(data.get("engine") or "embedded"),
        embedded=EmbeddedSettings(**_pick(_section(data, "embedded"), EmbeddedSettings, convert={"context_size": int})),
        agent=AgentSettings(**agent),
        remote=RemoteSettings(**_pick(_section(data, "remote"), RemoteSettings, convert={"timeout_s": float})),
        sampling=SamplingConfig.from_mapping(_section(data, "sampling")),
        prompt=PromptConfig(**_pick(_section(data, "prompt"), PromptConfig)),
    )


def load_settings_file(path: str | os.PathLike) -> Settings:
    """Read settings from a JSON file."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: settings must be a JSON object")
    return load_settings(data)


def default_settings_path() -> Path | None:
    value = os.environ.get(CONFIG_ENV_VAR)
    return Path(value).expanduser() if value else None


def resolve_settings(path: str | os.PathLike | None = None) -> Settings:
    """Settings from `path`, else from $TONS_CONFIG, else the defaults."""
    target = Path(path).expanduser() if path else default_settings_path()
    if target is None:
        return Settings()
    return load_settings_file(target)
