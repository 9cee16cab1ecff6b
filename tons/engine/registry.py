"""Engine registry.

Maps engine kinds to factories and ships the known command-line agent presets.
"""

from __future__ import annotations

import shutil
from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Sequence

from .base import BaseEngine
from .decoders import OutputFormat
from .embedded import EmbeddedEngine
from .process import DEFAULT_AGENT_TIMEOUT_S, AgentConfig, ProcessAgentEngine
from .remote import RemoteModelEngine

if TYPE_CHECKING:
    from tons.config import Settings

# Known agents. Anything else falls back to `<name> -p` with raw output.
AGENT_PRESETS: dict[str, AgentConfig] = {
    "claude-code": AgentConfig(
        command="claude",
        args=(
            "--model",
            "haiku",
            "--tools",
            "",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
            "-p",
        ),
        system_prompt_flag="--system-prompt",
        output_format=OutputFormat.EVENT_STREAM,
    ),
    "gemini-cli": AgentConfig(command="gemini", args=("-p",)),
    "codex": AgentConfig(command="codex", args=("-p",)),
}


def agent_config(
    name: str,
    *,
    command: str | None = None,
    args: Sequence[str] | None = None,
    timeout_s: float | None = None,
) -> AgentConfig:
    """
    Resolve the invocation for agent `name`, applying any overrides.

    Args:
        name: Preset name (e.g. "claude-code"). Unknown names run `<name> -p`.
        command: Replacement executable.
        args: Replacement base arguments (the prompt is still appended last).
        timeout_s: Replacement timeout in seconds.
    """
    config = AGENT_PRESETS.get(name) or AgentConfig(command=name, args=("-p",), timeout_s=DEFAULT_AGENT_TIMEOUT_S)
    overrides: dict = {}
    if command:
        overrides["command"] = command
    if args is not None:
        overrides["args"] = tuple(args)
    if timeout_s is not None:
        overrides["timeout_s"] = float(timeout_s)
    return replace(config, **overrides) if overrides else config


def available_agents() -> list[str]:
    """Preset names whose command is installed on PATH."""
    return [name for name, config in AGENT_PRESETS.items() if shutil.which(config.command)]


def _embedded_factory(settings: Settings) -> BaseEngine:
    return EmbeddedEngine(settings.embedded_config())


def _agent_factory(settings: Settings) -> BaseEngine:
    return ProcessAgentEngine(settings.agent.name, settings.agent_config())


def _remote_factory(settings: Settings) -> BaseEngine:
    return RemoteModelEngine(settings.remote_config())


# Registry mapping engine kinds to factories
_ENGINE_REGISTRY: dict[str, Callable[[Settings], BaseEngine]] = {
    "embedded": _embedded_factory,
    "agent": _agent_factory,
    "remote": _remote_factory,
}


def create_engine(settings: Settings) -> BaseEngine:
    """
    Build the engine selected by `settings.engine`.

    Raises:
        ValueError: If the engine kind is not registered.
    """
    kind = settings.engine
    if kind not in _ENGINE_REGISTRY:
        available = ", ".join(_ENGINE_REGISTRY.keys())
        raise ValueError(f"Unknown engine kind: {kind!r}. Available: {available}")
    return _ENGINE_REGISTRY[kind](settings)


def register_engine(kind: str, factory: Callable[[Settings], BaseEngine]) -> None:
    """Register a factory for a new engine kind."""
    _ENGINE_REGISTRY[kind] = factory


def list_engine_kinds() -> list[str]:
    """Return list of registered engine kinds."""
    return list(_ENGINE_REGISTRY.keys())
