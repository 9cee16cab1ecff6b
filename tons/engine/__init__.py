# Backend-agnostic translation engines
#
# Every backend implements BaseEngine (translate / translate_stream / close).
#
# Key components:
#   - base.py       Engine contract and the shared producer wrapper
#   - stream.py     Bounded response channel with cancellation
#   - embedded.py   In-process Transformers model
#   - process.py    Command-line agents (subprocess)
#   - remote.py     Ollama-compatible HTTP server
#   - registry.py   Agent presets and engine factories

from .base import BaseEngine
from .embedded import EmbeddedConfig, EmbeddedEngine
from .errors import (
    AcquisitionError,
    EngineError,
    EngineTimeoutError,
    GenerationError,
    InitializationError,
    ProcessError,
    StreamClosedError,
    TransportError,
)
from .decoders import OutputFormat
from .process import AgentConfig, ProcessAgentEngine
from .remote import RemoteConfig, RemoteModel, RemoteModelEngine
from .stream import ResponseStream
from .types import Request, Response, SamplingConfig

__all__ = [
    "AcquisitionError",
    "AgentConfig",
    "BaseEngine",
    "EmbeddedConfig",
    "EmbeddedEngine",
    "EngineError",
    "EngineTimeoutError",
    "GenerationError",
    "InitializationError",
    "OutputFormat",
    "ProcessAgentEngine",
    "ProcessError",
    "RemoteConfig",
    "RemoteModel",
    "RemoteModelEngine",
    "Request",
    "Response",
    "ResponseStream",
    "SamplingConfig",
    "StreamClosedError",
    "TransportError",
]
