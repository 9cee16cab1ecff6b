"""Engine error taxonomy.

Every failure an engine can report is an `EngineError`. Streaming calls turn
these into terminal `Response` values (see `Response.failure`); blocking calls
raise them. `kind` is the stable tag copied into `Response.error_kind` so callers
can tell a timeout from a process or transport failure without isinstance checks.
"""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for all engine failures."""

    kind = "engine"


class InitializationError(EngineError):
    """Backend or model unavailable, or failed to load."""

    kind = "initialization"


class AcquisitionError(EngineError):
    """Cancelled while waiting for the exclusive-use gate."""

    kind = "acquisition"


class GenerationError(EngineError):
    """Decode/sampling failure. `partial_text` holds whatever was produced first."""

    kind = "generation"

    def __init__(self, message: str, *, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text


class EngineTimeoutError(EngineError):
    """Deadline exceeded or call cancelled."""

    kind = "timeout"


class ProcessError(EngineError):
    """Spawn failure, broken pipe or non-zero exit of an agent process."""

    kind = "process"

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class TransportError(EngineError):
    """HTTP-level failure talking to a model server (not a timeout)."""

    kind = "transport"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamClosedError(RuntimeError):
    """A producer wrote to a stream after its terminal response or closed it twice."""
