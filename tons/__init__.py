"""
tons - Streaming translation over interchangeable text-generation backends.

Three backends share one contract (`BaseEngine`):
    - EmbeddedEngine: a Transformers causal LM loaded in-process
    - ProcessAgentEngine: a command-line agent such as `claude` or `gemini`
    - RemoteModelEngine: a model server speaking the Ollama HTTP API

Quick Start:
    import asyncio
    from tons import Request, RemoteModelEngine
    from tons.engine.prompt import DEFAULT_PROMPT

    async def main():
        engine = RemoteModelEngine()
        req = Request(text="Hello", source_lang="en", target_lang="ko", prompt=DEFAULT_PROMPT)
        async with await engine.translate_stream(req) as stream:
            async for resp in stream:
                print(resp.text, end="", flush=True)

    asyncio.run(main())

Environment Variables:
    TONS_CONFIG: Path of the JSON settings file used when none is given
"""

from tons._version import __version__

from tons.engine import (
    BaseEngine,
    EmbeddedEngine,
    EngineError,
    ProcessAgentEngine,
    RemoteModelEngine,
    Request,
    Response,
    ResponseStream,
    SamplingConfig,
)

__all__ = [
    "__version__",
    "BaseEngine",
    "EmbeddedEngine",
    "EngineError",
    "ProcessAgentEngine",
    "RemoteModelEngine",
    "Request",
    "Response",
    "ResponseStream",
    "SamplingConfig",
]
