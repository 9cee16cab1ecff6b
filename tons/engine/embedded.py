"""In-process inference engine backed by a Transformers causal LM.

The model handle is owned by one `EmbeddedEngine` instance: it is loaded lazily
on first use, shared by every request on that instance and freed by `close()`.
The model is not safe to decode from two threads at once, so all generation
goes through a capacity-one gate.
"""

from __future__ import annotations

import asyncio
import gc
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .base import BaseEngine, cancellation_message, effective_timeout
from .errors import AcquisitionError, EngineTimeoutError, GenerationError, InitializationError
from .sampling import build_sampler_chain
from .stream import ResponseStream
from .types import Request, Response, SamplingConfig

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_SIZE = 2048
GATE_POLL_S = 0.05


@dataclass(frozen=True)
class EmbeddedConfig:
    """Settings for the embedded engine."""

    model_path: str
    context_size: int = DEFAULT_CONTEXT_SIZE
    device: str = "cpu"
    dtype: str = "auto"  # auto | float16 | bfloat16 | float32
    sampling: SamplingConfig = field(default_factory=SamplingConfig)

    def __post_init__(self) -> None:
        if not self.model_path:
            raise ValueError("model_path is required")
        if self.context_size <= 0:
            raise ValueError(f"context_size must be > 0, got {self.context_size}")


Loader = Callable[[EmbeddedConfig], "tuple[Any, Any]"]


def _torch_dtype(name: str) -> Any:
    import torch

    dt = name.strip().lower()
    if dt == "auto":
        return "auto"
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {name!r}")


def load_transformers_model(config: EmbeddedConfig) -> tuple[Any, Any]:
    """Load (model, tokenizer) from a local path or hub id."""
    from transformers import AutoModelForCausalLM, AutoTokenizer

    tokenizer = AutoTokenizer.from_pretrained(config.model_path)
    model = AutoModelForCausalLM.from_pretrained(
        config.model_path,
        torch_dtype=_torch_dtype(config.dtype),
        device_map=config.device,
    )
    model.eval()
    return model, tokenizer


def _cached_on_hub(repo_id: str) -> bool:
    # Cache lookup only. Nothing is downloaded.
    try:
        from huggingface_hub import try_to_load_from_cache

        return isinstance(try_to_load_from_cache(repo_id, "config.json"), str)
    except Exception as exc:
        logger.debug("hub cache lookup for %r failed: %s", repo_id, exc)
        return False


class _ExclusiveGate:
    """Capacity-one admission gate whose acquisition can be abandoned."""

    def __init__(self) -> None:
        self._sem = threading.BoundedSemaphore(1)

    def acquire(self, cancel: threading.Event) -> bool:
        while not cancel.is_set():
            if self._sem.acquire(timeout=GATE_POLL_S):
                return True
        return False

    def release(self) -> None:
        self._sem.release()


class EmbeddedEngine(BaseEngine):
    """
    Translation engine that runs a causal LM inside this process.

    Thread Safety:
        `initialize()` and `close()` are serialized by a lock. Generation runs in
        worker threads and is serialized by the exclusive-use gate, so any number
        of concurrent requests is safe; they simply queue.
    """

    def __init__(self, config: EmbeddedConfig, *, loader: Loader | None = None) -> None:
        super().__init__()
        self.config = config
        self._loader = loader or load_transformers_model
        self._lock = threading.Lock()
        self._gate = _ExclusiveGate()
        self._model: Any | None = None
        self._tokenizer: Any | None = None
        self._initialized = False
        self._closed = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return f"embedded:{Path(self.config.model_path).name}"

    @property
    def initialized(self) -> bool:
        return self._initialized

    def available(self) -> bool:
        """True for an existing local model directory or a hub id already in the local cache."""
        if os.path.exists(self.config.model_path):
            return True
        return _cached_on_hub(self.config.model_path)

    def initialize(self) -> None:
        """Load the model once. Concurrent callers share a single load."""
        with self._lock:
            if self._closed:
                raise InitializationError(f"{self.name}: engine is closed")
            if self._initialized:
                return
            logger.info("loading model from %s (device=%s)", self.config.model_path, self.config.device)
            try:
                model, tokenizer = self._loader(self.config)
            except Exception as exc:
                raise InitializationError(f"embedded error: failed to load model: {exc}") from exc
            if getattr(tokenizer, "eos_token_id", None) is None:
                raise InitializationError("embedded error: tokenizer has no EOS token")
            self._model = model
            self._tokenizer = tokenizer
            self._initialized = True
            logger.info("model loaded: %s", self.name)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if not self._initialized:
                return
            self._model = None
            self._tokenizer = None
            self._initialized = False
            gc.collect()
            try:
                import torch
            except ImportError:
                return
            if torch.cuda.is_available():
                torch.cuda.empty_cache()

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await asyncio.to_thread(self.initialize)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def _prepare_stream(self) -> None:
        await self._ensure_initialized()

    async def _translate(self, request: Request, timeout: float | None) -> Response:
        await self._ensure_initialized()
        prompt = request.build_prompt()
        parts: list[str] = []
        cancel = threading.Event()
        loop = asyncio.get_running_loop()
        deadline = None
        limit = effective_timeout(None, timeout)
        if limit is not None:
            deadline = loop.call_later(limit, cancel.set)

        def _collect(piece: str) -> bool:
            parts.append(piece)
            return True

        try:
            finish_reason = await asyncio.to_thread(self._run_locked, prompt, _collect, cancel)
        except GenerationError as exc:
            exc.partial_text = "".join(parts)
            raise
        except asyncio.CancelledError:
            cancel.set()
            raise
        finally:
            if deadline is not None:
                deadline.cancel()

        if finish_reason == "cancelled":
            raise EngineTimeoutError("translation timed out")
        return Response.final("".join(parts))

    async def _produce(self, request: Request, stream: ResponseStream) -> None:
        prompt = request.build_prompt()
        loop = asyncio.get_running_loop()
        cancel = threading.Event()

        def _deliver(piece: str) -> bool:
            future = asyncio.run_coroutine_threadsafe(stream.send(Response.delta(piece)), loop)
            return future.result()

        async def _bridge_cancel() -> None:
            await stream.wait_cancelled()
            cancel.set()

        watcher = loop.create_task(_bridge_cancel())
        worker = asyncio.ensure_future(asyncio.to_thread(self._run_locked, prompt, _deliver, cancel))
        try:
            finish_reason = await asyncio.shield(worker)
        except asyncio.CancelledError:
            cancel.set()
            stream.cancel()
            # The worker thread owns the gate; let it unwind before we go.
            await asyncio.wait({worker})
            raise
        finally:
            watcher.cancel()

        if finish_reason == "cancelled" or stream.cancelled:
            raise EngineTimeoutError(cancellation_message(stream.cancel_reason))
        await stream.send(Response.final(""))

    # -------------------------------------------------------------------------
    # Internal: generation (worker thread)
    # -------------------------------------------------------------------------

    def _run_locked(self, prompt: str, on_piece: Callable[[str], bool], cancel: threading.Event) -> str:
        if not self._gate.acquire(cancel):
            raise AcquisitionError("embedded error: failed to acquire model: cancelled")
        try:
            return self._generate_tokens(prompt, on_piece, cancel)
        finally:
            self._gate.release()

    def _generate_tokens(self, prompt: str, on_piece: Callable[[str], bool], cancel: threading.Event) -> str:
        """Decode loop. Returns a finish reason: "stop", "length" or "cancelled"."""
        import torch

        model = self._model
        tokenizer = self._tokenizer
        if model is None or tokenizer is None:
            raise GenerationError("embedded error: model not loaded")

        sampling = self.config.sampling
        eos_token_id = tokenizer.eos_token_id
        device = getattr(model, "device", "cpu")

        try:
            input_ids = tokenizer(prompt, return_tensors="pt", add_special_tokens=True)["input_ids"].to(device)
        except Exception as exc:
            raise GenerationError(f"embedded error: tokenization failed: {exc}") from exc
        prompt_tokens = int(input_ids.shape[-1])
        if prompt_tokens >= self.config.context_size:
            raise GenerationError(
                f"embedded error: prompt too long: {prompt_tokens} tokens (context={self.config.context_size})"
            )
        max_new_tokens = min(sampling.max_tokens, self.config.context_size - prompt_tokens)

        sampler = build_sampler_chain(sampling)
        generated: list[int] = []
        emitted = ""
        finish_reason = "length"

        try:
            with torch.no_grad():
                outputs = model(input_ids, use_cache=True)
                past_key_values = outputs.past_key_values
                next_token_logits = outputs.logits[:, -1, :]

                for _ in range(max_new_tokens):
                    if cancel.is_set():
                        return "cancelled"

                    token_id = sampler.sample(next_token_logits)
                    if token_id == eos_token_id:
                        finish_reason = "stop"
                        break

                    generated.append(token_id)
                    text = tokenizer.decode(generated, skip_special_tokens=True)
                    # Hold back a trailing partial UTF-8 sequence until it completes.
                    if not text.endswith("�") and len(text) > len(emitted):
                        piece = text[len(emitted) :]
                        emitted = text
                        if not on_piece(piece):
                            return "cancelled"

                    next_token = torch.tensor([[token_id]], device=device)
                    outputs = model(next_token, past_key_values=past_key_values, use_cache=True)
                    past_key_values = outputs.past_key_values
                    next_token_logits = outputs.logits[:, -1, :]

            # A trailing U+FFFD that never completed is real output once decoding stops.
            text = tokenizer.decode(generated, skip_special_tokens=True)
            if len(text) > len(emitted):
                piece = text[len(emitted) :]
                emitted = text
                if not on_piece(piece):
                    return "cancelled"
        except Exception as exc:
            logger.warning("decode failed after %d tokens: %s", len(generated), exc)
            raise GenerationError(f"embedded error: {exc}", partial_text=emitted) from exc

        if finish_reason == "length":
            logger.debug("max tokens reached (%d)", max_new_tokens)
        return finish_reason
