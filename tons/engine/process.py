"""Translation engine that shells out to a command-line agent.

Each request spawns one process: `<command> <args...> [<flag> <system prompt>] <prompt>`.
Blocking calls wait for the process to exit; streaming calls relay stdout while
the process runs.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
from dataclasses import dataclass
from typing import Sequence

from .base import BaseEngine, cancellation_message, effective_timeout
from .decoders import AgentEvent, EventStreamDecoder, OutputFormat, make_decoder
from .errors import EngineTimeoutError, ProcessError
from .stream import DEADLINE_EXCEEDED, ResponseStream
from .types import Request, Response

logger = logging.getLogger(__name__)

DEFAULT_AGENT_TIMEOUT_S = 60.0
DEFAULT_READ_SIZE = 1024
GRACE_PERIOD_S = 3.0
READ_QUEUE_SIZE = 16
STDERR_TAIL_CHARS = 500


@dataclass(frozen=True)
class AgentConfig:
    """How to invoke one command-line agent."""

    command: str
    args: tuple[str, ...] = ()
    timeout_s: float = DEFAULT_AGENT_TIMEOUT_S
    system_prompt_flag: str | None = None  # None: the agent takes no system prompt
    output_format: OutputFormat = OutputFormat.RAW
    read_size: int = DEFAULT_READ_SIZE

    def __post_init__(self) -> None:
        if not self.command:
            raise ValueError("command is required")
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "output_format", OutputFormat(self.output_format))
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")
        if self.read_size <= 0:
            raise ValueError(f"read_size must be > 0, got {self.read_size}")


def build_args(config: AgentConfig, prompt: str, system_prompt: str = "") -> list[str]:
    """Request-local argument list; the configured base args are never mutated."""
    args = list(config.args)
    if config.system_prompt_flag and system_prompt:
        args.extend([config.system_prompt_flag, system_prompt])
    args.append(prompt)
    return args


async def _discard(pipe: asyncio.StreamReader | None) -> None:
    # Unread output would pause the transport and keep wait() from returning.
    if pipe is None:
        return
    try:
        while await pipe.read(65536):
            pass
    except (OSError, ValueError):
        return


async def terminate_gracefully(
    proc: asyncio.subprocess.Process,
    grace_s: float = GRACE_PERIOD_S,
    *,
    interrupt: bool = True,
) -> int:
    """
    Stop and reap an agent process.

    Sends SIGINT (unless `interrupt` is False), waits up to `grace_s` for the
    process to exit, then sends SIGKILL. Any pending output is discarded. The
    caller must not be reading the pipes concurrently.
    """
    drains = [asyncio.ensure_future(_discard(proc.stdout)), asyncio.ensure_future(_discard(proc.stderr))]
    try:
        if interrupt and proc.returncode is None:
            try:
                proc.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
        try:
            return await asyncio.wait_for(proc.wait(), grace_s)
        except asyncio.TimeoutError:
            logger.warning("agent pid=%s still running after %.1fs; killing", proc.pid, grace_s)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        return await proc.wait()
    finally:
        for task in drains:
            task.cancel()


def _stderr_tail(stderr: bytes | None) -> str:
    if not stderr:
        return ""
    text = stderr.decode("utf-8", errors="replace").strip()
    return text[-STDERR_TAIL_CHARS:]


class ProcessAgentEngine(BaseEngine):
    """Engine backed by an external CLI agent such as `claude` or `gemini`."""

    def __init__(self, name: str, config: AgentConfig) -> None:
        super().__init__()
        self._name = name
        self.config = config

    @property
    def name(self) -> str:
        return self._name

    def available(self) -> bool:
        return shutil.which(self.config.command) is not None

    async def _spawn(self, args: Sequence[str], *, capture_stderr: bool) -> asyncio.subprocess.Process:
        logger.info("%s: running %s (%d args)", self.name, self.config.command, len(args))
        logger.debug("%s: argv=%r", self.name, [self.config.command, *args])
        try:
            return await asyncio.create_subprocess_exec(
                self.config.command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE if capture_stderr else None,
            )
        except OSError as exc:
            raise ProcessError(f"{self.name} error: failed to start command: {exc}") from exc

    # -------------------------------------------------------------------------
    # Blocking
    # -------------------------------------------------------------------------

    async def _translate(self, request: Request, timeout: float | None) -> Response:
        args = build_args(self.config, request.build_prompt(), request.system_prompt)
        limit = effective_timeout(self.config.timeout_s, timeout)
        proc = await self._spawn(args, capture_stderr=True)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), limit)
        except asyncio.TimeoutError:
            logger.warning("%s: timed out after %.1fs", self.name, limit)
            await terminate_gracefully(proc)
            raise EngineTimeoutError("translation timed out") from None
        except asyncio.CancelledError:
            await asyncio.shield(terminate_gracefully(proc))
            raise

        if proc.returncode != 0:
            detail = _stderr_tail(stderr)
            message = f"{self.name} error: exit status {proc.returncode}"
            if detail:
                message = f"{message}: {detail}"
            raise ProcessError(message, returncode=proc.returncode)

        if self.config.output_format == OutputFormat.EVENT_STREAM:
            decoder = EventStreamDecoder()
            decoder.feed(stdout)
            decoder.finish()
            if decoder.result is not None and decoder.result.is_error:
                raise ProcessError(f"{self.name} error: {decoder.result.text or 'agent reported an error'}")
            return Response.final(decoder.text.rstrip())
        return Response.final(stdout.decode("utf-8", errors="replace").rstrip())

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    async def _produce(self, request: Request, stream: ResponseStream) -> None:
        args = build_args(self.config, request.build_prompt(), request.system_prompt)
        logger.debug("%s: prompt=%r", self.name, request.build_prompt())
        loop = asyncio.get_running_loop()
        deadline = loop.call_later(self.config.timeout_s, stream.cancel, DEADLINE_EXCEEDED)
        try:
            proc = await self._spawn(args, capture_stderr=False)
            queue: asyncio.Queue[bytes | Exception | None] = asyncio.Queue(READ_QUEUE_SIZE)
            reader = loop.create_task(self._read_pipe(proc, queue), name=f"{self.name}-reader")
            completed = False
            try:
                await self._coordinate(proc, queue, stream)
                completed = True
            finally:
                reader.cancel()
                await asyncio.wait({reader})
                if completed:
                    # A final result record ends the stream before the agent exits.
                    self._reap_later(proc)
                else:
                    await asyncio.shield(terminate_gracefully(proc))
        finally:
            deadline.cancel()

    async def _read_pipe(self, proc: asyncio.subprocess.Process, queue: asyncio.Queue) -> None:
        assert proc.stdout is not None
        try:
            while True:
                data = await proc.stdout.read(self.config.read_size)
                if not data:
                    break
                await queue.put(data)
        except (OSError, ValueError) as exc:
            await queue.put(exc)
            return
        await queue.put(None)

    async def _coordinate(
        self,
        proc: asyncio.subprocess.Process,
        queue: asyncio.Queue,
        stream: ResponseStream,
    ) -> None:
        decoder = make_decoder(self.config.output_format)
        cumulative = self.config.output_format == OutputFormat.EVENT_STREAM
        text = ""
        cancel_waiter = asyncio.ensure_future(stream.wait_cancelled())
        getter: asyncio.Future | None = None
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if cancel_waiter in done:
                    logger.warning("%s: %s; stopping pid=%s", self.name, stream.cancel_reason, proc.pid)
                    raise EngineTimeoutError(cancellation_message(stream.cancel_reason))

                item = getter.result()
                if isinstance(item, Exception):
                    raise ProcessError(f"read error: {item}")

                events = decoder.finish() if item is None else decoder.feed(item)
                for event in events:
                    if event.kind == "result":
                        await self._finish_with_result(event, text, stream)
                        return
                    if not event.text:
                        continue
                    text = text + event.text if cumulative else event.text
                    await stream.send(Response.delta(text))

                if item is None:
                    returncode = await proc.wait()
                    if returncode != 0:
                        raise ProcessError(f"{self.name} error: exit status {returncode}", returncode=returncode)
                    await stream.send(Response.final(""))
                    return
        finally:
            cancel_waiter.cancel()
            if getter is not None:
                getter.cancel()

    async def _finish_with_result(self, event: AgentEvent, streamed: str, stream: ResponseStream) -> None:
        if event.is_error:
            raise ProcessError(f"{self.name} error: {event.text or 'agent reported an error'}")
        if not streamed and event.text:
            await stream.send(Response.delta(event.text))
        await stream.send(Response.final(""))

    def _reap_later(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        task = asyncio.get_running_loop().create_task(
            terminate_gracefully(proc, interrupt=False), name=f"{self.name}-reap"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
