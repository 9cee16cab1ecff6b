import asyncio
import threading
import time

import pytest

torch = pytest.importorskip("torch")

from tons.engine.embedded import EmbeddedConfig, EmbeddedEngine
from tons.engine.errors import EngineTimeoutError, GenerationError, InitializationError
from tons.engine.types import Request, Response, SamplingConfig

EOS = 0
VOCAB = [b"", b"H", b"i", b"!", b"\xec\x95", b"\x88", b"x"]


class ByteTokenizer:
    eos_token_id = EOS

    def __call__(self, text, return_tensors=None, add_special_tokens=True):
        ids = [6] * max(len(text), 1)
        return {"input_ids": torch.tensor([ids])}

    def decode(self, ids, skip_special_tokens=True):
        return b"".join(VOCAB[i] for i in ids if i != EOS).decode("utf-8", errors="replace")


class _Output:
    def __init__(self, logits, past_key_values):
        self.logits = logits
        self.past_key_values = past_key_values


class ScriptedModel:
    """Emits `script[step]` greedily; past_key_values is just the step counter."""

    device = torch.device("cpu")

    def __init__(self, script, *, filler=6, delay=0.0, fail_at=None):
        self.script = list(script)
        self.filler = filler
        self.delay = delay
        self.fail_at = fail_at
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.calls = 0

    def __call__(self, input_ids, past_key_values=None, use_cache=True):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls += 1
        try:
            if self.delay:
                time.sleep(self.delay)
            step = 0 if past_key_values is None else past_key_values
            if self.fail_at is not None and step == self.fail_at:
                raise RuntimeError("device lost")
            token = self.script[step] if step < len(self.script) else self.filler
            logits = torch.full((1, input_ids.shape[-1], len(VOCAB)), -10.0)
            logits[0, -1, token] = 10.0
            return _Output(logits, step + 1)
        finally:
            with self._lock:
                self.active -= 1


def _engine(model, *, max_tokens=32, context_size=2048, loader=None):
    config = EmbeddedConfig(
        model_path="/models/fake-model",
        context_size=context_size,
        sampling=SamplingConfig(temperature=0.0, max_tokens=max_tokens),
    )
    return EmbeddedEngine(config, loader=loader or (lambda cfg: (model, ByteTokenizer())))


def _req(text="hello"):
    return Request(text=text, source_lang="en", target_lang="ko", prompt="{{text}}")


def _stream(engine, request, **kwargs):
    async def main():
        stream = await engine.translate_stream(request, **kwargs)
        return await stream.collect()

    return asyncio.run(main())


def test_name_uses_model_directory():
    assert _engine(ScriptedModel([])).name == "embedded:fake-model"


def test_blocking_stops_at_eos():
    engine = _engine(ScriptedModel([1, 2, 3, EOS]))
    assert asyncio.run(engine.translate(_req())) == Response.final("Hi!")
    assert engine.initialized


def test_stream_deltas_concatenate_to_blocking_result():
    engine = _engine(ScriptedModel([1, 2, 3, EOS]))
    out = _stream(engine, _req())
    assert out[-1] == Response.final("")
    assert "".join(r.text for r in out[:-1]) == "Hi!"
    assert all(not r.done for r in out[:-1])


def test_incomplete_utf8_is_held_back():
    engine = _engine(ScriptedModel([4, 5, 1, EOS]))
    out = _stream(engine, _req())
    assert [r.text for r in out[:-1]] == ["안", "H"]


def test_max_tokens_is_a_normal_stop():
    engine = _engine(ScriptedModel([], filler=6), max_tokens=3)
    assert asyncio.run(engine.translate(_req())).text == "xxx"


def test_prompt_longer_than_context_is_rejected():
    engine = _engine(ScriptedModel([1, EOS]), context_size=4)
    with pytest.raises(GenerationError, match="prompt too long"):
        asyncio.run(engine.translate(_req("hello")))


def test_decode_failure_keeps_partial_text():
    engine = _engine(ScriptedModel([1, 2, 3, EOS], fail_at=2))
    with pytest.raises(GenerationError) as excinfo:
        asyncio.run(engine.translate(_req()))
    assert excinfo.value.partial_text == "Hi"

    out = _stream(engine, _req())
    assert "".join(r.text for r in out[:-1]) == "Hi"
    assert out[-1].error_kind == "generation"


def test_empty_text_does_not_load_model():
    calls = []

    def loader(cfg):
        calls.append(cfg)
        return ScriptedModel([EOS]), ByteTokenizer()

    engine = _engine(None, loader=loader)
    assert asyncio.run(engine.translate(_req(""))) == Response.final("")
    assert _stream(engine, _req("")) == [Response.final("")]
    assert calls == []


def test_load_failure_is_initialization_error_and_retryable():
    attempts = []

    def loader(cfg):
        attempts.append(cfg)
        if len(attempts) == 1:
            raise OSError("no such file")
        return ScriptedModel([1, EOS]), ByteTokenizer()

    engine = _engine(None, loader=loader)
    with pytest.raises(InitializationError, match="no such file"):
        asyncio.run(engine.translate(_req()))
    assert not engine.initialized
    assert asyncio.run(engine.translate(_req())).text == "H"


def test_stream_reports_load_failure_before_streaming():
    def loader(cfg):
        raise OSError("corrupt weights")

    engine = _engine(None, loader=loader)

    async def main():
        await engine.translate_stream(_req())

    with pytest.raises(InitializationError):
        asyncio.run(main())


def test_concurrent_initialize_loads_once():
    calls = []

    def loader(cfg):
        calls.append(cfg)
        time.sleep(0.05)
        return ScriptedModel([1, EOS]), ByteTokenizer()

    engine = _engine(None, loader=loader)
    threads = [threading.Thread(target=engine.initialize) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(calls) == 1


def test_decodes_never_overlap():
    model = ScriptedModel([1, 2, 3, EOS], delay=0.01)
    engine = _engine(model)

    async def main():
        return await asyncio.gather(*(engine.translate(_req()) for _ in range(3)))

    results = asyncio.run(main())
    assert [r.text for r in results] == ["Hi!"] * 3
    assert model.max_active == 1


def test_stream_deadline_stops_decoding():
    model = ScriptedModel([], filler=6, delay=0.02)
    engine = _engine(model, max_tokens=10_000)
    started = time.monotonic()
    out = _stream(engine, _req(), timeout=0.2)
    assert out[-1].error == "translation timed out"
    assert out[-1].error_kind == "timeout"
    assert time.monotonic() - started < 2.0


def test_blocking_deadline_stops_decoding():
    engine = _engine(ScriptedModel([], filler=6, delay=0.02), max_tokens=10_000)
    with pytest.raises(EngineTimeoutError):
        asyncio.run(engine.translate(_req(), timeout=0.2))


def test_close_is_idempotent_and_terminal():
    engine = _engine(ScriptedModel([1, EOS]))
    assert asyncio.run(engine.translate(_req())).text == "H"
    engine.close()
    engine.close()
    assert not engine.initialized
    with pytest.raises(InitializationError, match="closed"):
        asyncio.run(engine.translate(_req()))


def test_concurrent_streams_never_overlap():
    model = ScriptedModel([1, 2, 3, EOS], delay=0.01)
    engine = _engine(model)

    async def one():
        stream = await engine.translate_stream(_req())
        return await stream.collect()

    async def main():
        return await asyncio.gather(*(one() for _ in range(4)))

    for out in asyncio.run(main()):
        assert "".join(r.text for r in out[:-1]) == "Hi!"
        assert out[-1] == Response.final("")
    assert model.max_active == 1


def test_stream_cancelled_while_waiting_for_gate():
    model = ScriptedModel([], filler=6, delay=0.02)
    engine = _engine(model, max_tokens=10_000)

    async def main():
        busy = await engine.translate_stream(_req(), timeout=1.0)
        await asyncio.sleep(0.1)
        started = time.monotonic()
        waiting = await engine.translate_stream(_req(), timeout=0.2)
        waiting_out = await waiting.collect()
        elapsed = time.monotonic() - started
        busy_out = await busy.collect()
        return waiting_out, elapsed, busy_out

    waiting_out, elapsed, busy_out = asyncio.run(main())
    assert len(waiting_out) == 1
    assert waiting_out[0].done
    assert waiting_out[0].error_kind == "acquisition"
    assert elapsed < 0.9
    assert busy_out[-1].error_kind == "timeout"
    assert model.max_active == 1


def test_trailing_replacement_character_is_flushed():
    engine = _engine(ScriptedModel([1, 4, EOS]))
    out = _stream(engine, _req())
    assert "".join(r.text for r in out[:-1]) == "H�"
    assert asyncio.run(engine.translate(_req())).text == "H�"


def test_trailing_replacement_character_is_flushed_at_max_tokens():
    engine = _engine(ScriptedModel([4, 4]), max_tokens=1)
    assert asyncio.run(engine.translate(_req())).text == "�"


def test_available_for_local_path_or_cached_hub_id(tmp_path, monkeypatch):
    pytest.importorskip("huggingface_hub")
    local = EmbeddedEngine(EmbeddedConfig(model_path=str(tmp_path)))
    assert local.available()

    cached = {"org/cached-model": "/cache/models--org--cached-model/config.json"}
    monkeypatch.setattr("huggingface_hub.try_to_load_from_cache", lambda repo_id, filename: cached.get(repo_id))
    assert EmbeddedEngine(EmbeddedConfig(model_path="org/cached-model")).available()
    assert not EmbeddedEngine(EmbeddedConfig(model_path="org/missing-model")).available()
