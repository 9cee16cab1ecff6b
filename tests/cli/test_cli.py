import io
import json

from apps.cli import main as cli
from apps.cli.main import build_parser
from apps.cli.output import StreamPrinter, format_size, format_table
from tons.engine.base import BaseEngine
from tons.engine.errors import ProcessError
from tons.engine.types import Response


class FakeEngine(BaseEngine):
    def __init__(self, pieces, error=None):
        super().__init__()
        self.pieces = pieces
        self.error = error

    @property
    def name(self):
        return "fake"

    def available(self):
        return True

    async def _translate(self, request, timeout):
        return Response.final("".join(self.pieces))

    async def _produce(self, request, stream):
        for piece in self.pieces:
            await stream.send(Response.delta(piece))
        if self.error is not None:
            raise self.error
        await stream.send(Response.final())


def _patch_engine(monkeypatch, engine):
    monkeypatch.setattr("tons.service.create_engine", lambda settings: engine)


def test_parser_translate_args():
    args = build_parser().parse_args(["--engine", "agent", "translate", "hello", "--to", "ko", "--agent", "codex"])
    assert args.command == "translate"
    assert args.engine == "agent"
    assert args.target_lang == "ko"
    assert args.source_lang == "auto"
    assert args.agent == "codex"


def test_translate_streams_to_stdout(monkeypatch, capsys):
    _patch_engine(monkeypatch, FakeEngine(["안", "녕"]))
    assert cli.main(["--engine", "remote", "translate", "hi", "--to", "ko"]) == 0
    assert capsys.readouterr().out == "안녕\n"


def test_translate_json_output(monkeypatch, capsys):
    _patch_engine(monkeypatch, FakeEngine(["Hello"]))
    assert cli.main(["--engine", "remote", "translate", "hi", "--to", "en", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data == {"engine": "fake", "text": "Hello", "done": True}


def test_translate_reads_stdin(monkeypatch, capsys):
    _patch_engine(monkeypatch, FakeEngine(["ok"]))
    monkeypatch.setattr("sys.stdin", io.StringIO("from stdin"))
    assert cli.main(["--engine", "remote", "translate", "-", "--to", "en", "--no-stream"]) == 0
    assert capsys.readouterr().out == "ok\n"


def test_translate_stream_error_exit_code(monkeypatch, capsys):
    _patch_engine(monkeypatch, FakeEngine(["par"], error=ProcessError("codex error: exit status 2")))
    assert cli.main(["--engine", "remote", "translate", "hi", "--to", "en"]) == 1
    captured = capsys.readouterr()
    assert captured.out == "par\n"
    assert "error: codex error: exit status 2" in captured.err


def test_invalid_settings_file(tmp_path, capsys):
    path = tmp_path / "bad.json"
    path.write_text("[]", encoding="utf-8")
    assert cli.main(["--config", str(path), "translate", "hi", "--to", "en"]) == 2
    assert "invalid settings" in capsys.readouterr().err


def test_agents_json(monkeypatch, capsys):
    monkeypatch.setattr("apps.cli.main.shutil.which", lambda cmd: "/usr/bin/codex" if cmd == "codex" else None)
    assert cli.main(["agents", "--json"]) == 0
    rows = {r["name"]: r for r in json.loads(capsys.readouterr().out)}
    assert set(rows) == {"claude-code", "gemini-cli", "codex"}
    assert rows["codex"]["installed"] is True
    assert rows["claude-code"]["installed"] is False
    assert rows["claude-code"]["output_format"] == "event-stream"


def test_models_rejects_non_remote_engine(monkeypatch, capsys):
    _patch_engine(monkeypatch, FakeEngine([]))
    assert cli.main(["--engine", "agent", "models"]) == 1
    assert "does not list models" in capsys.readouterr().err


def test_stream_printer_cumulative():
    out = io.StringIO()
    printer = StreamPrinter(cumulative=True, out=out)
    for text in ["a", "ab", "abc"]:
        printer.write(text)
    printer.finish()
    assert out.getvalue() == "abc\n"


def test_stream_printer_delta():
    out = io.StringIO()
    printer = StreamPrinter(cumulative=False, out=out)
    for text in ["a", "b", ""]:
        printer.write(text)
    printer.finish()
    assert out.getvalue() == "ab\n"


def test_format_table_and_size():
    table = format_table(["NAME", "SIZE"], [["llama3.2", "1.9 GB"]])
    assert table.splitlines() == ["NAME      SIZE", "--------  ------", "llama3.2  1.9 GB"]
    assert format_size(512) == "512 B"
    assert format_size(2019393189) == "1.9 GB"


def test_engine_choices_follow_registry():
    from tons.engine import registry

    registry.register_engine("custom", lambda settings: FakeEngine(["ok"]))
    try:
        args = build_parser().parse_args(["--engine", "custom", "translate", "hi", "--to", "en"])
        assert args.engine == "custom"
    finally:
        registry._ENGINE_REGISTRY.pop("custom", None)
