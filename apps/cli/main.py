"""`tons`: translation command line.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import sys
from dataclasses import replace
from typing import Sequence

from apps.cli.output import StreamPrinter, format_size, format_table, print_json
from tons.config import AgentSettings, Settings, resolve_settings
from tons.engine.decoders import OutputFormat
from tons.engine.errors import EngineError
from tons.engine.registry import AGENT_PRESETS, list_engine_kinds
from tons.service import TranslationService


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tons", description="Translate text with a local model, a CLI agent or Ollama")
    p.add_argument("--config", default=None, help="Settings JSON file (default: $TONS_CONFIG)")
    p.add_argument("--engine", choices=list_engine_kinds(), default=None, help="Override the configured engine kind")
    p.add_argument("--log-level", default="warning", help="Log level (default: %(default)s)")

    sub = p.add_subparsers(dest="command")

    tr = sub.add_parser("translate", help="Translate text (use '-' to read stdin)")
    tr.add_argument("text", help="Text to translate, or '-' for stdin")
    tr.add_argument("-t", "--to", dest="target_lang", required=True, help="Target language")
    tr.add_argument("-f", "--from", dest="source_lang", default="auto", help="Source language (default: auto)")
    tr.add_argument("--agent", default=None, help="Agent preset when --engine agent (e.g. claude-code)")
    tr.add_argument("--model", default=None, help="Model path (embedded) or model name (remote)")
    tr.add_argument("--timeout", type=float, default=None, help="Deadline in seconds")
    tr.add_argument("--no-stream", action="store_true", help="Wait for the complete translation")
    tr.add_argument("--json", action="store_true", help="Machine-readable JSON output (implies --no-stream)")

    agents = sub.add_parser("agents", help="List known command-line agents")
    agents.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    models = sub.add_parser("models", help="List models on the Ollama server")
    models.add_argument("--host", default=None, help="Server URL (default: from settings)")
    models.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8790, help="Bind port (default: 8790)")

    return p


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.engine:
        settings = replace(settings, engine=args.engine)
    agent = getattr(args, "agent", None)
    if agent:
        settings = replace(settings, agent=AgentSettings(name=agent))
    model = getattr(args, "model", None)
    if model:
        if settings.engine == "embedded":
            settings = replace(settings, embedded=replace(settings.embedded, model_path=model))
        elif settings.engine == "remote":
            settings = replace(settings, remote=replace(settings.remote, model=model))
    host = getattr(args, "host", None)
    if host and args.command == "models":
        settings = replace(settings, remote=replace(settings.remote, host=host))
    return settings


def _is_cumulative(settings: Settings) -> bool:
    return settings.engine == "agent" and settings.agent_config().output_format == OutputFormat.EVENT_STREAM


async def _translate(service: TranslationService, args: argparse.Namespace, text: str) -> int:
    if args.no_stream or args.json:
        result = await service.translate(text, args.source_lang, args.target_lang, timeout=args.timeout)
        if args.json:
            print_json({"engine": service.engine.name, **result.to_dict()})
        else:
            print(result.text)
        return 0

    printer = StreamPrinter(cumulative=_is_cumulative(service.settings))
    stream = await service.translate_stream(text, args.source_lang, args.target_lang, timeout=args.timeout)
    async with stream:
        async for response in stream:
            if response.error:
                printer.finish()
                print(f"error: {response.error}", file=sys.stderr)
                return 1
            printer.write(response.text)
    printer.finish()
    return 0


async def _models(service: TranslationService, args: argparse.Namespace) -> int:
    models = await service.list_models()
    if args.json:
        print_json([{"name": m.name, "modified_at": m.modified_at, "size": m.size} for m in models])
        return 0
    if not models:
        print("No models installed.")
        return 0
    print(format_table(["NAME", "SIZE", "MODIFIED"], [[m.name, format_size(m.size), m.modified_at] for m in models]))
    return 0


def _agents(args: argparse.Namespace) -> int:
    rows = []
    for name, config in AGENT_PRESETS.items():
        path = shutil.which(config.command)
        rows.append(
            {
                "name": name,
                "command": config.command,
                "installed": path is not None,
                "path": path,
                "output_format": config.output_format.value,
            }
        )
    if args.json:
        print_json(rows)
        return 0
    print(
        format_table(
            ["NAME", "COMMAND", "INSTALLED", "OUTPUT"],
            [[r["name"], r["command"], "yes" if r["installed"] else "no", r["output_format"]] for r in rows],
        )
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    command = args.command
    if command is None:
        parser.print_help()
        return 2
    if command == "agents":
        return _agents(args)
    if command == "serve":
        from apps.server import main as server_main

        forwarded = ["--host", args.host, "--port", str(args.port), "--log-level", args.log_level]
        if args.config:
            forwarded += ["--config", args.config]
        if args.engine:
            forwarded += ["--engine", args.engine]
        server_main.main(forwarded)
        return 0

    try:
        settings = _apply_overrides(resolve_settings(args.config), args)
    except (OSError, ValueError) as exc:
        print(f"error: invalid settings: {exc}", file=sys.stderr)
        return 2

    service = TranslationService(settings)
    try:
        if command == "translate":
            text = sys.stdin.read() if args.text == "-" else args.text
            return asyncio.run(_translate(service, args, text))
        if command == "models":
            return asyncio.run(_models(service, args))
        parser.error(f"Unknown command: {command!r}")
        return 2
    except (EngineError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    finally:
        service.close()


if __name__ == "__main__":
    raise SystemExit(main())
