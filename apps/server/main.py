"""tons translation server entrypoint (FastAPI + uvicorn).

Example:
    python -m apps.server.main --config ~/.config/tons/settings.json --port 8790
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from typing import Sequence

from apps.server.app import create_app
from tons.config import resolve_settings
from tons.engine.registry import list_engine_kinds
from tons.service import TranslationService


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="tons translation server")
    p.add_argument("--config", default=None, help="Settings JSON file (default: $TONS_CONFIG)")
    p.add_argument("--engine", choices=list_engine_kinds(), default=None, help="Override the configured engine kind")
    p.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8790, help="Bind port (default: 8790)")
    p.add_argument(
        "--request-timeout",
        type=float,
        default=0.0,
        help="Per-request deadline in seconds on top of the engine timeout (0 = none)",
    )
    p.add_argument("--log-level", default="info", help="Log level (default: info)")
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = resolve_settings(args.config)
    if args.engine:
        settings = replace(settings, engine=args.engine)

    service = TranslationService(settings)
    logging.getLogger(__name__).info("starting server with engine kind %r", settings.engine)
    app = create_app(
        service=service,
        request_timeout_s=None if args.request_timeout <= 0 else float(args.request_timeout),
    )

    import uvicorn

    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    finally:
        service.close()


if __name__ == "__main__":
    main()
