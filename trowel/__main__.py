"""Command-line entry point: ``python -m trowel {build,watch,serve}``."""

from __future__ import annotations

import argparse
import asyncio
import sys

from trowel.config import Settings
from trowel.main import run_build, run_serve, run_watch
from trowel.utils.exceptions import TrowelError
from trowel.utils.logging import get_logger, setup_logging


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="trowel", description="Build, bundle & serve a wasm web app.")
    parser.add_argument("command", choices=["build", "watch", "serve"])
    parser.add_argument("target", nargs="?", help="HTML template (default: index.html)")
    parser.add_argument("--dist", help="output directory")
    parser.add_argument("--release", action="store_true", default=None, help="build in release mode")
    parser.add_argument("--public-url", help="URL prefix of the published bundle")
    parser.add_argument("--port", type=int, help="dev server port")
    parser.add_argument("--open", action="store_true", default=None, help="open a browser once serving")
    parser.add_argument("--debug", action="store_true", default=None, help="verbose logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    overrides = {
        key: value
        for key, value in {
            "target": args.target,
            "dist": args.dist,
            "release": args.release,
            "public_url": args.public_url,
            "port": args.port,
            "open": args.open,
            "debug": args.debug,
        }.items()
        if value is not None
    }
    settings = Settings(**overrides)
    setup_logging(debug=settings.debug)
    logger = get_logger("cli")

    try:
        if args.command == "build":
            report = asyncio.run(run_build(settings))
            for diagnostic in report.diagnostics:
                print(diagnostic, file=sys.stderr)
            return 0 if report.success else 1
        runner = run_watch if args.command == "watch" else run_serve
        asyncio.run(runner(settings))
    except KeyboardInterrupt:
        logger.info("interrupted")
    except TrowelError as exc:
        logger.error("fatal", error=str(exc))
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
