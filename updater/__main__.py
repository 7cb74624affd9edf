"""Run the updater Control API with uvicorn.

    python -m updater                 # listen on HOST:PORT from the environment
    python -m updater --port 9000
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

import uvicorn

from updater.config import load_settings
from updater.logging_setup import configure_root, uvicorn_level_name


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Run the deployment updater service.")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entrypoint for the updater service."""
    args = _parse_args(argv)
    level = configure_root(load_settings().log_level)

    # Settings are read at import time, so import after logging is configured.
    from updater.app import app

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=uvicorn_level_name(level),
        access_log=level <= logging.DEBUG,
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
