"""Root logger setup for the updater process."""

from __future__ import annotations

import logging
import os
from typing import Mapping, Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"
DEBUG_ENV = "UPDATER_DEBUG"
_TRUTHY = {"1", "true", "yes", "on"}


def parse_level(value: Union[int, str, None], fallback: int = logging.INFO) -> int:
    """Accept ``"debug"``, ``"20"`` or an int; anything else yields ``fallback``."""
    if isinstance(value, int):
        return value
    text = str(value or "").strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper()) if text else None
    return level if isinstance(level, int) else fallback


def configure_root(level_name: Union[int, str] = "INFO", environ: Optional[Mapping[str, str]] = None) -> int:
    """Configure root logging for ``python -m updater`` and return the level.

    A truthy ``UPDATER_DEBUG`` forces DEBUG regardless of ``LOG_LEVEL``.
    """
    env = os.environ if environ is None else environ
    level = parse_level(level_name)
    if str(env.get(DEBUG_ENV) or "").strip().lower() in _TRUTHY:
        level = logging.DEBUG

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    root.setLevel(level)
    return level


def uvicorn_level_name(level: int) -> str:
    """Return the lowercase level name uvicorn expects for ``log_level``."""
    name = logging.getLevelName(level)
    if not isinstance(name, str) or name.startswith("Level "):
        return "info"
    return name.lower()
