from __future__ import annotations

import logging
import os
from typing import Final

_FORMAT: Final[str] = "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"
_DATEFMT: Final[str] = "%Y-%m-%d %H:%M:%S"
_ROOT_LOGGER: Final[str] = "triageq"

_configured: bool = False


def _level_from_env() -> int:
    name = os.getenv("TRIAGEQ_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO"
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _configure() -> None:
    """Attach one stream handler to the package logger (not the root logger)."""
    global _configured
    package_logger = logging.getLogger(_ROOT_LOGGER)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    package_logger.addHandler(handler)
    package_logger.setLevel(_level_from_env())
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``triageq`` hierarchy.

    Worker threads log from the summarize and fetch pools, so the thread name is
    part of every line.
    """
    if not _configured:
        _configure()
    if name != _ROOT_LOGGER and not name.startswith(_ROOT_LOGGER + "."):
        name = f"{_ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
