"""Logging setup shared by every retroq module.

One stream handler is attached to the root logger the first time a module
asks for a logger. RETROQ_LOG_LEVEL picks the level (default INFO).
"""

from __future__ import annotations

import logging
import os
from typing import Final

_HANDLER_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"


def _resolve_level(level_name: str | None = None) -> int:
    name = (level_name or os.getenv("RETROQ_LOG_LEVEL", "INFO")).upper()
    return getattr(logging, name, logging.INFO)


def _ensure_root_handler(level: int) -> None:
    global _HANDLER_ATTACHED

    root = logging.getLogger()
    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(handler)
        _HANDLER_ATTACHED = True
    root.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger configured with a single stream handler."""
    level = _resolve_level()
    _ensure_root_handler(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


def set_log_level(level_name: str) -> None:
    """
    Change the level of the root logger and every retroq logger.

    Side Effects:
        - Mutates logging configuration for the whole process
    """
    level = _resolve_level(level_name)
    _ensure_root_handler(level)
    for logger_name in list(logging.root.manager.loggerDict):
        if logger_name == "retroq" or logger_name.startswith("retroq."):
            logging.getLogger(logger_name).setLevel(level)
