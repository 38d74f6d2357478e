"""Logging helpers for ohmygpu.

Every module grabs its logger with ``get_logger(__name__)``; the ``ohmygpu``
hierarchy gets a single stream handler on first use so library users see
load/unload transitions without configuring anything themselves.
"""

import logging
import os
from typing import Optional, Union

_ROOT_LOGGER_NAME = "ohmygpu"
_DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_configured = False


def _level_from_env() -> int:
    name = os.environ.get("OHMYGPU_LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def setup_logging(level: Optional[Union[int, str]] = None, fmt: str = _DEFAULT_FORMAT) -> logging.Logger:
    """Configure the ``ohmygpu`` logger hierarchy.

    Args:
        level: Logging level (name or number). Defaults to ``OHMYGPU_LOG_LEVEL`` or INFO.
        fmt: Format string for the stream handler.

    Returns:
        The root ``ohmygpu`` logger
    """
    global _configured
    root = logging.getLogger(_ROOT_LOGGER_NAME)

    if level is None:
        level = _level_from_env()
    elif isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(level)

    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        root.addHandler(handler)
        root.propagate = False
        _configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``ohmygpu`` hierarchy."""
    if not _configured:
        setup_logging()
    if name != _ROOT_LOGGER_NAME and not name.startswith(_ROOT_LOGGER_NAME + "."):
        name = f"{_ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
