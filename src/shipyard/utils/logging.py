"""Logging helpers."""

from __future__ import annotations

import logging
from typing import Optional

_LOGGING_CONFIGURED = False
_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Configure the root logger once; a later verbose call still lowers the level."""
    global _LOGGING_CONFIGURED
    level = logging.DEBUG if verbose else logging.INFO
    if not _LOGGING_CONFIGURED:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
        _LOGGING_CONFIGURED = True
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        # paramiko 的 DEBUG 输出过于冗长
        logging.getLogger("paramiko").setLevel(logging.INFO)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
