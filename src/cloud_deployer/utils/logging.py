"""Logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

_LOGGING_CONFIGURED = False
_FORMAT = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    global _LOGGING_CONFIGURED
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric, format=_FORMAT)
    # basicConfig 只生效一次，之后调用仍需更新级别
    logging.getLogger().setLevel(numeric)
    # paramiko 的传输日志过于冗长
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    _LOGGING_CONFIGURED = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


def add_file_handler(path: Path) -> logging.Handler:
    """Mirror every log record into `path` until `remove_handler` is called."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_FORMAT))
    logging.getLogger().addHandler(handler)
    return handler


def remove_handler(handler: logging.Handler) -> None:
    logging.getLogger().removeHandler(handler)
    handler.close()
