"""Process-wide logging configuration for the clustering service."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

_DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """
    Configure root logging with a console handler and an optional file handler.

    Level defaults to ``MAILSIFT_LOG_LEVEL`` (INFO when unset).
    """
    level_name = (level or os.getenv("MAILSIFT_LOG_LEVEL", "INFO")).upper()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=_DEFAULT_FORMAT,
        handlers=handlers,
        force=True,
    )
