"""Kadaele POS: offline-first point-of-sale ledger backed by an Excel workbook.

Importing the package configures the shared ``log`` used by every module.
``KADAELE_LOG_DIR`` moves the rotating log file and ``KADAELE_LOG_LEVEL``
raises or lowers the file verbosity (``INFO`` by default).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("KADAELE_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "kadaele_pos.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def resolve_level(value: Optional[str], default: int = logging.INFO) -> int:
    """Map a level name such as ``"debug"`` to its ``logging`` constant."""

    if not value:
        return default
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else default


def _file_handler(formatter: logging.Formatter, level: int) -> Optional[logging.Handler]:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the rotating file handler and the stderr handler once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    file_level = resolve_level(os.environ.get("KADAELE_LOG_LEVEL"))
    logger.setLevel(min(file_level, logging.WARNING))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handler = _file_handler(formatter, file_level)
    if handler is not None:
        logger.addHandler(handler)

    # Only problems reach the terminal; command output goes to stdout.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for kadaele_pos %s", __version__)
