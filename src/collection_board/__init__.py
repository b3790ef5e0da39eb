"""Collection board: track overdue tuition cases through a fixed pipeline.

Importing the package configures the shared ``log`` logger used by every
module. Log files rotate under ``.logs/`` at the project root unless
``COLLECTION_BOARD_LOG_DIR`` points elsewhere.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("COLLECTION_BOARD_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "collection_board.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _level_from_env(default: int) -> int:
    name = os.environ.get("COLLECTION_BOARD_LOG_LEVEL", "").upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def _configure_logging() -> logging.Logger:
    """Attach a rotating file handler and a stderr handler exactly once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _level_from_env(logging.INFO)
    logger.setLevel(min(level, logging.INFO))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}", file=sys.stderr)
    else:
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name("console")
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def set_console_level(level: int) -> None:
    """Change how chatty the stderr handler is, e.g. for ``--verbose``."""

    if level < log.level:
        log.setLevel(level)
    for handler in log.handlers:
        if handler.get_name() == "console":
            handler.setLevel(level)


log = _configure_logging()
log.info("Logger initialized for the 'collection_board' package.")
