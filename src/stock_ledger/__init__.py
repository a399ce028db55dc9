"""Per-owner product catalog, cart and reversible sales ledger on an Excel workbook.

Importing the package configures the ``stock_ledger`` logger. Every record
at INFO and above goes to a rotating file under ``.logs/``; the console only
shows warnings and errors, so command output on stdout stays readable. Two
environment variables adjust this:

``STOCK_LEDGER_LOG_DIR``
    Directory for ``stock_ledger.log`` instead of ``<project>/.logs``.
``STOCK_LEDGER_LOG_LEVEL``
    Console level name such as ``INFO`` or ``DEBUG``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("STOCK_LEDGER_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "stock_ledger.log"
DEFAULT_CONSOLE_LEVEL = logging.WARNING

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def resolve_console_level(value=None):
    """Translate a level name (or number) into a ``logging`` level.

    Unknown or empty values fall back to :data:`DEFAULT_CONSOLE_LEVEL`.
    """

    if value is None:
        value = os.environ.get("STOCK_LEDGER_LOG_LEVEL", "")
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper()) if text else None
    return level if isinstance(level, int) else DEFAULT_CONSOLE_LEVEL


def _build_file_handler(log_file: Path):
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{log_file}': {exc}",
            file=sys.stderr,
        )
        return None
    handler.setLevel(logging.INFO)
    handler.setFormatter(_FORMATTER)
    return handler


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging with file and console handlers."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)

    file_handler = _build_file_handler(LOG_FILE)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(resolve_console_level())
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'stock_ledger' package.")
