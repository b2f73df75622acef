"""Job costing and tenant-scoped record keeping for a small repair shop."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("JOB_LEDGER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "job_ledger.log"
LOG_LEVEL = os.environ.get("JOB_LEDGER_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging with a rotating file and the console.

    The level defaults to ``INFO`` and can be raised or lowered through the
    ``JOB_LEDGER_LOG_LEVEL`` environment variable. ``JOB_LEDGER_LOG_DIR``
    relocates the log file, which matters when the package is installed into
    a read-only location.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # Console only carries warnings so command output stays readable.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Logger initialized for the 'job_ledger' package.")
