"""Stock ledger and reconciliation engine for daily outlet replenishment."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("STOCK_LEDGER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "stock_ledger.log"
LOG_LEVEL = os.environ.get("STOCK_LEDGER_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Attach the rotating file handler and the stderr handler exactly once.

    The level comes from ``STOCK_LEDGER_LOG_LEVEL`` and the log directory
    from ``STOCK_LEDGER_LOG_DIR`` so deployments can redirect output without
    code changes. A log directory that cannot be created downgrades the
    package to console-only logging instead of failing the import.
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
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: stock ledger log file unavailable at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child of the package logger so records share its handlers."""

    if name == __name__ or name.startswith(f"{__name__}."):
        return logging.getLogger(name)
    return log.getChild(name)


log = _configure_logging()
log.debug("Logger initialized for the 'stock_ledger' package.")
