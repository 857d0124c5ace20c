"""Logging setup for tether.

Library modules only call ``logging.getLogger(__name__)``; this module is used
by entry points (the CLI, host applications) to attach a daily file handler
to the ``tether`` logger.
"""

import logging
from datetime import date
from pathlib import Path
from typing import Optional

from tether.config import get_settings

LOGGER_NAME = "tether"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] owner=%(owner)s %(message)s"


class _OwnerFilter(logging.Filter):
    """Stamp every record with the owner id the session was set up for."""

    def __init__(self, owner_id: str):
        super().__init__()
        self.owner_id = owner_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "owner"):
            record.owner = self.owner_id
        return True


def get_log_dir(data_dir: Optional[Path] = None) -> Path:
    return (data_dir or get_settings().data_dir) / "logs"


def setup_tether_logging(
    owner_id: str = "anonymous",
    level: Optional[str] = None,
    data_dir: Optional[Path] = None,
) -> logging.Logger:
    """Attach a file handler writing ``<data_dir>/logs/local-<date>.log``.

    Calling this again replaces the previous handler instead of stacking
    a second one.

    Args:
        owner_id: Owner the log lines are stamped with.
        level: Log level name; defaults to the configured ``log_level``.
        data_dir: Overrides the configured data directory.

    Returns:
        The ``tether`` logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    log_dir = get_log_dir(data_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    for handler in list(logger.handlers):
        if getattr(handler, "_tether_handler", False):
            logger.removeHandler(handler)
            handler.close()

    handler = logging.FileHandler(log_dir / f"local-{date.today().isoformat()}.log")
    handler._tether_handler = True
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_OwnerFilter(owner_id))
    logger.addHandler(handler)
    logger.setLevel((level or get_settings().log_level).upper())
    return logger


def log_sync(direction: str, pushed: int = 0, pulled: int = 0, errors: int = 0, **extra) -> None:
    """One-line summary of a sync step."""
    details = " ".join(f"{k}={v}" for k, v in sorted(extra.items()))
    logging.getLogger(f"{LOGGER_NAME}.sync").info(
        f"sync {direction} pushed={pushed} pulled={pulled} errors={errors} {details}"
    )
