"""Standardized logger configuration."""

import logging
import sys

_initialized = False

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once with a stdout handler."""
    global _initialized
    if _initialized:
        logging.getLogger().setLevel(level.upper())
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(level=level.upper(), handlers=[handler], force=True)
    # ccxt is chatty at DEBUG
    logging.getLogger("ccxt").setLevel(logging.WARNING)
    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """Get a standardized logger instance."""
    if not _initialized:
        setup_logging()
    return logging.getLogger(name)
