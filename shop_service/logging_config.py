"""
logging_config.py — Logging Setup for the Shop Service

Every module logs through the root logger configured here. Level and log
file come from config (LOG_LEVEL, LOG_FILE); an empty LOG_FILE logs to
stdout only, which is what tests and containers use.
"""

import logging
import sys

from .config import LOG_FILE, LOG_LEVEL

LOG_FORMAT = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(message)s'

# Libraries whose INFO output drowns out order and cart events
QUIET_LOGGERS = ("pika", "httpx", "sqlalchemy.engine")


def setup_logging(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE):
    """
    Configures the root logger once per process.

    Args:
        level (str): Name of the root log level, e.g. "INFO" or "DEBUG".
            Unknown names fall back to INFO.
        log_file (str | None): Path of the log file, or None/"" for stdout only.
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name):
    return logging.getLogger(name)
