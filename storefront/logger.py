"""
Package logger for the storefront service.

Every module logs through a child of the "storefront" logger, so one call to
configure_logging() at startup sets level and format for the whole service.
"""
import logging
import os
import sys
from typing import Optional

ROOT_LOGGER_NAME = "storefront"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Attach a stdout handler to the package logger (once) and set its level.

    Args:
        level: Log level name; defaults to the LOG_LEVEL env var, then INFO.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level_name)

    if not root.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(console_handler)
    for handler in root.handlers:
        handler.setLevel(level_name)

    # Uvicorn installs its own root handlers; avoid double lines
    root.propagate = False
    return root


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger under the storefront namespace.

    Module paths that already start with "storefront." are used as-is.
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


configure_logging()
