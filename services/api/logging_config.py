"""
Logging setup shared by the API, the oracle and the crypto core.

Every module grabs its logger at import time:

    from services.api.logging_config import get_logger
    logger = get_logger("oracle")
"""
import logging
import os
import sys
from typing import Optional

ROOT_LOGGER = "zk_oracle"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Attach one stream handler to the package root logger.

    Args:
        level: Log level name; falls back to LOG_LEVEL, then INFO

    Returns:
        The package root logger
    """
    global _configured
    root = logging.getLogger(ROOT_LOGGER)
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, lvl, logging.INFO))

    if not _configured:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.propagate = False
        _configured = True

    return root


def get_logger(name: str) -> logging.Logger:
    """Return a child of the package root logger, e.g. zk_oracle.health."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
