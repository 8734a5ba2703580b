import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
ROOT_LOGGER = "knowledge_engine"


def _level_from_env() -> int:
    name = os.environ.get("KNOWLEDGE_ENGINE_LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Module logger writing pipe-delimited records to stdout."""
    logger = logging.getLogger(name or ROOT_LOGGER)
    if logger.handlers:
        return logger
    logger.setLevel(_level_from_env())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
