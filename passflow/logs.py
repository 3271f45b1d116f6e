import logging
import os
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str | None = None) -> logging.Logger:
    """Configure the ``passflow`` logger tree and return its root.

    ``level`` defaults to the LOG_LEVEL environment variable, then INFO.
    Calling it twice replaces the handler instead of duplicating output.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger("passflow")
    logger.setLevel(log_level)
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(handler)
    # uvicorn/sqlalchemy keep their own handlers
    logger.propagate = False
    return logger
