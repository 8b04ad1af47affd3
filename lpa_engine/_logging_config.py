# lpa_engine/_logging_config.py
"""Console/file logging for the lpa_engine logger hierarchy.

Library modules only call logging.getLogger(__name__); scripts and notebooks
call setup_logging() once to see comparison progress.
"""

import logging
import sys
from typing import Optional, Union

LOGGER_NAME = "lpa_engine"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """Attach a stdout handler (and optionally a file handler) to the package logger.

    Calling it again replaces the handlers attached by the previous call.
    """
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"unknown logging level {name!r}")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.debug("logging to %s", log_file or "stdout")
    return logger
