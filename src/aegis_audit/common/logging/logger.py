"""Centralized logging configuration.

Modules log through logging.getLogger(__name__). Entry points call
configure_logging() once so every logger under the aegis_audit package
shares one handler and the configured level.
"""

import logging
from typing import Optional, Union

from aegis_audit.common.config import Config, LogLevel, get_config

PACKAGE_LOGGER = "aegis_audit"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _attach_handler(logger: logging.Logger) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)


def configure_logging(config: Optional[Config] = None) -> logging.Logger:
    """Set the package log level from config and attach a stream handler.

    Safe to call more than once; the handler is only added the first time.
    """
    config = config or get_config()
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, config.log_level.value))
    _attach_handler(logger)
    return logger


def get_logger(name: str, level: Union[str, LogLevel] = LogLevel.INFO) -> logging.Logger:
    """Get a logger with its own stream handler, for scripts outside the package."""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, LogLevel(level).value))
    _attach_handler(logger)
    return logger
