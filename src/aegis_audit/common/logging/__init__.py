"""Logging helpers."""

from aegis_audit.common.logging.logger import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
