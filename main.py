#!/usr/bin/env python3
"""Main entry point for AegisAudit."""

import os

import uvicorn

from aegis_audit.common.config import get_config
from aegis_audit.common.logging import configure_logging


def main():
    """Serve the API gateway."""
    config = get_config()
    logger = configure_logging(config)
    logger.info(f"AegisAudit starting in {config.environment.value} mode")
    logger.info(f"Storage backend: {config.storage_type.value}")

    uvicorn.run(
        "aegis_audit.api.gateway:create_app",
        factory=True,
        host=os.environ.get("AEGIS_AUDIT_HOST", "0.0.0.0"),
        port=int(os.environ.get("AEGIS_AUDIT_PORT", "8000")),
        log_level=config.log_level.value.lower(),
    )


if __name__ == "__main__":
    main()
