"""Configuration management - Centralized configuration for AegisAudit.

Provides environment-aware configuration with sensible defaults.
All configuration is loaded from environment variables with fallbacks.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from aegis_audit.common.constants import (
    AuditConstants,
    ComplianceConstants,
)


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageType(str, Enum):
    """Blob storage backend types."""
    MEMORY = "memory"
    LOCAL = "local"
    S3 = "s3"


@dataclass
class Config:
    """Central configuration object for AegisAudit.
    
    All settings can be overridden via environment variables prefixed with
    AEGIS_AUDIT_.
    
    Example:
        AEGIS_AUDIT_ENVIRONMENT=production
        AEGIS_AUDIT_STORAGE_TYPE=s3
        AEGIS_AUDIT_S3_BUCKET=my-audit-bucket
    """
    
    # Core settings
    environment: Environment = field(
        default_factory=lambda: Environment(
            os.getenv("AEGIS_AUDIT_ENVIRONMENT", "development")
        )
    )
    log_level: LogLevel = field(
        default_factory=lambda: LogLevel(os.getenv("AEGIS_AUDIT_LOG_LEVEL", "INFO"))
    )
    
    # Ingestion
    max_buffer_size: int = field(
        default_factory=lambda: int(
            os.getenv("AEGIS_AUDIT_MAX_BUFFER_SIZE", str(AuditConstants.MAX_BUFFER_SIZE))
        )
    )
    flush_interval_seconds: float = field(
        default_factory=lambda: float(
            os.getenv(
                "AEGIS_AUDIT_FLUSH_INTERVAL",
                str(AuditConstants.FLUSH_INTERVAL_SECONDS),
            )
        )
    )
    sweep_interval_seconds: float = field(
        default_factory=lambda: float(
            os.getenv(
                "AEGIS_AUDIT_SWEEP_INTERVAL",
                str(ComplianceConstants.SWEEP_INTERVAL_SECONDS),
            )
        )
    )
    
    # Storage settings
    storage_type: StorageType = field(
        default_factory=lambda: StorageType(
            os.getenv("AEGIS_AUDIT_STORAGE_TYPE", "local")
        )
    )
    data_dir: Path = field(
        default_factory=lambda: Path(os.getenv("AEGIS_AUDIT_DATA_DIR", "./data/audit"))
    )
    s3_bucket: Optional[str] = field(
        default_factory=lambda: os.getenv("AEGIS_AUDIT_S3_BUCKET")
    )
    s3_prefix: str = field(
        default_factory=lambda: os.getenv("AEGIS_AUDIT_S3_PREFIX", "aegis-audit/")
    )
    aws_region: str = field(
        default_factory=lambda: os.getenv("AWS_DEFAULT_REGION", "us-east-1")
    )
    aws_profile: Optional[str] = field(
        default_factory=lambda: os.getenv("AWS_PROFILE")
    )
    
    # PEM-encoded Ed25519 key for signing events logged with encrypt=True
    signing_key_file: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["AEGIS_AUDIT_SIGNING_KEY"])
            if os.getenv("AEGIS_AUDIT_SIGNING_KEY") else None
        )
    )
    
    # Compliance rules
    rules_file: Optional[Path] = field(
        default_factory=lambda: (
            Path(os.environ["AEGIS_AUDIT_RULES_FILE"])
            if os.getenv("AEGIS_AUDIT_RULES_FILE") else None
        )
    )
    
    # Metrics publishing
    publish_cloudwatch: bool = field(
        default_factory=lambda: os.getenv("AEGIS_AUDIT_CLOUDWATCH", "false").lower() == "true"
    )
    
    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.max_buffer_size < 1:
            raise ValueError("AEGIS_AUDIT_MAX_BUFFER_SIZE must be at least 1")
        
        if self.flush_interval_seconds <= 0 or self.sweep_interval_seconds <= 0:
            raise ValueError("Flush and sweep intervals must be positive")
        
        if self.storage_type == StorageType.S3 and not self.s3_bucket:
            raise ValueError(
                "AEGIS_AUDIT_S3_BUCKET must be set when using S3 storage"
            )
    
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION
    
    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT


# Process-wide default, only used by entry points; services take a Config explicitly
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.
    
    Returns:
        Config: The global configuration.
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
