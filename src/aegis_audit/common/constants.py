"""Centralized constants for AegisAudit configuration."""


SECONDS_PER_DAY = 24 * 60 * 60
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY


# ===== AUDIT & LEDGER =====
class AuditConstants:
    HASH_ALGORITHM = "sha256"
    DEFAULT_TRAIL_ID = "default"
    MAX_BUFFER_SIZE = 100
    FLUSH_INTERVAL_SECONDS = 5.0
    SCHEMA_VERSION = "1.0"
    SOURCE = "AegisAudit"
    APPLICATION = "StreamMulti"
    PERSIST_FAILURES_DEGRADED = 3


# ===== RETENTION =====
class RetentionConstants:
    DEFAULT_PERIOD = 2 * SECONDS_PER_YEAR
    SECURITY_EVENTS = 7 * SECONDS_PER_YEAR
    COMPLIANCE_EVENTS = 7 * SECONDS_PER_YEAR
    SYSTEM_EVENTS = 1 * SECONDS_PER_YEAR
    USER_EVENTS = 2 * SECONDS_PER_YEAR
    LEGAL_HOLD_PERIOD = 10 * SECONDS_PER_YEAR
    ARCHIVE_AFTER = 1 * SECONDS_PER_YEAR
    PURGE_AFTER = 7 * SECONDS_PER_YEAR


# ===== FORWARDING =====
class ForwardingConstants:
    DEFAULT_BATCH_SIZE = 100
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_INITIAL_DELAY = 1.0
    DEFAULT_MAX_DELAY = 60.0
    DEFAULT_BACKOFF_MULTIPLIER = 2.0
    MAX_WORKERS = 4
    HTTP_TIMEOUT_SECONDS = 10.0


# ===== COMPLIANCE =====
class ComplianceConstants:
    SWEEP_INTERVAL_SECONDS = 60 * 60
    DEFAULT_CHECK_TIMEOUT_SECONDS = 30.0
    MANUAL_CHECK_DUE_DAYS = 7
    REMEDIATION_DAYS = 30
    NEXT_ASSESSMENT_DAYS = 365

    # Score weights per finding severity
    WEIGHT_CRITICAL = 25
    WEIGHT_HIGH = 15
    WEIGHT_MEDIUM = 10
    WEIGHT_LOW = 5

    # Status thresholds
    COMPLIANT_MIN_SCORE = 95
    PARTIALLY_COMPLIANT_MIN_SCORE = 80
    REMEDIATION_MIN_SCORE = 60


# ===== SCHEDULES =====
class ScheduleConstants:
    CONTINUOUS_SECONDS = 15 * 60
    HOURLY_SECONDS = 60 * 60
    DAILY_SECONDS = SECONDS_PER_DAY
    WEEKLY_SECONDS = 7 * SECONDS_PER_DAY
    MONTHLY_SECONDS = 30 * SECONDS_PER_DAY
    QUARTERLY_SECONDS = 90 * SECONDS_PER_DAY
    ANNUALLY_SECONDS = SECONDS_PER_YEAR
