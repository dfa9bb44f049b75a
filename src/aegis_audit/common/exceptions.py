"""Custom exceptions for AegisAudit.

Provides a hierarchy of exceptions for different error types.
All AegisAudit exceptions inherit from AegisAuditException.
"""

from typing import Any, Dict, Optional


class AegisAuditException(Exception):
    """Base exception for all AegisAudit errors.
    
    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """
    
    def __init__(
        self,
        message: str,
        code: str = "AEGIS_AUDIT_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(AegisAuditException):
    """Raised when configuration is invalid or missing."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIG_ERROR", details=details)


class ValidationError(AegisAuditException):
    """Raised when input validation fails."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class NotInitializedError(AegisAuditException):
    """Raised when the audit service is used before initialize()."""
    
    def __init__(self, operation: str):
        super().__init__(
            f"Audit service not initialized (operation: {operation})",
            code="NOT_INITIALIZED",
            details={"operation": operation},
        )


class DuplicateTrailError(AegisAuditException):
    """Raised when creating a trail whose id already exists."""
    
    def __init__(self, trail_id: str):
        super().__init__(
            f"Audit trail already exists: {trail_id}",
            code="DUPLICATE_TRAIL",
            details={"trail_id": trail_id},
        )


class TrailNotFoundError(AegisAuditException):
    """Raised when an audit trail id is unknown."""
    
    def __init__(self, trail_id: str):
        super().__init__(
            f"Audit trail not found: {trail_id}",
            code="TRAIL_NOT_FOUND",
            details={"trail_id": trail_id},
        )


class AssessmentNotFoundError(AegisAuditException):
    """Raised when a compliance assessment id is unknown."""
    
    def __init__(self, assessment_id: str):
        super().__init__(
            f"Assessment not found: {assessment_id}",
            code="ASSESSMENT_NOT_FOUND",
            details={"assessment_id": assessment_id},
        )


class RuleNotFoundError(AegisAuditException):
    """Raised when a compliance rule id is unknown."""
    
    def __init__(self, rule_id: str):
        super().__init__(
            f"Compliance rule not found: {rule_id}",
            code="RULE_NOT_FOUND",
            details={"rule_id": rule_id},
        )


class FindingNotFoundError(AegisAuditException):
    """Raised when a finding id is unknown within an assessment."""
    
    def __init__(self, assessment_id: str, finding_id: str):
        super().__init__(
            f"Finding {finding_id} not found in assessment {assessment_id}",
            code="FINDING_NOT_FOUND",
            details={"assessment_id": assessment_id, "finding_id": finding_id},
        )


class InvalidFindingTransitionError(AegisAuditException):
    """Raised when a finding status change is not allowed."""
    
    def __init__(self, finding_id: str, current: str, requested: str):
        super().__init__(
            f"Finding {finding_id} cannot move from {current} to {requested}",
            code="INVALID_FINDING_TRANSITION",
            details={"finding_id": finding_id, "current": current, "requested": requested},
        )


class HashComputationError(AegisAuditException):
    """Raised when an event hash cannot be computed."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="HASH_ERROR", details=details)


class AuditLogIntegrityError(AegisAuditException):
    """Raised when audit trail integrity check fails."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="INTEGRITY_ERROR", details=details)


class PersistenceError(AegisAuditException):
    """Raised when the blob store rejects a read or write."""
    
    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, code="PERSISTENCE_ERROR", details={"key": key})


class ForwardingError(AegisAuditException):
    """Raised when delivery to a forwarding destination fails."""
    
    def __init__(self, message: str, destination: str):
        super().__init__(
            message, code="FORWARDING_ERROR", details={"destination": destination}
        )


class CheckExecutionError(AegisAuditException):
    """Raised by a check handler that cannot evaluate its check."""
    
    def __init__(self, message: str, check_id: str):
        super().__init__(
            message, code="CHECK_EXECUTION_ERROR", details={"check_id": check_id}
        )
