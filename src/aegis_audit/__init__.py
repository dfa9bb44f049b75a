"""AegisAudit - Tamper-evident audit trails and compliance engine."""

__version__ = "0.1.0"
__author__ = "AegisAI Team"

# Core exports
from aegis_audit.audit.schemas import AuditEvent, AuditEventType, AuditSeverity
from aegis_audit.service import AuditService

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditService",
    "AuditSeverity",
]
