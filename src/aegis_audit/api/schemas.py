"""API Schemas - Request/Response models for the API Gateway.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from aegis_audit.audit.schemas import (
    AccessControl,
    AuditActor,
    AuditEventType,
    AuditOutcome,
    AuditResource,
    AuditSeverity,
    ForwardingRule,
    RetentionPolicy,
)
from aegis_audit.common.constants import AuditConstants
from aegis_audit.compliance.schemas import ComplianceFramework, ComplianceStatus, FindingStatus


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class LogEventRequest(BaseModel):
    """Audit event submitted by a client."""
    type: AuditEventType
    action: str = Field(..., min_length=1, description="What happened, e.g. 'record_viewed'")
    actor: AuditActor = Field(default_factory=AuditActor)
    resource: AuditResource = Field(default_factory=AuditResource)
    outcome: AuditOutcome = "success"
    details: Dict[str, Any] = Field(default_factory=dict)
    severity: Optional[AuditSeverity] = Field(
        default=None, description="Derived from type and outcome if omitted"
    )
    trail_id: str = AuditConstants.DEFAULT_TRAIL_ID
    encrypt: bool = Field(default=False, description="Sign the event hash with Ed25519")
    compliance_tags: List[str] = Field(default_factory=list)


class CreateTrailRequest(BaseModel):
    id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    name: str
    description: str = ""
    retention_policy: Optional[RetentionPolicy] = None
    access_controls: Optional[List[AccessControl]] = None
    forwarding_rules: List[ForwardingRule] = Field(default_factory=list)


class RunAssessmentRequest(BaseModel):
    framework: ComplianceFramework
    scope: str
    assessor: str


class UpdateFindingRequest(BaseModel):
    status: FindingStatus
    notes: Optional[str] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class LogEventResponse(BaseModel):
    event_id: str


class TrailResponse(BaseModel):
    trail_id: str
    name: str
    size: int
    checksum: str


class PathResponse(BaseModel):
    """Blob key of a stored export or report."""
    path: str


class VerifyResponse(BaseModel):
    trail_id: str
    verified: bool
    message: str = ""


class AssessmentResponse(BaseModel):
    assessment_id: str
    framework: ComplianceFramework
    score: float
    overall_status: ComplianceStatus
    findings: int


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = Field(
        default=None, description="Request ID for debugging"
    )
