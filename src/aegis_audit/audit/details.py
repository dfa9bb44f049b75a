"""Per-type detail schemas for audit events.

Each event type has a known payload shape. Unknown keys are allowed and
kept, but known keys are type-checked before the event is hashed.
"""

from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from aegis_audit.audit.schemas import AuditEventType
from aegis_audit.common.exceptions import ValidationError


class EventDetails(BaseModel):
    model_config = ConfigDict(extra="allow")


class ComplianceEventDetails(EventDetails):
    rule_id: Optional[str] = None
    triggered_by: Optional[str] = None
    check_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class SecurityEventDetails(EventDetails):
    threat_type: Optional[str] = None
    risk_score: Optional[float] = Field(default=None, ge=0)
    indicators: Optional[List[str]] = None


class AuthenticationDetails(EventDetails):
    method: Optional[str] = None
    failed_attempts: Optional[int] = Field(default=None, ge=0)
    mfa_used: Optional[bool] = None


class DataAccessDetails(EventDetails):
    record_count: Optional[int] = Field(default=None, ge=0)
    fields: Optional[List[str]] = None
    purpose: Optional[str] = None


class ConfigurationChangeDetails(EventDetails):
    setting: Optional[str] = None
    old_value: Any = None
    new_value: Any = None


class PrivilegeEscalationDetails(EventDetails):
    from_role: Optional[str] = None
    to_role: Optional[str] = None
    approved_by: Optional[str] = None


DETAILS_SCHEMAS: Dict[AuditEventType, Type[EventDetails]] = {
    AuditEventType.COMPLIANCE_EVENT: ComplianceEventDetails,
    AuditEventType.SECURITY_EVENT: SecurityEventDetails,
    AuditEventType.AUTHENTICATION: AuthenticationDetails,
    AuditEventType.AUTHORIZATION: AuthenticationDetails,
    AuditEventType.DATA_ACCESS: DataAccessDetails,
    AuditEventType.DATA_MODIFICATION: DataAccessDetails,
    AuditEventType.CONFIGURATION_CHANGE: ConfigurationChangeDetails,
    AuditEventType.PRIVILEGE_ESCALATION: PrivilegeEscalationDetails,
}


def validate_details(event_type: AuditEventType, details: Dict[str, Any]) -> Dict[str, Any]:
    """Check details against the schema for event_type.
    
    Args:
        event_type: Type of the event being logged
        details: JSON-normalized details payload
        
    Returns:
        The details, unchanged
        
    Raises:
        ValidationError: If a known key has the wrong shape
    """
    schema = DETAILS_SCHEMAS.get(event_type, EventDetails)
    try:
        schema.model_validate(details)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid details for {event_type.value} event",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
    return details
