"""Audit schemas - type definitions for chained audit events and trails.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aegis_audit.common.constants import (
    AuditConstants,
    ForwardingConstants,
    RetentionConstants,
)


GENESIS_HASH = "0" * 64


class AuditEventType(str, Enum):
    """Types of audit events."""
    USER_ACTION = "user_action"
    SYSTEM_EVENT = "system_event"
    SECURITY_EVENT = "security_event"
    COMPLIANCE_EVENT = "compliance_event"
    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    CONFIGURATION_CHANGE = "configuration_change"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    AUDIT_EVENT = "audit_event"


class AuditSeverity(str, Enum):
    """Audit event severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


AuditOutcome = Literal["success", "failure", "unknown"]
RiskLevel = Literal["low", "medium", "high", "critical"]


class AuditActor(BaseModel):
    """Who performed the audited action."""
    model_config = ConfigDict(frozen=True)
    
    id: str = Field(default="unknown", description="Actor identifier")
    type: Literal["user", "system", "service", "admin", "external"] = Field(
        default="user", description="Kind of actor"
    )
    name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    authentication_method: Optional[str] = None


class AuditResource(BaseModel):
    """What the audited action was performed on."""
    model_config = ConfigDict(frozen=True)
    
    id: str = Field(default="unknown", description="Resource identifier")
    type: str = "unknown"
    name: str = "unknown"
    category: str = "general"
    classification: Literal["public", "internal", "confidential", "restricted"] = "internal"
    owner: str = "system"
    attributes: Dict[str, Any] = Field(default_factory=dict)
    path: Optional[str] = None
    version: Optional[str] = None


class AuditContext(BaseModel):
    """Where in the application the event was produced."""
    model_config = ConfigDict(frozen=True)
    
    application: str = AuditConstants.APPLICATION
    module: str = "core"
    function: str = ""
    request_id: Optional[str] = None
    correlation_id: Optional[str] = None
    business_process: Optional[str] = None
    compliance_tags: List[str] = Field(default_factory=list)
    risk_level: RiskLevel = "low"
    environment: str = "production"


class AuditMetadata(BaseModel):
    """Handling metadata; not covered by the event hash."""
    model_config = ConfigDict(frozen=True)
    
    source: str = AuditConstants.SOURCE
    version: str = "1.0"
    schema_version: str = AuditConstants.SCHEMA_VERSION
    retention_period: int = Field(
        default=RetentionConstants.DEFAULT_PERIOD,
        description="Retention period in seconds"
    )
    legal_hold: bool = False
    encryption_level: Literal["none", "standard", "high"] = "standard"
    backup_required: bool = False
    correlation_events: List[str] = Field(default_factory=list)
    synthetic: bool = Field(
        default=False,
        description="True for events generated by the compliance rule engine"
    )
    generated_by: Optional[str] = Field(
        default=None,
        description="Component that generated a synthetic event, e.g. rule:<id>"
    )


class AuditEvent(BaseModel):
    """A single immutable, hash-chained audit event.
    
    Once sealed by the ledger the event must not change: any mutation
    invalidates its hash and every hash downstream of it.
    """
    model_config = ConfigDict(frozen=True)
    
    id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(..., description="When the event was created (UTC)")
    type: AuditEventType
    severity: AuditSeverity = AuditSeverity.LOW
    actor: AuditActor = Field(default_factory=AuditActor)
    resource: AuditResource = Field(default_factory=AuditResource)
    action: str
    outcome: AuditOutcome = "success"
    details: Dict[str, Any] = Field(default_factory=dict)
    context: AuditContext = Field(default_factory=AuditContext)
    metadata: AuditMetadata = Field(default_factory=AuditMetadata)
    
    # Integrity
    trail_id: str = AuditConstants.DEFAULT_TRAIL_ID
    sequence: int = Field(default=0, ge=0, description="Position in the trail's chain")
    previous_hash: str = Field(default=GENESIS_HASH, description="Hash of the previous event")
    hash: str = Field(default="", description="Hash of this event")
    signature: Optional[str] = Field(default=None, description="Ed25519 signature over hash")
    encrypted: bool = False
    
    def canonical_payload(self) -> Dict[str, Any]:
        """Fields covered by the event hash."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.astimezone(timezone.utc).isoformat(),
            "type": self.type.value,
            "actor": self.actor.model_dump(mode="json"),
            "resource": self.resource.model_dump(mode="json"),
            "action": self.action,
            "outcome": self.outcome,
            "details": self.details,
            "previousHash": self.previous_hash,
        }
    
    def to_jsonl(self) -> str:
        """Serialize event to a single JSON line."""
        return json.dumps(self.model_dump(mode="json"), default=str)
    
    @classmethod
    def from_jsonl(cls, line: str) -> "AuditEvent":
        """Deserialize event from a JSON line."""
        return cls.model_validate(json.loads(line))


class RetentionPolicy(BaseModel):
    """How long events of each type are kept (all periods in seconds)."""
    
    default_period: int = RetentionConstants.DEFAULT_PERIOD
    security_events: int = RetentionConstants.SECURITY_EVENTS
    compliance_events: int = RetentionConstants.COMPLIANCE_EVENTS
    system_events: int = RetentionConstants.SYSTEM_EVENTS
    user_events: int = RetentionConstants.USER_EVENTS
    legal_hold_period: int = RetentionConstants.LEGAL_HOLD_PERIOD
    archive_after: int = RetentionConstants.ARCHIVE_AFTER
    purge_after: int = RetentionConstants.PURGE_AFTER
    backup_required: bool = True
    geographic_restrictions: List[str] = Field(default_factory=list)
    
    def period_for(self, event: AuditEvent) -> int:
        """Retention window for a given event."""
        if event.metadata.legal_hold:
            return self.legal_hold_period
        if event.type == AuditEventType.SECURITY_EVENT:
            return self.security_events
        if event.type == AuditEventType.COMPLIANCE_EVENT:
            return self.compliance_events
        if event.type == AuditEventType.SYSTEM_EVENT:
            return self.system_events
        if event.type == AuditEventType.USER_ACTION:
            return self.user_events
        return self.default_period


class AccessControl(BaseModel):
    """Role-based access entry attached to a trail."""
    role: str
    permissions: List[Literal["read", "write", "delete", "export", "search"]]
    conditions: List[str] = Field(default_factory=list)
    approval_required: bool = False
    audit_access: bool = True


def default_access_controls() -> List[AccessControl]:
    return [
        AccessControl(role="audit_viewer", permissions=["read", "search"]),
        AccessControl(
            role="audit_admin",
            permissions=["read", "write", "delete", "export", "search"],
            approval_required=True,
        ),
    ]


class RetryPolicy(BaseModel):
    """Backoff settings for forwarding deliveries."""
    max_retries: int = Field(
        default=ForwardingConstants.DEFAULT_MAX_RETRIES, ge=1,
        description="Total delivery attempts per batch"
    )
    initial_delay: float = Field(default=ForwardingConstants.DEFAULT_INITIAL_DELAY, ge=0)
    max_delay: float = Field(default=ForwardingConstants.DEFAULT_MAX_DELAY, ge=0)
    backoff_multiplier: float = Field(
        default=ForwardingConstants.DEFAULT_BACKOFF_MULTIPLIER, ge=1.0
    )
    retry_on_failure: bool = True


class ForwardingFormat(str, Enum):
    """Wire formats for forwarded events."""
    JSON = "json"
    SYSLOG = "syslog"
    CEF = "cef"
    LEEF = "leef"
    CSV = "csv"


class ForwardingRule(BaseModel):
    """A sink plus filter for relaying events out of a trail.
    
    Counters are updated in place by the ForwardingDispatcher.
    """
    id: str
    name: str = ""
    description: str = ""
    destination: str = Field(..., description="Destination URI, e.g. https://siem/ingest")
    filter: str = Field(default="", description="Event filter expression; empty selects all")
    format: ForwardingFormat = ForwardingFormat.JSON
    batch_size: int = Field(default=ForwardingConstants.DEFAULT_BATCH_SIZE, ge=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    enabled: bool = True
    last_forwarded: Optional[datetime] = None
    events_forwarded: int = 0
    failure_count: int = 0


class TrailMetadata(BaseModel):
    """Descriptive metadata for a trail."""
    created_by: str = "system"
    created_at: datetime
    updated_at: datetime
    version: str = "1.0"
    source_systems: List[str] = Field(default_factory=lambda: [AuditConstants.APPLICATION])
    compliance_frameworks: List[str] = Field(default_factory=lambda: ["gdpr", "ccpa"])
    monitoring_enabled: bool = True
    alerting_enabled: bool = True


class AuditTrail(BaseModel):
    """Named, ordered partition of chained events."""
    id: str
    name: str
    description: str = ""
    events: List[AuditEvent] = Field(default_factory=list)
    start_time: datetime
    size: int = 0
    checksum: str = ""
    retention_policy: RetentionPolicy = Field(default_factory=RetentionPolicy)
    access_controls: List[AccessControl] = Field(default_factory=default_access_controls)
    forwarding_rules: List[ForwardingRule] = Field(default_factory=list)
    integrity_verified: bool = True
    last_verification: Optional[datetime] = None
    chain_anchor: str = Field(
        default=GENESIS_HASH,
        description="previous_hash expected on the oldest retained event"
    )
    retention_gaps: Dict[int, str] = Field(
        default_factory=dict,
        description="sequence -> hash of the purged predecessor, for retained events"
    )
    head_sequence: int = Field(default=0, description="Sequence of the newest ingested event")
    head_hash: str = Field(
        default=GENESIS_HASH,
        description="Hash of the newest ingested event, even if since purged"
    )
    metadata: TrailMetadata


class SearchFilters(BaseModel):
    """Filters accepted by search and export."""
    trail_id: Optional[str] = None
    type: Optional[AuditEventType] = None
    severity: Optional[AuditSeverity] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    actor: Optional[str] = Field(default=None, description="Substring of actor id")
    resource: Optional[str] = Field(default=None, description="Substring of resource id")
    
    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Naive bounds are read as UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    
    def matches(self, event: AuditEvent) -> bool:
        if self.trail_id and event.trail_id != self.trail_id:
            return False
        if self.type and event.type != self.type:
            return False
        if self.severity and event.severity != self.severity:
            return False
        if self.start_date and event.timestamp < self.start_date:
            return False
        if self.end_date and event.timestamp > self.end_date:
            return False
        if self.actor and self.actor not in event.actor.id:
            return False
        if self.resource and self.resource not in event.resource.id:
            return False
        return True
