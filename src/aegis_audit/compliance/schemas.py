"""Compliance schemas - rules, checks, assessments and findings.

Rules and checks are mutable: the scheduler updates execution counters in
place and the assessment engine assigns manual checks.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from aegis_audit.common.constants import ComplianceConstants, SECONDS_PER_DAY


class ComplianceFramework(str, Enum):
    """Supported regulatory frameworks."""
    GDPR = "gdpr"
    CCPA = "ccpa"
    HIPAA = "hipaa"
    SOX = "sox"
    PCI_DSS = "pci_dss"
    ISO_27001 = "iso_27001"
    NIST = "nist"
    SOC2 = "soc2"
    PIPEDA = "pipeda"
    LGPD = "lgpd"


class ComplianceStatus(str, Enum):
    """Overall outcome of an assessment."""
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    PARTIALLY_COMPLIANT = "partially_compliant"
    UNDER_REVIEW = "under_review"
    REMEDIATION_REQUIRED = "remediation_required"


class CheckType(str, Enum):
    """How an automated check is evaluated."""
    QUERY = "query"
    SCRIPT = "script"
    API_CALL = "api_call"
    LOG_ANALYSIS = "log_analysis"
    METRIC_THRESHOLD = "metric_threshold"


class FindingStatus(str, Enum):
    """Lifecycle of a compliance finding."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    ACCEPTED_RISK = "accepted_risk"
    FALSE_POSITIVE = "false_positive"


Severity = Literal["low", "medium", "high", "critical"]
Priority = Literal["low", "medium", "high", "urgent"]

ApplicabilityOperator = Literal[
    "equals", "not_equals", "contains", "not_contains", "greater_than", "less_than"
]


# ===== RULES & CHECKS =====

class ApplicabilityRule(BaseModel):
    """Condition an event must satisfy for a rule to trigger."""
    context: str = Field(..., description="Dotted event field path, e.g. 'resource.classification'")
    operator: ApplicabilityOperator
    value: Any
    condition: str = Field(default="", description="Human-readable description")


class CheckResult(BaseModel):
    """Outcome of one automated check execution."""
    success: bool
    value: Optional[float] = Field(default=None, description="Measured value, if any")
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)


class AutomatedCheck(BaseModel):
    """A check that runs without human involvement."""
    id: str
    name: str
    description: str = ""
    type: CheckType
    implementation: str = Field(
        ...,
        description="Query text, script name, URL, log pattern or metric name depending on type"
    )
    parameters: Dict[str, Any] = Field(default_factory=dict)
    schedule: str = "daily"
    timeout: float = Field(default=ComplianceConstants.DEFAULT_CHECK_TIMEOUT_SECONDS, gt=0)
    retry_count: int = Field(default=0, ge=0, description="Extra attempts before recording failure")
    success_criteria: str = ""
    failure_criteria: str = ""
    alert_thresholds: Dict[str, float] = Field(default_factory=dict)
    enabled: bool = True

    last_executed: Optional[datetime] = None
    next_execution: Optional[datetime] = Field(
        default=None, description="When the check is next due; None means due now"
    )
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0


class ChecklistItem(BaseModel):
    id: str
    description: str
    mandatory: bool = True
    completed: bool = False
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None


class ManualCheck(BaseModel):
    """A check performed by a person during an assessment."""
    id: str
    name: str
    description: str = ""
    procedure: List[str] = Field(default_factory=list)
    checklist: List[ChecklistItem] = Field(default_factory=list)
    roles_required: List[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    status: Literal["not_started", "in_progress", "completed", "overdue"] = "not_started"


class ComplianceRule(BaseModel):
    """A single requirement of a compliance framework."""
    id: str
    framework: ComplianceFramework
    section: str
    title: str
    description: str = ""
    requirement: str = ""
    mandatory: bool = True
    control_objectives: List[str] = Field(default_factory=list)
    evidence_requirements: List[str] = Field(default_factory=list)
    automated_checks: List[AutomatedCheck] = Field(default_factory=list)
    manual_checks: List[ManualCheck] = Field(default_factory=list)
    frequency: Literal[
        "continuous", "daily", "weekly", "monthly", "quarterly", "annually"
    ] = "continuous"
    priority: Severity = "high"
    tags: List[str] = Field(default_factory=list)
    applicability: List[ApplicabilityRule] = Field(
        default_factory=list,
        description="All conditions must match; empty means the rule never auto-triggers"
    )
    remediation_guidance: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RuleSet(BaseModel):
    """Root of a compliance rules YAML file."""
    version: str = "1.0"
    rules: List[ComplianceRule] = Field(default_factory=list)


# ===== ASSESSMENTS =====

class ComplianceFinding(BaseModel):
    """A gap found during an assessment."""
    id: str
    rule_id: str
    check_id: Optional[str] = None
    type: Literal["deficiency", "weakness", "non_compliance", "observation"] = "non_compliance"
    severity: Severity
    title: str
    description: str = ""
    impact: str = "Compliance requirement not met"
    status: FindingStatus = FindingStatus.OPEN
    assigned_to: Optional[str] = None
    remediation_timeline: int = Field(
        default=ComplianceConstants.REMEDIATION_DAYS * SECONDS_PER_DAY,
        description="Seconds allowed for remediation"
    )
    created_at: datetime
    resolution_notes: Optional[str] = None
    resolution_date: Optional[datetime] = None


class ActionPlan(BaseModel):
    """Remediation plan for one finding."""
    id: str
    finding_id: str
    action: str
    description: str = ""
    owner: str
    due_date: datetime
    priority: Priority
    status: Literal["planned", "in_progress", "completed", "overdue", "cancelled"] = "planned"


class ComplianceRecommendation(BaseModel):
    """Improvement suggested for a failing rule."""
    id: str
    rule_id: str
    title: str
    description: str = ""
    rationale: str = ""
    category: Literal["policy", "process", "technology", "training", "governance"] = "process"
    priority: Priority
    assigned_to: Optional[str] = None
    status: Literal["proposed", "approved", "in_progress", "completed", "rejected"] = "proposed"


class ManualTask(BaseModel):
    """A manual check assigned for an assessment."""
    rule_id: str
    check_id: str
    name: str
    assigned_to: str
    due_date: datetime
    status: Literal["not_started", "in_progress", "completed", "overdue"] = "not_started"


class ComplianceAssessment(BaseModel):
    """A framework-scoped evaluation and its results."""
    id: str
    framework: ComplianceFramework
    scope: str
    start_date: datetime
    end_date: Optional[datetime] = None
    assessor: str
    status: Literal["planning", "in_progress", "completed", "approved"] = "planning"
    overall_status: ComplianceStatus = ComplianceStatus.UNDER_REVIEW
    score: float = Field(default=0.0, ge=0, le=100)
    findings: List[ComplianceFinding] = Field(default_factory=list)
    recommendations: List[ComplianceRecommendation] = Field(default_factory=list)
    action_plan: List[ActionPlan] = Field(default_factory=list)
    manual_tasks: List[ManualTask] = Field(default_factory=list)
    report_generated: bool = False
    report_path: Optional[str] = None
    next_assessment: datetime
