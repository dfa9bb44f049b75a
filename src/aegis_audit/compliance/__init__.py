"""Compliance module - Rules, automated checks and framework assessments.

Components:
- ComplianceRuleEngine: YAML-seeded rules and per-event applicability
- CheckExecutor: Runs automated checks with timeout and retries
- AutomatedCheckScheduler: Periodic sweep over due checks
- ComplianceAssessmentEngine: Findings, scoring, action plans and reports
"""

from aegis_audit.compliance.assessment import (
    ComplianceAssessmentEngine,
    compute_score,
    status_for_score,
)
from aegis_audit.compliance.checks import CheckExecutor
from aegis_audit.compliance.rules import ComplianceRuleEngine
from aegis_audit.compliance.scheduler import AutomatedCheckScheduler, parse_schedule
from aegis_audit.compliance.schemas import (
    ComplianceAssessment,
    ComplianceFinding,
    ComplianceFramework,
    ComplianceRule,
    ComplianceStatus,
    FindingStatus,
)

__all__ = [
    "AutomatedCheckScheduler",
    "CheckExecutor",
    "ComplianceAssessment",
    "ComplianceAssessmentEngine",
    "ComplianceFinding",
    "ComplianceFramework",
    "ComplianceRule",
    "ComplianceRuleEngine",
    "ComplianceStatus",
    "FindingStatus",
    "compute_score",
    "parse_schedule",
    "status_for_score",
]
