"""Compliance Assessment Engine - framework-scoped assessments and findings.

An assessment runs every enabled automated check of a framework's rules
immediately, turns failures into findings with action plans, assigns the
manual checks to the assessor and scores the result.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from aegis_audit.audit.blob_store import BlobStore
from aegis_audit.common.clock import Clock, IdFactory, SystemClock, uuid_factory
from aegis_audit.common.constants import ComplianceConstants
from aegis_audit.common.exceptions import (
    AssessmentNotFoundError,
    FindingNotFoundError,
    InvalidFindingTransitionError,
    ValidationError,
)
from aegis_audit.compliance.checks import CheckExecutor
from aegis_audit.compliance.reporting import REPORT_FORMATS, build_report, render_report
from aegis_audit.compliance.rules import ComplianceRuleEngine
from aegis_audit.compliance.schemas import (
    ActionPlan,
    AutomatedCheck,
    CheckResult,
    ComplianceAssessment,
    ComplianceFinding,
    ComplianceFramework,
    ComplianceRecommendation,
    ComplianceRule,
    ComplianceStatus,
    FindingStatus,
    ManualTask,
)

logger = logging.getLogger(__name__)


SEVERITY_ORDER = ["critical", "high", "medium", "low"]

SEVERITY_WEIGHTS = {
    "critical": ComplianceConstants.WEIGHT_CRITICAL,
    "high": ComplianceConstants.WEIGHT_HIGH,
    "medium": ComplianceConstants.WEIGHT_MEDIUM,
    "low": ComplianceConstants.WEIGHT_LOW,
}

# Action plan / recommendation priority for a finding severity
SEVERITY_PRIORITY = {
    "critical": "urgent",
    "high": "high",
    "medium": "medium",
    "low": "low",
}

ACTIVE_FINDING_STATUSES = {FindingStatus.OPEN, FindingStatus.IN_PROGRESS}

FINDING_TRANSITIONS = {
    FindingStatus.OPEN: {
        FindingStatus.IN_PROGRESS,
        FindingStatus.RESOLVED,
        FindingStatus.ACCEPTED_RISK,
        FindingStatus.FALSE_POSITIVE,
    },
    FindingStatus.IN_PROGRESS: {
        FindingStatus.RESOLVED,
        FindingStatus.ACCEPTED_RISK,
        FindingStatus.FALSE_POSITIVE,
    },
    FindingStatus.RESOLVED: set(),
    FindingStatus.ACCEPTED_RISK: set(),
    FindingStatus.FALSE_POSITIVE: set(),
}

# Action plan status that follows a finding status change
_PLAN_STATUS = {
    FindingStatus.IN_PROGRESS: "in_progress",
    FindingStatus.RESOLVED: "completed",
    FindingStatus.ACCEPTED_RISK: "cancelled",
    FindingStatus.FALSE_POSITIVE: "cancelled",
}


def finding_severity(check: AutomatedCheck) -> str:
    """Severity from the highest alert threshold the check defines."""
    for severity in SEVERITY_ORDER:
        if severity in check.alert_thresholds:
            return severity
    return "low"


def compute_score(findings: Iterable[ComplianceFinding]) -> float:
    """100 minus severity weights of open and in-progress findings, clamped to [0, 100]."""
    penalty = sum(
        SEVERITY_WEIGHTS[f.severity] for f in findings if f.status in ACTIVE_FINDING_STATUSES
    )
    return float(max(0, min(100, 100 - penalty)))


def status_for_score(score: float) -> ComplianceStatus:
    if score >= ComplianceConstants.COMPLIANT_MIN_SCORE:
        return ComplianceStatus.COMPLIANT
    if score >= ComplianceConstants.PARTIALLY_COMPLIANT_MIN_SCORE:
        return ComplianceStatus.PARTIALLY_COMPLIANT
    if score >= ComplianceConstants.REMEDIATION_MIN_SCORE:
        return ComplianceStatus.REMEDIATION_REQUIRED
    return ComplianceStatus.NON_COMPLIANT


class ComplianceAssessmentEngine:
    """Runs, stores and reports on compliance assessments."""

    ASSESSMENT_PREFIX = "assessments/"
    REPORT_PREFIX = "reports/"

    def __init__(
        self,
        rules: ComplianceRuleEngine,
        executor: CheckExecutor,
        blob_store: BlobStore,
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
    ):
        self.rules = rules
        self.executor = executor
        self.blob_store = blob_store
        self.clock = clock or SystemClock()
        self.new_id = id_factory or uuid_factory

        self._assessments: Dict[str, ComplianceAssessment] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    def run_assessment(
        self,
        framework: Union[ComplianceFramework, str],
        scope: str,
        assessor: str,
    ) -> ComplianceAssessment:
        """Run a full assessment for one framework.

        Raises:
            ValidationError: If the framework is unknown
        """
        try:
            framework = ComplianceFramework(framework)
        except ValueError as e:
            raise ValidationError(
                f"Unknown compliance framework: {framework}",
                details={"supported": [f.value for f in ComplianceFramework]},
            ) from e

        now = self.clock.now()
        assessment = ComplianceAssessment(
            id=self.new_id(),
            framework=framework,
            scope=scope,
            start_date=now,
            assessor=assessor,
            status="in_progress",
            next_assessment=now + timedelta(days=ComplianceConstants.NEXT_ASSESSMENT_DAYS),
        )

        rules = self.rules.list_rules(framework)
        assigned_manual = False
        for rule in rules:
            rule_findings = []
            for check in rule.automated_checks:
                if not check.enabled:
                    continue
                result = self.executor.run(check)
                if not result.success:
                    rule_findings.append(self._record_failure(assessment, rule, check, result, now))

            if rule_findings:
                assessment.recommendations.append(self._recommend(rule, rule_findings, assessor))

            for manual in rule.manual_checks:
                manual.status = "not_started"
                manual.assigned_to = assessor
                manual.due_date = now + timedelta(days=ComplianceConstants.MANUAL_CHECK_DUE_DAYS)
                assessment.manual_tasks.append(ManualTask(
                    rule_id=rule.id,
                    check_id=manual.id,
                    name=manual.name,
                    assigned_to=assessor,
                    due_date=manual.due_date,
                ))
                assigned_manual = True

        if assigned_manual:
            self.rules.save()

        self._rescore(assessment)
        # Manual tasks are tracked on the assessment; the automated run is complete
        assessment.status = "completed"
        assessment.end_date = now

        with self._lock:
            self._assessments[assessment.id] = assessment
            self.save(assessment)

        logger.info(
            f"Compliance assessment {assessment.id} ({framework.value}) scored "
            f"{assessment.score} with {len(assessment.findings)} findings"
        )
        return assessment

    def _record_failure(self, assessment: ComplianceAssessment, rule: ComplianceRule,
                        check: AutomatedCheck, result: CheckResult,
                        now: datetime) -> ComplianceFinding:
        severity = finding_severity(check)
        finding = ComplianceFinding(
            id=self.new_id(),
            rule_id=rule.id,
            check_id=check.id,
            severity=severity,
            title=f"Automated check failed: {check.name}",
            description=f"{check.description} ({result.message})" if result.message else check.description,
            assigned_to=assessment.assessor,
            created_at=now,
        )
        assessment.findings.append(finding)
        assessment.action_plan.append(ActionPlan(
            id=self.new_id(),
            finding_id=finding.id,
            action=f"Remediate: {check.name}",
            description="; ".join(rule.remediation_guidance),
            owner=assessment.assessor,
            due_date=now + timedelta(seconds=finding.remediation_timeline),
            priority=SEVERITY_PRIORITY[severity],
        ))
        return finding

    def _recommend(self, rule: ComplianceRule, findings: List[ComplianceFinding],
                   assessor: str) -> ComplianceRecommendation:
        worst = min(findings, key=lambda f: SEVERITY_ORDER.index(f.severity))
        return ComplianceRecommendation(
            id=self.new_id(),
            rule_id=rule.id,
            title=f"Strengthen controls for {rule.framework.value.upper()} {rule.section}",
            description=rule.requirement or rule.description,
            rationale=f"{len(findings)} automated checks failed for '{rule.title}'",
            priority=SEVERITY_PRIORITY[worst.severity],
            assigned_to=assessor,
        )

    def _rescore(self, assessment: ComplianceAssessment) -> None:
        assessment.score = compute_score(assessment.findings)
        assessment.overall_status = status_for_score(assessment.score)

    def get_assessment(self, assessment_id: str) -> ComplianceAssessment:
        with self._lock:
            assessment = self._assessments.get(assessment_id)
        if assessment is None:
            raise AssessmentNotFoundError(assessment_id)
        return assessment

    def list_assessments(self) -> List[ComplianceAssessment]:
        with self._lock:
            return list(self._assessments.values())

    def update_finding_status(
        self,
        assessment_id: str,
        finding_id: str,
        status: Union[FindingStatus, str],
        notes: Optional[str] = None,
    ) -> ComplianceFinding:
        """Move a finding along its lifecycle and rescore the assessment.

        Raises:
            AssessmentNotFoundError: If the assessment is unknown
            FindingNotFoundError: If the finding is not in the assessment
            InvalidFindingTransitionError: If the move is not allowed
        """
        with self._lock:
            assessment = self.get_assessment(assessment_id)
            finding = next((f for f in assessment.findings if f.id == finding_id), None)
            if finding is None:
                raise FindingNotFoundError(assessment_id, finding_id)

            try:
                target = FindingStatus(status)
            except ValueError as e:
                raise InvalidFindingTransitionError(finding_id, finding.status.value, str(status)) from e
            if target not in FINDING_TRANSITIONS[finding.status]:
                raise InvalidFindingTransitionError(finding_id, finding.status.value, target.value)

            now = self.clock.now()
            finding.status = target
            if notes:
                finding.resolution_notes = notes
            if target not in ACTIVE_FINDING_STATUSES:
                finding.resolution_date = now

            for plan in assessment.action_plan:
                if plan.finding_id == finding_id:
                    plan.status = _PLAN_STATUS[target]

            self._rescore(assessment)
            self.save(assessment)

        logger.info(f"Finding {finding_id} moved to {target.value}; score now {assessment.score}")
        return finding

    def overdue_actions(self, now: Optional[datetime] = None) -> int:
        """Action plans past due and not completed or cancelled."""
        now = now or self.clock.now()
        return sum(
            1
            for a in self.list_assessments()
            for plan in a.action_plan
            if plan.status not in ("completed", "cancelled") and plan.due_date < now
        )

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def generate_report(self, assessment_id: str, fmt: str = "json") -> str:
        """Render and store a report.

        Returns:
            Blob key of the stored report

        Raises:
            AssessmentNotFoundError: If the assessment is unknown
            ValidationError: For unsupported formats
        """
        fmt = fmt.lower()
        if fmt not in REPORT_FORMATS:
            raise ValidationError(
                f"Unsupported report format: {fmt}",
                details={"supported": list(REPORT_FORMATS)},
            )

        assessment = self.get_assessment(assessment_id)
        now = self.clock.now()
        content = render_report(build_report(assessment, now), fmt)

        key = f"{self.REPORT_PREFIX}{assessment_id}_{fmt}_{int(now.timestamp() * 1000)}.{fmt}"
        self.blob_store.put(key, content)

        with self._lock:
            assessment.report_generated = True
            assessment.report_path = key
            self.save(assessment)

        logger.info(f"Compliance report generated: {key}")
        return key

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, assessment: ComplianceAssessment) -> None:
        self.blob_store.put(
            f"{self.ASSESSMENT_PREFIX}{assessment.id}.json", assessment.model_dump_json()
        )

    def save_all(self) -> None:
        for assessment in self.list_assessments():
            self.save(assessment)

    def load(self) -> int:
        loaded = 0
        with self._lock:
            for key in self.blob_store.list_keys(self.ASSESSMENT_PREFIX):
                try:
                    assessment = ComplianceAssessment.model_validate_json(self.blob_store.get(key) or b"")
                except PydanticValidationError as e:
                    logger.error(f"Skipped unreadable assessment blob {key}: {e}")
                    continue
                self._assessments[assessment.id] = assessment
                loaded += 1
        return loaded
