"""Unit tests for compliance assessments, findings and scoring."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from aegis_audit.common.exceptions import (
    AssessmentNotFoundError,
    FindingNotFoundError,
    InvalidFindingTransitionError,
    ValidationError,
)
from aegis_audit.compliance.assessment import (
    ComplianceAssessmentEngine,
    compute_score,
    finding_severity,
    status_for_score,
)
from aegis_audit.compliance.schemas import (
    AutomatedCheck,
    CheckType,
    ComplianceFinding,
    ComplianceFramework,
    ComplianceStatus,
    FindingStatus,
)


def finding(severity, status=FindingStatus.OPEN):
    return ComplianceFinding(
        id=f"f-{severity}", rule_id="r", severity=severity, title="t", status=status,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


class TestScoring:

    def test_no_findings_is_perfect(self):
        assert compute_score([]) == 100.0

    def test_weights(self):
        """Test critical, high, medium and low weigh 25, 15, 10 and 5."""
        assert compute_score([finding("critical")]) == 75.0
        assert compute_score([finding("high")]) == 85.0
        assert compute_score([finding("medium")]) == 90.0
        assert compute_score([finding("low")]) == 95.0

    def test_clamped_at_zero(self):
        assert compute_score([finding("critical")] * 5) == 0.0

    def test_closed_findings_ignored(self):
        findings = [
            finding("critical", FindingStatus.RESOLVED),
            finding("high", FindingStatus.ACCEPTED_RISK),
            finding("medium", FindingStatus.FALSE_POSITIVE),
            finding("low", FindingStatus.IN_PROGRESS),
        ]
        assert compute_score(findings) == 95.0

    @pytest.mark.parametrize("score,status", [
        (100, ComplianceStatus.COMPLIANT),
        (95, ComplianceStatus.COMPLIANT),
        (94.9, ComplianceStatus.PARTIALLY_COMPLIANT),
        (80, ComplianceStatus.PARTIALLY_COMPLIANT),
        (79, ComplianceStatus.REMEDIATION_REQUIRED),
        (60, ComplianceStatus.REMEDIATION_REQUIRED),
        (59, ComplianceStatus.NON_COMPLIANT),
        (0, ComplianceStatus.NON_COMPLIANT),
    ])
    def test_status_thresholds(self, score, status):
        assert status_for_score(score) == status

    def test_finding_severity_from_alert_thresholds(self):
        check = AutomatedCheck(id="c", name="c", type=CheckType.SCRIPT, implementation="x",
                               alert_thresholds={"medium": 1, "critical": 0})
        assert finding_severity(check) == "critical"
        assert finding_severity(check.model_copy(update={"alert_thresholds": {}})) == "low"


class TestRunAssessment:

    def test_clean_assessment(self, assessments, clock):
        """Test an assessment with passing checks is compliant."""
        assessment = assessments.run_assessment(ComplianceFramework.GDPR, "app", "alice")

        assert assessment.score == 100.0
        assert assessment.overall_status == ComplianceStatus.COMPLIANT
        assert assessment.findings == []
        assert assessment.status == "completed"
        assert assessment.start_date == clock.now()
        assert assessment.end_date == clock.now()
        assert assessment.next_assessment == clock.now() + timedelta(days=365)

    def test_manual_checks_assigned(self, assessments, rules, clock):
        assessment = assessments.run_assessment("gdpr", "app", "alice")

        assert [t.check_id for t in assessment.manual_tasks] == ["gdpr-art-32-dpia-review"]
        task = assessment.manual_tasks[0]
        assert task.assigned_to == "alice"
        assert task.due_date == clock.now() + timedelta(days=7)

        manual = rules.get_rule("gdpr-art-32").manual_checks[0]
        assert manual.assigned_to == "alice"
        assert manual.status == "not_started"

    def test_failed_critical_check(self, assessments, integrity, clock):
        """Test a failing check with a critical alert threshold yields one critical finding."""
        integrity["ok"] = False

        assessment = assessments.run_assessment(ComplianceFramework.GDPR, "app", "alice")

        assert len(assessment.findings) == 1
        found = assessment.findings[0]
        assert found.severity == "critical"
        assert found.check_id == "gdpr-art-32-trail-integrity"
        assert found.status == FindingStatus.OPEN
        assert assessment.score == 75.0
        assert assessment.overall_status == ComplianceStatus.REMEDIATION_REQUIRED

        plan = assessment.action_plan[0]
        assert plan.finding_id == found.id
        assert plan.priority == "urgent"
        assert plan.owner == "alice"
        assert plan.due_date == clock.now() + timedelta(days=30)

        assert len(assessment.recommendations) == 1
        assert assessment.recommendations[0].priority == "urgent"

    def test_only_framework_checks_run(self, assessments, metric_values):
        """Test a GDPR assessment ignores failing SOX checks."""
        metric_values["data_integrity_score"] = 50.0
        assert assessments.run_assessment("gdpr", "app", "alice").findings == []
        assert len(assessments.run_assessment("sox", "app", "alice").findings) == 1

    def test_unknown_framework(self, assessments):
        with pytest.raises(ValidationError):
            assessments.run_assessment("made_up", "app", "alice")

    def test_framework_without_rules(self, assessments):
        assessment = assessments.run_assessment(ComplianceFramework.NIST, "app", "alice")
        assert assessment.score == 100.0
        assert assessment.manual_tasks == []

    def test_persisted_and_reloaded(self, assessments, rules, executor, blob_store, clock):
        created = assessments.run_assessment("gdpr", "app", "alice")

        reloaded = ComplianceAssessmentEngine(rules, executor, blob_store, clock=clock)
        assert reloaded.load() == 1
        assert reloaded.get_assessment(created.id).score == created.score

    def test_unknown_assessment(self, assessments):
        with pytest.raises(AssessmentNotFoundError):
            assessments.get_assessment("nope")


class TestFindingLifecycle:

    @pytest.fixture
    def failed(self, assessments, integrity):
        integrity["ok"] = False
        return assessments.run_assessment("gdpr", "app", "alice")

    def test_resolve_restores_score(self, assessments, failed, clock):
        """Test resolving a finding rescores and completes its action plan."""
        finding_id = failed.findings[0].id
        clock.advance(days=2)

        assessments.update_finding_status(failed.id, finding_id, FindingStatus.IN_PROGRESS)
        assert failed.score == 75.0
        assert failed.action_plan[0].status == "in_progress"

        updated = assessments.update_finding_status(failed.id, finding_id, "resolved", "Key rotated")

        assert updated.status == FindingStatus.RESOLVED
        assert updated.resolution_notes == "Key rotated"
        assert updated.resolution_date == clock.now()
        assert failed.score == 100.0
        assert failed.overall_status == ComplianceStatus.COMPLIANT
        assert failed.action_plan[0].status == "completed"

    @pytest.mark.parametrize("status", ["accepted_risk", "false_positive"])
    def test_closing_cancels_plan(self, assessments, failed, status):
        assessments.update_finding_status(failed.id, failed.findings[0].id, status)
        assert failed.action_plan[0].status == "cancelled"
        assert failed.score == 100.0

    def test_closed_findings_stay_closed(self, assessments, failed):
        finding_id = failed.findings[0].id
        assessments.update_finding_status(failed.id, finding_id, "resolved")

        with pytest.raises(InvalidFindingTransitionError):
            assessments.update_finding_status(failed.id, finding_id, "open")
        with pytest.raises(InvalidFindingTransitionError):
            assessments.update_finding_status(failed.id, finding_id, "in_progress")

    def test_same_status_rejected(self, assessments, failed):
        with pytest.raises(InvalidFindingTransitionError):
            assessments.update_finding_status(failed.id, failed.findings[0].id, "open")

    def test_unknown_status_rejected(self, assessments, failed):
        with pytest.raises(InvalidFindingTransitionError):
            assessments.update_finding_status(failed.id, failed.findings[0].id, "fixed")

    def test_unknown_finding(self, assessments, failed):
        with pytest.raises(FindingNotFoundError):
            assessments.update_finding_status(failed.id, "nope", "resolved")

    def test_score_never_drops_when_closing(self, assessments, failed):
        """Test closing findings only ever raises the score."""
        before = failed.score
        assessments.update_finding_status(failed.id, failed.findings[0].id, "in_progress")
        assert failed.score >= before
        assessments.update_finding_status(failed.id, failed.findings[0].id, "resolved")
        assert failed.score >= before

    def test_overdue_actions(self, assessments, failed, clock):
        assert assessments.overdue_actions() == 0
        clock.advance(days=31)
        assert assessments.overdue_actions() == 1

        assessments.update_finding_status(failed.id, failed.findings[0].id, "resolved")
        assert assessments.overdue_actions() == 0


class TestGenerateReport:

    def test_json_report_stored(self, assessments, blob_store, integrity, clock):
        integrity["ok"] = False
        assessment = assessments.run_assessment("gdpr", "app", "alice")

        key = assessments.generate_report(assessment.id, "json")

        assert key == f"reports/{assessment.id}_json_{int(clock.now().timestamp() * 1000)}.json"
        report = json.loads(blob_store.get_text(key))
        assert report["assessment_id"] == assessment.id
        assert report["findings_summary"]["by_severity"]["critical"] == 1
        assert assessment.report_generated is True
        assert assessment.report_path == key

    def test_pdf_report(self, assessments, blob_store):
        assessment = assessments.run_assessment("gdpr", "app", "alice")
        key = assessments.generate_report(assessment.id, "PDF")
        assert key.endswith(".pdf")
        assert blob_store.get(key).startswith(b"%PDF")

    def test_unsupported_format(self, assessments):
        assessment = assessments.run_assessment("gdpr", "app", "alice")
        with pytest.raises(ValidationError):
            assessments.generate_report(assessment.id, "docx")

    def test_unknown_assessment(self, assessments):
        with pytest.raises(AssessmentNotFoundError):
            assessments.generate_report("nope", "json")
