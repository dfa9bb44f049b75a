"""Tests for the AuditService facade."""

import dataclasses
import logging
from unittest.mock import MagicMock, patch

import pytest

from aegis_audit.audit.schemas import AuditEventType, AuditSeverity, SearchFilters
from aegis_audit.common.clock import sequential_ids
from aegis_audit.common.constants import SECONDS_PER_YEAR
from aegis_audit.common.exceptions import (
    NotInitializedError,
    PersistenceError,
    TrailNotFoundError,
    ValidationError,
)
from aegis_audit.monitoring.metrics import AuditMetrics
from aegis_audit.service import AuditService, default_severity, retention_period


RESTRICTED = {"id": "patients", "classification": "restricted", "category": "phi"}


def build_service(config, blob_store, clock, signer, tickers, **kwargs):
    kwargs.setdefault("id_factory", sequential_ids("id"))
    return AuditService(
        config=config,
        blob_store=blob_store,
        clock=clock,
        signer=signer,
        ticker_factory=tickers,
        **kwargs,
    )


def tamper(service, trail_id="default"):
    service.flush()
    trail = service.store.get_trail(trail_id)
    trail.events[0] = trail.events[0].model_copy(update={"outcome": "failure"})


class TestLifecycle:

    def test_operations_require_initialize(self, config, blob_store, clock, signer, tickers):
        service = build_service(config, blob_store, clock, signer, tickers)

        with pytest.raises(NotInitializedError):
            service.log_event("user_action", "record_viewed")
        with pytest.raises(NotInitializedError):
            service.search_events()
        with pytest.raises(NotInitializedError):
            service.run_compliance_assessment("gdpr", "app", "alice")

    def test_initialize_creates_default_trail(self, service):
        trails = service.get_audit_trails()
        assert [t.id for t in trails] == ["default"]
        assert trails[0].name == "Default Audit Trail"

    def test_initialize_is_idempotent(self, service, tickers):
        service.initialize()
        assert len(service.get_audit_trails()) == 1
        assert sorted(tickers.tickers) == ["audit-flush", "compliance-sweep"]

    def test_tickers_started_and_stopped(self, config, blob_store, clock, signer, tickers):
        service = build_service(config, blob_store, clock, signer, tickers)
        service.initialize()
        assert all(t.is_running for t in tickers.tickers.values())
        assert tickers.tickers["audit-flush"].interval == config.flush_interval_seconds

        service.cleanup()
        assert not any(t.is_running for t in tickers.tickers.values())
        assert not service.is_initialized

    def test_flush_ticker_moves_buffer_into_trail(self, service, tickers):
        service.log_event("user_action", "record_viewed")
        assert service.search_events() == []

        tickers.tickers["audit-flush"].tick()

        assert len(service.search_events()) == 1
        assert len(service.buffer) == 0


class TestLogEvent:

    def test_event_defaults(self, service, clock):
        """Test severity, context and metadata derived from the event type."""
        event_id = service.log_event(
            "security_event", "login_blocked", actor={"id": "u1"}, outcome="failure",
            compliance_tags=["soc2"],
        )
        service.flush()

        event = service.search_events(event_id)[0]
        assert event.timestamp == clock.now()
        assert event.severity == AuditSeverity.CRITICAL
        assert event.context.risk_level == "critical"
        assert event.context.compliance_tags == ["soc2"]
        assert event.context.environment == "development"
        assert event.metadata.retention_period == 7 * SECONDS_PER_YEAR
        assert event.metadata.backup_required is True
        assert event.metadata.synthetic is False

    def test_chain_links_consecutive_events(self, service):
        first = service.log_event("user_action", "a")
        second = service.log_event("user_action", "b")
        service.flush()

        events = {e.id: e for e in service.search_events()}
        assert events[second].previous_hash == events[first].hash
        assert events[second].sequence == events[first].sequence + 1

    def test_explicit_severity(self, service):
        event_id = service.log_event("user_action", "x", severity="high")
        service.flush()
        assert service.search_events(event_id)[0].severity == AuditSeverity.HIGH

    def test_encrypted_event_signed(self, service, signer):
        event_id = service.log_event("data_access", "record_viewed", encrypt=True)
        service.flush()

        event = service.search_events(event_id)[0]
        assert event.encrypted is True
        assert event.metadata.encryption_level == "high"
        assert signer.verify(event.hash, event.signature)

    def test_details_are_json_normalized(self, service, clock):
        """Test non-JSON values are stored as strings."""
        event_id = service.log_event("user_action", "x", details={"at": clock.now()})
        service.flush()
        assert service.search_events(event_id)[0].details == {"at": str(clock.now())}

    @pytest.mark.parametrize("kwargs", [
        {"type": "not_a_type", "action": "x"},
        {"type": "user_action", "action": "x", "outcome": "maybe"},
        {"type": "data_access", "action": "x", "details": {"record_count": "many"}},
        {"type": "security_event", "action": "x", "details": {"risk_score": -1}},
        {"type": "user_action", "action": "x", "severity": "extreme"},
    ])
    def test_invalid_events_rejected(self, service, kwargs):
        with pytest.raises(ValidationError):
            service.log_event(**kwargs)
        assert len(service.buffer) == 0

    def test_unknown_trail(self, service):
        with pytest.raises(TrailNotFoundError):
            service.log_event("user_action", "x", trail_id="nope")

    @pytest.mark.parametrize("flushed", [True, False])
    def test_reused_id_rejected_before_stamping(self, service, flushed):
        """Test an id collision fails loudly and leaves the chain intact."""
        first = service.log_event("user_action", "original")
        if flushed:
            service.flush()

        with patch.object(service, "new_id", return_value=first):
            with pytest.raises(ValidationError):
                service.log_event("user_action", "collides")

        service.log_event("user_action", "next")
        assert service.flush() == (1 if flushed else 2)
        assert service.search_events("collides") == []
        assert [e.sequence for e in service.search_events()] == [1, 2]
        assert service.verify_integrity() is True

    def test_rule_triggers_derived_event(self, service):
        """Test a matching rule records a synthetic compliance event."""
        event_id = service.log_event("data_access", "record_viewed", resource=RESTRICTED)
        service.flush()

        derived = service.search_events(filters={"type": "compliance_event"})
        assert {e.details["rule_id"] for e in derived} == {"gdpr-art-32", "hipaa-164-312"}
        gdpr = next(e for e in derived if e.details["rule_id"] == "gdpr-art-32")
        assert gdpr.details["triggered_by"] == event_id
        assert gdpr.metadata.synthetic is True
        assert gdpr.metadata.generated_by == "rule:gdpr-art-32"
        assert gdpr.actor.id == "aegis-audit"
        assert gdpr.severity == AuditSeverity.MEDIUM

    def test_full_buffer_flushes(self, config, blob_store, clock, signer, tickers):
        service = build_service(
            dataclasses.replace(config, max_buffer_size=3), blob_store, clock, signer, tickers
        )
        service.initialize()
        try:
            service.log_event("user_action", "a")
            service.log_event("user_action", "b")
            assert service.search_events() == []

            service.log_event("user_action", "c")
            assert len(service.search_events()) == 3
        finally:
            service.cleanup()


class TestFlush:

    def test_failed_persist_requeues(self, service, blob_store):
        """Test events stay buffered until their trail can be saved."""
        service.log_event("user_action", "a")
        service.log_event("user_action", "b")

        with patch.object(blob_store, "put", side_effect=PersistenceError("disk full")):
            assert service.flush() == 0
        assert len(service.buffer) == 2
        assert service.search_events() == []

        assert service.flush() == 2
        assert [e.action for e in service.search_events()] == ["a", "b"]

    def test_flush_empty_buffer(self, service):
        """Test a flush with nothing buffered leaves the trail untouched."""
        service.log_event("user_action", "a")
        service.flush()
        checksum = service.store.get_trail("default").checksum

        with patch.object(service.dispatcher, "dispatch") as dispatch:
            assert service.flush() == 0
            assert service.flush() == 0

        assert service.store.get_trail("default").checksum == checksum
        dispatch.assert_not_called()


class TestTrailsAndExport:

    def test_export_key(self, service, blob_store):
        service.log_event("user_action", "record_viewed")
        service.flush()

        key = service.export_audit_trail("default", "CSV")

        assert key == "exports/default_1767225600000.csv"
        assert "record_viewed" in blob_store.get_text(key)

    def test_export_with_filters(self, service, blob_store):
        service.log_event("user_action", "kept")
        service.log_event("system_event", "dropped")
        service.flush()

        key = service.export_audit_trail("default", "json", filters={"type": "user_action"})

        text = blob_store.get_text(key)
        assert "kept" in text
        assert "dropped" not in text

    def test_verify_integrity_flushes_first(self, service):
        service.log_event("user_action", "x")
        assert service.verify_integrity() is True
        assert len(service.buffer) == 0

    def test_create_trail_with_forwarding(self, service):
        trail = service.create_audit_trail(
            "siem", "SIEM feed",
            forwarding_rules=[{"id": "r1", "destination": "log://audit"}],
        )
        assert trail.forwarding_rules[0].destination == "log://audit"


class TestScheduledChecks:

    def test_sweep_runs_due_checks(self, service):
        assert service.run_scheduled_checks() == 5
        assert service.run_scheduled_checks() == 0

    def test_failed_check_logged(self, service):
        """Test a failing automated check becomes a compliance event."""
        service.log_event("user_action", "x")
        tamper(service)

        service.run_scheduled_checks()
        service.flush()

        failures = {
            e.details["check_id"]: e for e in service.search_events("automated_check_failed")
        }
        integrity = failures["gdpr-art-32-trail-integrity"]
        assert integrity.outcome == "failure"
        assert integrity.severity == AuditSeverity.HIGH
        assert integrity.metadata.generated_by == "scheduler"
        assert integrity.details["rule_id"] == "gdpr-art-32"

    def test_sweep_ticker(self, service, tickers):
        tickers.tickers["compliance-sweep"].tick()
        check = service.get_compliance_rules()[0].automated_checks[0]
        assert check.execution_count == 1

    def test_metrics_published(self, config, blob_store, clock, signer, tickers):
        cloudwatch = MagicMock()
        service = build_service(config, blob_store, clock, signer, tickers,
                                cloudwatch_publisher=cloudwatch)
        service.initialize()
        try:
            service.run_scheduled_checks()
            cloudwatch.publish.assert_called_once()
            assert isinstance(cloudwatch.publish.call_args[0][0], AuditMetrics)

            cloudwatch.publish.side_effect = IOError("CloudWatch write failed")
            service.run_scheduled_checks()
        finally:
            service.cleanup()

    def test_scheduled_failure_reported_in_log(self, service, caplog):
        service.log_event("user_action", "x")
        tamper(service)

        with caplog.at_level(logging.ERROR, logger="aegis_audit.audit.store"):
            service.run_scheduled_checks()

        assert "Integrity verification failed for trail default" in caplog.text


class TestCompliance:

    def test_assessment_and_report(self, service, blob_store):
        assessment_id = service.run_compliance_assessment("gdpr", "app", "alice")

        assessment = service.get_assessment(assessment_id)
        assert assessment.score == 100.0
        assert [a.id for a in service.get_assessments()] == [assessment_id]

        key = service.generate_compliance_report(assessment_id, "json")
        assert blob_store.get(key) is not None

    def test_tampering_yields_critical_finding(self, service):
        service.log_event("user_action", "x")
        tamper(service)

        assessment = service.get_assessment(
            service.run_compliance_assessment("gdpr", "app", "alice")
        )

        assert [f.severity for f in assessment.findings] == ["critical"]
        assert assessment.score == 75.0

        finding = service.update_finding_status(
            assessment.id, assessment.findings[0].id, "resolved", "Trail restored"
        )
        assert finding.status.value == "resolved"
        assert service.get_assessment(assessment.id).score == 100.0

    def test_metrics(self, service):
        service.log_event("data_access", "record_viewed", resource=RESTRICTED)
        service.run_compliance_assessment("gdpr", "app", "alice")

        metrics = service.get_metrics()

        assert metrics.total_events == 3
        assert metrics.compliance_score == 100.0
        assert metrics.assessments_completed == 1
        assert metrics.data_integrity_score == 100.0

    def test_rules_by_framework(self, service):
        assert [r.id for r in service.get_compliance_rules("sox")] == ["sox-404"]


class TestPersistence:

    def test_state_survives_restart(self, service, config, blob_store, clock, signer, tickers):
        """Test cleanup persists everything and a new service continues the chain."""
        service.log_event("user_action", "before_restart")
        assessment_id = service.run_compliance_assessment("gdpr", "app", "alice")
        service.cleanup()

        restarted = build_service(
            config, blob_store, clock, signer, tickers, id_factory=sequential_ids("restarted")
        )
        restarted.initialize()
        try:
            before = restarted.search_events("before_restart")[0]
            assert restarted.get_assessment(assessment_id).score == 100.0
            assert restarted.get_metrics().total_events == 1

            restarted.log_event("user_action", "after_restart")
            restarted.flush()
            after = restarted.search_events("after_restart")[0]
            assert after.previous_hash == before.hash
            assert restarted.verify_integrity() is True
        finally:
            restarted.cleanup()


class TestHelpers:

    @pytest.mark.parametrize("event_type,outcome,severity", [
        (AuditEventType.SECURITY_EVENT, "failure", AuditSeverity.CRITICAL),
        (AuditEventType.SECURITY_EVENT, "success", AuditSeverity.HIGH),
        (AuditEventType.AUTHENTICATION, "failure", AuditSeverity.HIGH),
        (AuditEventType.DATA_ACCESS, "failure", AuditSeverity.MEDIUM),
        (AuditEventType.COMPLIANCE_EVENT, "success", AuditSeverity.MEDIUM),
        (AuditEventType.USER_ACTION, "failure", AuditSeverity.LOW),
    ])
    def test_default_severity(self, event_type, outcome, severity):
        assert default_severity(event_type, outcome) == severity

    def test_retention_period(self):
        assert retention_period(AuditEventType.SYSTEM_EVENT) == SECONDS_PER_YEAR
        assert retention_period(AuditEventType.AUTHORIZATION) == 2 * SECONDS_PER_YEAR

    def test_search_filters_accept_dict(self, service):
        service.log_event("user_action", "x", actor={"id": "alice"})
        service.flush()
        assert len(service.search_events(filters=SearchFilters(actor="ali"))) == 1
        assert service.search_events(filters={"actor": "bob"}) == []
