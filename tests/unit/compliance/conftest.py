"""Fixtures for compliance engine tests."""

from unittest.mock import MagicMock

import pytest

from aegis_audit.common.clock import sequential_ids
from aegis_audit.compliance.assessment import ComplianceAssessmentEngine
from aegis_audit.compliance.checks import CheckExecutor
from aegis_audit.compliance.rules import ComplianceRuleEngine


@pytest.fixture
def rules(blob_store, clock):
    """Rule engine seeded with the packaged default rules."""
    engine = ComplianceRuleEngine(blob_store, clock=clock)
    engine.load()
    return engine


@pytest.fixture
def metric_values():
    """Mutable metrics snapshot read by metric_threshold checks."""
    return {"data_integrity_score": 100.0, "forwarding_success_rate": 100.0}


@pytest.fixture
def search():
    return MagicMock(return_value=[])


@pytest.fixture
def integrity():
    """Result returned by the trail_integrity script; flip to fail the check."""
    return {"ok": True}


@pytest.fixture
def executor(search, metric_values, clock, integrity):
    executor = CheckExecutor(search=search, metrics_source=lambda: dict(metric_values), clock=clock)
    executor.register_script("trail_integrity", lambda params: integrity["ok"])
    yield executor
    executor.close()


@pytest.fixture
def assessments(rules, executor, blob_store, clock):
    return ComplianceAssessmentEngine(
        rules, executor, blob_store, clock=clock, id_factory=sequential_ids("c")
    )
