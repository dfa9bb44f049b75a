"""Monitoring - event counters, compliance posture and CloudWatch publishing."""

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import ClientError
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from aegis_audit.audit.blob_store import BlobStore
from aegis_audit.audit.schemas import AuditEvent, AuditTrail
from aegis_audit.compliance.assessment import ACTIVE_FINDING_STATUSES
from aegis_audit.compliance.schemas import ComplianceAssessment, FindingStatus

logger = logging.getLogger(__name__)


class AuditMetrics(BaseModel):
    """Aggregate audit and compliance metrics."""
    total_events: int = 0
    events_by_type: Dict[str, int] = Field(default_factory=dict)
    events_by_severity: Dict[str, int] = Field(default_factory=dict)
    compliance_score: float = Field(
        default=0.0, description="Mean score of the latest assessment per framework"
    )
    findings_by_severity: Dict[str, int] = Field(
        default_factory=dict, description="Open and in-progress findings"
    )
    open_findings: int = 0
    overdue_actions: int = 0
    assessments_completed: int = 0
    data_integrity_score: float = Field(
        default=100.0, description="Percentage of trails whose last verification passed"
    )
    forwarding_success_rate: float = 100.0
    storage_health: str = "healthy"


class MetricsTracker:
    """Thread-safe event counters, persisted with the last metrics snapshot."""

    METRICS_KEY = "audit_metrics.json"

    def __init__(self, blob_store: BlobStore):
        self.blob_store = blob_store
        self._lock = threading.Lock()
        self._total_events = 0
        self._by_type: Dict[str, int] = {}
        self._by_severity: Dict[str, int] = {}

    def record_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._total_events += 1
            self._by_type[event.type.value] = self._by_type.get(event.type.value, 0) + 1
            self._by_severity[event.severity.value] = self._by_severity.get(event.severity.value, 0) + 1

    def snapshot(
        self,
        trails: Iterable[AuditTrail],
        assessments: Iterable[ComplianceAssessment],
        overdue_actions: int = 0,
        forwarding_success_rate: float = 100.0,
        storage_health: str = "healthy",
    ) -> AuditMetrics:
        """Combine the counters with current trail and assessment state."""
        assessments = list(assessments)
        trails = list(trails)

        latest: Dict[str, ComplianceAssessment] = {}
        for assessment in assessments:
            current = latest.get(assessment.framework.value)
            if current is None or assessment.start_date >= current.start_date:
                latest[assessment.framework.value] = assessment
        compliance_score = (
            sum(a.score for a in latest.values()) / len(latest) if latest else 0.0
        )

        findings_by_severity: Dict[str, int] = {}
        open_findings = 0
        for assessment in assessments:
            for finding in assessment.findings:
                if finding.status in ACTIVE_FINDING_STATUSES:
                    findings_by_severity[finding.severity] = findings_by_severity.get(finding.severity, 0) + 1
                if finding.status == FindingStatus.OPEN:
                    open_findings += 1

        verified = sum(1 for t in trails if t.integrity_verified)
        data_integrity_score = 100.0 * verified / len(trails) if trails else 100.0

        with self._lock:
            return AuditMetrics(
                total_events=self._total_events,
                events_by_type=dict(self._by_type),
                events_by_severity=dict(self._by_severity),
                compliance_score=round(compliance_score, 2),
                findings_by_severity=findings_by_severity,
                open_findings=open_findings,
                overdue_actions=overdue_actions,
                assessments_completed=sum(
                    1 for a in assessments if a.status in ("completed", "approved")
                ),
                data_integrity_score=round(data_integrity_score, 2),
                forwarding_success_rate=round(forwarding_success_rate, 2),
                storage_health=storage_health,
            )

    def save(self, metrics: AuditMetrics) -> None:
        self.blob_store.put(self.METRICS_KEY, metrics.model_dump_json())

    def load(self) -> None:
        """Restore event counters from the persisted snapshot, if any."""
        raw = self.blob_store.get(self.METRICS_KEY)
        if raw is None:
            return
        try:
            saved = AuditMetrics.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.error(f"Ignoring unreadable metrics snapshot: {e}")
            return
        with self._lock:
            self._total_events = saved.total_events
            self._by_type = dict(saved.events_by_type)
            self._by_severity = dict(saved.events_by_severity)


class CloudWatchMetricsPublisher:
    """Publishes metrics snapshots to CloudWatch."""

    DEFAULT_REGION = "us-east-1"
    DEFAULT_NAMESPACE = "AegisAudit"
    MAX_METRICS_PER_REQUEST = 20

    def __init__(self, namespace: Optional[str] = None, region: Optional[str] = None,
                 aws_profile: Optional[str] = None, cloudwatch_client=None):
        self.namespace = namespace or os.environ.get("CLOUDWATCH_NAMESPACE", self.DEFAULT_NAMESPACE)
        self.region = region or os.environ.get("AWS_REGION", self.DEFAULT_REGION)

        if cloudwatch_client is not None:
            self.cloudwatch = cloudwatch_client
        elif aws_profile:
            session = boto3.Session(profile_name=aws_profile)
            self.cloudwatch = session.client("cloudwatch", region_name=self.region)
        else:
            self.cloudwatch = boto3.client("cloudwatch", region_name=self.region)

        logger.info(f"Initialized CloudWatchMetricsPublisher: namespace={self.namespace}")

    @staticmethod
    def metric_data(metrics: AuditMetrics, timestamp: Optional[datetime] = None) -> List[dict]:
        """CloudWatch MetricData entries for a snapshot."""
        timestamp = timestamp or datetime.now(timezone.utc)
        data = [
            {"MetricName": "TotalEvents", "Value": float(metrics.total_events), "Unit": "Count"},
            {"MetricName": "ComplianceScore", "Value": metrics.compliance_score, "Unit": "Percent"},
            {"MetricName": "OpenFindings", "Value": float(metrics.open_findings), "Unit": "Count"},
            {"MetricName": "OverdueActions", "Value": float(metrics.overdue_actions), "Unit": "Count"},
            {"MetricName": "DataIntegrityScore", "Value": metrics.data_integrity_score, "Unit": "Percent"},
            {"MetricName": "ForwardingSuccessRate", "Value": metrics.forwarding_success_rate, "Unit": "Percent"},
            {
                "MetricName": "StorageDegraded",
                "Value": 0.0 if metrics.storage_health == "healthy" else 1.0,
                "Unit": "Count",
            },
        ]
        for severity, count in metrics.events_by_severity.items():
            data.append({
                "MetricName": "EventsBySeverity",
                "Value": float(count),
                "Unit": "Count",
                "Dimensions": [{"Name": "severity", "Value": severity}],
            })
        for entry in data:
            entry["Timestamp"] = timestamp
        return data

    def publish(self, metrics: AuditMetrics) -> None:
        """Send a snapshot to CloudWatch.

        Raises:
            IOError: If CloudWatch write fails
        """
        metric_data = self.metric_data(metrics)
        try:
            # CloudWatch allows max 20 metrics per request
            for i in range(0, len(metric_data), self.MAX_METRICS_PER_REQUEST):
                self.cloudwatch.put_metric_data(
                    Namespace=self.namespace,
                    MetricData=metric_data[i:i + self.MAX_METRICS_PER_REQUEST],
                )
            logger.debug(f"Published {len(metric_data)} metrics to CloudWatch")
        except ClientError as e:
            logger.error(f"Failed to publish metrics: {e}")
            raise IOError(f"CloudWatch write failed: {e}") from e
