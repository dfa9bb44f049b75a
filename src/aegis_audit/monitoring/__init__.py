"""Monitoring - audit metrics and CloudWatch publishing."""

from aegis_audit.monitoring.metrics import (
    AuditMetrics,
    CloudWatchMetricsPublisher,
    MetricsTracker,
)

__all__ = ["AuditMetrics", "CloudWatchMetricsPublisher", "MetricsTracker"]
