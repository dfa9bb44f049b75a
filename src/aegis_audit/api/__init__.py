"""API - HTTP gateway over the AuditService.

Endpoints:
    POST  /events
    GET   /events/search
    POST  /trails
    GET   /trails/{id}/export
    GET   /trails/{id}/verify
    POST  /assessments
    PATCH /assessments/{id}/findings/{finding_id}
    GET   /assessments/{id}/report
    GET   /metrics
    GET   /health
"""

from aegis_audit.api.gateway import create_app
from aegis_audit.api.schemas import (
    CreateTrailRequest,
    ErrorResponse,
    LogEventRequest,
    RunAssessmentRequest,
)

__all__ = [
    "create_app",
    "CreateTrailRequest",
    "ErrorResponse",
    "LogEventRequest",
    "RunAssessmentRequest",
]
