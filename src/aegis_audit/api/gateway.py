"""API Gateway - FastAPI application over the AuditService."""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Callable, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aegis_audit.api.schemas import (
    AssessmentResponse,
    CreateTrailRequest,
    ErrorResponse,
    LogEventRequest,
    LogEventResponse,
    PathResponse,
    RunAssessmentRequest,
    TrailResponse,
    UpdateFindingRequest,
    VerifyResponse,
)
from aegis_audit.audit.schemas import AuditEventType, AuditSeverity, SearchFilters
from aegis_audit.common.exceptions import (
    AegisAuditException,
    AssessmentNotFoundError,
    AuditLogIntegrityError,
    DuplicateTrailError,
    FindingNotFoundError,
    InvalidFindingTransitionError,
    NotInitializedError,
    RuleNotFoundError,
    TrailNotFoundError,
    ValidationError,
)
from aegis_audit.monitoring.metrics import AuditMetrics
from aegis_audit.service import AuditService

logger = logging.getLogger("aegis_audit.api")


ServiceFactory = Callable[[], AuditService]

# Exception type -> HTTP status; first match wins
_STATUS_CODES = [
    ((TrailNotFoundError, AssessmentNotFoundError, FindingNotFoundError, RuleNotFoundError), 404),
    ((DuplicateTrailError, InvalidFindingTransitionError), 409),
    ((NotInitializedError,), 503),
    ((ValidationError,), 400),
]


def status_for(exc: AegisAuditException) -> int:
    for types, status in _STATUS_CODES:
        if isinstance(exc, types):
            return status
    return 500


def event_filters(
    type: Optional[AuditEventType] = None,
    severity: Optional[AuditSeverity] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    actor: Optional[str] = None,
    resource: Optional[str] = None,
) -> SearchFilters:
    """Query parameters shared by search and export."""
    return SearchFilters(
        type=type, severity=severity, start_date=start_date,
        end_date=end_date, actor=actor, resource=resource,
    )


# =============================================================================
# CORS CONFIGURATION
# =============================================================================

def get_cors_origins() -> List[str]:
    """Get allowed CORS origins from environment.

    In production, set AEGIS_AUDIT_CORS_ORIGINS environment variable
    to a comma-separated list of allowed origins.
    """
    origins_env = os.environ.get("AEGIS_AUDIT_CORS_ORIGINS", "")

    if origins_env:
        return [origin.strip() for origin in origins_env.split(",") if origin.strip()]

    if os.environ.get("AEGIS_AUDIT_ENVIRONMENT", "development") == "production":
        logger.warning(
            "AEGIS_AUDIT_CORS_ORIGINS not set in production. "
            "CORS will be disabled."
        )
        return []

    return ["*"]


def create_app(service_factory: Optional[ServiceFactory] = None) -> FastAPI:
    """Build the gateway.

    Args:
        service_factory: Builds the AuditService on startup. A service
            configured from the environment if not provided.
    """
    factory = service_factory or AuditService

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("AegisAudit API Gateway starting up...")
        service = factory()
        service.initialize()
        app.state.service = service
        logger.info("AegisAudit API Gateway ready")

        yield

        logger.info("AegisAudit API Gateway shutting down...")
        service.cleanup()
        logger.info("AegisAudit API Gateway shutdown complete")

    environment = os.environ.get("AEGIS_AUDIT_ENVIRONMENT", "development")
    enable_docs = os.environ.get(
        "AEGIS_AUDIT_ENABLE_DOCS", "false" if environment == "production" else "true"
    ).lower() == "true"

    app = FastAPI(
        title="AegisAudit API Gateway",
        description="Tamper-evident audit trails and compliance assessments.",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if enable_docs else None,
        redoc_url="/redoc" if enable_docs else None,
    )

    cors_origins = get_cors_origins()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["POST", "GET", "PATCH"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        )

    # =========================================================================
    # EXCEPTION HANDLERS
    # =========================================================================

    @app.exception_handler(AegisAuditException)
    async def audit_error_handler(request: Request, exc: AegisAuditException) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        status = status_for(exc)
        if status >= 500:
            logger.error(f"Request {request_id} failed: {exc.code} {exc.message}")
        else:
            logger.warning(f"Request {request_id} rejected: {exc.code} {exc.message}")
        return JSONResponse(
            status_code=status,
            content=ErrorResponse(request_id=request_id, **exc.to_dict()).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Logs full exception but returns a sanitized message."""
        request_id = getattr(request.state, "request_id", None)
        logger.exception(f"Unexpected error in request {request_id}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="internal_error",
                message="An unexpected error occurred",
                request_id=request_id,
            ).model_dump(),
        )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add request ID to each request for tracing."""
        request_id = request.headers.get("X-Request-ID") or f"req_{uuid4().hex[:12]}"
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    def get_service(request: Request) -> AuditService:
        service = getattr(request.app.state, "service", None)
        if service is None:
            raise NotInitializedError(request.url.path)
        return service

    # =========================================================================
    # EVENTS
    # =========================================================================

    @app.post("/events", response_model=LogEventResponse, status_code=201,
              responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}})
    def log_event(body: LogEventRequest, request: Request) -> LogEventResponse:
        event_id = get_service(request).log_event(
            body.type,
            body.action,
            actor=body.actor,
            resource=body.resource,
            outcome=body.outcome,
            details=body.details,
            severity=body.severity,
            trail_id=body.trail_id,
            encrypt=body.encrypt,
            compliance_tags=body.compliance_tags,
        )
        return LogEventResponse(event_id=event_id)

    @app.get("/events/search")
    def search_events(
        request: Request,
        query: str = "",
        trail_id: Optional[str] = None,
        filters: SearchFilters = Depends(event_filters),
    ) -> List[dict]:
        filters.trail_id = trail_id
        events = get_service(request).search_events(query, filters)
        return [e.model_dump(mode="json") for e in events]

    # =========================================================================
    # TRAILS
    # =========================================================================

    @app.post("/trails", response_model=TrailResponse, status_code=201,
              responses={409: {"model": ErrorResponse}})
    def create_trail(body: CreateTrailRequest, request: Request) -> TrailResponse:
        trail = get_service(request).create_audit_trail(
            body.id,
            body.name,
            body.description,
            retention_policy=body.retention_policy,
            access_controls=body.access_controls,
            forwarding_rules=body.forwarding_rules,
        )
        return TrailResponse(trail_id=trail.id, name=trail.name, size=trail.size, checksum=trail.checksum)

    @app.get("/trails/{trail_id}/export", response_model=PathResponse,
             responses={404: {"model": ErrorResponse}})
    def export_trail(trail_id: str, request: Request,
                     fmt: str = Query("json", alias="format"),
                     filters: SearchFilters = Depends(event_filters)) -> PathResponse:
        return PathResponse(path=get_service(request).export_audit_trail(trail_id, fmt, filters))

    @app.get("/trails/{trail_id}/verify", response_model=VerifyResponse,
             responses={404: {"model": ErrorResponse}})
    def verify_trail(trail_id: str, request: Request) -> VerifyResponse:
        try:
            get_service(request).verify_integrity(trail_id)
        except AuditLogIntegrityError as e:
            return VerifyResponse(trail_id=trail_id, verified=False, message=e.message)
        return VerifyResponse(trail_id=trail_id, verified=True)

    # =========================================================================
    # COMPLIANCE
    # =========================================================================

    @app.post("/assessments", response_model=AssessmentResponse, status_code=201)
    def run_assessment(body: RunAssessmentRequest, request: Request) -> AssessmentResponse:
        service = get_service(request)
        assessment_id = service.run_compliance_assessment(body.framework, body.scope, body.assessor)
        assessment = service.get_assessment(assessment_id)
        return AssessmentResponse(
            assessment_id=assessment.id,
            framework=assessment.framework,
            score=assessment.score,
            overall_status=assessment.overall_status,
            findings=len(assessment.findings),
        )

    @app.patch("/assessments/{assessment_id}/findings/{finding_id}",
               responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}})
    def update_finding(assessment_id: str, finding_id: str, body: UpdateFindingRequest,
                       request: Request) -> dict:
        finding = get_service(request).update_finding_status(
            assessment_id, finding_id, body.status, body.notes
        )
        return finding.model_dump(mode="json")

    @app.get("/assessments/{assessment_id}/report", response_model=PathResponse,
             responses={404: {"model": ErrorResponse}})
    def generate_report(assessment_id: str, request: Request,
                        fmt: str = Query("json", alias="format")) -> PathResponse:
        return PathResponse(path=get_service(request).generate_compliance_report(assessment_id, fmt))

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    @app.get("/metrics", response_model=AuditMetrics)
    def metrics(request: Request) -> AuditMetrics:
        return get_service(request).get_metrics()

    @app.get("/health")
    def health_check(request: Request) -> dict:
        service = getattr(request.app.state, "service", None)
        if service is None or not service.is_initialized:
            return JSONResponse(status_code=503, content={"status": "not_ready"})
        return {
            "status": "healthy",
            "service": "aegis-audit-gateway",
            "storage": service.store.storage_health,
        }

    return app
