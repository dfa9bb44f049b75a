"""Audit Service - the public facade over trails, compliance and metrics.

Orchestrates:
1. Event sealing (hash chain) and buffering
2. Periodic flush of the buffer into trails, with forwarding
3. Compliance rule evaluation on every logged event
4. Scheduled automated checks and on-demand assessments
5. Persistence of trails, rules, assessments and metrics

One AuditService is constructed at process start and passed to callers;
every collaborator can be injected for tests.
"""

import json
import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Union

import httpx

from aegis_audit.audit.blob_store import BlobStore
from aegis_audit.audit.buffer import EventBuffer
from aegis_audit.audit.config import create_blob_store, create_signer
from aegis_audit.audit.destinations import DestinationRegistry
from aegis_audit.audit.details import validate_details
from aegis_audit.audit.forwarding import ForwardingDispatcher
from aegis_audit.audit.ledger import HashChainLedger, HashProvider
from aegis_audit.audit.schemas import (
    AuditActor,
    AuditContext,
    AuditEvent,
    AuditEventType,
    AuditMetadata,
    AuditResource,
    AuditSeverity,
    AuditTrail,
    ForwardingRule,
    RetentionPolicy,
    SearchFilters,
)
from aegis_audit.audit.signing import EventSigner
from aegis_audit.audit.store import AuditTrailStore
from aegis_audit.common.clock import Clock, IdFactory, SystemClock, uuid_factory
from aegis_audit.common.config import Config, get_config
from aegis_audit.common.constants import AuditConstants, SECONDS_PER_YEAR
from aegis_audit.common.exceptions import (
    AuditLogIntegrityError,
    NotInitializedError,
    PersistenceError,
    ValidationError,
)
from aegis_audit.common.ticker import Ticker, TickerFactory, ThreadTicker
from aegis_audit.compliance.assessment import ComplianceAssessmentEngine
from aegis_audit.compliance.checks import CheckExecutor
from aegis_audit.compliance.rules import ComplianceRuleEngine
from aegis_audit.compliance.scheduler import AutomatedCheckScheduler
from aegis_audit.compliance.schemas import (
    AutomatedCheck,
    CheckResult,
    ComplianceAssessment,
    ComplianceFinding,
    ComplianceFramework,
    ComplianceRule,
    FindingStatus,
)
from aegis_audit.monitoring.metrics import (
    AuditMetrics,
    CloudWatchMetricsPublisher,
    MetricsTracker,
)

logger = logging.getLogger(__name__)


ActorLike = Union[AuditActor, Dict[str, Any], None]
ResourceLike = Union[AuditResource, Dict[str, Any], None]

# Event types whose failures are treated as more severe
_FAILURE_SEVERITY = {
    AuditEventType.SECURITY_EVENT: AuditSeverity.CRITICAL,
    AuditEventType.PRIVILEGE_ESCALATION: AuditSeverity.CRITICAL,
    AuditEventType.AUTHENTICATION: AuditSeverity.HIGH,
    AuditEventType.AUTHORIZATION: AuditSeverity.HIGH,
    AuditEventType.DATA_ACCESS: AuditSeverity.MEDIUM,
    AuditEventType.DATA_MODIFICATION: AuditSeverity.MEDIUM,
}

_RETENTION_YEARS = {
    AuditEventType.SECURITY_EVENT: 7,
    AuditEventType.COMPLIANCE_EVENT: 7,
    AuditEventType.DATA_MODIFICATION: 3,
    AuditEventType.AUTHENTICATION: 2,
    AuditEventType.USER_ACTION: 1,
    AuditEventType.SYSTEM_EVENT: 1,
}

_BACKUP_REQUIRED = {
    AuditEventType.SECURITY_EVENT,
    AuditEventType.COMPLIANCE_EVENT,
    AuditEventType.DATA_MODIFICATION,
    AuditEventType.PRIVILEGE_ESCALATION,
}


def default_severity(event_type: AuditEventType, outcome: str) -> AuditSeverity:
    """Severity used when log_event is not given one."""
    if outcome == "failure":
        return _FAILURE_SEVERITY.get(event_type, AuditSeverity.LOW)
    if event_type == AuditEventType.SECURITY_EVENT:
        return AuditSeverity.HIGH
    if event_type == AuditEventType.COMPLIANCE_EVENT:
        return AuditSeverity.MEDIUM
    return AuditSeverity.LOW


def risk_level(event_type: AuditEventType, outcome: str) -> str:
    if outcome == "failure" and event_type == AuditEventType.SECURITY_EVENT:
        return "critical"
    if event_type == AuditEventType.PRIVILEGE_ESCALATION:
        return "high"
    if event_type == AuditEventType.DATA_MODIFICATION:
        return "medium"
    return "low"


def retention_period(event_type: AuditEventType) -> int:
    """Retention hint recorded in event metadata, in seconds."""
    return _RETENTION_YEARS.get(event_type, 2) * SECONDS_PER_YEAR


class AuditService:
    """Tamper-evident audit trail and compliance service.

    Lifecycle: construct, initialize(), use, cleanup(). Every public
    operation raises NotInitializedError outside that window.
    """

    SYSTEM_ACTOR = AuditActor(id="aegis-audit", type="system", name="AegisAudit")
    EXPORT_PREFIX = "exports/"

    def __init__(
        self,
        config: Optional[Config] = None,
        blob_store: Optional[BlobStore] = None,
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
        hash_provider: Optional[HashProvider] = None,
        signer: Optional[EventSigner] = None,
        ticker_factory: Optional[TickerFactory] = None,
        http_client: Optional[httpx.Client] = None,
        destination_registry: Optional[DestinationRegistry] = None,
        cloudwatch_publisher: Optional[CloudWatchMetricsPublisher] = None,
    ):
        """Initialize the service. Nothing is loaded until initialize().

        Args:
            config: Settings; the process default if not provided
            blob_store: Persistence backend; built from config if not provided
            clock: Time source shared by every component
            id_factory: Generates event, finding and assessment ids
            hash_provider: bytes -> hex digest for the hash chain
            signer: Ed25519 signer for encrypt=True events
            ticker_factory: Builds the flush and sweep tickers
            http_client: Shared client for HTTP forwarding and api_call checks
            destination_registry: Forwarding destination resolver
            cloudwatch_publisher: Metrics publisher; created from config
                when AEGIS_AUDIT_CLOUDWATCH is enabled
        """
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.new_id = id_factory or uuid_factory
        self.blob_store = blob_store or create_blob_store(self.config)
        self.ticker_factory = ticker_factory or ThreadTicker

        self.ledger = HashChainLedger(
            hash_provider=hash_provider,
            signer=signer or create_signer(self.config),
        )
        self.buffer = EventBuffer(self.config.max_buffer_size)
        self.dispatcher = ForwardingDispatcher(
            registry=destination_registry or DestinationRegistry(http_client=http_client),
            clock=self.clock,
        )
        self.store = AuditTrailStore(
            self.blob_store, self.ledger, clock=self.clock, dispatcher=self.dispatcher
        )

        self.rules = ComplianceRuleEngine(
            self.blob_store, clock=self.clock, rules_file=self.config.rules_file
        )
        self.executor = CheckExecutor(
            search=self.store.search,
            metrics_source=self._metric_values,
            clock=self.clock,
            http_client=http_client,
        )
        self.executor.register_script("trail_integrity", self._check_trail_integrity)
        self.scheduler = AutomatedCheckScheduler(
            self.rules, self.executor, clock=self.clock, on_failure=self._on_check_failure
        )
        self.assessments = ComplianceAssessmentEngine(
            self.rules, self.executor, self.blob_store, clock=self.clock, id_factory=self.new_id
        )

        self.metrics = MetricsTracker(self.blob_store)
        self.cloudwatch = cloudwatch_publisher
        if self.cloudwatch is None and self.config.publish_cloudwatch:
            self.cloudwatch = CloudWatchMetricsPublisher(
                region=self.config.aws_region, aws_profile=self.config.aws_profile
            )

        self._tickers: List[Ticker] = []
        self._state_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Load persisted state, seed rules, ensure the default trail, start tickers."""
        with self._state_lock:
            if self._initialized:
                return

            self.store.load()
            self.rules.load()
            self.assessments.load()
            self.metrics.load()

            if not self.store.has_trail(AuditConstants.DEFAULT_TRAIL_ID):
                self.store.create_trail(
                    AuditConstants.DEFAULT_TRAIL_ID,
                    "Default Audit Trail",
                    "Primary audit trail for all events",
                )

            self._tickers = [
                self.ticker_factory("audit-flush", self.config.flush_interval_seconds, self._flush),
                self.ticker_factory(
                    "compliance-sweep", self.config.sweep_interval_seconds, self._sweep
                ),
            ]
            for ticker in self._tickers:
                ticker.start()

            self._initialized = True
        logger.info("AuditService initialized")

    def cleanup(self) -> None:
        """Stop tickers, flush, wait for forwarding, persist everything, release resources."""
        with self._state_lock:
            if not self._initialized:
                return

            for ticker in self._tickers:
                ticker.stop()
            self._tickers = []

            self._flush()
            self.dispatcher.drain()

            self.store.save_all()
            self.rules.save()
            self.assessments.save_all()
            self.metrics.save(self._snapshot())

            self.dispatcher.shutdown()
            self.executor.close()
            self._initialized = False
        logger.info("AuditService shutdown complete")

    def _require_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise NotInitializedError(operation)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def log_event(
        self,
        type: Union[AuditEventType, str],
        action: str,
        actor: ActorLike = None,
        resource: ResourceLike = None,
        outcome: str = "success",
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[Union[AuditSeverity, str]] = None,
        trail_id: str = AuditConstants.DEFAULT_TRAIL_ID,
        encrypt: bool = False,
        compliance_tags: Optional[List[str]] = None,
    ) -> str:
        """Seal an event onto its trail's chain and buffer it.

        Returns:
            The event id

        Raises:
            NotInitializedError: Before initialize()
            TrailNotFoundError: If trail_id does not exist
            ValidationError: If the event is malformed
            HashComputationError: If the event could not be sealed; nothing
                was buffered
        """
        self._require_initialized("log_event")
        return self._record(
            type, action, actor, resource, outcome, details, severity,
            trail_id, encrypt, compliance_tags,
        )

    def _record(
        self,
        type: Union[AuditEventType, str],
        action: str,
        actor: ActorLike,
        resource: ResourceLike,
        outcome: str = "success",
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[Union[AuditSeverity, str]] = None,
        trail_id: str = AuditConstants.DEFAULT_TRAIL_ID,
        encrypt: bool = False,
        compliance_tags: Optional[List[str]] = None,
        generated_by: Optional[str] = None,
    ) -> str:
        self.store.get_trail(trail_id)
        event = self._build_event(
            type, action, actor, resource, outcome, details, severity,
            trail_id, encrypt, compliance_tags, generated_by,
        )

        # Stamp and append under one lock so buffer order == chain order
        with self.ledger.lock:
            if event.id in self.buffer or self.store.has_event(trail_id, event.id):
                raise ValidationError(
                    f"Event id {event.id} already used in trail {trail_id}",
                    details={"event_id": event.id, "trail_id": trail_id},
                )
            sealed = self.ledger.stamp(event)
            full = self.buffer.append(sealed)

        self.metrics.record_event(sealed)
        self._evaluate_rules(sealed)

        if full:
            self.flush()
        return sealed.id

    def _build_event(self, type, action, actor, resource, outcome, details, severity,
                     trail_id, encrypt, compliance_tags, generated_by) -> AuditEvent:
        try:
            event_type = AuditEventType(type)
            if outcome not in ("success", "failure", "unknown"):
                raise ValueError(f"Invalid outcome: {outcome}")
            # JSON round-trip so details hash the same before and after persistence
            normalized = json.loads(json.dumps(details or {}, default=str))
            validate_details(event_type, normalized)

            event = AuditEvent(
                id=self.new_id(),
                timestamp=self.clock.now(),
                type=event_type,
                severity=(
                    AuditSeverity(severity) if severity is not None
                    else default_severity(event_type, outcome)
                ),
                actor=AuditActor.model_validate(actor) if isinstance(actor, dict) else (actor or AuditActor()),
                resource=(
                    AuditResource.model_validate(resource) if isinstance(resource, dict)
                    else (resource or AuditResource())
                ),
                action=action,
                outcome=outcome,
                details=normalized,
                context=AuditContext(
                    function=action,
                    compliance_tags=list(compliance_tags or []),
                    risk_level=risk_level(event_type, outcome),
                    environment=self.config.environment.value,
                ),
                metadata=AuditMetadata(
                    retention_period=retention_period(event_type),
                    encryption_level="high" if encrypt else "standard",
                    backup_required=event_type in _BACKUP_REQUIRED,
                    synthetic=generated_by is not None,
                    generated_by=generated_by,
                ),
                trail_id=trail_id,
                encrypted=encrypt,
            )
        except ValidationError:
            raise
        except ValueError as e:
            # pydantic.ValidationError is a ValueError subclass
            raise ValidationError(f"Invalid audit event: {e}") from e
        return event

    def _evaluate_rules(self, event: AuditEvent) -> None:
        for rule in self.rules.evaluate(event):
            try:
                self._record(
                    AuditEventType.COMPLIANCE_EVENT,
                    "rule_triggered",
                    self.SYSTEM_ACTOR,
                    AuditResource(
                        id=rule.id,
                        type="compliance_rule",
                        name=rule.title,
                        category="compliance",
                    ),
                    details={
                        "rule_id": rule.id,
                        "triggered_by": event.id,
                        "framework": rule.framework.value,
                        "section": rule.section,
                    },
                    severity=AuditSeverity.MEDIUM,
                    trail_id=event.trail_id,
                    compliance_tags=[rule.framework.value],
                    generated_by=f"rule:{rule.id}",
                )
            except Exception as e:
                logger.error(f"Failed to record compliance event for rule {rule.id}: {e}")

    def flush(self) -> int:
        """Move buffered events into their trails.

        Events whose trail could not be persisted are requeued.

        Returns:
            Number of events ingested
        """
        self._require_initialized("flush")
        return self._flush()

    def _flush(self) -> int:
        with self._flush_lock:
            batch = self.buffer.drain()
            if not batch:
                return 0

            by_trail: "OrderedDict[str, List[AuditEvent]]" = OrderedDict()
            for event in batch:
                by_trail.setdefault(event.trail_id, []).append(event)

            ingested = 0
            failed: List[AuditEvent] = []
            for trail_id, events in by_trail.items():
                try:
                    ingested += len(self.store.ingest(trail_id, events))
                except PersistenceError as e:
                    logger.error(f"Flush of {len(events)} events to trail {trail_id} failed: {e.message}")
                    failed.extend(events)

            if failed:
                failed.sort(key=lambda e: (e.trail_id, e.sequence))
                self.buffer.requeue(failed)

        if ingested:
            logger.debug(f"Flushed {ingested} audit events")
        return ingested

    def search_events(self, query: str = "",
                      filters: Optional[Union[SearchFilters, Dict[str, Any]]] = None) -> List[AuditEvent]:
        """Search persisted (flushed) events."""
        self._require_initialized("search_events")
        if isinstance(filters, dict):
            filters = SearchFilters.model_validate(filters)
        return self.store.search(query, filters)

    # ------------------------------------------------------------------
    # Trails
    # ------------------------------------------------------------------

    def create_audit_trail(
        self,
        id: str,
        name: str,
        description: str = "",
        retention_policy: Optional[Union[RetentionPolicy, Dict[str, Any]]] = None,
        access_controls: Optional[List[Any]] = None,
        forwarding_rules: Optional[List[Union[ForwardingRule, Dict[str, Any]]]] = None,
    ) -> AuditTrail:
        self._require_initialized("create_audit_trail")
        return self.store.create_trail(
            id, name, description,
            retention_policy=retention_policy,
            access_controls=access_controls,
            forwarding_rules=forwarding_rules,
        )

    def get_audit_trails(self) -> List[AuditTrail]:
        self._require_initialized("get_audit_trails")
        return self.store.list_trails()

    def export_audit_trail(self, trail_id: str, fmt: str = "json",
                           filters: Optional[Union[SearchFilters, Dict[str, Any]]] = None) -> str:
        """Export a trail to the blob store.

        Returns:
            Blob key of the export, e.g. exports/default_1767225600000.csv
        """
        self._require_initialized("export_audit_trail")
        if isinstance(filters, dict):
            filters = SearchFilters.model_validate(filters)
        fmt = fmt.lower()
        content = self.store.export_trail(trail_id, fmt, filters)
        key = f"{self.EXPORT_PREFIX}{trail_id}_{int(self.clock.now().timestamp() * 1000)}.{fmt}"
        self.blob_store.put(key, content)
        logger.info(f"Exported audit trail {trail_id} to {key}")
        return key

    def verify_integrity(self, trail_id: str = AuditConstants.DEFAULT_TRAIL_ID) -> bool:
        """Flush, then verify the chain and checksum of a trail.

        Raises:
            AuditLogIntegrityError: If the trail was tampered with
        """
        self._require_initialized("verify_integrity")
        self._flush()
        return self.store.verify_integrity(trail_id)

    def apply_retention(self) -> int:
        self._require_initialized("apply_retention")
        return self.store.apply_retention()

    # ------------------------------------------------------------------
    # Compliance
    # ------------------------------------------------------------------

    def run_compliance_assessment(self, framework: Union[ComplianceFramework, str],
                                  scope: str, assessor: str) -> str:
        """Run an assessment now.

        Returns:
            The assessment id
        """
        self._require_initialized("run_compliance_assessment")
        self._flush()
        return self.assessments.run_assessment(framework, scope, assessor).id

    def generate_compliance_report(self, assessment_id: str, fmt: str = "json") -> str:
        """Render a report and return its blob key."""
        self._require_initialized("generate_compliance_report")
        return self.assessments.generate_report(assessment_id, fmt)

    def update_finding_status(self, assessment_id: str, finding_id: str,
                              status: Union[FindingStatus, str],
                              notes: Optional[str] = None) -> ComplianceFinding:
        self._require_initialized("update_finding_status")
        return self.assessments.update_finding_status(assessment_id, finding_id, status, notes)

    def get_assessments(self) -> List[ComplianceAssessment]:
        self._require_initialized("get_assessments")
        return self.assessments.list_assessments()

    def get_assessment(self, assessment_id: str) -> ComplianceAssessment:
        self._require_initialized("get_assessment")
        return self.assessments.get_assessment(assessment_id)

    def get_compliance_rules(self, framework: Optional[ComplianceFramework] = None) -> List[ComplianceRule]:
        self._require_initialized("get_compliance_rules")
        return self.rules.list_rules(framework)

    def run_scheduled_checks(self) -> int:
        """Sweep due automated checks, enforce retention and publish metrics.

        Returns:
            Number of checks executed
        """
        self._require_initialized("run_scheduled_checks")
        return self._sweep()

    def _sweep(self) -> int:
        self._flush()
        results = self.scheduler.sweep()
        self.store.apply_retention()

        snapshot = self._snapshot()
        try:
            self.metrics.save(snapshot)
        except PersistenceError as e:
            logger.error(f"Failed to persist audit metrics: {e.message}")
        if self.cloudwatch is not None:
            try:
                self.cloudwatch.publish(snapshot)
            except IOError as e:
                logger.error(f"CloudWatch publish failed: {e}")
        return len(results)

    def _on_check_failure(self, rule: ComplianceRule, check: AutomatedCheck, result: CheckResult) -> None:
        self._record(
            AuditEventType.COMPLIANCE_EVENT,
            "automated_check_failed",
            self.SYSTEM_ACTOR,
            AuditResource(id=check.id, type="automated_check", name=check.name, category="compliance"),
            outcome="failure",
            details={
                "rule_id": rule.id,
                "check_id": check.id,
                "result": result.model_dump(mode="json"),
            },
            severity=AuditSeverity.HIGH,
            compliance_tags=[rule.framework.value],
            generated_by="scheduler",
        )

    def _check_trail_integrity(self, parameters: Dict[str, Any]) -> CheckResult:
        """Script check: verify one trail (parameters.trail_id) or all of them."""
        trail_ids = [parameters["trail_id"]] if parameters.get("trail_id") else [
            t.id for t in self.store.list_trails()
        ]
        failed = []
        for trail_id in trail_ids:
            try:
                self.store.verify_integrity(trail_id)
            except AuditLogIntegrityError as e:
                failed.append({"trail_id": trail_id, "error": e.message})
        return CheckResult(
            success=not failed,
            value=float(len(failed)),
            message=f"{len(trail_ids) - len(failed)}/{len(trail_ids)} trails verified",
            details={"failed": failed},
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> AuditMetrics:
        self._require_initialized("get_metrics")
        return self._snapshot()

    def _snapshot(self) -> AuditMetrics:
        return self.metrics.snapshot(
            trails=self.store.list_trails(),
            assessments=self.assessments.list_assessments(),
            overdue_actions=self.assessments.overdue_actions(),
            forwarding_success_rate=self.dispatcher.success_rate,
            storage_health=self.store.storage_health,
        )

    def _metric_values(self) -> Dict[str, float]:
        """Numeric metrics by name, for metric_threshold checks."""
        return {
            name: float(value)
            for name, value in self._snapshot().model_dump().items()
            if isinstance(value, (int, float)) and not isinstance(value, bool)
        }
