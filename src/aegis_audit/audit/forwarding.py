"""Forwarding Dispatcher - relays ingested events to external sinks.

Each trail carries forwarding rules. After a batch is ingested the
dispatcher selects the events matching each enabled rule's filter,
splits them into batches, encodes them and delivers them on a thread
pool with exponential backoff.

Filter syntax:
    ""  or "*"                          all events
    "type=security_event"               equality on a dotted field path
    "severity=high|critical"            alternation
    "actor.id!=system"                  inequality
    "resource.path~/admin"              substring
    "type=authentication;outcome=failure"   all clauses must match
"""

import json
import logging
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from tenacity import Retrying, stop_after_attempt, wait_exponential

from aegis_audit.audit.destinations import Destination, DestinationRegistry
from aegis_audit.audit.export import to_csv
from aegis_audit.audit.schemas import (
    AuditEvent,
    AuditSeverity,
    AuditTrail,
    ForwardingFormat,
    ForwardingRule,
)
from aegis_audit.common.clock import Clock, SystemClock
from aegis_audit.common.constants import AuditConstants, ForwardingConstants
from aegis_audit.common.exceptions import ForwardingError, ValidationError

logger = logging.getLogger(__name__)


# ===== FILTERS =====

@dataclass(frozen=True)
class FilterClause:
    path: Tuple[str, ...]
    operator: str  # "=", "!=" or "~"
    values: Tuple[str, ...]

    def matches(self, document: Dict[str, Any]) -> bool:
        actual = _resolve(document, self.path)
        candidates = actual if isinstance(actual, list) else [actual]
        rendered = ["" if c is None else str(c) for c in candidates]

        if self.operator == "~":
            return any(v in r for r in rendered for v in self.values)
        hit = any(r in self.values for r in rendered)
        return hit if self.operator == "=" else not hit


def _resolve(document: Any, path: Tuple[str, ...]) -> Any:
    current = document
    for part in path:
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


@lru_cache(maxsize=256)
def compile_filter(expression: str) -> Tuple[FilterClause, ...]:
    """Parse a filter expression.

    Raises:
        ValidationError: If a clause has no operator or an empty path
    """
    expression = (expression or "").strip()
    if expression in ("", "*"):
        return ()

    clauses = []
    for raw in expression.split(";"):
        raw = raw.strip()
        if not raw:
            continue
        for operator in ("!=", "~", "="):
            if operator in raw:
                path, _, value = raw.partition(operator)
                break
        else:
            raise ValidationError(f"Invalid filter clause: '{raw}'", details={"filter": expression})

        path = path.strip()
        if not path:
            raise ValidationError(f"Filter clause has no field: '{raw}'", details={"filter": expression})
        values = tuple(v.strip() for v in value.split("|"))
        clauses.append(FilterClause(tuple(path.split(".")), operator, values))
    return tuple(clauses)


def select_events(expression: str, events: Sequence[AuditEvent]) -> List[AuditEvent]:
    """Events matching every clause of a filter expression."""
    clauses = compile_filter(expression)
    if not clauses:
        return list(events)
    selected = []
    for event in events:
        document = event.model_dump(mode="json")
        if all(clause.matches(document) for clause in clauses):
            selected.append(event)
    return selected


# ===== FORMATS =====

_SYSLOG_SEVERITY = {
    AuditSeverity.LOW: 6,       # informational
    AuditSeverity.MEDIUM: 5,    # notice
    AuditSeverity.HIGH: 4,      # warning
    AuditSeverity.CRITICAL: 2,  # critical
}
_SYSLOG_FACILITY = 13  # log audit

_CEF_SEVERITY = {
    AuditSeverity.LOW: 3,
    AuditSeverity.MEDIUM: 5,
    AuditSeverity.HIGH: 8,
    AuditSeverity.CRITICAL: 10,
}


def _cef_escape(value: Any, header: bool = False) -> str:
    text = str(value).replace("\\", "\\\\")
    if header:
        return text.replace("|", "\\|")
    return text.replace("=", "\\=").replace("\n", "\\n")


def format_json(events: Sequence[AuditEvent]) -> str:
    return json.dumps([e.model_dump(mode="json") for e in events])


def format_syslog(events: Sequence[AuditEvent]) -> str:
    """RFC 5424 lines with the event JSON as message."""
    host = socket.gethostname()
    lines = []
    for e in events:
        pri = _SYSLOG_FACILITY * 8 + _SYSLOG_SEVERITY[e.severity]
        lines.append(
            f"<{pri}>1 {e.timestamp.isoformat()} {host} {AuditConstants.SOURCE} - "
            f"{e.type.value} - {e.to_jsonl()}"
        )
    return "\n".join(lines)


def format_cef(events: Sequence[AuditEvent]) -> str:
    lines = []
    for e in events:
        extension = " ".join([
            f"rt={int(e.timestamp.timestamp() * 1000)}",
            f"suser={_cef_escape(e.actor.id)}",
            f"src={_cef_escape(e.actor.ip_address or '')}",
            f"duid={_cef_escape(e.resource.id)}",
            f"outcome={_cef_escape(e.outcome)}",
            f"externalId={_cef_escape(e.id)}",
            f"cs1Label=hash cs1={e.hash}",
            f"cs2Label=trail cs2={_cef_escape(e.trail_id)}",
        ])
        lines.append(
            f"CEF:0|{AuditConstants.SOURCE}|{AuditConstants.SOURCE}|{AuditConstants.SCHEMA_VERSION}|"
            f"{_cef_escape(e.type.value, header=True)}|{_cef_escape(e.action, header=True)}|"
            f"{_CEF_SEVERITY[e.severity]}|{extension}"
        )
    return "\n".join(lines)


def format_leef(events: Sequence[AuditEvent]) -> str:
    """LEEF 2.0 with '^' as attribute delimiter."""
    lines = []
    for e in events:
        attributes = "^".join([
            f"devTime={e.timestamp.isoformat()}",
            f"usrName={e.actor.id}",
            f"src={e.actor.ip_address or ''}",
            f"resource={e.resource.id}",
            f"action={e.action}",
            f"outcome={e.outcome}",
            f"sev={_CEF_SEVERITY[e.severity]}",
            f"eventId={e.id}",
            f"hash={e.hash}",
        ])
        lines.append(
            f"LEEF:2.0|{AuditConstants.SOURCE}|{AuditConstants.SOURCE}|"
            f"{AuditConstants.SCHEMA_VERSION}|{e.type.value}|^|{attributes}"
        )
    return "\n".join(lines)


FORMATTERS: Dict[ForwardingFormat, Tuple[Callable[[Sequence[AuditEvent]], str], str]] = {
    ForwardingFormat.JSON: (format_json, "application/json"),
    ForwardingFormat.SYSLOG: (format_syslog, "text/plain"),
    ForwardingFormat.CEF: (format_cef, "text/plain"),
    ForwardingFormat.LEEF: (format_leef, "text/plain"),
    ForwardingFormat.CSV: (to_csv, "text/csv"),
}


def encode_batch(events: Sequence[AuditEvent], fmt: ForwardingFormat) -> Tuple[str, str]:
    """Encode events; returns (payload, content type)."""
    formatter, content_type = FORMATTERS[fmt]
    return formatter(events), content_type


# ===== DISPATCHER =====

class ForwardingDispatcher:
    """Fire-and-forget delivery of ingested events to forwarding rules."""

    def __init__(
        self,
        registry: Optional[DestinationRegistry] = None,
        clock: Optional[Clock] = None,
        max_workers: int = ForwardingConstants.MAX_WORKERS,
    ):
        """Initialize dispatcher.

        Args:
            registry: Destination resolver. Default schemes if not provided.
            clock: Supplies sleep() for retry backoff.
            max_workers: Delivery thread pool size.
        """
        self.registry = registry or DestinationRegistry()
        self.clock = clock or SystemClock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="AuditForwarder"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

        # Statistics (per batch)
        self._deliveries_succeeded = 0
        self._deliveries_failed = 0

    def dispatch(self, trail: AuditTrail, events: Sequence[AuditEvent]) -> None:
        """Queue deliveries of events for every enabled rule of a trail."""
        for rule in trail.forwarding_rules:
            if not rule.enabled:
                continue
            try:
                selected = select_events(rule.filter, events)
            except ValidationError as e:
                logger.error(f"Forwarding rule {rule.id} has an invalid filter: {e.message}")
                continue

            for start in range(0, len(selected), rule.batch_size):
                batch = selected[start:start + rule.batch_size]
                future = self._executor.submit(self.deliver, rule, batch)
                with self._lock:
                    self._pending.add(future)
                future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def deliver(self, rule: ForwardingRule, events: Sequence[AuditEvent]) -> bool:
        """Deliver one batch synchronously, retrying per the rule's policy.

        Returns:
            True if the batch was delivered
        """
        policy = rule.retry_policy
        attempts = policy.max_retries if policy.retry_on_failure else 1

        try:
            destination = self.registry.resolve(rule.destination)
        except ForwardingError as e:
            self._record_failure(rule)
            with self._lock:
                self._deliveries_failed += 1
            logger.error(f"Forwarding rule {rule.id}: {e.message}")
            return False

        payload, content_type = encode_batch(events, rule.format)
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=policy.initial_delay,
                max=policy.max_delay,
                exp_base=policy.backoff_multiplier,
            ),
            sleep=self.clock.sleep,
            reraise=True,
        )

        try:
            retrying(self._attempt, rule, destination, payload, content_type)
        except ForwardingError as e:
            with self._lock:
                self._deliveries_failed += 1
            logger.error(
                f"Forwarding rule {rule.id} gave up on {len(events)} events "
                f"after {attempts} attempts: {e.message}"
            )
            return False

        with self._lock:
            rule.events_forwarded += len(events)
            rule.last_forwarded = self.clock.now()
            self._deliveries_succeeded += 1
        logger.debug(f"Forwarded {len(events)} events to {rule.destination}")
        return True

    def _attempt(self, rule: ForwardingRule, destination: Destination,
                 payload: str, content_type: str) -> None:
        try:
            destination.send(payload, content_type)
        except ForwardingError:
            self._record_failure(rule)
            raise
        except Exception as e:
            self._record_failure(rule)
            raise ForwardingError(f"Delivery failed: {e}", destination=rule.destination) from e

    def _record_failure(self, rule: ForwardingRule) -> None:
        with self._lock:
            rule.failure_count += 1
        logger.warning(f"Forwarding attempt to {rule.destination} failed (rule {rule.id})")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight deliveries.

        Returns:
            True if everything finished within timeout
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.drain(timeout)
        self._executor.shutdown(wait=True)
        self.registry.close()

    @property
    def success_rate(self) -> float:
        """Percentage of delivered batches; 100 when nothing was attempted."""
        with self._lock:
            total = self._deliveries_succeeded + self._deliveries_failed
            if total == 0:
                return 100.0
            return 100.0 * self._deliveries_succeeded / total

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "deliveries_succeeded": self._deliveries_succeeded,
                "deliveries_failed": self._deliveries_failed,
                "in_flight": len(self._pending),
            }
