"""Audit Trail Store - named partitions of chained events.

The store owns every AuditTrail: ingestion, checksum maintenance,
retention enforcement, search, export and persistence through a
BlobStore. Writes are copy-on-write: a trail is only replaced in memory
after the blob store has accepted the new version.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from aegis_audit.audit.blob_store import BlobStore
from aegis_audit.audit.export import export_events
from aegis_audit.audit.ledger import HashChainLedger
from aegis_audit.audit.schemas import (
    AccessControl,
    AuditEvent,
    AuditTrail,
    ForwardingRule,
    RetentionPolicy,
    SearchFilters,
    TrailMetadata,
    default_access_controls,
)
from aegis_audit.common.clock import Clock, SystemClock
from aegis_audit.common.constants import AuditConstants
from aegis_audit.common.exceptions import (
    AuditLogIntegrityError,
    DuplicateTrailError,
    PersistenceError,
    TrailNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class EventDispatcher(Protocol):
    """Receiver for newly ingested events (see ForwardingDispatcher)."""

    def dispatch(self, trail: AuditTrail, events: Sequence[AuditEvent]) -> None:
        ...


class AuditTrailStore:
    """Thread-safe owner of all audit trails."""

    TRAIL_PREFIX = "audit_trails/"

    def __init__(
        self,
        blob_store: BlobStore,
        ledger: HashChainLedger,
        clock: Optional[Clock] = None,
        dispatcher: Optional[EventDispatcher] = None,
        degraded_after: int = AuditConstants.PERSIST_FAILURES_DEGRADED,
    ):
        """Initialize trail store.

        Args:
            blob_store: Persistence backend
            ledger: Ledger used for checksums and integrity verification
            clock: Time source for retention and verification stamps
            dispatcher: Receives newly ingested events after each commit
            degraded_after: Consecutive persist failures before storage is
                reported as degraded
        """
        self.blob_store = blob_store
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher
        self.degraded_after = degraded_after

        self._trails: Dict[str, AuditTrail] = {}
        self._lock = threading.RLock()
        self._consecutive_failures = 0

    # ------------------------------------------------------------------
    # Trails
    # ------------------------------------------------------------------

    def create_trail(
        self,
        trail_id: str,
        name: str,
        description: str = "",
        retention_policy: Optional[Union[RetentionPolicy, Dict[str, Any]]] = None,
        access_controls: Optional[List[Union[AccessControl, Dict[str, Any]]]] = None,
        forwarding_rules: Optional[List[Union[ForwardingRule, Dict[str, Any]]]] = None,
        created_by: str = "system",
    ) -> AuditTrail:
        """Create and persist a new trail.

        A partial retention_policy dict is merged over the defaults.

        Raises:
            DuplicateTrailError: If the id is taken
            PersistenceError: If the trail cannot be saved
        """
        now = self.clock.now()

        if isinstance(retention_policy, RetentionPolicy):
            policy = retention_policy
        else:
            policy = RetentionPolicy.model_validate(retention_policy or {})

        trail = AuditTrail(
            id=trail_id,
            name=name,
            description=description,
            start_time=now,
            retention_policy=policy,
            access_controls=(
                [AccessControl.model_validate(a) if isinstance(a, dict) else a for a in access_controls]
                if access_controls is not None else default_access_controls()
            ),
            forwarding_rules=[
                ForwardingRule.model_validate(r) if isinstance(r, dict) else r
                for r in (forwarding_rules or [])
            ],
            metadata=TrailMetadata(created_by=created_by, created_at=now, updated_at=now),
        )
        trail.checksum = self.compute_checksum(trail)

        with self._lock:
            if trail_id in self._trails:
                raise DuplicateTrailError(trail_id)
            self._persist(trail)
            self._trails[trail_id] = trail

        logger.info(f"Created audit trail {trail_id} ({name})")
        return trail

    def get_trail(self, trail_id: str) -> AuditTrail:
        with self._lock:
            trail = self._trails.get(trail_id)
        if trail is None:
            raise TrailNotFoundError(trail_id)
        return trail

    def has_trail(self, trail_id: str) -> bool:
        with self._lock:
            return trail_id in self._trails

    def has_event(self, trail_id: str, event_id: str) -> bool:
        trail = self.get_trail(trail_id)
        return any(e.id == event_id for e in trail.events)

    def list_trails(self) -> List[AuditTrail]:
        with self._lock:
            return list(self._trails.values())

    def compute_checksum(self, trail: AuditTrail) -> str:
        """Checksum over trail id, event hashes, start time and size."""
        return self.ledger.digest({
            "id": trail.id,
            "eventHashes": [e.hash for e in trail.events],
            "startTime": trail.start_time.isoformat(),
            "size": len(trail.events),
        })

    # ------------------------------------------------------------------
    # Ingestion & retention
    # ------------------------------------------------------------------

    def ingest(self, trail_id: str, events: Iterable[AuditEvent]) -> List[AuditEvent]:
        """Append sealed events to a trail.

        Events already present with the same id and hash are ignored, so
        replaying a batch is harmless. After the new version is persisted,
        the dispatcher is handed the newly ingested events.

        Returns:
            The events that were actually added

        Raises:
            TrailNotFoundError: If the trail does not exist
            ValidationError: If an event reuses a stored id with a different hash
            PersistenceError: If the blob store rejects the write; the
                trail is left unchanged
        """
        with self._lock:
            trail = self.get_trail(trail_id)
            seen = {e.id: e.hash for e in trail.events}
            added: List[AuditEvent] = []
            for event in events:
                if event.id in seen:
                    if seen[event.id] == event.hash:
                        continue
                    raise ValidationError(
                        f"Event id {event.id} already used in trail {trail_id}",
                        details={"event_id": event.id, "trail_id": trail_id},
                    )
                seen[event.id] = event.hash
                added.append(event)

            if not added:
                return []

            merged = sorted(trail.events + added, key=lambda e: e.sequence)
            newest = merged[-1]
            update: Dict[str, Any] = {"events": merged}
            if newest.sequence >= trail.head_sequence:
                update["head_sequence"] = newest.sequence
                update["head_hash"] = newest.hash
            candidate = trail.model_copy(update=update)
            candidate = self._retain(candidate, self.clock.now())
            self._commit(candidate)

        logger.debug(f"Ingested {len(added)} events into trail {trail_id}")

        if self.dispatcher is not None:
            self.dispatcher.dispatch(candidate, added)
        return added

    def apply_retention(self, trail_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        """Purge expired events from one trail, or all trails.

        Returns:
            Number of events purged
        """
        now = now or self.clock.now()
        purged = 0
        with self._lock:
            trail_ids = [trail_id] if trail_id else list(self._trails)
            for tid in trail_ids:
                trail = self.get_trail(tid)
                candidate = self._retain(trail, now)
                removed = len(trail.events) - len(candidate.events)
                if removed:
                    self._commit(candidate)
                    purged += removed
        if purged:
            logger.info(f"Retention purged {purged} events")
        return purged

    def _retain(self, trail: AuditTrail, now: datetime) -> AuditTrail:
        """Return a copy of trail without events older than their retention window."""
        policy = trail.retention_policy
        kept: List[AuditEvent] = []
        purged: Dict[int, AuditEvent] = {}
        for event in trail.events:
            if now - event.timestamp > timedelta(seconds=policy.period_for(event)):
                purged[event.sequence] = event
            else:
                kept.append(event)

        if not purged:
            return trail

        kept_sequences = {e.sequence for e in kept}

        def pending(sequence: int) -> bool:
            # Retained, or not ingested yet
            return sequence in kept_sequences or sequence > trail.head_sequence

        gaps = {seq: h for seq, h in trail.retention_gaps.items() if pending(seq)}
        for sequence, event in purged.items():
            if pending(sequence + 1):
                gaps[sequence + 1] = event.hash

        if kept:
            first = kept[0]
            anchor = gaps.pop(first.sequence, None)
            if anchor is None:
                anchor = trail.chain_anchor if first is trail.events[0] else first.previous_hash
        else:
            anchor = purged[max(purged)].hash
            gaps = {}

        return trail.model_copy(update={
            "events": kept,
            "chain_anchor": anchor,
            "retention_gaps": gaps,
        })

    def _commit(self, candidate: AuditTrail) -> None:
        """Finalize, persist and install a new trail version. Caller holds the lock."""
        candidate.size = len(candidate.events)
        candidate.checksum = self.compute_checksum(candidate)
        candidate.metadata = candidate.metadata.model_copy(update={"updated_at": self.clock.now()})
        self._persist(candidate)
        self._trails[candidate.id] = candidate

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search(self, query: str = "", filters: Optional[SearchFilters] = None) -> List[AuditEvent]:
        """Filter events, then match query case-insensitively against event JSON."""
        filters = filters or SearchFilters()
        needle = query.lower().strip()
        results = []
        for trail in self.list_trails():
            if filters.trail_id and trail.id != filters.trail_id:
                continue
            for event in trail.events:
                if not filters.matches(event):
                    continue
                if needle and needle not in event.to_jsonl().lower():
                    continue
                results.append(event)
        return results

    def export_trail(self, trail_id: str, fmt: str = "json",
                     filters: Optional[SearchFilters] = None) -> str:
        """Render a trail's events as json, csv or xml.

        Raises:
            TrailNotFoundError: If the trail does not exist
            ValidationError: For unsupported formats
        """
        trail = self.get_trail(trail_id)
        events = [e for e in trail.events if filters is None or filters.matches(e)]
        return export_events(events, fmt)

    def verify_integrity(self, trail_id: str) -> bool:
        """Recompute every event hash, chain link and the trail checksum.

        Raises:
            TrailNotFoundError: If the trail does not exist
            AuditLogIntegrityError: If anything was tampered with
        """
        with self._lock:
            trail = self.get_trail(trail_id)
            now = self.clock.now()
            try:
                self.ledger.verify_chain(trail.events, trail.chain_anchor, trail.retention_gaps)
                if self.compute_checksum(trail) != trail.checksum:
                    raise AuditLogIntegrityError(
                        f"Checksum mismatch for trail {trail_id}",
                        details={"trail_id": trail_id},
                    )
            except AuditLogIntegrityError:
                trail.integrity_verified = False
                trail.last_verification = now
                logger.error(f"Integrity verification failed for trail {trail_id}")
                raise
            trail.integrity_verified = True
            trail.last_verification = now
        logger.info(f"Integrity check passed for trail {trail_id}")
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _key(self, trail_id: str) -> str:
        return f"{self.TRAIL_PREFIX}{trail_id}.json"

    def _persist(self, trail: AuditTrail) -> None:
        try:
            self.blob_store.put(self._key(trail.id), trail.model_dump_json())
        except PersistenceError:
            self._consecutive_failures += 1
            logger.error(
                f"Failed to persist trail {trail.id} "
                f"({self._consecutive_failures} consecutive failures)"
            )
            raise
        self._consecutive_failures = 0

    def save_all(self) -> None:
        """Persist every trail."""
        with self._lock:
            for trail in self._trails.values():
                self._persist(trail)

    def load(self) -> int:
        """Load persisted trails and restore the ledger's chain heads.

        Returns:
            Number of trails loaded
        """
        loaded = 0
        with self._lock:
            for key in self.blob_store.list_keys(self.TRAIL_PREFIX):
                if not key.endswith(".json"):
                    continue
                try:
                    trail = AuditTrail.model_validate_json(self.blob_store.get(key) or b"")
                except PydanticValidationError as e:
                    logger.error(f"Skipped unreadable audit trail blob {key}: {e}")
                    continue

                self._trails[trail.id] = trail
                self.ledger.seed(trail.id, trail.head_hash, trail.head_sequence)
                loaded += 1

        if loaded:
            logger.info(f"Loaded {loaded} audit trails")
        return loaded

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def storage_health(self) -> str:
        return "degraded" if self._consecutive_failures >= self.degraded_after else "healthy"
