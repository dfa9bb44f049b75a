"""Hash Chain Ledger - canonical event hashing and chain heads.

Each trail is its own chain. The "read head, hash, advance head" sequence
for every chain runs under a single lock so that two concurrent writers
can never claim the same previous_hash.
"""

import hashlib
import json
import logging
import threading
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from aegis_audit.audit.schemas import GENESIS_HASH, AuditEvent
from aegis_audit.audit.signing import EventSigner
from aegis_audit.common.exceptions import (
    AuditLogIntegrityError,
    HashComputationError,
)

logger = logging.getLogger(__name__)


HashProvider = Callable[[bytes], str]


def sha256_hex(data: bytes) -> str:
    """Default hash provider."""
    return hashlib.sha256(data).hexdigest()


def canonical_json(payload: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )


class HashChainLedger:
    """Stamps events with previous_hash, sequence, hash and signature."""
    
    def __init__(
        self,
        hash_provider: Optional[HashProvider] = None,
        signer: Optional[EventSigner] = None,
    ):
        """Initialize ledger.
        
        Args:
            hash_provider: bytes -> hex digest. SHA-256 if not provided.
            signer: Signer for events logged with encrypt=True. A signer
                with an ephemeral key is created on first use if not provided.
        """
        self._hash = hash_provider or sha256_hex
        self._signer = signer
        
        # Single serialization point for all chain heads
        self._lock = threading.RLock()
        
        # trail_id -> (head hash, head sequence)
        self._heads: Dict[str, Tuple[str, int]] = {}
    
    @property
    def lock(self) -> threading.RLock:
        """The write lock; held by callers that must keep buffer order == chain order."""
        return self._lock
    
    @property
    def signer(self) -> EventSigner:
        if self._signer is None:
            self._signer = EventSigner.generate()
        return self._signer
    
    def next_hash(self, prev_hash: str, canonical_payload: Dict[str, Any]) -> str:
        """Hash of a payload chained onto prev_hash."""
        payload = dict(canonical_payload)
        payload["previousHash"] = prev_hash
        return self._hash(canonical_json(payload).encode("utf-8"))
    
    def digest(self, payload: Any) -> str:
        """Hash of any JSON-serializable payload in canonical form."""
        return self._hash(canonical_json(payload).encode("utf-8"))
    
    def compute_hash(self, event: AuditEvent) -> str:
        """Recompute the hash an event should carry."""
        return self.digest(event.canonical_payload())
    
    def head(self, trail_id: str) -> str:
        with self._lock:
            return self._heads.get(trail_id, (GENESIS_HASH, 0))[0]
    
    def seed(self, trail_id: str, head_hash: str, sequence: int) -> None:
        """Restore a chain head, e.g. after loading persisted trails."""
        with self._lock:
            self._heads[trail_id] = (head_hash, sequence)
    
    def stamp(self, event: AuditEvent) -> AuditEvent:
        """Seal an event onto the head of its trail's chain.
        
        Returns:
            A new event with previous_hash, sequence, hash (and signature
            when event.encrypted) populated.
            
        Raises:
            HashComputationError: If hashing or signing fails. The chain
                head is not advanced.
        """
        with self._lock:
            prev_hash, prev_seq = self._heads.get(event.trail_id, (GENESIS_HASH, 0))
            try:
                chained = event.model_copy(
                    update={"previous_hash": prev_hash, "sequence": prev_seq + 1}
                )
                digest = self.compute_hash(chained)
                signature = self.signer.sign(digest) if event.encrypted else None
            except Exception as e:
                logger.error(f"Failed to hash audit event {event.id}: {e}")
                raise HashComputationError(
                    f"Could not seal event {event.id}", details={"error": str(e)}
                ) from e
            
            sealed = chained.model_copy(update={"hash": digest, "signature": signature})
            self._heads[event.trail_id] = (digest, sealed.sequence)
            return sealed
    
    def verify_event(self, event: AuditEvent) -> bool:
        return self.compute_hash(event) == event.hash
    
    def verify_signature(self, event: AuditEvent) -> bool:
        """False for unsigned events."""
        if not event.signature:
            return False
        return self.signer.verify(event.hash, event.signature)
    
    def verify_chain(
        self,
        events: Iterable[AuditEvent],
        anchor: str = GENESIS_HASH,
        gaps: Optional[Dict[int, str]] = None,
    ) -> bool:
        """Verify hashes and links of an ordered event sequence.
        
        Args:
            events: Events in sequence order
            anchor: previous_hash expected on the first event
            gaps: sequence -> expected previous_hash, for events whose
                predecessor was removed by retention
            
        Returns:
            True if the chain is intact
            
        Raises:
            AuditLogIntegrityError: On the first broken link or bad hash
        """
        gaps = gaps or {}
        previous: Optional[AuditEvent] = None
        for position, event in enumerate(events):
            if previous is None:
                expected = anchor
            elif event.sequence == previous.sequence + 1:
                expected = previous.hash
            elif event.sequence in gaps:
                expected = gaps[event.sequence]
            else:
                raise AuditLogIntegrityError(
                    f"Events missing before position {position}: sequence jumps "
                    f"from {previous.sequence} to {event.sequence}",
                    details={"event_id": event.id, "position": position},
                )
            
            if event.previous_hash != expected:
                raise AuditLogIntegrityError(
                    f"Hash chain broken at position {position}. "
                    f"Expected previous_hash={expected}, got {event.previous_hash}",
                    details={"event_id": event.id, "position": position},
                )
            if not self.verify_event(event):
                raise AuditLogIntegrityError(
                    f"Event hash mismatch at position {position}. "
                    f"Event may have been tampered with.",
                    details={"event_id": event.id, "position": position},
                )
            previous = event
        return True
