"""Event Buffer - in-memory accumulation of sealed events between flushes."""

import logging
import threading
from typing import List, Sequence

from aegis_audit.audit.schemas import AuditEvent
from aegis_audit.common.constants import AuditConstants

logger = logging.getLogger(__name__)


class EventBuffer:
    """Lock-guarded FIFO of sealed events awaiting ingest.
    
    Callers append in chain order; drain() hands the whole batch to the
    flusher and requeue() puts a failed batch back in front of anything
    appended since.
    """
    
    def __init__(self, max_size: int = AuditConstants.MAX_BUFFER_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()
    
    def append(self, event: AuditEvent) -> bool:
        """Add an event.
        
        Returns:
            True when the buffer has reached max_size and should be flushed
        """
        with self._lock:
            self._events.append(event)
            return len(self._events) >= self.max_size
    
    def drain(self) -> List[AuditEvent]:
        """Remove and return everything buffered."""
        with self._lock:
            batch, self._events = self._events, []
            return batch
    
    def requeue(self, batch: Sequence[AuditEvent]) -> None:
        """Return a batch that could not be ingested to the front of the buffer."""
        if not batch:
            return
        with self._lock:
            self._events = list(batch) + self._events
        logger.warning(f"Requeued {len(batch)} audit events after failed flush")
    
    def __contains__(self, event_id: str) -> bool:
        with self._lock:
            return any(e.id == event_id for e in self._events)
    
    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
