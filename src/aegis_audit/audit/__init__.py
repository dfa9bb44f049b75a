"""Audit module - Tamper-evident, hash-chained audit trails.

Components:
- HashChainLedger: Canonical hashing and per-trail chain heads
- EventSigner: Ed25519 signatures for events logged with encrypt=True
- EventBuffer: Lock-guarded buffer between log_event and ingest
- AuditTrailStore: Trails, checksums, retention, search and export
- ForwardingDispatcher: Relays ingested events to external sinks
- BlobStore: Persistence backends (memory, local file, S3)
"""

from aegis_audit.audit.blob_store import BlobStore, FileBlobStore, InMemoryBlobStore
from aegis_audit.audit.buffer import EventBuffer
from aegis_audit.audit.config import create_blob_store, create_signer
from aegis_audit.audit.destinations import Destination, DestinationRegistry
from aegis_audit.audit.forwarding import ForwardingDispatcher, compile_filter, select_events
from aegis_audit.audit.ledger import HashChainLedger, canonical_json
from aegis_audit.audit.signing import EventSigner
from aegis_audit.audit.store import AuditTrailStore

__all__ = [
    "AuditTrailStore",
    "BlobStore",
    "Destination",
    "DestinationRegistry",
    "EventBuffer",
    "EventSigner",
    "FileBlobStore",
    "ForwardingDispatcher",
    "HashChainLedger",
    "InMemoryBlobStore",
    "canonical_json",
    "compile_filter",
    "create_blob_store",
    "create_signer",
    "select_events",
]
