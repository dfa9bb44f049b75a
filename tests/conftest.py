"""Shared fixtures for AegisAudit tests."""

from typing import Dict

import pytest

from aegis_audit.audit.blob_store import InMemoryBlobStore
from aegis_audit.audit.ledger import HashChainLedger
from aegis_audit.audit.schemas import AuditActor, AuditEvent, AuditEventType, AuditResource
from aegis_audit.audit.signing import EventSigner
from aegis_audit.common.clock import ManualClock, sequential_ids
from aegis_audit.common.config import Config, Environment, StorageType
from aegis_audit.common.ticker import ManualTicker
from aegis_audit.service import AuditService


class TickerRecorder:
    """Ticker factory that hands out ManualTickers and remembers them by name."""

    def __init__(self):
        self.tickers: Dict[str, ManualTicker] = {}

    def __call__(self, name, interval, callback) -> ManualTicker:
        ticker = ManualTicker(name, interval, callback)
        self.tickers[name] = ticker
        return ticker


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture(scope="session")
def signer():
    return EventSigner.generate()


@pytest.fixture
def ledger(signer):
    return HashChainLedger(signer=signer)


@pytest.fixture
def make_event(clock):
    """Build unsealed events with sensible defaults."""
    ids = sequential_ids("evt")

    def _make(event_type=AuditEventType.USER_ACTION, action="record_viewed", **overrides):
        fields = {
            "id": ids(),
            "timestamp": clock.now(),
            "type": event_type,
            "action": action,
            "actor": AuditActor(id="u1"),
            "resource": AuditResource(id="s1"),
        }
        fields.update(overrides)
        return AuditEvent(**fields)

    return _make


@pytest.fixture
def config(tmp_path):
    return Config(
        environment=Environment.DEVELOPMENT,
        storage_type=StorageType.MEMORY,
        data_dir=tmp_path,
        max_buffer_size=100,
        publish_cloudwatch=False,
        rules_file=None,
        signing_key_file=None,
    )


@pytest.fixture
def tickers():
    return TickerRecorder()


@pytest.fixture
def service(config, blob_store, clock, tickers, signer):
    """Initialized AuditService with deterministic time, ids and tickers."""
    svc = AuditService(
        config=config,
        blob_store=blob_store,
        clock=clock,
        id_factory=sequential_ids("id"),
        signer=signer,
        ticker_factory=tickers,
    )
    svc.initialize()
    yield svc
    svc.cleanup()
