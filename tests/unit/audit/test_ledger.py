"""Unit tests for the hash chain ledger and event signing."""

import hashlib
import threading

import pytest

from aegis_audit.audit.ledger import HashChainLedger, canonical_json, sha256_hex
from aegis_audit.audit.schemas import GENESIS_HASH
from aegis_audit.audit.signing import EventSigner
from aegis_audit.common.exceptions import (
    AuditLogIntegrityError,
    ConfigurationError,
    HashComputationError,
)


class TestCanonicalJson:
    """Test deterministic serialization."""

    def test_sorted_keys_no_whitespace(self):
        """Test key order and separators do not depend on input order."""
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
        assert canonical_json({"a": [1, 2], "b": 1}) == canonical_json({"b": 1, "a": [1, 2]})

    def test_sha256_provider(self):
        """Test default hash provider is hex SHA-256."""
        assert sha256_hex(b"abc") == hashlib.sha256(b"abc").hexdigest()


class TestStamp:
    """Test sealing events onto trail chains."""

    def test_first_event_links_to_genesis(self, ledger, make_event):
        """Test the first event in a trail chains from the genesis hash."""
        sealed = ledger.stamp(make_event())

        assert sealed.previous_hash == GENESIS_HASH
        assert sealed.sequence == 1
        assert len(sealed.hash) == 64
        assert ledger.head("default") == sealed.hash

    def test_consecutive_events_chain(self, ledger, make_event):
        """Test each event's previous_hash is its predecessor's hash."""
        first = ledger.stamp(make_event())
        second = ledger.stamp(make_event())

        assert second.previous_hash == first.hash
        assert second.sequence == 2
        assert first.hash != second.hash

    def test_trails_have_independent_chains(self, ledger, make_event):
        """Test chains are kept per trail."""
        a = ledger.stamp(make_event(trail_id="a"))
        b = ledger.stamp(make_event(trail_id="b"))

        assert a.previous_hash == GENESIS_HASH
        assert b.previous_hash == GENESIS_HASH
        assert b.sequence == 1

    def test_hash_matches_recomputation(self, ledger, make_event):
        """Test the stored hash is the hash of the canonical payload."""
        sealed = ledger.stamp(make_event(details={"field": "email"}))
        assert ledger.compute_hash(sealed) == sealed.hash
        assert ledger.verify_event(sealed)

    def test_injected_hash_provider(self, make_event):
        """Test a custom hash provider is used for sealing."""
        ledger = HashChainLedger(hash_provider=lambda data: "f" * 64)
        assert ledger.stamp(make_event()).hash == "f" * 64

    def test_failed_hash_does_not_advance_head(self, make_event):
        """Test the head is untouched when hashing fails."""
        def broken(data):
            raise RuntimeError("hsm unavailable")

        ledger = HashChainLedger(hash_provider=broken)
        with pytest.raises(HashComputationError):
            ledger.stamp(make_event())
        assert ledger.head("default") == GENESIS_HASH

    def test_seed_restores_head(self, ledger, make_event):
        """Test stamping continues from a seeded head."""
        ledger.seed("default", "a" * 64, 41)
        sealed = ledger.stamp(make_event())
        assert sealed.previous_hash == "a" * 64
        assert sealed.sequence == 42

    def test_concurrent_stamps_never_share_previous_hash(self, ledger, make_event):
        """Test the chain stays linear under concurrent writers."""
        events = [make_event() for _ in range(200)]
        sealed = []
        lock = threading.Lock()

        def worker(chunk):
            for event in chunk:
                result = ledger.stamp(event)
                with lock:
                    sealed.append(result)

        threads = [threading.Thread(target=worker, args=(events[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ordered = sorted(sealed, key=lambda e: e.sequence)
        assert [e.sequence for e in ordered] == list(range(1, 201))
        assert len({e.previous_hash for e in ordered}) == 200
        assert ledger.verify_chain(ordered)


class TestVerifyChain:
    """Test chain verification and tamper detection."""

    @pytest.fixture
    def chain(self, ledger, make_event):
        return [ledger.stamp(make_event()) for _ in range(5)]

    def test_intact_chain_verifies(self, ledger, chain):
        """Test an untouched chain verifies."""
        assert ledger.verify_chain(chain) is True

    def test_empty_chain_verifies(self, ledger):
        """Test there is nothing to break in an empty chain."""
        assert ledger.verify_chain([]) is True

    def test_modified_event_detected(self, ledger, chain):
        """Test editing a sealed field breaks the event hash."""
        chain[2] = chain[2].model_copy(update={"action": "record_deleted"})

        with pytest.raises(AuditLogIntegrityError) as exc_info:
            ledger.verify_chain(chain)
        assert "hash mismatch" in exc_info.value.message
        assert exc_info.value.details["position"] == 2

    def test_rehashed_event_breaks_link(self, ledger, chain):
        """Test re-hashing a tampered event is caught by its successor's link."""
        tampered = chain[1].model_copy(update={"action": "record_deleted"})
        chain[1] = tampered.model_copy(update={"hash": ledger.compute_hash(tampered)})

        with pytest.raises(AuditLogIntegrityError) as exc_info:
            ledger.verify_chain(chain)
        assert "chain broken" in exc_info.value.message
        assert exc_info.value.details["position"] == 2

    def test_removed_event_detected(self, ledger, chain):
        """Test deleting an event from the middle is reported as missing."""
        del chain[2]
        with pytest.raises(AuditLogIntegrityError, match="Events missing"):
            ledger.verify_chain(chain)

    def test_gap_map_allows_purged_predecessor(self, ledger, chain):
        """Test a retention gap lets verification skip a purged event."""
        purged = chain.pop(2)
        assert ledger.verify_chain(chain, gaps={purged.sequence + 1: purged.hash})

    def test_anchor_checked_on_first_event(self, ledger, chain):
        """Test the first retained event must link to the anchor."""
        assert ledger.verify_chain(chain[2:], anchor=chain[1].hash)
        with pytest.raises(AuditLogIntegrityError):
            ledger.verify_chain(chain[2:])


class TestEventSigner:
    """Test Ed25519 signatures."""

    def test_sign_and_verify(self, signer):
        """Test a signature verifies against the signed hash only."""
        signature = signer.sign("a" * 64)
        assert signer.verify("a" * 64, signature)
        assert not signer.verify("b" * 64, signature)

    def test_garbage_signature_rejected(self, signer):
        """Test malformed signatures fail verification without raising."""
        assert signer.verify("a" * 64, "not-base64!") is False

    def test_other_key_rejected(self, signer):
        """Test a signature from another key does not verify."""
        other = EventSigner.generate()
        assert not signer.verify("a" * 64, other.sign("a" * 64))

    def test_encrypted_events_are_signed(self, ledger, make_event):
        """Test encrypt=True events carry a verifiable signature."""
        signed = ledger.stamp(make_event(encrypted=True))
        plain = ledger.stamp(make_event())

        assert signed.signature
        assert ledger.verify_signature(signed)
        assert plain.signature is None
        assert ledger.verify_signature(plain) is False

    def test_public_key_pem(self, signer):
        """Test the public key is exported as PEM."""
        assert signer.public_key_pem().startswith("-----BEGIN PUBLIC KEY-----")

    def test_from_pem_file(self, tmp_path):
        """Test a persisted private key can be loaded."""
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

        key = Ed25519PrivateKey.generate()
        path = tmp_path / "signing.pem"
        path.write_bytes(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ))

        signer = EventSigner.from_pem_file(path)
        assert signer.verify("x", EventSigner(key).sign("x"))

    def test_from_missing_pem_file(self, tmp_path):
        """Test a missing key file is a configuration error."""
        with pytest.raises(ConfigurationError):
            EventSigner.from_pem_file(tmp_path / "missing.pem")
