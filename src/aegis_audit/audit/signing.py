"""Event signing with Ed25519 for non-repudiation of sealed events."""

import base64
import logging
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from aegis_audit.common.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class EventSigner:
    """Signs event hashes and verifies signatures.
    
    Unsigned events remain chain-verifiable; a signature additionally
    ties the event to the holder of the private key.
    """
    
    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self._public_key: Ed25519PublicKey = private_key.public_key()
    
    @classmethod
    def generate(cls) -> "EventSigner":
        """Create a signer with a fresh, process-local key."""
        logger.warning(
            "Using an ephemeral signing key; signatures cannot be verified "
            "after restart. Set AEGIS_AUDIT_SIGNING_KEY for a persistent key."
        )
        return cls(Ed25519PrivateKey.generate())
    
    @classmethod
    def from_pem_file(
        cls, path: Union[str, Path], password: Optional[bytes] = None
    ) -> "EventSigner":
        """Load a PEM-encoded Ed25519 private key."""
        try:
            data = Path(path).read_bytes()
            key = serialization.load_pem_private_key(data, password=password)
        except (OSError, ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Could not load signing key from {path}: {e}"
            ) from e
        
        if not isinstance(key, Ed25519PrivateKey):
            raise ConfigurationError(f"Signing key at {path} is not an Ed25519 key")
        return cls(key)
    
    def sign(self, event_hash: str) -> str:
        """Sign an event hash; returns base64 signature."""
        signature = self._private_key.sign(event_hash.encode("utf-8"))
        return base64.b64encode(signature).decode("ascii")
    
    def verify(self, event_hash: str, signature: str) -> bool:
        """Check a signature produced by sign()."""
        try:
            self._public_key.verify(
                base64.b64decode(signature.encode("ascii")),
                event_hash.encode("utf-8"),
            )
            return True
        except (InvalidSignature, ValueError):
            return False
    
    def public_key_pem(self) -> str:
        """Public key for distribution to verifiers."""
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
