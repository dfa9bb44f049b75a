"""Audit layer factories.

Builds the blob store and event signer selected by Config:
- AEGIS_AUDIT_STORAGE_TYPE: "local" (default), "s3" or "memory"
- AEGIS_AUDIT_DATA_DIR: Directory for the local store
- AEGIS_AUDIT_S3_BUCKET / AEGIS_AUDIT_S3_PREFIX: S3 location
- AEGIS_AUDIT_SIGNING_KEY: PEM file with the Ed25519 signing key
"""

import logging
from typing import Optional

from aegis_audit.audit.blob_store import BlobStore, FileBlobStore, InMemoryBlobStore
from aegis_audit.audit.signing import EventSigner
from aegis_audit.common.config import Config, StorageType, get_config
from aegis_audit.common.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def create_blob_store(config: Optional[Config] = None, **kwargs) -> BlobStore:
    """Factory method to create the configured blob store.
    
    Args:
        config: Configuration; the process default if not provided
        **kwargs: Extra arguments for the backend constructor
        
    Returns:
        Configured BlobStore instance
    """
    config = config or get_config()
    
    if config.storage_type == StorageType.S3:
        from aegis_audit.audit.s3_store import S3BlobStore
        
        return S3BlobStore(
            bucket_name=config.s3_bucket,
            prefix=config.s3_prefix,
            region=config.aws_region,
            aws_profile=config.aws_profile,
            **kwargs
        )
    
    if config.storage_type == StorageType.LOCAL:
        logger.info(f"Using local blob store at {config.data_dir}")
        return FileBlobStore(config.data_dir, **kwargs)
    
    if config.storage_type == StorageType.MEMORY:
        logger.warning("Using in-memory blob store; audit state will not survive restart")
        return InMemoryBlobStore()
    
    raise ConfigurationError(f"Unknown storage type: {config.storage_type}")


def create_signer(config: Optional[Config] = None) -> Optional[EventSigner]:
    """Load the configured signing key, or None to let the ledger create one on demand."""
    config = config or get_config()
    if config.signing_key_file is None:
        return None
    return EventSigner.from_pem_file(config.signing_key_file)
