"""S3-backed blob store for durable, versioned audit state."""

import logging
import os
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError

from aegis_audit.audit.blob_store import Blob, BlobStore
from aegis_audit.common.exceptions import ConfigurationError, PersistenceError

logger = logging.getLogger(__name__)


class S3BlobStore(BlobStore):
    """S3-backed blob store.
    
    Every put() writes a whole object; with bucket versioning enabled
    previous versions of trails stay recoverable.
    """
    
    DEFAULT_REGION = "us-east-1"
    DEFAULT_PREFIX = "aegis-audit/"
    
    def __init__(self, bucket_name: Optional[str] = None,
                 prefix: str = DEFAULT_PREFIX,
                 region: Optional[str] = None, aws_profile: Optional[str] = None,
                 enable_versioning: bool = True):
        self.bucket_name = bucket_name or os.environ.get("AEGIS_AUDIT_S3_BUCKET")
        if not self.bucket_name:
            raise ConfigurationError(
                "S3 bucket name required. Set AEGIS_AUDIT_S3_BUCKET or pass bucket_name."
            )
        
        self.prefix = prefix
        self.region = region or os.environ.get("AWS_DEFAULT_REGION", self.DEFAULT_REGION)
        self.enable_versioning = enable_versioning
        
        if aws_profile:
            session = boto3.Session(profile_name=aws_profile)
            self.s3_client = session.client("s3", region_name=self.region)
        else:
            self.s3_client = boto3.client("s3", region_name=self.region)
        
        self._ensure_bucket_configured()
        
        logger.info(
            f"Initialized S3BlobStore: bucket={self.bucket_name}, "
            f"prefix={self.prefix}, versioning={self.enable_versioning}"
        )
    
    def _ensure_bucket_configured(self) -> None:
        """Ensure S3 bucket exists and enable versioning if requested."""
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchBucket"):
                raise ConfigurationError(f"S3 bucket {self.bucket_name} does not exist") from e
            raise
        
        if self.enable_versioning:
            try:
                self.s3_client.put_bucket_versioning(
                    Bucket=self.bucket_name,
                    VersioningConfiguration={"Status": "Enabled"}
                )
            except ClientError as e:
                logger.warning(f"Could not enable versioning: {e}")
    
    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"
    
    def get(self, key: str) -> Optional[bytes]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=self._key(key))
            return response["Body"].read()
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return None
            logger.error(f"Failed to read s3://{self.bucket_name}/{self._key(key)}: {e}")
            raise PersistenceError(f"S3 read failed: {e}", key=key) from e
    
    def put(self, key: str, data: Blob) -> None:
        content_type = "application/json" if key.endswith(".json") else "application/octet-stream"
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=self._key(key),
                Body=self._to_bytes(data),
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
            logger.debug(f"Wrote s3://{self.bucket_name}/{self._key(key)}")
        except ClientError as e:
            logger.error(f"Failed to write to S3: {e}")
            raise PersistenceError(f"S3 write failed: {e}", key=key) from e
    
    def delete(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._key(key))
        except ClientError as e:
            raise PersistenceError(f"S3 delete failed: {e}", key=key) from e
    
    def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self._key(prefix)):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"][len(self.prefix):])
        except ClientError as e:
            logger.error(f"Failed to list S3 objects: {e}")
            raise PersistenceError(f"S3 list failed: {e}") from e
        return sorted(keys)
    
    def location(self, key: str) -> str:
        return f"s3://{self.bucket_name}/{self._key(key)}"
