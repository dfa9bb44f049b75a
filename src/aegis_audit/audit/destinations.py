"""Forwarding destinations - where forwarded event batches are delivered.

A destination is resolved from the URI scheme of a forwarding rule:

    log://<logger-name>         stdlib logging (INFO)
    file:///var/log/audit.log   append to a local file
    http(s)://host/path         POST via httpx
    s3://bucket/prefix          one object per batch via boto3

Additional schemes can be registered on a DestinationRegistry.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional
from urllib.parse import urlparse
from uuid import uuid4

import boto3
import httpx
from botocore.exceptions import ClientError

from aegis_audit.common.constants import ForwardingConstants
from aegis_audit.common.exceptions import ForwardingError

logger = logging.getLogger(__name__)


class Destination(ABC):
    """A sink for encoded event batches."""

    def __init__(self, uri: str):
        self.uri = uri

    @abstractmethod
    def send(self, payload: str, content_type: str) -> None:
        """Deliver one batch.

        Raises:
            ForwardingError: If delivery fails
        """

    def close(self) -> None:
        """Release any held resources."""


class LogDestination(Destination):
    """Writes batches to a named logger."""

    def __init__(self, uri: str):
        super().__init__(uri)
        name = urlparse(uri).netloc or "forwarded"
        self._logger = logging.getLogger(f"aegis_audit.forwarded.{name}")

    def send(self, payload: str, content_type: str) -> None:
        self._logger.info(payload)


class FileDestination(Destination):
    """Appends batches to a local file."""

    def __init__(self, uri: str):
        super().__init__(uri)
        parsed = urlparse(uri)
        self.path = Path(parsed.netloc + parsed.path)
        self._lock = threading.Lock()

    def send(self, payload: str, content_type: str) -> None:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(payload.rstrip("\n") + "\n")
            except OSError as e:
                raise ForwardingError(f"File write failed: {e}", destination=self.uri) from e


class HttpDestination(Destination):
    """POSTs batches to an HTTP endpoint; any non-2xx response is a failure."""

    def __init__(self, uri: str, client: Optional[httpx.Client] = None,
                 timeout: float = ForwardingConstants.HTTP_TIMEOUT_SECONDS):
        super().__init__(uri)
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, payload: str, content_type: str) -> None:
        try:
            response = self._client.post(
                self.uri,
                content=payload.encode("utf-8"),
                headers={"Content-Type": content_type},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ForwardingError(f"HTTP delivery failed: {e}", destination=self.uri) from e

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class S3Destination(Destination):
    """Writes each batch as a new S3 object."""

    EXTENSIONS = {
        "application/json": "json",
        "text/csv": "csv",
    }

    def __init__(self, uri: str, s3_client=None):
        super().__init__(uri)
        parsed = urlparse(uri)
        self.bucket = parsed.netloc
        self.prefix = parsed.path.lstrip("/")
        if self.prefix and not self.prefix.endswith("/"):
            self.prefix += "/"
        self.s3_client = s3_client or boto3.client("s3")

    def send(self, payload: str, content_type: str) -> None:
        ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        ext = self.EXTENSIONS.get(content_type, "log")
        key = f"{self.prefix}{ts}_{uuid4().hex}.{ext}"
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=payload.encode("utf-8"),
                ContentType=content_type,
            )
        except ClientError as e:
            raise ForwardingError(f"S3 delivery failed: {e}", destination=self.uri) from e


DestinationFactory = Callable[[str], Destination]


class DestinationRegistry:
    """Maps URI schemes to destination factories and caches instances per URI."""

    def __init__(self, http_client: Optional[httpx.Client] = None):
        self._factories: Dict[str, DestinationFactory] = {
            "log": LogDestination,
            "file": FileDestination,
            "http": lambda uri: HttpDestination(uri, client=http_client),
            "https": lambda uri: HttpDestination(uri, client=http_client),
            "s3": S3Destination,
        }
        self._instances: Dict[str, Destination] = {}
        self._lock = threading.Lock()

    def register(self, scheme: str, factory: DestinationFactory) -> None:
        """Register (or replace) the factory for a URI scheme."""
        with self._lock:
            self._factories[scheme.lower()] = factory

    def resolve(self, uri: str) -> Destination:
        """Get the destination for a URI.

        Raises:
            ForwardingError: If the scheme is not registered
        """
        with self._lock:
            destination = self._instances.get(uri)
            if destination is not None:
                return destination

            scheme = urlparse(uri).scheme.lower()
            factory = self._factories.get(scheme)
            if factory is None:
                raise ForwardingError(f"No destination registered for scheme '{scheme}'", destination=uri)

            destination = factory(uri)
            self._instances[uri] = destination
            return destination

    def close(self) -> None:
        with self._lock:
            for destination in self._instances.values():
                destination.close()
            self._instances.clear()
