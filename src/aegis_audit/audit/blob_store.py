"""Blob Store - key/value persistence for trails, rules, assessments and reports.

Backends implement four operations over opaque string keys. Keys use "/"
as a separator (e.g. "audit_trails/default.json"); backends map that onto
their own namespace.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

from aegis_audit.common.exceptions import PersistenceError

logger = logging.getLogger(__name__)


Blob = Union[str, bytes]


class BlobStore(ABC):
    """Abstract base class for blob storage backends.
    
    Implementations must be thread-safe. put() must either store the
    whole blob or raise PersistenceError.
    """
    
    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Read a blob.
        
        Returns:
            Blob contents, or None if the key does not exist
        """
        pass
    
    @abstractmethod
    def put(self, key: str, data: Blob) -> None:
        """Write a blob, replacing any previous value.
        
        Raises:
            PersistenceError: If the write fails
        """
        pass
    
    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a blob; missing keys are ignored."""
        pass
    
    @abstractmethod
    def list_keys(self, prefix: str = "") -> List[str]:
        """List keys starting with prefix, sorted."""
        pass
    
    def get_text(self, key: str) -> Optional[str]:
        data = self.get(key)
        return data.decode("utf-8") if data is not None else None
    
    def location(self, key: str) -> str:
        """Human-readable location of a key (path or URI)."""
        return key
    
    @staticmethod
    def _to_bytes(data: Blob) -> bytes:
        return data.encode("utf-8") if isinstance(data, str) else data


class InMemoryBlobStore(BlobStore):
    """Dictionary-backed store for tests and ephemeral deployments."""
    
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()
    
    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(key)
    
    def put(self, key: str, data: Blob) -> None:
        with self._lock:
            self._blobs[key] = self._to_bytes(data)
    
    def delete(self, key: str) -> None:
        with self._lock:
            self._blobs.pop(key, None)
    
    def list_keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._blobs if k.startswith(prefix))
    
    def location(self, key: str) -> str:
        return f"memory://{key}"


class FileBlobStore(BlobStore):
    """Local directory store with atomic replace on write.
    
    Features:
    - Write to a temporary sibling file, fsync, then os.replace()
    - Owner-only permissions on the root directory and blobs
    """
    
    def __init__(self, root: Union[str, Path], fsync_on_write: bool = True):
        """Initialize file blob store.
        
        Args:
            root: Directory holding the blobs. Created if missing.
            fsync_on_write: Whether to fsync before the atomic rename.
        """
        self.root = Path(root)
        self.fsync_on_write = fsync_on_write
        self._lock = threading.Lock()
        
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.root, 0o700)
        except OSError as e:
            logger.debug(f"Could not restrict permissions on {self.root}: {e}")
    
    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise PersistenceError(f"Key escapes store root: {key}", key=key)
        return path
    
    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read {key}: {e}", key=key) from e
    
    def put(self, key: str, data: Blob) -> None:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.tmp")
        
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                try:
                    os.write(fd, self._to_bytes(data))
                    if self.fsync_on_write:
                        os.fsync(fd)
                finally:
                    os.close(fd)
                os.replace(tmp_path, path)
            except OSError as e:
                logger.error(f"Failed to write blob {key}: {e}")
                raise PersistenceError(f"Failed to write {key}: {e}", key=key) from e
    
    def delete(self, key: str) -> None:
        with self._lock:
            try:
                self._path(key).unlink()
            except FileNotFoundError:
                return
            except OSError as e:
                raise PersistenceError(f"Failed to delete {key}: {e}", key=key) from e
    
    def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
    
    def location(self, key: str) -> str:
        return str(self._path(key))
