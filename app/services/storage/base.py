"""
Blob Store Interface

Puts, deletes and lists opaque byte payloads under generated keys.
Two implementations share this contract: the local filesystem and
Google Cloud Storage.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional


@dataclass(frozen=True)
class BlobDeleteOutcome:
    """Result of deleting a single key."""
    key: str
    ok: bool
    missing: bool = False  # Key was already gone; still counts as success
    error: Optional[str] = None


@dataclass(frozen=True)
class BlobInfo:
    """A stored blob as seen by list_blobs()."""
    key: str
    updated_at: Optional[datetime] = None


class BlobStore(ABC):
    """
    Capability interface for byte storage.

    put() and delete() are idempotent: re-putting a key overwrites it and
    deleting a missing key is not an error.
    """

    supports_bulk_delete: bool = False

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store `data` under `key` and return the retrievable location."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the bytes stored under `key`.

        Raises:
            KeyError: If no blob exists under `key`
        """

    @abstractmethod
    def delete(self, keys: Iterable[str]) -> Dict[str, BlobDeleteOutcome]:
        """Delete every key, returning one outcome per key."""

    @abstractmethod
    def key_for_location(self, location: str) -> str:
        """Resolve a location returned by put() back to its key.

        Raises:
            ValueError: If the location does not belong to this store
        """

    @abstractmethod
    def list_blobs(self, prefix: str) -> List[BlobInfo]:
        """List blobs whose key starts with `prefix`."""
