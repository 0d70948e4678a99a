"""
Storage Services

Blob store capability interface with local filesystem and GCS backends.
"""

from typing import Optional

from app.config import settings
from .base import BlobStore, BlobDeleteOutcome, BlobInfo
from .keys import generate_blob_key, sanitize_filename
from .local_store import LocalBlobStore

_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """
    Return the configured blob store (lazily created singleton).

    settings.blob_backend selects "local" (default) or "gcs".
    """
    global _blob_store

    if _blob_store is None:
        backend = settings.blob_backend.lower()
        if backend == "local":
            _blob_store = LocalBlobStore()
        elif backend == "gcs":
            # Imported lazily so local runs don't need GCS credentials
            from .gcs_store import GCSBlobStore
            _blob_store = GCSBlobStore()
        else:
            raise ValueError(f"Unknown blob backend: {settings.blob_backend}. Must be 'local' or 'gcs'")

    return _blob_store


__all__ = [
    "BlobStore",
    "BlobDeleteOutcome",
    "BlobInfo",
    "LocalBlobStore",
    "generate_blob_key",
    "sanitize_filename",
    "get_blob_store",
]
