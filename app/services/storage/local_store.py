"""
Local Filesystem Blob Store

Writes uploads below settings.local_upload_dir. Locations are URL paths
under settings.local_public_prefix, which the app serves as static files.
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import structlog

from app.config import settings
from app.services.storage.base import BlobDeleteOutcome, BlobInfo, BlobStore
from app.services.monitoring.circuit_breakers import get_breaker


logger = structlog.get_logger(__name__)


class LocalBlobStore(BlobStore):
    """
    Filesystem-backed blob store.

    Writes go to a temp file in the target directory first and are then
    renamed into place, so a reader never sees a half-written image.
    """

    supports_bulk_delete = False

    def __init__(self, root_dir: Optional[str] = None, public_prefix: Optional[str] = None):
        """
        Args:
            root_dir: Upload directory. Defaults to settings.local_upload_dir.
            public_prefix: URL prefix of returned locations. Defaults to settings.local_public_prefix.
        """
        self.root = Path(root_dir or settings.local_upload_dir).resolve()
        self.public_prefix = "/" + (public_prefix or settings.local_public_prefix).strip("/")
        self._breaker = get_breaker("local_storage")

    def _path_for_key(self, key: str) -> Path:
        """Map a key to a path, refusing keys that escape the upload root."""
        path = (self.root / key).resolve()
        if path == self.root or self.root not in path.parents:
            raise ValueError(f"Invalid blob key (outside upload root): {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for_key(key)
        self._breaker.call(self._write_file, path, data)
        logger.debug("blob_written", key=key, size_bytes=len(data), content_type=content_type)
        return f"{self.public_prefix}/{key}"

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(temp_path, path)
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

    def get(self, key: str) -> bytes:
        path = self._path_for_key(key)
        if not path.is_file():
            raise KeyError(key)
        return self._breaker.call(path.read_bytes)

    def delete(self, keys: Iterable[str]) -> Dict[str, BlobDeleteOutcome]:
        outcomes: Dict[str, BlobDeleteOutcome] = {}
        for key in keys:
            try:
                path = self._path_for_key(key)
                existed = self._breaker.call(self._unlink, path)
                outcomes[key] = BlobDeleteOutcome(key=key, ok=True, missing=not existed)
            except Exception as e:
                logger.warning("blob_delete_failed", key=key, error=str(e))
                outcomes[key] = BlobDeleteOutcome(key=key, ok=False, error=str(e))
        return outcomes

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def key_for_location(self, location: str) -> str:
        marker = self.public_prefix + "/"
        if not location.startswith(marker):
            raise ValueError(f"Location does not belong to local store: {location}")
        return location[len(marker):]

    def list_blobs(self, prefix: str) -> List[BlobInfo]:
        base = self.root / prefix.strip("/") if prefix.strip("/") else self.root
        if not base.exists():
            return []

        blobs = []
        for path in base.rglob("*"):
            if not path.is_file() or path.name.startswith(".upload-"):
                continue
            updated_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            blobs.append(BlobInfo(key=path.relative_to(self.root).as_posix(), updated_at=updated_at))
        return blobs
