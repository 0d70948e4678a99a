"""
Google Cloud Storage Blob Store

Uploads attachment images to a GCS bucket. Locations are either
gs://bucket/key URLs or, when settings.gcs_public_base_url is set,
public HTTPS URLs built from that base.
"""

from typing import Dict, Iterable, List, Optional

import structlog
from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from app.config import settings
from app.services.storage.base import BlobDeleteOutcome, BlobInfo, BlobStore
from app.services.monitoring.circuit_breakers import get_breaker


logger = structlog.get_logger(__name__)


class GCSBlobStore(BlobStore):
    """
    GCS-backed blob store with batched deletes.

    Every call passes settings.store_call_timeout_seconds to the client
    and goes through the "gcs" circuit breaker.
    """

    supports_bulk_delete = True

    def __init__(
        self,
        bucket_name: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client: Optional[storage.Client] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize store with optional overrides.

        Args:
            bucket_name: GCS bucket name. Defaults to settings.gcs_bucket_name.
            public_base_url: Base for returned locations. Defaults to settings.gcs_public_base_url.
            client: Pre-built storage client (tests inject a mock)
            timeout: Per-call timeout in seconds. Defaults to settings.store_call_timeout_seconds.
        """
        self.bucket_name = bucket_name or settings.gcs_bucket_name
        if not self.bucket_name:
            raise ValueError("GCS_BUCKET_NAME must be configured for the gcs blob backend")

        base = public_base_url if public_base_url is not None else settings.gcs_public_base_url
        self.public_base_url = base.rstrip("/") if base else None
        self.timeout = timeout or settings.store_call_timeout_seconds
        self._client = client
        self._breaker = get_breaker("gcs")
        # A missing blob is an expected outcome, not a service failure
        if gcs_exceptions.NotFound not in self._breaker.excluded_exceptions:
            self._breaker.add_excluded_exception(gcs_exceptions.NotFound)

    @property
    def client(self) -> storage.Client:
        """Lazy-initialize GCS client."""
        if self._client is None:
            self._client = storage.Client()
        return self._client

    @property
    def bucket(self) -> storage.Bucket:
        return self.client.bucket(self.bucket_name)

    def _parse_gcs_url(self, gcs_url: str) -> tuple[str, str]:
        """
        Parse GCS URL into bucket name and blob path.

        Args:
            gcs_url: URL in format gs://bucket/path/to/file

        Returns:
            Tuple of (bucket_name, blob_path)

        Raises:
            ValueError: If URL is not a valid GCS URL
        """
        if not gcs_url.startswith("gs://"):
            raise ValueError(f"Invalid GCS URL (must start with gs://): {gcs_url}")

        parts = gcs_url[5:].split("/", 1)
        if len(parts) != 2 or not parts[1]:
            raise ValueError(f"Invalid GCS URL (missing path): {gcs_url}")

        return parts[0], parts[1]

    def _location_for_key(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"gs://{self.bucket_name}/{key}"

    def key_for_location(self, location: str) -> str:
        if location.startswith("gs://"):
            bucket_name, blob_path = self._parse_gcs_url(location)
            if bucket_name != self.bucket_name:
                raise ValueError(f"Location belongs to another bucket: {location}")
            return blob_path

        if self.public_base_url and location.startswith(self.public_base_url + "/"):
            return location[len(self.public_base_url) + 1:]

        raise ValueError(f"Location does not belong to GCS store: {location}")

    def put(self, key: str, data: bytes, content_type: str) -> str:
        blob = self.bucket.blob(key)
        self._breaker.call(
            blob.upload_from_string,
            data,
            content_type=content_type,
            timeout=self.timeout,
        )
        logger.debug("blob_uploaded", bucket=self.bucket_name, key=key, size_bytes=len(data))
        return self._location_for_key(key)

    def get(self, key: str) -> bytes:
        blob = self.bucket.blob(key)
        try:
            return self._breaker.call(blob.download_as_bytes, timeout=self.timeout)
        except gcs_exceptions.NotFound:
            raise KeyError(key)

    def delete(self, keys: Iterable[str]) -> Dict[str, BlobDeleteOutcome]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}

        log = logger.bind(bucket=self.bucket_name, key_count=len(keys))
        missing = set()

        def _on_missing(blob):
            missing.add(blob.name)

        bucket = self.bucket
        try:
            self._breaker.call(
                bucket.delete_blobs,
                [bucket.blob(key) for key in keys],
                on_error=_on_missing,
                timeout=self.timeout,
            )
            log.debug("blobs_deleted", missing=len(missing))
            return {
                key: BlobDeleteOutcome(key=key, ok=True, missing=key in missing)
                for key in keys
            }
        except Exception as e:
            # Batch stopped part way; retry per key to learn each outcome
            log.warning("bulk_delete_failed_retrying_per_key", error=str(e))

        return {key: self._delete_one(key) for key in keys}

    def _delete_one(self, key: str) -> BlobDeleteOutcome:
        blob = self.bucket.blob(key)
        try:
            self._breaker.call(blob.delete, timeout=self.timeout)
            return BlobDeleteOutcome(key=key, ok=True)
        except gcs_exceptions.NotFound:
            return BlobDeleteOutcome(key=key, ok=True, missing=True)
        except Exception as e:
            logger.warning("blob_delete_failed", bucket=self.bucket_name, key=key, error=str(e))
            return BlobDeleteOutcome(key=key, ok=False, error=str(e))

    def list_blobs(self, prefix: str) -> List[BlobInfo]:
        blobs = self._breaker.call(
            lambda: list(self.client.list_blobs(self.bucket_name, prefix=prefix, timeout=self.timeout))
        )
        return [BlobInfo(key=blob.name, updated_at=blob.updated) for blob in blobs]
