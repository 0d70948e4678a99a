"""
Shared fixtures: a throwaway SQLite database and an in-memory blob store
"""

import os
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import pytest

os.environ.setdefault("ENVIRONMENT", "testing")

from app.database import Base, build_engine, build_session_factory
from app.services.storage.base import BlobDeleteOutcome, BlobInfo, BlobStore
import app.models  # noqa: F401  (registers tables on Base.metadata)


class InMemoryBlobStore(BlobStore):
    """
    Dict-backed BlobStore with injectable failures.

    fail_put_names: original filenames (matched as a key suffix) whose put raises
    fail_delete_keys: keys whose delete reports an error
    block_put: when set, put() waits on this event before storing
    block_put_names: limits block_put to these filenames (all puts block when empty)
    """

    def __init__(self, supports_bulk_delete: bool = True):
        self.supports_bulk_delete = supports_bulk_delete
        self.blobs: Dict[str, bytes] = {}
        self.updated: Dict[str, datetime] = {}
        self.fail_put_names: set = set()
        self.fail_delete_keys: set = set()
        self.block_put: Optional[threading.Event] = None
        self.block_put_names: set = set()
        self.delete_calls: List[List[str]] = []
        self.put_calls: List[str] = []
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self.put_calls.append(key)
        if self.block_put is not None and (
            not self.block_put_names or any(key.endswith(name) for name in self.block_put_names)
        ):
            self.block_put.wait()
        if any(key.endswith(name) for name in self.fail_put_names):
            raise IOError(f"simulated upload failure for {key}")
        with self._lock:
            self.blobs[key] = data
            self.updated[key] = datetime.now(timezone.utc)
        return f"mem://{key}"

    def get(self, key: str) -> bytes:
        with self._lock:
            return self.blobs[key]

    def delete(self, keys: Iterable[str]) -> Dict[str, BlobDeleteOutcome]:
        keys = list(keys)
        outcomes = {}
        with self._lock:
            self.delete_calls.append(keys)
            for key in keys:
                if key in self.fail_delete_keys:
                    outcomes[key] = BlobDeleteOutcome(key=key, ok=False, error="simulated delete failure")
                    continue
                existed = self.blobs.pop(key, None) is not None
                self.updated.pop(key, None)
                outcomes[key] = BlobDeleteOutcome(key=key, ok=True, missing=not existed)
        return outcomes

    def key_for_location(self, location: str) -> str:
        if not location.startswith("mem://"):
            raise ValueError(f"Location does not belong to memory store: {location}")
        return location[len("mem://"):]

    def list_blobs(self, prefix: str) -> List[BlobInfo]:
        with self._lock:
            return [
                BlobInfo(key=key, updated_at=self.updated.get(key))
                for key in self.blobs
                if key.startswith(prefix)
            ]


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads share the same database."""
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def unbatched_blob_store():
    return InMemoryBlobStore(supports_bulk_delete=False)


@pytest.fixture
def make_record(session_factory):
    """Create a record row and return its id."""
    from app.services.record_repository import RecordRepository

    repository = RecordRepository(session_factory)

    def _make(name="Torikizoku", rating=4, genre="Yakitori", **extra):
        return repository.create({"name": name, "rating": rating, "genre": genre, **extra}).id

    return _make
