"""
Tests for the filesystem blob store
"""

import pytest

from app.services.storage.local_store import LocalBlobStore


@pytest.fixture
def store(tmp_path):
    return LocalBlobStore(root_dir=str(tmp_path / "uploads"), public_prefix="/uploads")


class TestLocalBlobStore:

    def test_put_get_and_location(self, store):
        location = store.put("records/1/123-abc-a.jpg", b"jpeg-bytes", "image/jpeg")

        assert location == "/uploads/records/1/123-abc-a.jpg"
        assert store.key_for_location(location) == "records/1/123-abc-a.jpg"
        assert store.get("records/1/123-abc-a.jpg") == b"jpeg-bytes"

    def test_put_overwrites(self, store):
        store.put("records/1/k.jpg", b"one", "image/jpeg")
        store.put("records/1/k.jpg", b"two", "image/jpeg")

        assert store.get("records/1/k.jpg") == b"two"

    def test_get_missing(self, store):
        with pytest.raises(KeyError):
            store.get("records/1/missing.jpg")

    def test_delete_is_idempotent(self, store):
        store.put("records/1/k.jpg", b"x", "image/jpeg")

        first = store.delete(["records/1/k.jpg"])
        second = store.delete(["records/1/k.jpg"])

        assert first["records/1/k.jpg"].ok and not first["records/1/k.jpg"].missing
        assert second["records/1/k.jpg"].ok and second["records/1/k.jpg"].missing

    def test_traversal_key_is_rejected(self, store):
        with pytest.raises(ValueError):
            store.put("../outside.jpg", b"x", "image/jpeg")

        outcome = store.delete(["../../etc/passwd"])["../../etc/passwd"]
        assert not outcome.ok

    def test_foreign_location(self, store):
        with pytest.raises(ValueError):
            store.key_for_location("https://example.com/a.jpg")

    def test_list_blobs_by_prefix(self, store):
        store.put("records/1/a.jpg", b"a", "image/jpeg")
        store.put("records/2/b.jpg", b"b", "image/jpeg")
        store.put("other/c.jpg", b"c", "image/jpeg")

        keys = sorted(blob.key for blob in store.list_blobs("records/"))

        assert keys == ["records/1/a.jpg", "records/2/b.jpg"]
        assert all(blob.updated_at is not None for blob in store.list_blobs("records/"))
        assert store.list_blobs("nothing/") == []
