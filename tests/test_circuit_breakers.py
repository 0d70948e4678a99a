"""
Tests for blob store circuit breakers
"""

import pybreaker
import pytest

from app.config import settings
from app.services.monitoring import circuit_breakers
from app.services.monitoring.circuit_breakers import CircuitBreakerError, get_breaker
from app.services.storage.local_store import LocalBlobStore


@pytest.fixture(autouse=True)
def fresh_breakers(monkeypatch):
    monkeypatch.setattr(circuit_breakers, "_breakers", {})


def test_unknown_service():
    with pytest.raises(ValueError):
        get_breaker("smtp")


def test_breaker_is_shared_per_service():
    assert get_breaker("gcs") is get_breaker("gcs")
    assert get_breaker("gcs") is not get_breaker("local_storage")


def test_local_store_opens_circuit_after_repeated_failures(tmp_path):
    # A file where the upload directory should be makes every write fail
    blocker = tmp_path / "uploads"
    blocker.write_bytes(b"not a directory")
    store = LocalBlobStore(root_dir=str(blocker), public_prefix="/uploads")

    for _ in range(settings.circuit_breaker_fail_max):
        with pytest.raises((OSError, CircuitBreakerError)):
            store.put("records/1/a.jpg", b"x", "image/jpeg")

    assert get_breaker("local_storage").current_state == pybreaker.STATE_OPEN
    with pytest.raises(CircuitBreakerError):
        store.put("records/1/b.jpg", b"x", "image/jpeg")
