"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = "sqlite:///./venue_catalog.db"
    auto_create_tables: bool = True  # Alembic is preferred outside of local runs

    # Environment
    environment: str = "development"

    # Blob Storage
    blob_backend: str = "local"  # "local" or "gcs"
    blob_key_prefix: str = "records"
    local_upload_dir: str = "./public/uploads"
    local_public_prefix: str = "/uploads"
    gcs_bucket_name: Optional[str] = None
    gcs_public_base_url: Optional[str] = None  # e.g. https://storage.googleapis.com/<bucket>
    max_upload_size_mb: int = 10

    # Attachment Reconciliation
    reconcile_max_workers: int = 4  # Bounded fan-out for caption edits and uploads
    store_call_timeout_seconds: float = 30.0  # Per blob-store / repository call

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 60  # Seconds before auto-recovery attempt

    # Orphan Sweep
    orphan_sweep_interval_minutes: int = 60
    orphan_grace_minutes: int = 30  # Younger blobs may still be waiting for their row

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
