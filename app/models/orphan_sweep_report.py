"""
OrphanSweepReport Model
Tracks sweep runs comparing the blob store with attachment rows
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.sql import func
from app.database import Base


class OrphanSweepReport(Base):
    """
    Audit trail for blob-store / metadata-store sweep runs.

    Attachment reconciliation is best-effort across two stores, so blobs
    without rows (orphans) and rows without blobs (dangling) can appear.
    Each sweep records what it found and which orphans it removed.
    """
    __tablename__ = "orphan_sweep_reports"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Run Timestamps
    run_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Sweep Metrics
    blobs_checked = Column(Integer, default=0, nullable=False)
    orphans_found = Column(Integer, default=0, nullable=False)
    orphans_deleted = Column(Integer, default=0, nullable=False)
    dangling_rows = Column(Integer, default=0, nullable=False)

    # Details
    details = Column(JSON, nullable=True)
    # {"orphan_keys": [...], "failed_deletes": [...], "dangling_attachment_ids": [...]}

    # Status
    status = Column(String(50), default='running', nullable=False)
    # Statuses: running, completed, failed

    error_message = Column(Text, nullable=True)

    def __repr__(self):
        return f"<OrphanSweepReport(id={self.id}, run_at={self.run_at}, status='{self.status}', orphans={self.orphans_found})>"
