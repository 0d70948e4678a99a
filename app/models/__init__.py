"""
Database Models
"""

from app.models.record import Record, RecordStatus
from app.models.attachment import Attachment
from app.models.orphan_sweep_report import OrphanSweepReport

__all__ = [
    "Record",
    "RecordStatus",
    "Attachment",
    "OrphanSweepReport",
]
