"""
Record Model
Stores a curated venue entry (the parent of photo attachments)
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, Enum, CheckConstraint, Index
from sqlalchemy.sql import func
from app.database import Base


class RecordStatus(str, enum.Enum):
    """Whether the venue was visited or is on the wish list"""
    VISITED = "VISITED"
    WANT_TO_GO = "WANT_TO_GO"


class Record(Base):
    """
    Represents a venue the user has visited or wants to visit.

    Exclusively owns its attachments; deleting a record removes its
    attachment rows and their blobs (see RecordService.delete_record).
    """
    __tablename__ = "records"

    # Primary Key
    id = Column(Integer, primary_key=True, index=True)

    # Venue Details
    name = Column(String(255), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    genre = Column(String(100), nullable=False, index=True)
    memo = Column(Text, nullable=True)
    external_link_url = Column(String(2048), nullable=True)  # Map link

    status = Column(
        Enum(RecordStatus, name="record_status", native_enum=False, length=20),
        nullable=False,
        default=RecordStatus.VISITED,
    )

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_records_rating_range"),
        Index("ix_records_status", "status"),
    )

    def __repr__(self):
        return f"<Record(id={self.id}, name='{self.name}', status='{self.status}')>"
