"""
Attachment Model
Stores photo metadata; the image bytes live in the blob store
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from sqlalchemy.sql import func
from app.database import Base


class Attachment(Base):
    """
    Metadata row for a captioned photo belonging to a Record.

    `location` is the value returned by BlobStore.put() and resolves back
    to exactly one blob key. Position is implicit: rows of a parent are read
    in id order, which is insertion order, and the first one is the hero image.
    """
    __tablename__ = "attachments"

    # Primary Key
    id = Column(Integer, primary_key=True, index=True)

    # Owning record (immutable after creation)
    parent_id = Column(Integer, ForeignKey("records.id"), nullable=False, index=True)

    # Blob reference
    location = Column(String(1024), nullable=False)

    caption = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Attachment(id={self.id}, parent_id={self.parent_id}, location='{self.location}')>"
