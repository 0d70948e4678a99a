"""
Attachment Repository
CRUD over attachment metadata rows, always scoped by parent record id
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import sessionmaker

from app.models.attachment import Attachment

logger = structlog.get_logger(__name__)


class AttachmentRepository:
    """
    Data access for the attachments table.

    Every method opens its own short-lived session from the factory, so
    the reconciler can call it from worker threads. Rows are returned
    detached (the factory uses expire_on_commit=False).
    """

    def __init__(self, session_factory: sessionmaker):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker
        """
        self.session_factory = session_factory

    def list_for_parent(self, parent_id: int) -> List[Attachment]:
        """Return the parent's attachments in insertion order (hero image first)."""
        with self.session_factory() as session:
            return session.query(Attachment).filter(
                Attachment.parent_id == parent_id
            ).order_by(Attachment.id.asc()).all()

    def list_for_parents(self, parent_ids: Iterable[int]) -> Dict[int, List[Attachment]]:
        """Return attachments grouped by parent id, each list in insertion order."""
        parent_ids = list(parent_ids)
        grouped: Dict[int, List[Attachment]] = {parent_id: [] for parent_id in parent_ids}
        if not parent_ids:
            return grouped

        with self.session_factory() as session:
            rows = session.query(Attachment).filter(
                Attachment.parent_id.in_(parent_ids)
            ).order_by(Attachment.id.asc()).all()

        for row in rows:
            grouped[row.parent_id].append(row)
        return grouped

    def get_many(self, parent_id: int, attachment_ids: Iterable[int]) -> List[Attachment]:
        """Return the rows among `attachment_ids` that belong to `parent_id`."""
        attachment_ids = list(attachment_ids)
        if not attachment_ids:
            return []

        with self.session_factory() as session:
            return session.query(Attachment).filter(
                Attachment.id.in_(attachment_ids),
                Attachment.parent_id == parent_id
            ).order_by(Attachment.id.asc()).all()

    def bulk_create(self, parent_id: int, staged: Sequence[Tuple[str, Optional[str]]]) -> List[Attachment]:
        """
        Insert new rows in one transaction, preserving the given order.

        Args:
            parent_id: Owning record id
            staged: (location, caption) pairs in submission order

        Returns:
            The created rows, in the same order
        """
        if not staged:
            return []

        rows = [
            Attachment(parent_id=parent_id, location=location, caption=caption)
            for location, caption in staged
        ]

        with self.session_factory() as session:
            # Flush one by one so ids follow submission order on every dialect
            for row in rows:
                session.add(row)
                session.flush()
            session.commit()

        logger.info("attachments_created", parent_id=parent_id, count=len(rows))
        return rows

    def update_caption(self, parent_id: int, attachment_id: int, caption: Optional[str]) -> bool:
        """Update only the caption of one row. Returns True if a row was changed."""
        with self.session_factory() as session:
            updated = session.query(Attachment).filter(
                Attachment.id == attachment_id,
                Attachment.parent_id == parent_id
            ).update({Attachment.caption: caption}, synchronize_session=False)
            session.commit()
            return updated > 0

    def delete_many(self, parent_id: int, attachment_ids: Iterable[int]) -> int:
        """Delete rows by id in one statement, scoped by parent. Returns rows deleted."""
        attachment_ids = list(attachment_ids)
        if not attachment_ids:
            return 0

        with self.session_factory() as session:
            deleted = session.query(Attachment).filter(
                Attachment.id.in_(attachment_ids),
                Attachment.parent_id == parent_id
            ).delete(synchronize_session=False)
            session.commit()

        logger.info("attachments_deleted", parent_id=parent_id, count=deleted)
        return deleted

    def delete_for_parent(self, parent_id: int) -> int:
        """Delete every row of a parent. Returns rows deleted."""
        with self.session_factory() as session:
            deleted = session.query(Attachment).filter(
                Attachment.parent_id == parent_id
            ).delete(synchronize_session=False)
            session.commit()

        logger.info("attachments_deleted_for_parent", parent_id=parent_id, count=deleted)
        return deleted

    def all_locations(self) -> List[Tuple[int, str]]:
        """Return (id, location) for every row; used by the orphan sweep."""
        with self.session_factory() as session:
            return [
                (row.id, row.location)
                for row in session.query(Attachment.id, Attachment.location).all()
            ]
