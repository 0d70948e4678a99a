"""
Record Repository
CRUD over the scalar fields of venue records
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from app.models.record import Record, RecordStatus

logger = structlog.get_logger(__name__)

ALL_SENTINEL = "All"


def _normalize(value: Optional[str]) -> Optional[str]:
    """Blank values and the "All" sentinel mean no constraint."""
    if value is None:
        return None
    value = value.strip()
    if not value or value == ALL_SENTINEL:
        return None
    return value


@dataclass(frozen=True)
class RecordFilter:
    """
    Conjunction of optional predicates for listing records.

    A field set to None places no constraint on the result.
    """
    name_contains: Optional[str] = None
    genre: Optional[str] = None
    status: Optional[RecordStatus] = None

    @classmethod
    def from_query(cls, q: Optional[str] = None, genre: Optional[str] = None, status: Optional[str] = None) -> "RecordFilter":
        """
        Build a filter from raw query-string values.

        Raises:
            ValueError: If status is not a known RecordStatus
        """
        status = _normalize(status)
        return cls(
            name_contains=_normalize(q),
            genre=_normalize(genre),
            status=RecordStatus(status) if status else None,
        )


class RecordRepository:
    """Data access for the records table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def find_by_id(self, record_id: int) -> Optional[Record]:
        with self.session_factory() as session:
            return session.get(Record, record_id)

    def find_many(self, record_filter: Optional[RecordFilter] = None) -> List[Record]:
        """Return matching records, newest first."""
        record_filter = record_filter or RecordFilter()

        with self.session_factory() as session:
            query = session.query(Record)

            if record_filter.name_contains:
                query = query.filter(Record.name.ilike(f"%{record_filter.name_contains}%"))
            if record_filter.genre:
                query = query.filter(Record.genre == record_filter.genre)
            if record_filter.status:
                query = query.filter(Record.status == record_filter.status)

            return query.order_by(Record.created_at.desc(), Record.id.desc()).all()

    def create(self, fields: Dict[str, Any]) -> Record:
        record = Record(**fields)
        with self.session_factory() as session:
            session.add(record)
            session.commit()
            session.refresh(record)

        logger.info("record_created", record_id=record.id)
        return record

    def update(self, record_id: int, fields: Dict[str, Any]) -> Optional[Record]:
        """Set the given fields. Returns the updated record, or None if it does not exist."""
        with self.session_factory() as session:
            record = session.get(Record, record_id)
            if record is None:
                return None

            for name, value in fields.items():
                setattr(record, name, value)

            session.commit()
            session.refresh(record)

        logger.info("record_updated", record_id=record_id, fields=sorted(fields))
        return record

    def delete(self, record_id: int) -> bool:
        """Delete the record row. Returns True if a row was deleted."""
        with self.session_factory() as session:
            deleted = session.query(Record).filter(
                Record.id == record_id
            ).delete(synchronize_session=False)
            session.commit()

        logger.info("record_deleted", record_id=record_id, deleted=bool(deleted))
        return deleted > 0
