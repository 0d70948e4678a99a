"""
Record Service
Create, update and delete a venue record together with its attachments
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.orm import sessionmaker

from app.models.attachment import Attachment
from app.models.record import Record
from app.services.attachment_reconciler import AttachmentReconciler
from app.services.attachment_repository import AttachmentRepository
from app.services.errors import RecordNotFoundError, StoreFailure
from app.services.reconciliation_delta import AttachmentFailure, NewAttachment, ReconciliationDelta
from app.services.record_repository import RecordFilter, RecordRepository
from app.services.storage.base import BlobStore

logger = structlog.get_logger(__name__)


@dataclass
class RecordView:
    """A record, its attachments (hero image first) and any attachment-level failures."""
    record: Record
    attachments: List[Attachment] = field(default_factory=list)
    failures: List[AttachmentFailure] = field(default_factory=list)


class RecordService:
    """
    One logical operation per request over RecordRepository and AttachmentReconciler.

    A missing record is the only fatal condition. Attachment failures are
    collected on the returned RecordView and never abort the request.
    Scalar-field updates and attachment reconciliation are independent
    steps; neither rolls the other back.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        reconciler: Optional[AttachmentReconciler] = None,
    ):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker shared by both repositories
            blob_store: Byte storage backend
            reconciler: Pre-built reconciler (defaults to one over the same stores)
        """
        self.records = RecordRepository(session_factory)
        self.attachments = AttachmentRepository(session_factory)
        self.reconciler = reconciler or AttachmentReconciler(self.attachments, blob_store)

    def list_records(self, record_filter: Optional[RecordFilter] = None) -> List[RecordView]:
        records = self.records.find_many(record_filter)
        grouped = self.attachments.list_for_parents(record.id for record in records)
        return [RecordView(record=record, attachments=grouped[record.id]) for record in records]

    def get_record(self, record_id: int) -> RecordView:
        record = self._require(record_id)
        return RecordView(record=record, attachments=self.attachments.list_for_parent(record_id))

    def create_record(
        self,
        fields: Dict[str, Any],
        additions: Sequence[NewAttachment] = (),
        cancel_event: Optional[threading.Event] = None,
    ) -> RecordView:
        """
        Persist the scalar fields, then attach the new photos.

        The record id is needed for blob keys and foreign keys, so the row
        is created first. Zero additions yields a record without attachments.
        """
        record = self.records.create(fields)
        log = logger.bind(record_id=record.id, operation="create_record")

        if not additions:
            log.info("record_created_without_attachments")
            return RecordView(record=record)

        result = self.reconciler.reconcile_additions(record.id, additions, cancel_event)
        self._log_failures(log, result.failures)
        return RecordView(record=record, attachments=result.attachments, failures=result.failures)

    def update_record(
        self,
        record_id: int,
        fields: Dict[str, Any],
        delta: Optional[ReconciliationDelta] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RecordView:
        """
        Reconcile attachments, then update the scalar fields.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        self._require(record_id)
        log = logger.bind(record_id=record_id, operation="update_record")

        delta = delta or ReconciliationDelta()
        result = self.reconciler.reconcile(record_id, delta, cancel_event)
        self._log_failures(log, result.failures)

        if fields:
            record = self.records.update(record_id, fields)
            if record is None:
                # Deleted by a concurrent request while attachments were reconciled
                raise RecordNotFoundError(record_id)
        else:
            record = self._require(record_id)

        return RecordView(record=record, attachments=result.attachments, failures=result.failures)

    def delete_record(self, record_id: int) -> List[AttachmentFailure]:
        """
        Delete blobs, attachment rows and finally the record row.

        Returns:
            Attachment-level failures (blob deletions that did not succeed)

        Raises:
            RecordNotFoundError: If the record does not exist
            StoreFailure: If the attachment rows could not be listed or deleted.
                This is the one attachment-level failure that aborts the request:
                deleting the record anyway would leave attachment rows pointing
                at a missing parent (or fail on the foreign key), so the record
                row is kept and the client can retry the delete.
        """
        self._require(record_id)
        log = logger.bind(record_id=record_id, operation="delete_record")

        result = self.reconciler.remove_all(record_id)
        self._log_failures(log, result.failures)

        # Blob failures are reported; row failures keep the record (see Raises)
        row_failures = [f for f in result.failures if f.phase in ("load", "delete_row")]
        if row_failures:
            raise StoreFailure("delete attachment rows", key=str(record_id), cause=Exception(row_failures[0].error))

        if not self.records.delete(record_id):
            raise RecordNotFoundError(record_id)

        return result.failures

    def record_exists(self, record_id: int) -> bool:
        return self.records.find_by_id(record_id) is not None

    def _require(self, record_id: int) -> Record:
        record = self.records.find_by_id(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    @staticmethod
    def _log_failures(log, failures: List[AttachmentFailure]) -> None:
        if failures:
            log.warning(
                "attachment_partial_failure",
                failure_count=len(failures),
                failures=[f.to_dict() for f in failures],
            )
