"""
OrphanSweepService
Compares the blob store with attachment rows to find and remove orphaned blobs
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker
import structlog

from app.config import settings
from app.models.orphan_sweep_report import OrphanSweepReport
from app.services.attachment_repository import AttachmentRepository
from app.services.storage.base import BlobStore

logger = structlog.get_logger()


class OrphanSweepService:
    """
    Cleanup for the inconsistency window left by best-effort reconciliation.

    Runs two checks per cycle:
    1. Blobs under the key prefix with no attachment row (orphans) are
       deleted once older than the grace period
    2. Attachment rows whose blob is gone (dangling) are counted and
       listed in the report; they are not repaired
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        grace_minutes: Optional[int] = None,
        key_prefix: Optional[str] = None,
    ):
        """
        Initialize OrphanSweepService.

        Args:
            session_factory: SQLAlchemy sessionmaker for creating sessions
            blob_store: BlobStore to sweep
            grace_minutes: Minimum blob age before deletion. Defaults to settings.orphan_grace_minutes.
            key_prefix: Key namespace to sweep. Defaults to settings.blob_key_prefix.
        """
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.attachments = AttachmentRepository(session_factory)
        self.grace = timedelta(minutes=grace_minutes if grace_minutes is not None else settings.orphan_grace_minutes)
        self.key_prefix = (key_prefix if key_prefix is not None else settings.blob_key_prefix).strip("/")

    def run_sweep(self, dry_run: bool = False) -> Dict[str, Any]:
        """
        Main entry point for the sweep.

        Args:
            dry_run: Report orphans without deleting them

        Returns:
            dict: Summary of the sweep run with counts
        """
        session = self.session_factory()
        report = None

        try:
            report = OrphanSweepReport(status='running', run_at=datetime.now(timezone.utc))
            session.add(report)
            session.commit()
            session.refresh(report)

            run_id = report.id
            logger.info("orphan_sweep_started", run_id=run_id, dry_run=dry_run)

            prefix = f"{self.key_prefix}/" if self.key_prefix else ""
            blobs = self.blob_store.list_blobs(prefix)
            rows = self.attachments.all_locations()

            referenced: Dict[str, int] = {}
            for attachment_id, location in rows:
                try:
                    referenced[self.blob_store.key_for_location(location)] = attachment_id
                except ValueError:
                    logger.warning("sweep_location_unresolvable", attachment_id=attachment_id, location=location)

            stored_keys = {blob.key for blob in blobs}
            cutoff = datetime.now(timezone.utc) - self.grace

            orphan_keys: List[str] = []
            for blob in blobs:
                if blob.key in referenced:
                    continue
                if blob.updated_at is not None and _as_utc(blob.updated_at) > cutoff:
                    # Upload may still be waiting for its row insert
                    continue
                orphan_keys.append(blob.key)

            dangling_ids = sorted(
                attachment_id for key, attachment_id in referenced.items()
                if key.startswith(prefix) and key not in stored_keys
            )

            failed_deletes: List[str] = []
            deleted = 0
            if orphan_keys and not dry_run:
                outcomes = self.blob_store.delete(orphan_keys)
                for key in orphan_keys:
                    outcome = outcomes.get(key)
                    if outcome is not None and outcome.ok:
                        deleted += 1
                    else:
                        failed_deletes.append(key)

            report.blobs_checked = len(blobs)
            report.orphans_found = len(orphan_keys)
            report.orphans_deleted = deleted
            report.dangling_rows = len(dangling_ids)
            report.details = {
                "orphan_keys": orphan_keys,
                "failed_deletes": failed_deletes,
                "dangling_attachment_ids": dangling_ids,
                "dry_run": dry_run,
            }
            report.status = 'completed'
            report.completed_at = datetime.now(timezone.utc)
            session.commit()

            if dangling_ids:
                logger.warning("dangling_attachment_rows", run_id=run_id, attachment_ids=dangling_ids)

            summary = {
                'run_id': run_id,
                'status': 'completed',
                'dry_run': dry_run,
                'blobs_checked': report.blobs_checked,
                'orphans_found': report.orphans_found,
                'orphans_deleted': report.orphans_deleted,
                'failed_deletes': len(failed_deletes),
                'dangling_rows': report.dangling_rows,
            }

            logger.info("orphan_sweep_completed", **summary)
            return summary

        except Exception as e:
            logger.error("orphan_sweep_crashed", error=str(e), exc_info=True)

            # Update report status to failed
            if report is None:
                raise
            try:
                session.rollback()
                report.status = 'failed'
                report.error_message = str(e)
                report.completed_at = datetime.now(timezone.utc)
                session.commit()
            except Exception as report_error:
                logger.error("failed_to_update_report", error=str(report_error))

            raise

        finally:
            session.close()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
