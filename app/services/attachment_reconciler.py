"""
Attachment Reconciler
Applies a ReconciliationDelta across the blob store and the attachments table

The two stores cannot be committed together, so every phase is best
effort: failures are logged, collected and reported, and the remaining
work continues. Phase order per request:

1. Ownership check - ids not belonging to the parent are dropped silently
2. Delete - blob deletion, then row deletion regardless of the blob outcome
3. Caption edits - concurrent, independent updates
4. Additions - concurrent uploads, then one ordered bulk insert
5. Re-read the parent's attachments

Deletion order is blob-then-row: a crash between the two leaves a row
pointing at a missing blob, which the orphan sweep reports as dangling.
A failed row delete after a successful blob delete is reported as a
delete_row failure for the same attachment id.
"""

import threading
import time
from concurrent import futures
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

import structlog

from app.config import settings
from app.models.attachment import Attachment
from app.services.attachment_repository import AttachmentRepository
from app.services.errors import FileTooLargeError, StoreFailure
from app.services.reconciliation_delta import AttachmentFailure, NewAttachment, ReconciliationDelta
from app.services.storage.base import BlobStore
from app.services.storage.keys import generate_blob_key

logger = structlog.get_logger(__name__)


@dataclass
class ReconcileResult:
    """Final attachment list of the parent plus the per-item failures."""
    attachments: List[Attachment] = field(default_factory=list)
    failures: List[AttachmentFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class _Outcome:
    value: Any = None
    error: Optional[BaseException] = None


@dataclass
class _PreparedUpload:
    index: int
    item: NewAttachment
    key: str


@dataclass
class _KeyOutcome:
    error: Optional[str] = None


class _WorkerPool:
    """
    Thread pool that keeps serving after calls are abandoned.

    A call abandoned after its deadline still holds a thread. Once every
    thread of the current executor is running or held and at least one is
    held, new work goes to a fresh executor instead of queueing behind a
    call that may never return. Retired executors are shut down without
    waiting; their threads exit when their calls do.
    """

    def __init__(self, max_workers: int):
        self.max_workers = max_workers
        self._executor = self._new_executor()
        self._outstanding: Set[Future] = set()
        self._held: Set[Future] = set()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reconcile")

    def submit(self, fn: Callable, *args) -> Future:
        self._outstanding = {f for f in self._outstanding if not f.done()}
        self._held &= self._outstanding

        if self._held and len(self._outstanding) >= self.max_workers:
            logger.warning("reconcile_executor_replaced", held_calls=len(self._held))
            self._executor.shutdown(wait=False)
            self._executor = self._new_executor()
            self._outstanding = set()
            self._held = set()

        future = self._executor.submit(fn, *args)
        self._outstanding.add(future)
        return future

    def abandon(self, future: Future) -> None:
        """Give up on a timed-out call; a call that never started is cancelled instead."""
        if not future.cancel() and future in self._outstanding:
            self._held.add(future)

    def shutdown(self) -> None:
        # Queued calls must not run after the request has returned
        self._executor.shutdown(wait=False, cancel_futures=True)


class AttachmentReconciler:
    """
    Stateless orchestrator over AttachmentRepository and a BlobStore.

    Per-item work (caption edits, uploads, per-key blob deletes) runs on a
    bounded thread pool. Every store call is bounded by call_timeout; a
    timed-out call counts as that item's failure and its thread is left to
    finish on its own.
    """

    def __init__(
        self,
        attachment_repository: AttachmentRepository,
        blob_store: BlobStore,
        max_workers: Optional[int] = None,
        call_timeout: Optional[float] = None,
        max_upload_bytes: Optional[int] = None,
    ):
        """
        Args:
            attachment_repository: Metadata store access
            blob_store: Byte storage backend
            max_workers: Fan-out bound. Defaults to settings.reconcile_max_workers.
            call_timeout: Seconds per store call. Defaults to settings.store_call_timeout_seconds.
            max_upload_bytes: Upload size limit. Defaults to settings.max_upload_size_mb.
        """
        self.attachments = attachment_repository
        self.blob_store = blob_store
        self.max_workers = max(1, max_workers or settings.reconcile_max_workers)
        self.call_timeout = call_timeout or settings.store_call_timeout_seconds
        self.max_upload_bytes = max_upload_bytes or settings.max_upload_size_mb * 1024 * 1024
        self.logger = logger.bind(service="attachment_reconciler")

    def reconcile(
        self,
        parent_id: int,
        delta: ReconciliationDelta,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconcileResult:
        """
        Bring the parent's attachments to the state requested by `delta`.

        Args:
            parent_id: Owning record id (existence is checked by the caller)
            delta: Requested deletions, caption edits and additions
            cancel_event: When set, no further phase or item is started;
                uploads already in flight still finish and get their rows

        Returns:
            ReconcileResult with the parent's attachments and every failure
        """
        log = self.logger.bind(
            parent_id=parent_id,
            deletions=len(delta.deletions),
            caption_edits=len(delta.caption_edits),
            additions=len(delta.additions),
        )
        log.info("reconcile_start")

        failures: List[AttachmentFailure] = list(delta.validation_errors)
        current: Optional[List[Attachment]] = [] if not delta.touches_existing else None
        deleted_ids: List[int] = []
        created: List[Attachment] = []

        executor = _WorkerPool(self.max_workers)
        try:
            if delta.touches_existing:
                try:
                    current = self._call(executor, self.attachments.list_for_parent, parent_id)
                except Exception as e:
                    log.error("reconcile_load_failed", error=str(e))
                    failures.append(AttachmentFailure(phase="load", error=_describe(e)))

            if current is not None:
                owned = {row.id: row for row in current}
                requested = set(delta.deletions) | set(delta.caption_edits)
                ignored = requested - set(owned)
                if ignored:
                    log.debug("ownership_mismatch_ignored", attachment_ids=sorted(ignored))

                to_delete = [owned[i] for i in sorted(delta.deletions) if i in owned]
                to_edit = [
                    (attachment_id, caption)
                    for attachment_id, caption in delta.caption_edits.items()
                    if attachment_id in owned and attachment_id not in delta.deletions
                ]

                if to_delete and not self._cancelled(cancel_event, failures, "delete", log):
                    deleted_ids = self._delete_phase(executor, parent_id, to_delete, failures, log)

                if to_edit and not self._cancelled(cancel_event, failures, "caption", log):
                    self._caption_phase(executor, parent_id, to_edit, failures, cancel_event, log)

            if delta.additions and not self._cancelled(cancel_event, failures, "addition", log):
                created = self._addition_phase(executor, parent_id, delta.additions, failures, cancel_event, log)

            attachments = self._final_state(executor, parent_id, current, deleted_ids, created, failures, log)
        finally:
            # Do not wait on calls abandoned after a timeout
            executor.shutdown()

        log.info("reconcile_complete", attachment_count=len(attachments), failure_count=len(failures))
        return ReconcileResult(attachments=attachments, failures=failures)

    def reconcile_additions(
        self,
        parent_id: int,
        additions: Sequence[NewAttachment],
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconcileResult:
        """Run only the addition phase (used for newly created records)."""
        return self.reconcile(parent_id, ReconciliationDelta.additions_only(additions), cancel_event)

    def remove_all(self, parent_id: int) -> ReconcileResult:
        """
        Delete every blob of the parent, then every attachment row.

        Blob failures are reported and do not stop the row deletion. A
        failed load or row deletion is reported as load / delete_row with
        no attachment id; the caller must not delete the parent in that case.
        """
        log = self.logger.bind(parent_id=parent_id, operation="remove_all")
        failures: List[AttachmentFailure] = []

        executor = _WorkerPool(self.max_workers)
        try:
            try:
                rows = self._call(executor, self.attachments.list_for_parent, parent_id)
            except Exception as e:
                # Without the rows the blobs cannot be found; keep everything
                log.error("reconcile_load_failed", error=str(e))
                failures.append(AttachmentFailure(phase="load", error=_describe(e)))
                return ReconcileResult(attachments=[], failures=failures)

            keys: Dict[int, str] = {}
            for row in rows:
                try:
                    keys[row.id] = self.blob_store.key_for_location(row.location)
                except ValueError as e:
                    failures.append(AttachmentFailure(phase="delete_blob", error=str(e), attachment_id=row.id))

            if keys:
                log.info("reconcile_phase", phase="delete", count=len(keys))
                outcomes = self._delete_blobs(executor, list(keys.values()))
                for attachment_id, key in keys.items():
                    if outcomes[key].error is not None:
                        log.warning("blob_delete_failed", attachment_id=attachment_id, key=key, error=outcomes[key].error)
                        failures.append(AttachmentFailure(
                            phase="delete_blob", error=outcomes[key].error, attachment_id=attachment_id, key=key,
                        ))

            try:
                self._call(executor, self.attachments.delete_for_parent, parent_id)
            except Exception as e:
                log.error("attachment_rows_delete_failed", error=str(e))
                failures.append(AttachmentFailure(phase="delete_row", error=_describe(e)))
        finally:
            executor.shutdown()

        log.info("remove_all_complete", removed=len(rows), failure_count=len(failures))
        return ReconcileResult(attachments=[], failures=failures)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _delete_phase(
        self,
        executor: _WorkerPool,
        parent_id: int,
        rows: List[Attachment],
        failures: List[AttachmentFailure],
        log,
    ) -> List[int]:
        """Delete blobs, then rows. Returns the ids whose rows were deleted."""
        log.info("reconcile_phase", phase="delete", count=len(rows))

        keys: Dict[int, str] = {}
        for row in rows:
            try:
                keys[row.id] = self.blob_store.key_for_location(row.location)
            except ValueError as e:
                log.warning("blob_location_unresolvable", attachment_id=row.id, location=row.location)
                failures.append(AttachmentFailure(phase="delete_blob", error=str(e), attachment_id=row.id))

        if keys:
            outcomes = self._delete_blobs(executor, list(keys.values()))
            for attachment_id, key in keys.items():
                outcome = outcomes[key]
                if outcome.error is not None:
                    # Row deletion still goes ahead; an orphaned blob is left for the sweep
                    log.warning("blob_delete_failed", attachment_id=attachment_id, key=key, error=outcome.error)
                    failures.append(AttachmentFailure(
                        phase="delete_blob", error=outcome.error, attachment_id=attachment_id, key=key,
                    ))

        ids = [row.id for row in rows]
        try:
            self._call(executor, self.attachments.delete_many, parent_id, ids)
        except Exception as e:
            log.error("attachment_rows_delete_failed", attachment_ids=ids, error=str(e))
            for attachment_id in ids:
                failures.append(AttachmentFailure(
                    phase="delete_row", error=_describe(e), attachment_id=attachment_id, key=keys.get(attachment_id),
                ))
            return []
        return ids

    def _delete_blobs(self, executor: _WorkerPool, keys: List[str]) -> Dict[str, _KeyOutcome]:
        """
        Delete blobs with one adapter call when the store batches, else per key concurrently.

        Returns one outcome per key; never raises.
        """
        results: Dict[str, _KeyOutcome] = {}

        if self.blob_store.supports_bulk_delete:
            try:
                store_outcomes = self._call(executor, self.blob_store.delete, keys)
            except Exception as e:
                return {key: _KeyOutcome(error=_describe(e)) for key in keys}
            for key in keys:
                outcome = store_outcomes.get(key)
                if outcome is None:
                    results[key] = _KeyOutcome(error="no outcome reported by blob store")
                else:
                    results[key] = _KeyOutcome(error=None if outcome.ok else (outcome.error or "delete failed"))
            return results

        outcomes = self._fan_out(executor, keys, lambda key: self.blob_store.delete([key])[key])
        for key, outcome in zip(keys, outcomes):
            if outcome is None:
                results[key] = _KeyOutcome(error="cancelled")
            elif outcome.error is not None:
                results[key] = _KeyOutcome(error=_describe(outcome.error))
            elif not outcome.value.ok:
                results[key] = _KeyOutcome(error=outcome.value.error or "delete failed")
            else:
                results[key] = _KeyOutcome()
        return results

    def _caption_phase(
        self,
        executor: _WorkerPool,
        parent_id: int,
        edits: List[Tuple[int, Optional[str]]],
        failures: List[AttachmentFailure],
        cancel_event: Optional[threading.Event],
        log,
    ) -> None:
        log.info("reconcile_phase", phase="caption", count=len(edits))

        outcomes = self._fan_out(
            executor,
            edits,
            lambda edit: self.attachments.update_caption(parent_id, edit[0], edit[1]),
            cancel_event,
        )
        for (attachment_id, _), outcome in zip(edits, outcomes):
            if outcome is None:
                failures.append(AttachmentFailure(phase="cancelled", error="caption edit not started", attachment_id=attachment_id))
            elif outcome.error is not None:
                log.warning("caption_update_failed", attachment_id=attachment_id, error=str(outcome.error))
                failures.append(AttachmentFailure(phase="caption", error=_describe(outcome.error), attachment_id=attachment_id))
            elif not outcome.value:
                # Removed by a concurrent request after the ownership check
                failures.append(AttachmentFailure(phase="caption", error="attachment no longer exists", attachment_id=attachment_id))

    def _addition_phase(
        self,
        executor: _WorkerPool,
        parent_id: int,
        additions: Sequence[NewAttachment],
        failures: List[AttachmentFailure],
        cancel_event: Optional[threading.Event],
        log,
    ) -> List[Attachment]:
        log.info("reconcile_phase", phase="addition", count=len(additions))

        prepared: List[_PreparedUpload] = []
        for index, item in enumerate(additions):
            try:
                self._validate_upload(item)
            except (FileTooLargeError, ValueError) as e:
                log.warning("upload_rejected", filename=item.original_filename, error=str(e))
                failures.append(AttachmentFailure(phase="validation", error=str(e), filename=item.original_filename))
                continue
            prepared.append(_PreparedUpload(index=index, item=item, key=generate_blob_key(parent_id, item.original_filename)))

        outcomes = self._fan_out(
            executor,
            prepared,
            lambda upload: self.blob_store.put(upload.key, upload.item.payload, upload.item.content_type),
            cancel_event,
        )

        # Submission order is kept: outcomes line up with `prepared`
        staged: List[Tuple[_PreparedUpload, str]] = []
        for upload, outcome in zip(prepared, outcomes):
            if outcome is None:
                failures.append(AttachmentFailure(
                    phase="cancelled", error="upload not started", filename=upload.item.original_filename, key=upload.key,
                ))
            elif outcome.error is not None:
                log.warning("upload_failed", filename=upload.item.original_filename, key=upload.key, error=str(outcome.error))
                failures.append(AttachmentFailure(
                    phase="upload", error=_describe(outcome.error), filename=upload.item.original_filename, key=upload.key,
                ))
            else:
                staged.append((upload, outcome.value))

        if not staged:
            return []

        try:
            return self._call(
                executor,
                self.attachments.bulk_create,
                parent_id,
                [(location, upload.item.caption) for upload, location in staged],
            )
        except Exception as e:
            log.error("attachment_rows_insert_failed", count=len(staged), error=str(e))
            for upload, _ in staged:
                failures.append(AttachmentFailure(
                    phase="insert", error=_describe(e), filename=upload.item.original_filename, key=upload.key,
                ))
            # The rows never landed; remove their blobs so nothing is orphaned
            self._delete_blobs(executor, [upload.key for upload, _ in staged])
            return []

    def _final_state(
        self,
        executor: _WorkerPool,
        parent_id: int,
        current: Optional[List[Attachment]],
        deleted_ids: List[int],
        created: List[Attachment],
        failures: List[AttachmentFailure],
        log,
    ) -> List[Attachment]:
        try:
            return self._call(executor, self.attachments.list_for_parent, parent_id)
        except Exception as e:
            log.error("reconcile_reread_failed", error=str(e))
            failures.append(AttachmentFailure(phase="read", error=_describe(e)))

        # Reconstruct from what this request knows
        deleted = set(deleted_ids)
        survivors = [row for row in (current or []) if row.id not in deleted]
        return survivors + list(created)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_upload(self, item: NewAttachment) -> None:
        if not item.payload:
            raise ValueError(f"{item.original_filename or 'upload'} is empty")
        if len(item.payload) > self.max_upload_bytes:
            size_mb = len(item.payload) / (1024 * 1024)
            raise FileTooLargeError(
                f"{item.original_filename} is {size_mb:.2f}MB, exceeds maximum of {self.max_upload_bytes / (1024 * 1024):.0f}MB"
            )
        if not (item.content_type or "").lower().startswith("image/"):
            raise ValueError(f"{item.original_filename} is not an image ({item.content_type or 'unknown type'})")

    def _cancelled(self, cancel_event: Optional[threading.Event], failures: List[AttachmentFailure], phase: str, log) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            log.info("reconcile_cancelled", skipped_phase=phase)
            failures.append(AttachmentFailure(phase="cancelled", error=f"{phase} phase skipped"))
            return True
        return False

    def _call(self, executor: _WorkerPool, fn: Callable, *args):
        """Run one store call under the call timeout.

        Raises:
            StoreFailure: If the call raised or timed out
        """
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=self.call_timeout)
        except futures.TimeoutError as e:
            executor.abandon(future)
            raise StoreFailure(getattr(fn, "__name__", "store call"), cause=TimeoutError(f"timed out after {self.call_timeout}s")) from e
        except StoreFailure:
            raise
        except Exception as e:
            raise StoreFailure(getattr(fn, "__name__", "store call"), cause=e) from e

    def _fan_out(
        self,
        executor: _WorkerPool,
        items: Sequence[Any],
        fn: Callable[[Any], Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Optional[_Outcome]]:
        """
        Run `fn` over `items` with at most max_workers calls in flight.

        Returns one entry per item in input order: an _Outcome, or None for
        items never started because cancel_event was set. Items are only
        submitted when a live slot is free and the pool never queues work
        behind an abandoned call, so each deadline starts when the call
        starts. A timed-out item is abandoned, not cancelled: its outcome
        is unknown and any blob it still writes is left for the orphan sweep.
        """
        results: List[Optional[_Outcome]] = [None] * len(items)
        pending: Dict[Future, Tuple[int, float]] = {}
        next_index = 0

        while next_index < len(items) or pending:
            while next_index < len(items) and len(pending) < self.max_workers:
                if cancel_event is not None and cancel_event.is_set():
                    next_index = len(items)
                    break
                future = executor.submit(fn, items[next_index])
                pending[future] = (next_index, time.monotonic() + self.call_timeout)
                next_index += 1

            if not pending:
                break

            nearest = min(deadline for _, deadline in pending.values())
            done, _ = wait(list(pending), timeout=max(0.0, nearest - time.monotonic()), return_when=FIRST_COMPLETED)

            now = time.monotonic()
            for future in list(pending):
                index, deadline = pending[future]
                if future in done:
                    error = future.exception()
                    results[index] = _Outcome(error=error) if error is not None else _Outcome(value=future.result())
                    del pending[future]
                elif now >= deadline:
                    results[index] = _Outcome(error=TimeoutError(f"timed out after {self.call_timeout}s"))
                    executor.abandon(future)
                    del pending[future]

        return results


def _describe(error: BaseException) -> str:
    if isinstance(error, StoreFailure) and error.cause is not None:
        return _describe(error.cause)
    return str(error) or type(error).__name__
