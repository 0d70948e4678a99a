"""
Tests for AttachmentReconciler

Tests cover:
- Caption edits touch only the targeted attachment
- Ownership: ids of other records are ignored
- Partial upload failure keeps the successful additions
- Blob-then-row deletion and insert compensation
- Cancellation and per-call timeouts
"""

import threading
from unittest.mock import patch

import pytest

from app.services.attachment_reconciler import AttachmentReconciler
from app.services.attachment_repository import AttachmentRepository
from app.services.reconciliation_delta import NewAttachment, ReconciliationDelta


def _image(name, caption=None, payload=b"\x89PNG..."):
    return NewAttachment(payload=payload, content_type="image/png", original_filename=name, caption=caption)


@pytest.fixture
def repository(session_factory):
    return AttachmentRepository(session_factory)


@pytest.fixture
def reconciler(repository, blob_store):
    return AttachmentReconciler(repository, blob_store, max_workers=4, call_timeout=5, max_upload_bytes=1024)


class TestAdditions:

    def test_additions_keep_submission_order(self, reconciler, make_record):
        parent_id = make_record()

        result = reconciler.reconcile_additions(
            parent_id, [_image(f"p{i}.png", caption=f"c{i}") for i in range(6)]
        )

        assert result.ok
        assert [a.caption for a in result.attachments] == [f"c{i}" for i in range(6)]
        assert [a.id for a in result.attachments] == sorted(a.id for a in result.attachments)

    def test_one_failed_upload_keeps_the_rest(self, reconciler, blob_store, make_record):
        """N additions with one failing upload yield N-1 rows with distinct locations."""
        parent_id = make_record()
        blob_store.fail_put_names = {"bad.png"}

        result = reconciler.reconcile_additions(
            parent_id, [_image("a.png"), _image("bad.png"), _image("c.png"), _image("d.png")]
        )

        assert len(result.attachments) == 3
        assert len({a.location for a in result.attachments}) == 3
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.phase == "upload"
        assert failure.filename == "bad.png"
        assert len(blob_store.blobs) == 3

    def test_same_filename_twice_gets_two_blobs(self, reconciler, blob_store, make_record):
        parent_id = make_record()

        result = reconciler.reconcile_additions(parent_id, [_image("dup.png"), _image("dup.png")])

        assert len(result.attachments) == 2
        assert len(blob_store.blobs) == 2

    def test_validation_rejects_bad_uploads(self, reconciler, blob_store, make_record):
        parent_id = make_record()
        additions = [
            _image("big.png", payload=b"x" * 2048),
            NewAttachment(payload=b"%PDF", content_type="application/pdf", original_filename="doc.pdf"),
            _image("ok.png"),
        ]

        result = reconciler.reconcile_additions(parent_id, additions)

        assert len(result.attachments) == 1
        assert [f.phase for f in result.failures] == ["validation", "validation"]
        assert {f.filename for f in result.failures} == {"big.png", "doc.pdf"}
        assert len(blob_store.put_calls) == 1

    def test_insert_failure_removes_uploaded_blobs(self, reconciler, repository, blob_store, make_record):
        parent_id = make_record()

        with patch.object(repository, "bulk_create", side_effect=RuntimeError("db down")):
            result = reconciler.reconcile_additions(parent_id, [_image("a.png"), _image("b.png")])

        assert result.attachments == []
        assert [f.phase for f in result.failures] == ["insert", "insert"]
        assert blob_store.blobs == {}
        assert repository.list_for_parent(parent_id) == []


class TestCaptionEdits:

    def test_edit_one_caption_leaves_the_other(self, reconciler, repository, make_record):
        parent_id = make_record()
        a, b = reconciler.reconcile_additions(parent_id, [_image("a.png", "A"), _image("b.png", "B")]).attachments

        result = reconciler.reconcile(parent_id, ReconciliationDelta(caption_edits={a.id: "A2"}))

        assert result.ok
        captions = {row.id: row.caption for row in repository.list_for_parent(parent_id)}
        assert captions == {a.id: "A2", b.id: "B"}

    def test_clear_caption(self, reconciler, repository, make_record):
        parent_id = make_record()
        (a,) = reconciler.reconcile_additions(parent_id, [_image("a.png", "A")]).attachments

        reconciler.reconcile(parent_id, ReconciliationDelta(caption_edits={a.id: None}))

        assert repository.list_for_parent(parent_id)[0].caption is None

    def test_edit_on_deleted_id_is_skipped(self, reconciler, repository, make_record):
        parent_id = make_record()
        (a,) = reconciler.reconcile_additions(parent_id, [_image("a.png", "A")]).attachments

        result = reconciler.reconcile(
            parent_id, ReconciliationDelta(deletions=frozenset({a.id}), caption_edits={a.id: "late"})
        )

        assert result.ok
        assert result.attachments == []


class TestOwnership:

    def test_foreign_ids_are_ignored(self, reconciler, repository, blob_store, make_record):
        mine = make_record(name="Mine")
        theirs = make_record(name="Theirs")
        (foreign,) = reconciler.reconcile_additions(theirs, [_image("f.png", "keep")]).attachments

        result = reconciler.reconcile(
            mine,
            ReconciliationDelta(deletions=frozenset({foreign.id}), caption_edits={foreign.id: "hijacked"}),
        )

        assert result.ok
        assert result.attachments == []
        rows = repository.list_for_parent(theirs)
        assert [(r.id, r.caption) for r in rows] == [(foreign.id, "keep")]
        assert len(blob_store.blobs) == 1
        assert blob_store.delete_calls == []


class TestDeletions:

    def test_delete_removes_blob_and_row(self, reconciler, blob_store, make_record):
        parent_id = make_record()
        a, b = reconciler.reconcile_additions(parent_id, [_image("a.png"), _image("b.png")]).attachments

        result = reconciler.reconcile(parent_id, ReconciliationDelta(deletions=frozenset({a.id})))

        assert result.ok
        assert [row.id for row in result.attachments] == [b.id]
        assert list(blob_store.blobs) == [blob_store.key_for_location(b.location)]

    def test_blob_delete_failure_still_deletes_row(self, reconciler, blob_store, make_record):
        parent_id = make_record()
        (a,) = reconciler.reconcile_additions(parent_id, [_image("a.png")]).attachments
        key = blob_store.key_for_location(a.location)
        blob_store.fail_delete_keys = {key}

        result = reconciler.reconcile(parent_id, ReconciliationDelta(deletions=frozenset({a.id})))

        assert result.attachments == []
        assert len(result.failures) == 1
        assert result.failures[0].phase == "delete_blob"
        assert result.failures[0].attachment_id == a.id
        assert result.failures[0].key == key

    def test_unbatched_store_deletes_per_key(self, repository, unbatched_blob_store, make_record):
        reconciler = AttachmentReconciler(repository, unbatched_blob_store, max_workers=2, call_timeout=5)
        parent_id = make_record()
        rows = reconciler.reconcile_additions(parent_id, [_image("a.png"), _image("b.png")]).attachments

        reconciler.reconcile(parent_id, ReconciliationDelta(deletions=frozenset(r.id for r in rows)))

        assert len(unbatched_blob_store.delete_calls) == 2
        assert all(len(call) == 1 for call in unbatched_blob_store.delete_calls)

    def test_remove_all(self, reconciler, repository, blob_store, make_record):
        parent_id = make_record()
        reconciler.reconcile_additions(parent_id, [_image("a.png"), _image("b.png")])

        result = reconciler.remove_all(parent_id)

        assert result.ok
        assert repository.list_for_parent(parent_id) == []
        assert blob_store.blobs == {}
        assert len(blob_store.delete_calls) == 1

    def test_remove_all_keeps_everything_when_listing_fails(self, reconciler, repository, blob_store, make_record):
        parent_id = make_record()
        reconciler.reconcile_additions(parent_id, [_image("a.png")])

        with patch.object(repository, "list_for_parent", side_effect=RuntimeError("db down")):
            result = reconciler.remove_all(parent_id)

        assert [f.phase for f in result.failures] == ["load"]
        assert len(blob_store.blobs) == 1
        assert len(repository.list_for_parent(parent_id)) == 1


class TestCancellationAndTimeouts:

    def test_cancelled_before_start_does_nothing(self, reconciler, blob_store, make_record):
        parent_id = make_record()
        cancel = threading.Event()
        cancel.set()

        result = reconciler.reconcile_additions(parent_id, [_image("a.png")], cancel_event=cancel)

        assert result.attachments == []
        assert [f.phase for f in result.failures] == ["cancelled"]
        assert blob_store.put_calls == []

    def test_in_flight_uploads_finish_after_cancel(self, repository, blob_store, make_record):
        """Uploads already running get their rows; queued ones are not started."""
        reconciler = AttachmentReconciler(repository, blob_store, max_workers=1, call_timeout=5)
        parent_id = make_record()
        cancel = threading.Event()
        release = threading.Event()
        blob_store.block_put = release

        def cancel_then_release():
            while not blob_store.put_calls:
                pass
            cancel.set()
            release.set()

        helper = threading.Thread(target=cancel_then_release)
        helper.start()
        result = reconciler.reconcile_additions(parent_id, [_image("a.png"), _image("b.png")], cancel_event=cancel)
        helper.join()

        assert len(result.attachments) == 1
        assert [f.phase for f in result.failures] == ["cancelled"]
        assert result.failures[0].filename == "b.png"

    def test_slow_upload_times_out(self, repository, blob_store, make_record):
        reconciler = AttachmentReconciler(repository, blob_store, max_workers=2, call_timeout=0.2)
        parent_id = make_record()
        release = threading.Event()
        blob_store.block_put = release

        try:
            result = reconciler.reconcile_additions(parent_id, [_image("slow.png")])
        finally:
            release.set()

        assert result.attachments == []
        assert [f.phase for f in result.failures] == ["upload"]
        assert "timed out" in result.failures[0].error

    def test_hung_upload_does_not_starve_the_next_one(self, repository, blob_store, make_record):
        """With one worker, a hung first upload fails alone; the second still runs and gets its row."""
        reconciler = AttachmentReconciler(repository, blob_store, max_workers=1, call_timeout=0.5)
        parent_id = make_record()
        release = threading.Event()
        blob_store.block_put = release
        blob_store.block_put_names = {"slow.png"}

        try:
            result = reconciler.reconcile_additions(parent_id, [_image("slow.png"), _image("fast.png")])
        finally:
            release.set()

        assert [(f.phase, f.filename) for f in result.failures] == [("upload", "slow.png")]
        assert "timed out" in result.failures[0].error
        assert len(result.attachments) == 1
        assert result.attachments[0].location.endswith("-fast.png")
        assert [row.id for row in repository.list_for_parent(parent_id)] == [result.attachments[0].id]

    def test_hung_caption_edit_fails_alone(self, repository, blob_store, make_record):
        """A hung caption write is that edit's failure; the other edit and the re-read succeed."""
        reconciler = AttachmentReconciler(repository, blob_store, max_workers=1, call_timeout=0.5)
        parent_id = make_record()
        a, b = reconciler.reconcile_additions(parent_id, [_image("a.png", "A"), _image("b.png", "B")]).attachments
        release = threading.Event()
        original = repository.update_caption

        def slow_for_a(pid, attachment_id, caption):
            if attachment_id == a.id:
                release.wait()
            return original(pid, attachment_id, caption)

        try:
            with patch.object(repository, "update_caption", side_effect=slow_for_a):
                result = reconciler.reconcile(parent_id, ReconciliationDelta(caption_edits={a.id: "A2", b.id: "B2"}))
        finally:
            release.set()

        assert [(f.phase, f.attachment_id) for f in result.failures] == [("caption", a.id)]
        assert "timed out" in result.failures[0].error
        captions = {row.id: row.caption for row in result.attachments}
        assert captions[b.id] == "B2"

    def test_reread_failure_falls_back_to_known_state(self, reconciler, repository, make_record):
        parent_id = make_record()
        (a,) = reconciler.reconcile_additions(parent_id, [_image("a.png", "A")]).attachments
        original = repository.list_for_parent
        calls = []

        def flaky(pid):
            calls.append(pid)
            if len(calls) > 1:
                raise RuntimeError("read replica gone")
            return original(pid)

        with patch.object(repository, "list_for_parent", side_effect=flaky):
            result = reconciler.reconcile(
                parent_id, ReconciliationDelta(caption_edits={a.id: "A2"}, additions=(_image("b.png"),))
            )

        assert [f.phase for f in result.failures] == ["read"]
        assert len(result.attachments) == 2
        assert result.attachments[0].id == a.id
