"""
Reconciliation Delta
The add/remove/edit operations requested for a record's attachments in one request
"""

import json
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from app.services.errors import DeltaValidationError


@dataclass(frozen=True)
class NewAttachment:
    """A photo to upload and attach."""
    payload: bytes
    content_type: str
    original_filename: str
    caption: Optional[str] = None

    def __post_init__(self):
        if self.caption is not None and not self.caption.strip():
            object.__setattr__(self, "caption", None)


@dataclass(frozen=True)
class AttachmentFailure:
    """
    One attachment-level operation that did not succeed.

    phase is one of: validation, load, delete_blob, delete_row, caption,
    upload, insert, read, cancelled.
    """
    phase: str
    error: str
    attachment_id: Optional[int] = None
    filename: Optional[str] = None
    key: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "error": self.error,
            "attachment_id": self.attachment_id,
            "filename": self.filename,
            "key": self.key,
        }


def parse_deleted_ids(raw: Optional[str]) -> FrozenSet[int]:
    """
    Parse the deletedAttachmentIds form field (a JSON array of ids).

    Raises:
        DeltaValidationError: If the value is not a JSON array of integers
    """
    if raw is None or not raw.strip():
        return frozenset()

    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DeltaValidationError("deletedAttachmentIds", f"invalid JSON ({e.msg})")

    if not isinstance(value, list):
        raise DeltaValidationError("deletedAttachmentIds", "expected a JSON array")

    ids = set()
    for item in value:
        attachment_id = _coerce_id(item)
        if attachment_id is None:
            raise DeltaValidationError("deletedAttachmentIds", f"not an attachment id: {item!r}")
        ids.add(attachment_id)
    return frozenset(ids)


def parse_caption_edits(raw: Optional[str]) -> Tuple[Dict[int, Optional[str]], List[AttachmentFailure]]:
    """
    Parse the captionEdits form field (a JSON object of id -> caption).

    Entries with a bad id or a non-string caption are skipped and reported;
    the remaining entries still apply. An empty caption clears the caption.

    Raises:
        DeltaValidationError: If the value is not a JSON object at all
    """
    if raw is None or not raw.strip():
        return {}, []

    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DeltaValidationError("captionEdits", f"invalid JSON ({e.msg})")

    if not isinstance(value, dict):
        raise DeltaValidationError("captionEdits", "expected a JSON object")

    edits: Dict[int, Optional[str]] = {}
    problems: List[AttachmentFailure] = []
    for raw_id, caption in value.items():
        attachment_id = _coerce_id(raw_id)
        if attachment_id is None:
            problems.append(AttachmentFailure(phase="validation", error=f"captionEdits: not an attachment id: {raw_id!r}"))
            continue
        if caption is not None and not isinstance(caption, str):
            problems.append(AttachmentFailure(
                phase="validation",
                error="captionEdits: caption must be a string",
                attachment_id=attachment_id,
            ))
            continue
        edits[attachment_id] = caption if caption and caption.strip() else None
    return edits, problems


def _coerce_id(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


@dataclass(frozen=True)
class ReconciliationDelta:
    """
    Requested changes to a record's attachments.

    Built once at the request boundary and consumed once by the
    AttachmentReconciler. validation_errors carries parsing problems of the
    client input; the affected sub-operation is skipped and the errors are
    reported alongside the reconciliation failures.
    """
    deletions: FrozenSet[int] = frozenset()
    caption_edits: Dict[int, Optional[str]] = field(default_factory=dict)
    additions: Tuple[NewAttachment, ...] = ()
    validation_errors: Tuple[AttachmentFailure, ...] = ()

    @classmethod
    def from_form(
        cls,
        deleted_ids_raw: Optional[str] = None,
        caption_edits_raw: Optional[str] = None,
        additions: Iterable[NewAttachment] = (),
    ) -> "ReconciliationDelta":
        """Build a delta from raw multipart form values."""
        errors: List[AttachmentFailure] = []

        try:
            deletions = parse_deleted_ids(deleted_ids_raw)
        except DeltaValidationError as e:
            deletions = frozenset()
            errors.append(AttachmentFailure(phase="validation", error=str(e)))

        try:
            caption_edits, problems = parse_caption_edits(caption_edits_raw)
            errors.extend(problems)
        except DeltaValidationError as e:
            caption_edits = {}
            errors.append(AttachmentFailure(phase="validation", error=str(e)))

        return cls(
            deletions=deletions,
            caption_edits=caption_edits,
            additions=tuple(additions),
            validation_errors=tuple(errors),
        )

    @classmethod
    def additions_only(cls, additions: Iterable[NewAttachment]) -> "ReconciliationDelta":
        return cls(additions=tuple(additions))

    @property
    def touches_existing(self) -> bool:
        """True when the delta needs the parent's current attachments."""
        return bool(self.deletions or self.caption_edits)

    @property
    def is_empty(self) -> bool:
        return not (self.deletions or self.caption_edits or self.additions)
