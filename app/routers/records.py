"""
Records API Router
CRUD for venue records and their captioned photo attachments
"""

import asyncio
import threading
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
import structlog

from app.database import get_session_factory
from app.middleware import get_correlation_id
from app.models.record_schemas import (
    AttachmentFailureOut,
    AttachmentOut,
    RecordFields,
    RecordOut,
    RecordUpdate,
)
from app.services.errors import RecordNotFoundError
from app.services.reconciliation_delta import AttachmentFailure, NewAttachment, ReconciliationDelta
from app.services.record_repository import RecordFilter
from app.services.record_service import RecordService, RecordView
from app.services.storage import get_blob_store

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/records", tags=["records"])

DISCONNECT_POLL_SECONDS = 0.5


def get_record_service(session_factory=Depends(get_session_factory)) -> RecordService:
    """Dependency building a RecordService over the configured stores"""
    if session_factory is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return RecordService(session_factory, get_blob_store())


def serialize_record(view: RecordView) -> Dict[str, Any]:
    record = view.record
    return RecordOut(
        id=record.id,
        name=record.name,
        rating=record.rating,
        genre=record.genre,
        memo=record.memo,
        external_link_url=record.external_link_url,
        status=record.status,
        created_at=record.created_at,
        updated_at=record.updated_at,
        attachments=[AttachmentOut.model_validate(a) for a in view.attachments],
        attachment_failures=[AttachmentFailureOut(**f.to_dict()) for f in view.failures],
    ).model_dump(mode="json")


def _validation_http_error(error: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=error.errors(include_url=False, include_context=False))


async def _read_additions(images: Optional[List[UploadFile]], captions: Optional[List[str]]) -> List[NewAttachment]:
    """
    Pair uploaded files with captions by index.

    Empty file parts (the form submits one when nothing was picked) are
    skipped without shifting the caption alignment.
    """
    images = images or []
    captions = captions or []
    additions = []
    for index, image in enumerate(images):
        payload = await image.read()
        if not payload:
            continue
        additions.append(NewAttachment(
            payload=payload,
            content_type=image.content_type or "application/octet-stream",
            original_filename=image.filename or "image",
            caption=captions[index] if index < len(captions) else None,
        ))
    return additions


async def _run_cancellable(request: Request, fn: Callable, *args):
    """
    Run a blocking service call in the threadpool with a cancel event.

    When the client disconnects the event is set: the reconciler starts no
    new work, but uploads already in flight finish and get their rows.
    """
    cancel_event = threading.Event()
    task = asyncio.ensure_future(run_in_threadpool(fn, *args, cancel_event))

    while not task.done():
        await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
        if not task.done() and not cancel_event.is_set() and await request.is_disconnected():
            logger.info("client_disconnected", path=request.url.path, correlation_id=get_correlation_id())
            cancel_event.set()

    return task.result()


@router.get("")
async def list_records(
    q: Optional[str] = Query(None, description="Name contains (case-insensitive)"),
    genre: Optional[str] = Query(None, description="Exact genre, 'All' for any"),
    status: Optional[str] = Query(None, description="VISITED, WANT_TO_GO or 'All'"),
    service: RecordService = Depends(get_record_service)
):
    """
    List records newest first, each with its attachments

    Args:
        q: Substring of the record name
        genre: Genre filter
        status: Status filter
        service: Record service

    Returns:
        list of records
    """
    try:
        record_filter = RecordFilter.from_query(q=q, genre=genre, status=status)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown status: {status}")

    try:
        views = await run_in_threadpool(service.list_records, record_filter)
    except Exception as e:
        logger.error("records_list_failed", error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch records")

    logger.info("records_listed", returned=len(views), q=q, genre=genre, status=status)
    return [serialize_record(view) for view in views]


@router.get("/{record_id}")
async def get_record(
    record_id: int,
    service: RecordService = Depends(get_record_service)
):
    """Get a single record with its attachments"""
    try:
        view = await run_in_threadpool(service.get_record, record_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Record not found")
    except Exception as e:
        logger.error("record_fetch_failed", record_id=record_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch record")

    return serialize_record(view)


@router.post("", status_code=201)
async def create_record(
    request: Request,
    name: str = Form(...),
    rating: int = Form(...),
    genre: str = Form(...),
    memo: Optional[str] = Form(None),
    mapUrl: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    captions: Optional[List[str]] = Form(None),
    service: RecordService = Depends(get_record_service)
):
    """
    Create a record with zero or more captioned photos

    Photos that fail to upload are skipped and listed in
    attachment_failures; the record is still created.
    """
    try:
        fields = RecordFields(
            name=name,
            rating=rating,
            genre=genre,
            memo=memo,
            external_link_url=mapUrl,
            **({"status": status} if status else {}),
        )
    except ValidationError as e:
        raise _validation_http_error(e)

    additions = await _read_additions(images, captions)

    try:
        view = await _run_cancellable(request, service.create_record, fields.model_dump(), additions)
    except Exception as e:
        logger.error("record_create_failed", error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create record")

    logger.info("record_create_completed", record_id=view.record.id,
                attachments=len(view.attachments), failures=len(view.failures))
    return serialize_record(view)


@router.put("/{record_id}")
async def update_record(
    record_id: int,
    request: Request,
    name: Optional[str] = Form(None),
    rating: Optional[int] = Form(None),
    genre: Optional[str] = Form(None),
    memo: Optional[str] = Form(None),
    mapUrl: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    deletedAttachmentIds: Optional[str] = Form(None),
    captionEdits: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    captions: Optional[List[str]] = Form(None),
    service: RecordService = Depends(get_record_service)
):
    """
    Update scalar fields and reconcile attachments

    Only the scalar fields that are sent change. deletedAttachmentIds is a
    JSON array, captionEdits a JSON object of attachment id to caption
    (empty string clears it). Unparsable delta fields are skipped and
    reported in attachment_failures.
    """
    provided = {
        "name": name,
        "rating": rating,
        "genre": genre,
        "memo": memo,
        "external_link_url": mapUrl,
        "status": status or None,
    }
    try:
        fields = RecordUpdate(**{k: v for k, v in provided.items() if v is not None})
    except ValidationError as e:
        raise _validation_http_error(e)

    # Uploads are only read once the record is known to exist
    try:
        exists = await run_in_threadpool(service.record_exists, record_id)
    except Exception as e:
        logger.error("record_fetch_failed", record_id=record_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update record")
    if not exists:
        raise HTTPException(status_code=404, detail="Record not found")

    delta = ReconciliationDelta.from_form(
        deleted_ids_raw=deletedAttachmentIds,
        caption_edits_raw=captionEdits,
        additions=await _read_additions(images, captions),
    )

    try:
        view = await _run_cancellable(
            request, service.update_record, record_id, fields.model_dump(exclude_unset=True), delta
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Record not found")
    except Exception as e:
        logger.error("record_update_failed", record_id=record_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update record")

    logger.info("record_update_completed", record_id=record_id,
                attachments=len(view.attachments), failures=len(view.failures))
    return serialize_record(view)


@router.delete("/{record_id}")
async def delete_record(
    record_id: int,
    service: RecordService = Depends(get_record_service)
):
    """Delete a record, its attachment rows and their blobs"""
    try:
        failures: List[AttachmentFailure] = await run_in_threadpool(service.delete_record, record_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Record not found")
    except Exception as e:
        logger.error("record_delete_failed", record_id=record_id, error=str(e), exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to delete record")

    return {
        "message": "Deleted successfully",
        "attachment_failures": [f.to_dict() for f in failures],
    }
