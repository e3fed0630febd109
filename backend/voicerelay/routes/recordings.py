"""Recording API routes used by capture devices and the response pipeline."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy import select, desc, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from voicerelay.auth import Principal, require_device_user, require_download_access
from voicerelay.config import Settings
from voicerelay.database import get_db
from voicerelay.dependencies import get_settings, get_storage
from voicerelay.errors import MalformedRequestError, NotFoundError, UpstreamError
from voicerelay.models.recording import Recording
from voicerelay.schemas.common import ErrorResponse
from voicerelay.schemas.recording import (
    MarkPlayedRequest,
    MarkPlayedResponse,
    RecordingDetailResponse,
    RecordingListResponse,
    RecordingUpdate,
    RecordingUpdateResponse,
    UploadResponse,
)
from voicerelay.services.file_storage import FileStorageService, StorageError, StorageNotFoundError
from voicerelay.services.workflow_dispatch import enqueue_dispatch, resolve_dispatch_target
from voicerelay.utils import millis, parse_uuid, safe_filename

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["recordings"],
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)

DEFAULT_MIME_TYPE = "audio/mpeg"
MAX_LIST_LIMIT = 200


@router.post("/upload-recording", response_model=UploadResponse, status_code=201)
async def upload_recording(
    request: Request,
    user_id: str = Depends(require_device_user),
    db: AsyncSession = Depends(get_db),
    storage: FileStorageService = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Accept a clip as multipart ``file`` or as the raw request body."""
    content_type = request.headers.get("content-type", "")
    timestamp = millis()
    duration_raw = request.headers.get("x-recording-duration")

    if "multipart/form-data" in content_type:
        async with request.form() as form:
            file = form.get("file")
            if not isinstance(file, UploadFile):
                raise MalformedRequestError("No file provided")
            audio = await file.read()
            filename = safe_filename(file.filename or "") or f"recording_{timestamp}.mp3"
            mime_type = file.content_type or DEFAULT_MIME_TYPE
            form_duration = form.get("duration")
            if isinstance(form_duration, str) and form_duration:
                duration_raw = form_duration
    else:
        audio = await request.body()
        filename = f"recording_{timestamp}.mp3"
        mime_type = content_type or DEFAULT_MIME_TYPE

    if len(audio) == 0:
        raise MalformedRequestError("Empty file")

    file_path = f"user/{user_id}/{timestamp}_{filename}"
    recording = await _store_recording(
        db, storage, settings,
        user_id=user_id,
        file_path=file_path,
        audio=audio,
        mime_type=mime_type,
        sender="user",
        duration=_parse_duration(duration_raw),
        dispatch=True,
    )
    return {"success": True, "recording": recording}


@router.post("/upload-response", response_model=UploadResponse, status_code=201)
async def upload_response(
    request: Request,
    user_id: str = Depends(require_device_user),
    db: AsyncSession = Depends(get_db),
    storage: FileStorageService = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Store an AI-generated reply (multipart ``file`` plus optional ``transcript``)."""
    content_type = request.headers.get("content-type", "")
    if "multipart/form-data" not in content_type:
        raise MalformedRequestError("Content-Type must be multipart/form-data")

    async with request.form() as form:
        file = form.get("file")
        if not isinstance(file, UploadFile):
            raise MalformedRequestError("No file provided")
        audio = await file.read()
        mime_type = file.content_type or DEFAULT_MIME_TYPE
        transcript = form.get("transcript")
        transcript = transcript if isinstance(transcript, str) else None

    if len(audio) == 0:
        raise MalformedRequestError("Empty file")

    extension = "webm" if "webm" in mime_type else "mp3"
    file_path = f"ai/{user_id}/{millis()}_response.{extension}"
    recording = await _store_recording(
        db, storage, settings,
        user_id=user_id,
        file_path=file_path,
        audio=audio,
        mime_type=mime_type,
        sender="ai",
        transcript=transcript,
    )
    return {"success": True, "recording": recording}


@router.get("/list-recordings", response_model=RecordingListResponse)
async def list_recordings(
    sender: Optional[str] = Query(None),
    played: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(require_device_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's recordings, newest first, with the unpaged total."""
    filters = [Recording.user_id == user_id]
    if sender:
        filters.append(Recording.sender == sender)
    if played is not None:
        # Anything other than "true" filters for unplayed
        filters.append(Recording.played == (played == "true"))

    total = await db.scalar(select(func.count()).select_from(Recording).where(*filters))
    result = await db.execute(
        select(Recording)
        .where(*filters)
        .order_by(desc(Recording.created_at), desc(Recording.id))
        .limit(limit)
        .offset(offset)
    )
    return {
        "recordings": result.scalars().all(),
        "total": total or 0,
        "limit": limit,
        "offset": offset,
    }


@router.get("/get-recording", response_model=RecordingDetailResponse)
async def get_recording(
    request: Request,
    id: Optional[str] = Query(None),
    user_id: str = Depends(require_device_user),
    db: AsyncSession = Depends(get_db),
):
    """Get one recording plus the URL its audio can be downloaded from."""
    if not id:
        raise MalformedRequestError("Missing id parameter")
    recording = await _get_owned_recording(db, id, user_id)
    download_url = request.url_for("download_recording").include_query_params(id=str(recording.id))
    return {"recording": recording, "download_url": str(download_url)}


@router.patch("/update-recording", response_model=RecordingUpdateResponse)
async def update_recording(
    body: RecordingUpdate,
    id: Optional[str] = Query(None),
    user_id: str = Depends(require_device_user),
    db: AsyncSession = Depends(get_db),
):
    """Update status, transcript and/or played. Other fields are ignored."""
    if not id:
        raise MalformedRequestError("Missing id parameter")
    updates = body.changes()
    if not updates:
        raise MalformedRequestError("No valid fields to update")

    recording = await _get_owned_recording(db, id, user_id)
    for key, value in updates.items():
        setattr(recording, key, value)

    await db.commit()
    await db.refresh(recording)
    return {"recording": recording}


@router.post("/mark-played", response_model=MarkPlayedResponse)
async def mark_played(
    body: MarkPlayedRequest,
    user_id: str = Depends(require_device_user),
    db: AsyncSession = Depends(get_db),
):
    """Flag a recording as played."""
    if not body.id:
        raise MalformedRequestError("Missing id in request body")

    recording = await _get_owned_recording(db, body.id, user_id)
    recording.played = True
    await db.commit()
    await db.refresh(recording)
    return {"success": True, "recording": recording}


@router.get("/download-recording", name="download_recording")
async def download_recording(
    id: Optional[str] = Query(None),
    principal: Principal = Depends(require_download_access),
    db: AsyncSession = Depends(get_db),
    storage: FileStorageService = Depends(get_storage),
):
    """Stream a recording's audio. Service callers may read any recording."""
    if not id:
        raise MalformedRequestError("Missing id parameter")

    if principal.is_service:
        recording_id = parse_uuid(id)
        recording = await db.get(Recording, recording_id) if recording_id else None
        if not recording:
            raise NotFoundError("Recording not found")
    else:
        recording = await _get_owned_recording(db, id, principal.user_id)

    try:
        audio = await storage.read(recording.file_path)
    except StorageNotFoundError:
        logger.error(f"Recording {recording.id} points at missing object {recording.file_path}")
        raise UpstreamError("Failed to download file")
    except StorageError as e:
        logger.error(f"Storage error reading {recording.file_path}: {e}")
        raise UpstreamError("Failed to download file")

    filename = recording.file_path.split("/")[-1]
    return Response(
        content=audio,
        media_type=recording.mime_type or DEFAULT_MIME_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _get_owned_recording(db: AsyncSession, recording_id: str, user_id: str) -> Recording:
    """Fetch a recording scoped to its owner. Foreign and missing look the same."""
    parsed = parse_uuid(recording_id)
    if parsed is None:
        raise NotFoundError("Recording not found")
    result = await db.execute(
        select(Recording).where(Recording.id == parsed, Recording.user_id == user_id)
    )
    recording = result.scalar_one_or_none()
    if not recording:
        raise NotFoundError("Recording not found")
    return recording


def _parse_duration(raw: Optional[str]) -> Optional[float]:
    if raw in (None, ""):
        return None
    try:
        duration = float(raw)
    except ValueError:
        raise MalformedRequestError("duration must be a number of seconds")
    if duration < 0:
        raise MalformedRequestError("duration must be a number of seconds")
    return duration


async def _store_recording(
    db: AsyncSession,
    storage: FileStorageService,
    settings: Settings,
    *,
    user_id: str,
    file_path: str,
    audio: bytes,
    mime_type: str,
    sender: str,
    transcript: Optional[str] = None,
    duration: Optional[float] = None,
    dispatch: bool = False,
) -> Recording:
    """Write the object, then the row. Removes the object if the row cannot be written."""
    try:
        await storage.save(file_path, audio, mime_type)
    except StorageError as e:
        logger.error(f"Upload error for {file_path}: {e}")
        raise UpstreamError("Failed to upload file")

    recording = Recording(
        user_id=user_id,
        file_path=file_path,
        sender=sender,
        status="pending",
        transcript=transcript,
        played=False,
        duration=duration,
        mime_type=mime_type,
    )
    try:
        db.add(recording)
        await db.flush()
        if dispatch:
            target = await resolve_dispatch_target(db, user_id, settings)
            if target:
                enqueue_dispatch(db, user_id, recording.id, settings)
                logger.info(f"Queued workflow dispatch for recording {recording.id} on {target.repo}")
            else:
                logger.info(f"Skipping workflow trigger for recording {recording.id}: no repository configured")
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Database error storing {file_path}: {e}")
        try:
            await storage.delete(file_path)
        except StorageError as cleanup_error:
            logger.error(f"Orphaned object {file_path}: cleanup failed: {cleanup_error}")
        raise UpstreamError("Failed to create record")

    await db.refresh(recording)
    return recording
