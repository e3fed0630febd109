"""Manual workflow trigger for an existing recording."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from voicerelay.auth import require_session_user
from voicerelay.config import Settings
from voicerelay.database import get_db
from voicerelay.dependencies import get_settings, get_worker_ctx
from voicerelay.errors import MalformedRequestError, NotFoundError, UpstreamError
from voicerelay.models.recording import Recording
from voicerelay.schemas.github import TriggerWorkflowRequest, TriggerWorkflowResponse
from voicerelay.services.job_worker import WorkerContext, attempt_job_now
from voicerelay.services.workflow_dispatch import enqueue_dispatch, resolve_dispatch_target
from voicerelay.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["workflows"])


@router.post("/trigger-workflow", response_model=TriggerWorkflowResponse)
async def trigger_workflow(
    body: TriggerWorkflowRequest,
    user_id: str = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    worker_ctx: WorkerContext = Depends(get_worker_ctx),
):
    """Queue a dispatch and make the first delivery attempt inline.

    ``status`` is ``completed`` when GitHub accepted the event and
    ``queued`` when the worker will retry it.
    """
    if not body.recording_id:
        raise MalformedRequestError("recording_id is required")

    recording_id = parse_uuid(body.recording_id)
    recording = await db.get(Recording, recording_id) if recording_id else None
    if not recording or recording.user_id != user_id:
        raise NotFoundError("Recording not found")

    target = await resolve_dispatch_target(db, user_id, settings)
    if target is None:
        raise MalformedRequestError("No GitHub repository configured")

    job = enqueue_dispatch(db, user_id, recording.id, settings)
    await db.commit()
    job_id = job.id

    attempted = await attempt_job_now(worker_ctx, job_id)
    status = attempted.status if attempted else "queued"
    if status == "failed":
        logger.error(f"Manual dispatch {job_id} for recording {recording.id} failed: {attempted.error_message}")
        raise UpstreamError("Failed to trigger workflow")
    logger.info(f"Manual dispatch {job_id} for recording {recording.id} on {target.repo}: {status}")
    return {"success": True, "job_id": job_id, "status": status}
