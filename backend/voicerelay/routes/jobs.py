"""Jobs API - check delivery status of queued side effects."""
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voicerelay.auth import require_session_user
from voicerelay.database import get_db
from voicerelay.errors import NotFoundError
from voicerelay.models.job import Job
from voicerelay.schemas.job import JobResponse

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    user_id: str = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
):
    """Get job status and attempt history."""
    result = await db.execute(select(Job).where(Job.id == job_id, Job.user_id == user_id))
    job = result.scalar_one_or_none()
    if not job:
        raise NotFoundError("Job not found")
    return job
