"""Workflow dispatch: target resolution, outbox enqueue and delivery.

Both call sites (recording upload and the trigger endpoint) go through
``enqueue_dispatch``; the job worker delivers with ``deliver_dispatch``.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voicerelay.config import Settings
from voicerelay.models.github_link import GithubLink
from voicerelay.models.job import Job
from voicerelay.services.github_client import GitHubClient
from voicerelay.utils import utcnow

logger = logging.getLogger(__name__)

DISPATCH_JOB_TYPE = "dispatch-workflow"


class PermanentDispatchError(Exception):
    """Dispatch cannot succeed by retrying (e.g. no target configured)."""
    retryable = False


@dataclass
class DispatchTarget:
    token: str
    repo: str
    source: str  # "link" or "default"


async def resolve_dispatch_target(
    db: AsyncSession, user_id: str, settings: Settings
) -> Optional[DispatchTarget]:
    """User's linked repository first, then the configured default, else None."""
    result = await db.execute(
        select(GithubLink).where(GithubLink.user_id == user_id)
    )
    link = result.scalar_one_or_none()
    if link and link.access_token and link.github_repo:
        return DispatchTarget(token=link.access_token, repo=link.github_repo, source="link")
    if settings.GITHUB_TOKEN and settings.GITHUB_DEFAULT_REPO:
        return DispatchTarget(token=settings.GITHUB_TOKEN, repo=settings.GITHUB_DEFAULT_REPO, source="default")
    return None


def enqueue_dispatch(
    db: AsyncSession, user_id: str, recording_id: uuid.UUID, settings: Settings
) -> Job:
    """Add a dispatch job to the session. Committed together with the caller's changes."""
    job = Job(
        job_type=DISPATCH_JOB_TYPE,
        user_id=user_id,
        status="queued",
        params={"recording_id": str(recording_id)},
        max_attempts=settings.DISPATCH_MAX_ATTEMPTS,
        next_attempt_at=utcnow(),
    )
    db.add(job)
    return job


async def deliver_dispatch(
    db: AsyncSession, job: Job, github: GitHubClient, settings: Settings
) -> dict:
    """Send one workflow_dispatch event for the job's recording."""
    recording_id = job.params.get("recording_id")
    if not recording_id:
        raise PermanentDispatchError("Job has no recording_id")

    # Re-resolved on every attempt, not fixed at enqueue time
    target = await resolve_dispatch_target(db, job.user_id, settings)
    if target is None:
        raise PermanentDispatchError("No GitHub repository configured")

    logger.info(f"Dispatching {settings.GITHUB_WORKFLOW_FILE} on {target.repo} for recording {recording_id}")
    await github.dispatch_workflow(
        token=target.token,
        repo=target.repo,
        workflow=settings.GITHUB_WORKFLOW_FILE,
        ref=settings.GITHUB_WORKFLOW_REF,
        inputs={"recording_id": recording_id},
    )
    return {
        "repo": target.repo,
        "workflow": settings.GITHUB_WORKFLOW_FILE,
        "ref": settings.GITHUB_WORKFLOW_REF,
        "target_source": target.source,
    }
