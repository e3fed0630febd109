"""Background job worker.

Polls the jobs table for 'queued' jobs whose next_attempt_at has passed and
processes them. Runs as an asyncio task within the FastAPI process.

Delivery is at-least-once: a job that fails with a retryable error goes
back to 'queued' with exponential backoff until max_attempts is reached.
"""
import asyncio
import logging
import traceback
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voicerelay.config import Settings
from voicerelay.models.job import Job
from voicerelay.services.github_client import GitHubClient
from voicerelay.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Process-scoped resources handed to job handlers."""
    session_factory: async_sessionmaker[AsyncSession]
    github: GitHubClient
    settings: Settings


async def recover_stale_jobs(ctx: WorkerContext, stale_minutes: int = 15):
    """Re-queue jobs stuck in 'running' for longer than `stale_minutes`.

    Runs once at startup; a crash mid-delivery leaves the row in "running".
    Jobs that already used all their attempts are marked failed instead.
    """
    cutoff = utcnow() - timedelta(minutes=stale_minutes)
    async with ctx.session_factory() as db:
        result = await db.execute(
            select(Job).where(
                and_(
                    Job.status == "running",
                    Job.started_at < cutoff,
                )
            )
        )
        stale_jobs = result.scalars().all()
        for job in stale_jobs:
            if job.attempts >= job.max_attempts:
                job.status = "failed"
                job.error_message = f"Recovered on startup: job was running for >{stale_minutes} minutes"
                job.completed_at = utcnow()
            else:
                job.status = "queued"
                job.next_attempt_at = utcnow()
            logger.warning(f"Recovered stale job {job.id} (started at {job.started_at}) -> {job.status}")
        if stale_jobs:
            await db.commit()
            logger.info(f"Recovered {len(stale_jobs)} stale job(s)")


def safe_error_message(e: Exception, fallback: str = "Delivery interrupted") -> str:
    """Message stored on the job row. Falls back to the class name when str(e) is empty."""
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


def retry_delay(settings: Settings, attempts: int) -> timedelta:
    """Exponential backoff: base, 2x base, 4x base, ..."""
    return timedelta(seconds=settings.DISPATCH_BACKOFF_SECONDS * (2 ** max(attempts - 1, 0)))


# Job handler registry - add new job types here
JOB_HANDLERS = {}


def register_job_handler(job_type: str):
    """Decorator to register a job handler function."""
    def decorator(func):
        JOB_HANDLERS[job_type] = func
        return func
    return decorator


async def _claim(db: AsyncSession, job: Job) -> None:
    job.status = "running"
    job.attempts = (job.attempts or 0) + 1
    job.started_at = utcnow()
    await db.commit()


async def run_job(db: AsyncSession, job: Job, ctx: WorkerContext) -> Job:
    """Run a claimed job and record the outcome on it."""
    handler = JOB_HANDLERS.get(job.job_type)
    try:
        if not handler:
            raise ValueError(f"Unknown job type: {job.job_type}")
        result_data = await handler(db, job, ctx)
    except Exception as e:
        retryable = getattr(e, "retryable", True) and handler is not None
        message = safe_error_message(e)[:2000]
        # Reload after rollback
        job_id = job.id
        await db.rollback()
        job = await db.get(Job, job_id)
        job.error_message = message
        if retryable and job.attempts < job.max_attempts:
            job.status = "queued"
            job.next_attempt_at = utcnow() + retry_delay(ctx.settings, job.attempts)
            logger.warning(
                f"Job {job.id} attempt {job.attempts}/{job.max_attempts} failed, "
                f"retrying at {job.next_attempt_at}: {message}"
            )
        else:
            job.status = "failed"
            job.completed_at = utcnow()
            logger.error(f"Job {job.id} failed permanently after {job.attempts} attempt(s): {message}")
            logger.debug(traceback.format_exc())
        await db.commit()
        return job

    job.status = "completed"
    job.result = result_data or {}
    job.error_message = None
    job.completed_at = utcnow()
    await db.commit()
    logger.info(f"Job {job.id} completed")
    return job


async def process_next_job(ctx: WorkerContext) -> bool:
    """Claim and run the oldest due job. Returns False when nothing was due."""
    async with ctx.session_factory() as db:
        result = await db.execute(
            select(Job)
            .where(
                Job.status == "queued",
                or_(Job.next_attempt_at.is_(None), Job.next_attempt_at <= utcnow()),
            )
            .order_by(Job.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job = result.scalar_one_or_none()
        if not job:
            return False

        logger.info(f"Processing job {job.id} (type={job.job_type}, attempt={job.attempts + 1})")
        await _claim(db, job)
        await run_job(db, job, ctx)
        return True


async def attempt_job_now(ctx: WorkerContext, job_id) -> Optional[Job]:
    """Run one delivery attempt for a specific queued job, inline.

    Returns the job in its new state, or None if another worker already
    claimed it.
    """
    async with ctx.session_factory() as db:
        result = await db.execute(
            select(Job)
            .where(Job.id == job_id, Job.status == "queued")
            .with_for_update(skip_locked=True)
        )
        job = result.scalar_one_or_none()
        if not job:
            return None
        await _claim(db, job)
        return await run_job(db, job, ctx)


async def worker_loop(ctx: WorkerContext):
    """Main worker loop. Drains due jobs, then sleeps for the poll interval."""
    logger.info("Job worker started")
    while True:
        try:
            while await process_next_job(ctx):
                pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Worker loop error: {e}")

        await asyncio.sleep(ctx.settings.DISPATCH_POLL_INTERVAL)


# ── Job Handlers ─────────────────────────────────────────────────

@register_job_handler("dispatch-workflow")
async def handle_dispatch_workflow(db: AsyncSession, job: Job, ctx: WorkerContext) -> dict:
    """Send the GitHub Actions workflow_dispatch for an uploaded recording."""
    from voicerelay.services.workflow_dispatch import deliver_dispatch
    return await deliver_dispatch(db, job, ctx.github, ctx.settings)
