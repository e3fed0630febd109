"""FastAPI application entry point."""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from voicerelay.config import Settings
from voicerelay.database import create_engine, create_session_factory, get_db
from voicerelay.errors import register_error_handlers
from voicerelay.logging_config import setup_logging
from voicerelay.models import Base
from voicerelay.services.file_storage import FileStorageService
from voicerelay.services.github_client import GitHubClient
from voicerelay.services.job_worker import WorkerContext, recover_stale_jobs, worker_loop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared resources, create tables, start the dispatch worker."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = create_session_factory(engine)
    storage = FileStorageService(settings)
    github = GitHubClient(settings)
    await github.open()

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.storage = storage
    app.state.github = github
    app.state.worker_ctx = WorkerContext(
        session_factory=session_factory, github=github, settings=settings
    )

    # Recover any dispatches stuck in "running" from a previous crash
    await recover_stale_jobs(app.state.worker_ctx)

    worker_task = None
    if settings.DISPATCH_WORKER_ENABLED:
        worker_task = asyncio.create_task(worker_loop(app.state.worker_ctx))

    yield

    # Cleanup
    if worker_task:
        worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker_task
    await github.close()
    await storage.close()
    await engine.dispose()
    logger.info("Shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Voice Relay API",
        version="1.0.0",
        description="Voice note relay between capture devices, storage and GitHub Actions.",
        lifespan=lifespan,
    )
    app.state.settings = settings

    register_error_handlers(app)

    # CORS
    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health_check(db: AsyncSession = Depends(get_db)):
        """Verify API and database connectivity."""
        try:
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
        except SQLAlchemyError as e:
            logger.error(f"Health check failed: {e}")
            return {"status": "error", "database": "unavailable"}

    # Register routers
    from voicerelay.routes.recordings import router as recordings_router
    from voicerelay.routes.github import router as github_router
    from voicerelay.routes.workflows import router as workflows_router
    from voicerelay.routes.device_tokens import router as device_tokens_router
    from voicerelay.routes.jobs import router as jobs_router
    app.include_router(recordings_router)
    app.include_router(github_router)
    app.include_router(workflows_router)
    app.include_router(device_tokens_router)
    app.include_router(jobs_router)

    return app


def run():
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = Settings()
    uvicorn.run("voicerelay.main:create_app", factory=True, host="0.0.0.0", port=settings.API_PORT)
