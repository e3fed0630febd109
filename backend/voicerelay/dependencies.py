"""FastAPI dependencies for the process-scoped resources built at startup."""
from fastapi import Request

from voicerelay.config import Settings
from voicerelay.services.file_storage import FileStorageService
from voicerelay.services.github_client import GitHubClient
from voicerelay.services.job_worker import WorkerContext


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> FileStorageService:
    return request.app.state.storage


def get_github(request: Request) -> GitHubClient:
    return request.app.state.github


def get_worker_ctx(request: Request) -> WorkerContext:
    return request.app.state.worker_ctx
