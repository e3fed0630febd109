"""GitHub linking and workflow request/response schemas."""
import uuid
from typing import Optional
from pydantic import BaseModel


class RepoSummary(BaseModel):
    full_name: str
    private: bool = False


class RepoListResponse(BaseModel):
    repos: list[RepoSummary]


class SelectRepoRequest(BaseModel):
    repo: Optional[str] = None


class TriggerWorkflowRequest(BaseModel):
    recording_id: Optional[str] = None


class TriggerWorkflowResponse(BaseModel):
    success: bool = True
    job_id: uuid.UUID
    status: str
