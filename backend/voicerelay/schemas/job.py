"""Job response schemas."""
import uuid
from typing import Optional
from datetime import datetime
from pydantic import BaseModel


class JobResponse(BaseModel):
    id: uuid.UUID
    job_type: str
    status: str
    params: dict
    result: Optional[dict] = None
    error_message: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    user_id: str

    model_config = {"from_attributes": True}
