"""Recording request/response schemas."""
import uuid
from typing import Literal, Optional
from datetime import datetime
from pydantic import BaseModel

# Only these keys survive an update; anything else in the body is dropped.
UPDATABLE_FIELDS = ("status", "transcript", "played")


class RecordingUpdate(BaseModel):
    status: Optional[Literal["pending", "processing", "done"]] = None
    transcript: Optional[str] = None
    played: Optional[bool] = None

    model_config = {"extra": "ignore"}

    def changes(self) -> dict:
        """Explicitly provided fields, minus nulls for non-nullable columns."""
        data = self.model_dump(include=set(UPDATABLE_FIELDS), exclude_unset=True)
        for key in ("status", "played"):
            if key in data and data[key] is None:
                data.pop(key)
        return data


class MarkPlayedRequest(BaseModel):
    id: Optional[str] = None


class RecordingResponse(BaseModel):
    id: uuid.UUID
    user_id: str
    file_path: str
    sender: str
    status: str
    transcript: Optional[str] = None
    played: bool = False
    duration: Optional[float] = None
    mime_type: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RecordingSummary(BaseModel):
    id: uuid.UUID
    file_path: str
    duration: Optional[float] = None
    sender: str
    status: str
    transcript: Optional[str] = None
    played: bool = False
    created_at: datetime

    model_config = {"from_attributes": True}


class UploadedRecording(BaseModel):
    id: uuid.UUID
    file_path: str
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class UploadResponse(BaseModel):
    success: bool = True
    recording: UploadedRecording


class RecordingListResponse(BaseModel):
    recordings: list[RecordingSummary]
    total: int
    limit: int
    offset: int


class RecordingDetailResponse(BaseModel):
    recording: RecordingResponse
    download_url: str


class RecordingUpdateResponse(BaseModel):
    recording: RecordingResponse


class PlayedState(BaseModel):
    id: uuid.UUID
    played: bool

    model_config = {"from_attributes": True}


class MarkPlayedResponse(BaseModel):
    success: bool = True
    recording: PlayedState
