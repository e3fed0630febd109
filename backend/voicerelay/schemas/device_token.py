"""Device token request/response schemas."""
import uuid
from typing import Optional
from datetime import datetime
from pydantic import BaseModel


class DeviceTokenCreate(BaseModel):
    name: Optional[str] = None


class DeviceTokenResponse(BaseModel):
    id: uuid.UUID
    name: Optional[str] = None
    token_hint: str
    expires_at: datetime
    created_at: Optional[datetime] = None


class DeviceTokenListResponse(BaseModel):
    tokens: list[DeviceTokenResponse]


class DeviceTokenCreateResponse(BaseModel):
    """Carries the plaintext token; it is never returned again."""
    token: str
    device_token: DeviceTokenResponse
