"""Device token API - list, issue and revoke tokens for the signed-in user."""
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from voicerelay.auth import require_session_user
from voicerelay.config import Settings
from voicerelay.database import get_db
from voicerelay.dependencies import get_settings
from voicerelay.errors import NotFoundError
from voicerelay.models.device_token import DeviceToken
from voicerelay.schemas.common import SuccessResponse
from voicerelay.schemas.device_token import (
    DeviceTokenCreate,
    DeviceTokenCreateResponse,
    DeviceTokenListResponse,
)
from voicerelay.services.device_tokens import create_device_token, token_hint

router = APIRouter(prefix="/api/device-tokens", tags=["device-tokens"])


def _to_response(device_token: DeviceToken) -> dict:
    return {
        "id": device_token.id,
        "name": device_token.name,
        "token_hint": token_hint(device_token.token),
        "expires_at": device_token.expires_at,
        "created_at": device_token.created_at,
    }


@router.get("", response_model=DeviceTokenListResponse)
async def list_device_tokens(
    user_id: str = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's tokens, newest first. Token values are masked."""
    result = await db.execute(
        select(DeviceToken)
        .where(DeviceToken.user_id == user_id)
        .order_by(desc(DeviceToken.created_at))
    )
    return {"tokens": [_to_response(t) for t in result.scalars().all()]}


@router.post("", response_model=DeviceTokenCreateResponse, status_code=201)
async def issue_device_token(
    body: DeviceTokenCreate,
    user_id: str = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Issue a token. The plaintext value is only ever returned here."""
    device_token = await create_device_token(
        db, user_id, settings.DEVICE_TOKEN_TTL_DAYS, name=body.name
    )
    return {"token": device_token.token, "device_token": _to_response(device_token)}


@router.delete("/{token_id}", response_model=SuccessResponse)
async def revoke_device_token(
    token_id: UUID,
    user_id: str = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(DeviceToken).where(DeviceToken.id == token_id, DeviceToken.user_id == user_id)
    )
    device_token = result.scalar_one_or_none()
    if not device_token:
        raise NotFoundError("Device token not found")
    await db.delete(device_token)
    await db.commit()
    return {"success": True}
