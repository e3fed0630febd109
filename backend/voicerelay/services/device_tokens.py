"""Device token issuing, shared by the token routes and repository selection."""
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from voicerelay.models.device_token import DeviceToken
from voicerelay.utils import utcnow


def generate_token_value() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def token_hint(token: str) -> str:
    return f"{token[:4]}...{token[-4:]}"


async def default_token_name(db: AsyncSession, user_id: str) -> str:
    count = await db.scalar(
        select(func.count()).select_from(DeviceToken).where(DeviceToken.user_id == user_id)
    )
    return f"Device {(count or 0) + 1}"


async def create_device_token(
    db: AsyncSession,
    user_id: str,
    ttl_days: int,
    name: Optional[str] = None,
) -> DeviceToken:
    """Issue and commit a new token for ``user_id``."""
    if not name:
        name = await default_token_name(db, user_id)
    device_token = DeviceToken(
        user_id=user_id,
        token=generate_token_value(),
        name=name,
        expires_at=utcnow() + timedelta(days=ttl_days),
    )
    db.add(device_token)
    await db.commit()
    await db.refresh(device_token)
    return device_token
