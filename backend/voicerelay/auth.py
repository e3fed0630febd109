"""Request guards: device tokens, web sessions and the service API key.

Every route declares exactly one of these as a dependency instead of
repeating credential checks in its body.
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voicerelay.config import Settings
from voicerelay.database import get_db
from voicerelay.dependencies import get_settings
from voicerelay.errors import InvalidCredentialError, MissingCredentialError
from voicerelay.models.device_token import DeviceToken
from voicerelay.utils import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    """Caller of the download endpoint: a trusted service or a device's user."""
    user_id: Optional[str] = None
    is_service: bool = False


async def authenticate_device_token(db: AsyncSession, token: Optional[str]) -> str:
    """Resolve a device token to its user_id. Expired at or after expires_at."""
    if not token:
        raise MissingCredentialError("Missing x-device-token header")

    result = await db.execute(
        select(DeviceToken.user_id, DeviceToken.expires_at).where(DeviceToken.token == token)
    )
    row = result.one_or_none()
    if row is None:
        raise InvalidCredentialError("Invalid device token")

    user_id, expires_at = row
    if utcnow() >= as_utc(expires_at):
        raise InvalidCredentialError("Device token expired")
    return user_id


async def require_device_user(
    x_device_token: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> str:
    """Guard for device-facing endpoints. Returns the authenticated user_id."""
    return await authenticate_device_token(db, x_device_token)


def decode_session_token(token: str, settings: Settings) -> str:
    """Validate an HS256 session JWT and return its ``sub`` (user id)."""
    if not settings.SESSION_JWT_SECRET:
        logger.error("SESSION_JWT_SECRET is not configured; rejecting session")
        raise InvalidCredentialError("Unauthorized")
    try:
        claims = jwt.decode(
            token,
            settings.SESSION_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.SESSION_JWT_AUDIENCE or None,
            options={"require": ["sub", "exp"]},
        )
    except jwt.PyJWTError as e:
        logger.info(f"Rejected session token: {e}")
        raise InvalidCredentialError("Unauthorized")
    return str(claims["sub"])


def session_token_from_request(request: Request, settings: Settings) -> Optional[str]:
    auth_header = request.headers.get("authorization", "")
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return request.cookies.get(settings.SESSION_COOKIE_NAME)


async def optional_session_user(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """Session user or None; used by browser redirects that report errors via URL."""
    token = session_token_from_request(request, settings)
    if not token:
        return None
    try:
        return decode_session_token(token, settings)
    except InvalidCredentialError:
        return None


async def require_session_user(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    """Guard for web-session endpoints. Returns the authenticated user_id."""
    token = session_token_from_request(request, settings)
    if not token:
        raise MissingCredentialError("Unauthorized")
    return decode_session_token(token, settings)


async def require_download_access(
    x_api_key: Optional[str] = Header(None),
    x_device_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Service callers present the static API key; devices present their token."""
    if x_api_key:
        expected = settings.UPLOAD_API_KEY
        if expected and hmac.compare_digest(x_api_key, expected):
            return Principal(is_service=True)
        raise InvalidCredentialError("Unauthorized")
    if x_device_token:
        return Principal(user_id=await authenticate_device_token(db, x_device_token))
    raise MissingCredentialError("Unauthorized")
