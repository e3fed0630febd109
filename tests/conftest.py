import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import jwt

from voicerelay.config import Settings
from voicerelay.main import create_app
from voicerelay.models import DeviceToken, GithubLink
from voicerelay.services.github_client import GitHubClient

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
JWT_SECRET = "test-jwt-secret"
SERVICE_KEY = "test-service-key"


def make_session_jwt(user_id: str, expires_in: int = 3600, secret: str = JWT_SECRET, audience: str = "authenticated") -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sub": user_id, "aud": audience, "iat": now, "exp": now + timedelta(seconds=expires_in)},
        secret,
        algorithm="HS256",
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        FILE_STORAGE_TYPE="local",
        FILE_STORAGE_PATH=str(tmp_path / "uploads"),
        APP_URL="http://app.test",
        CORS_ORIGINS="*",
        UPLOAD_API_KEY=SERVICE_KEY,
        SESSION_JWT_SECRET=JWT_SECRET,
        GITHUB_CLIENT_ID="client-id",
        GITHUB_CLIENT_SECRET="client-secret",
        GITHUB_TOKEN="",
        GITHUB_DEFAULT_REPO="",
        DISPATCH_WORKER_ENABLED=False,
        DISPATCH_BACKOFF_SECONDS=30.0,
    )


@pytest.fixture
def fake_github(settings):
    """GitHub client double: async calls are AsyncMocks, URL building is real."""
    fake = MagicMock(spec=GitHubClient)
    fake.authorize_url.side_effect = GitHubClient(settings).authorize_url
    fake.exchange_code.return_value = {"access_token": "gho_test", "token_type": "bearer", "scope": "repo"}
    fake.list_repos.return_value = []
    fake.dispatch_workflow.return_value = None
    fake.put_repo_secret.return_value = None
    fake.revoke_token.return_value = None
    return fake


@pytest.fixture
async def app(settings, fake_github):
    application = create_app(settings)
    async with application.router.lifespan_context(application):
        application.state.github = fake_github
        application.state.worker_ctx.github = fake_github
        yield application


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def session_factory(app):
    return app.state.session_factory


@pytest.fixture
def storage_root(settings):
    return Path(settings.FILE_STORAGE_PATH)


async def add_device_token(session_factory, user_id: str, token: str, expires_in_days: float = 30) -> DeviceToken:
    async with session_factory() as db:
        device_token = DeviceToken(
            user_id=user_id,
            token=token,
            name="Test device",
            expires_at=datetime.now(timezone.utc) + timedelta(days=expires_in_days),
        )
        db.add(device_token)
        await db.commit()
        return device_token


async def add_github_link(session_factory, user_id: str, repo: str | None = None, token: str = "gho_linked") -> GithubLink:
    async with session_factory() as db:
        link = GithubLink(user_id=user_id, access_token=token, token_type="bearer", scope="repo", github_repo=repo)
        db.add(link)
        await db.commit()
        return link


@pytest.fixture
async def device_headers(session_factory):
    await add_device_token(session_factory, USER_ID, "device-token-user-1")
    return {"x-device-token": "device-token-user-1"}


@pytest.fixture
async def other_device_headers(session_factory):
    await add_device_token(session_factory, OTHER_USER_ID, "device-token-user-2")
    return {"x-device-token": "device-token-user-2"}


@pytest.fixture
def session_headers():
    return {"Authorization": f"Bearer {make_session_jwt(USER_ID)}"}


@pytest.fixture
def other_session_headers():
    return {"Authorization": f"Bearer {make_session_jwt(OTHER_USER_ID)}"}


async def upload_clip(client, headers, content: bytes = b"fake-audio-bytes", filename: str = "clip.webm",
                      mime_type: str = "audio/webm", **data) -> httpx.Response:
    return await client.post(
        "/upload-recording",
        headers=headers,
        files={"file": (filename, content, mime_type)},
        data=data or None,
    )
