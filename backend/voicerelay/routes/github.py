"""GitHub linking API - OAuth round trip, repository listing and selection."""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from nacl.exceptions import CryptoError
from sqlalchemy import select, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from voicerelay.auth import optional_session_user, require_session_user
from voicerelay.config import Settings
from voicerelay.database import get_db, upsert_for
from voicerelay.dependencies import get_github, get_settings
from voicerelay.errors import MalformedRequestError, UpstreamError
from voicerelay.models.device_token import DeviceToken
from voicerelay.models.github_link import GithubLink
from voicerelay.schemas.common import SuccessResponse
from voicerelay.schemas.github import RepoListResponse, SelectRepoRequest
from voicerelay.services.device_tokens import create_device_token
from voicerelay.services.github_client import GitHubAPIError, GitHubClient, encrypt_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/github", tags=["github"])


def _app_redirect(settings: Settings, path: str = "/", **params) -> RedirectResponse:
    url = f"{settings.APP_URL.rstrip('/')}{path}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return RedirectResponse(url, status_code=302)


async def _get_link(db: AsyncSession, user_id: str) -> Optional[GithubLink]:
    result = await db.execute(select(GithubLink).where(GithubLink.user_id == user_id))
    return result.scalar_one_or_none()


async def _require_link(db: AsyncSession, user_id: str) -> GithubLink:
    link = await _get_link(db, user_id)
    if not link:
        raise MalformedRequestError("GitHub not linked")
    return link


# ── OAuth ────────────────────────────────────────────────────────

@router.get("/authorize")
async def authorize(
    request: Request,
    user_id: Optional[str] = Depends(optional_session_user),
    settings: Settings = Depends(get_settings),
    github: GitHubClient = Depends(get_github),
):
    """Send the browser to GitHub's consent screen, with the user id as state."""
    if not user_id:
        return _app_redirect(settings, "/login")
    if not settings.github_oauth_configured:
        raise UpstreamError("GitHub OAuth not configured")

    redirect_uri = str(request.url_for("github_callback"))
    return RedirectResponse(github.authorize_url(state=user_id, redirect_uri=redirect_uri), status_code=302)


@router.get("/callback", name="github_callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    user_id: Optional[str] = Depends(optional_session_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    github: GitHubClient = Depends(get_github),
):
    """Finish the OAuth round trip. Every outcome is a redirect back to the app."""
    if error:
        return _app_redirect(settings, github_error=error)
    if not code or not state:
        return _app_redirect(settings, github_error="missing_params")
    if not user_id or state != user_id:
        logger.warning(f"OAuth state mismatch (session user {user_id!r})")
        return _app_redirect(settings, "/login", error="auth_mismatch")
    if not settings.github_oauth_configured:
        return _app_redirect(settings, github_error="not_configured")

    try:
        token_data = await github.exchange_code(code, redirect_uri=str(request.url_for("github_callback")))
    except GitHubAPIError as e:
        logger.error(f"GitHub code exchange failed: {e}")
        return _app_redirect(settings, github_error="exchange_failed")

    token_data = token_data or {}
    if token_data.get("error"):
        logger.warning(f"GitHub rejected code exchange: {token_data.get('error_description') or token_data['error']}")
        return _app_redirect(settings, github_error=token_data["error"])
    access_token = token_data.get("access_token")
    if not access_token:
        return _app_redirect(settings, github_error="exchange_failed")

    insert = upsert_for(db)
    stmt = insert(GithubLink).values(
        user_id=user_id,
        access_token=access_token,
        token_type=token_data.get("token_type") or "bearer",
        scope=token_data.get("scope"),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={
            "access_token": stmt.excluded.access_token,
            "token_type": stmt.excluded.token_type,
            "scope": stmt.excluded.scope,
            "updated_at": func.now(),
        },
    )
    try:
        await db.execute(stmt)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to store GitHub link for {user_id}: {e}")
        return _app_redirect(settings, github_error="storage_failed")

    logger.info(f"Linked GitHub account for user {user_id}")
    return _app_redirect(settings, github_linked="true")


@router.post("/unlink", response_model=SuccessResponse)
async def unlink(
    user_id: str = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    github: GitHubClient = Depends(get_github),
):
    """Forget the link, then revoke the grant upstream if we can."""
    link = await _get_link(db, user_id)
    access_token = link.access_token if link else None

    await db.execute(delete(GithubLink).where(GithubLink.user_id == user_id))
    await db.commit()

    if access_token and settings.github_oauth_configured:
        try:
            await github.revoke_token(access_token)
        except GitHubAPIError as e:
            logger.warning(f"Could not revoke GitHub token for {user_id}: {e}")
    return {"success": True}


# ── Repositories ─────────────────────────────────────────────────

@router.get("/repos", response_model=RepoListResponse)
async def list_repos(
    user_id: str = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
    github: GitHubClient = Depends(get_github),
):
    link = await _require_link(db, user_id)
    try:
        repos = await github.list_repos(link.access_token)
    except GitHubAPIError as e:
        logger.error(f"Listing repos for {user_id} failed: {e}")
        raise UpstreamError("Failed to fetch repos")
    return {
        "repos": [
            {"full_name": r["full_name"], "private": bool(r.get("private"))}
            for r in repos or []
        ]
    }


@router.post("/select-repo", response_model=SuccessResponse)
async def select_repo(
    body: SelectRepoRequest,
    user_id: str = Depends(require_session_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    github: GitHubClient = Depends(get_github),
):
    """Choose the dispatch repository and provision a device token as its Actions secret."""
    repo = (body.repo or "").strip()
    if not repo:
        raise MalformedRequestError("repo is required")
    link = await _require_link(db, user_id)

    device_token = await create_device_token(
        db, user_id, settings.DEVICE_TOKEN_TTL_DAYS, name=f"GitHub Actions ({repo})"
    )
    try:
        key = await github.get_repo_public_key(link.access_token, repo)
        await github.put_repo_secret(
            link.access_token,
            repo,
            settings.GITHUB_SECRET_NAME,
            encrypt_secret(key["key"], device_token.token),
            key["key_id"],
        )
    except (GitHubAPIError, CryptoError, KeyError, TypeError, ValueError) as e:
        logger.error(f"Provisioning {settings.GITHUB_SECRET_NAME} on {repo} failed: {e}")
        await db.execute(delete(DeviceToken).where(DeviceToken.id == device_token.id))
        await db.commit()
        raise UpstreamError("Failed to create repository secret")

    link.github_repo = repo
    await db.commit()
    logger.info(f"User {user_id} selected repository {repo}")
    return {"success": True}
