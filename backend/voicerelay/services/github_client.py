"""Async GitHub client for OAuth, repository secrets and workflow dispatch."""
import asyncio
import logging
from base64 import b64encode
from typing import Optional, Any
from urllib.parse import urlencode

import aiohttp
from nacl import encoding, public

from voicerelay.config import Settings

logger = logging.getLogger(__name__)


class GitHubAPIError(Exception):
    """Error from a GitHub call, with status code and URL. Status 0 means no response."""

    def __init__(self, status: int, message: str, url: str):
        self.status = status
        self.message = message
        self.url = url
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.status:
            return f"HTTP {self.status} from {self.url}: {self.message}"
        return f"Connection error for {self.url}: {self.message}"

    @property
    def retryable(self) -> bool:
        """Connection failures, rate limits and server errors may succeed later."""
        return self.status == 0 or self.status == 429 or self.status >= 500


def encrypt_secret(public_key: str, secret_value: str) -> str:
    """Seal ``secret_value`` for a repository's base64 Actions public key."""
    key = public.PublicKey(public_key.encode("utf-8"), encoding.Base64Encoder())
    sealed_box = public.SealedBox(key)
    encrypted = sealed_box.encrypt(secret_value.encode("utf-8"))
    return b64encode(encrypted).decode("utf-8")


class GitHubClient:
    """Async HTTP client for the GitHub REST and OAuth endpoints.

    One instance lives for the whole process; ``open``/``close`` are driven
    by the application lifespan. Falls back to a per-call session if used
    before ``open``.
    """

    def __init__(self, settings: Settings):
        self.api_url = settings.GITHUB_API_URL.rstrip("/")
        self.oauth_url = settings.GITHUB_OAUTH_URL.rstrip("/")
        self.client_id = settings.GITHUB_CLIENT_ID
        self.client_secret = settings.GITHUB_CLIENT_SECRET
        self.scope = settings.GITHUB_OAUTH_SCOPE
        self._timeout = aiohttp.ClientTimeout(total=settings.GITHUB_TIMEOUT_SECONDS)
        self._session: Optional[aiohttp.ClientSession] = None

    async def open(self) -> None:
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "GitHubClient":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── OAuth ────────────────────────────────────────────────────

    def authorize_url(self, state: str, redirect_uri: str) -> str:
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": self.scope,
            "state": state,
        })
        return f"{self.oauth_url}/authorize?{query}"

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> dict:
        """Exchange an authorization code. Returns GitHub's JSON, which may hold ``error``."""
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }
        if redirect_uri:
            payload["redirect_uri"] = redirect_uri
        return await self._request(
            "POST", f"{self.oauth_url}/access_token",
            json=payload, headers={"Accept": "application/json"},
        )

    async def revoke_token(self, access_token: str) -> None:
        """Revoke an OAuth token for this app (requires client credentials)."""
        await self._request(
            "DELETE", f"{self.api_url}/applications/{self.client_id}/token",
            json={"access_token": access_token},
            headers=self._api_headers(),
            auth=aiohttp.BasicAuth(self.client_id, self.client_secret),
        )

    # ── Repositories ─────────────────────────────────────────────

    async def list_repos(self, token: str) -> list[dict]:
        return await self._request(
            "GET", f"{self.api_url}/user/repos",
            params={"per_page": "100", "sort": "updated"},
            headers=self._api_headers(token),
        )

    async def get_repo_public_key(self, token: str, repo: str) -> dict:
        """Returns ``{"key_id": ..., "key": <base64>}`` for Actions secrets."""
        return await self._request(
            "GET", f"{self.api_url}/repos/{repo}/actions/secrets/public-key",
            headers=self._api_headers(token),
        )

    async def put_repo_secret(self, token: str, repo: str, name: str, encrypted_value: str, key_id: str) -> None:
        await self._request(
            "PUT", f"{self.api_url}/repos/{repo}/actions/secrets/{name}",
            json={"encrypted_value": encrypted_value, "key_id": key_id},
            headers=self._api_headers(token),
        )

    async def dispatch_workflow(self, token: str, repo: str, workflow: str, ref: str, inputs: dict) -> None:
        """Ask Actions to start ``workflow``. GitHub answers 204 with no body."""
        await self._request(
            "POST", f"{self.api_url}/repos/{repo}/actions/workflows/{workflow}/dispatches",
            json={"ref": ref, "inputs": inputs},
            headers=self._api_headers(token),
        )

    # ── Internals ────────────────────────────────────────────────

    def _api_headers(self, token: Optional[str] = None) -> dict:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "voice-relay",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            if self._session:
                return await self._send(self._session, method, url, **kwargs)
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                return await self._send(session, method, url, **kwargs)
        except aiohttp.ClientError as e:
            raise GitHubAPIError(0, str(e) or type(e).__name__, url) from e
        except asyncio.TimeoutError as e:
            raise GitHubAPIError(0, "request timed out", url) from e

    async def _send(self, session: aiohttp.ClientSession, method: str, url: str, **kwargs) -> Any:
        async with session.request(method, url, **kwargs) as resp:
            if resp.status >= 400:
                body = await resp.text()
                logger.warning(f"GitHub {method} {url} returned {resp.status}: {body[:300]}")
                raise GitHubAPIError(resp.status, body[:500], url)
            if resp.status == 204 or resp.content_length == 0:
                return None
            return await resp.json(content_type=None)
