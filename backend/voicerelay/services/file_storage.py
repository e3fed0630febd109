"""Object storage abstraction. Local filesystem for dev, Supabase Storage for production."""
import logging
import os
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import aiofiles
import aiohttp

from voicerelay.config import Settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the object store rejects or fails an operation."""


class StorageConflictError(StorageError):
    """Raised when writing to a path that already holds an object."""


class StorageNotFoundError(StorageError):
    """Raised when reading a path that holds no object."""


class FileStorageService:
    """Handles audio object read/write to local disk or Supabase Storage.

    Objects are addressed by a slash-separated key such as
    ``user/<user_id>/<ms>_clip.webm``. Writes never overwrite.
    """

    def __init__(self, settings: Settings):
        self.storage_type = settings.FILE_STORAGE_TYPE
        self.bucket = settings.STORAGE_BUCKET
        self._session: Optional[aiohttp.ClientSession] = None

        if self.storage_type == "local":
            self.base_path = Path(settings.FILE_STORAGE_PATH).resolve()
            self.base_path.mkdir(parents=True, exist_ok=True)
        elif self.storage_type == "supabase":
            if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
                raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for supabase storage")
            self.base_url = f"{settings.SUPABASE_URL.rstrip('/')}/storage/v1/object"
            self._service_key = settings.SUPABASE_SERVICE_ROLE_KEY
        else:
            raise ValueError(f"Unknown storage type: {self.storage_type}")

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def save(self, path: str, file_bytes: bytes, content_type: str = "application/octet-stream") -> str:
        """Save bytes under ``path``. Returns the path. Raises StorageConflictError on collision."""
        if self.storage_type == "local":
            file_path = self._local_path(path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                async with aiofiles.open(file_path, "xb") as f:
                    await f.write(file_bytes)
            except FileExistsError:
                raise StorageConflictError(f"Object already exists: {path}")
            except OSError as e:
                raise StorageError(f"Local write failed for {path}: {e}") from e
            return path

        session = self._get_session()
        headers = {**self._auth_headers(), "Content-Type": content_type, "x-upsert": "false"}
        try:
            async with session.post(self._object_url(path), data=file_bytes, headers=headers) as resp:
                if resp.status in (200, 201):
                    return path
                body = await resp.text()
                if resp.status == 409 or "Duplicate" in body:
                    raise StorageConflictError(f"Object already exists: {path}")
                raise StorageError(f"Upload failed ({resp.status}): {body[:500]}")
        except aiohttp.ClientError as e:
            raise StorageError(f"Upload failed for {path}: {e}") from e

    async def read(self, path: str) -> bytes:
        """Read object bytes by path."""
        if self.storage_type == "local":
            file_path = self._local_path(path)
            if not file_path.is_file():
                raise StorageNotFoundError(f"Object not found: {path}")
            async with aiofiles.open(file_path, "rb") as f:
                return await f.read()

        session = self._get_session()
        try:
            async with session.get(self._object_url(path), headers=self._auth_headers()) as resp:
                if resp.status == 200:
                    return await resp.read()
                body = await resp.text()
                if resp.status in (400, 404) and "not found" in body.lower():
                    raise StorageNotFoundError(f"Object not found: {path}")
                raise StorageError(f"Download failed ({resp.status}): {body[:500]}")
        except aiohttp.ClientError as e:
            raise StorageError(f"Download failed for {path}: {e}") from e

    async def delete(self, path: str) -> None:
        """Delete an object. Missing objects are not an error."""
        if self.storage_type == "local":
            file_path = self._local_path(path)
            try:
                if file_path.exists():
                    os.remove(file_path)
            except OSError as e:
                raise StorageError(f"Local delete failed for {path}: {e}") from e
            return

        session = self._get_session()
        url = f"{self.base_url}/{self.bucket}"
        try:
            async with session.delete(url, json={"prefixes": [path]}, headers=self._auth_headers()) as resp:
                if resp.status not in (200, 204):
                    body = await resp.text()
                    raise StorageError(f"Delete failed ({resp.status}): {body[:500]}")
        except aiohttp.ClientError as e:
            raise StorageError(f"Delete failed for {path}: {e}") from e

    def _local_path(self, path: str) -> Path:
        file_path = (self.base_path / path).resolve()
        if self.base_path not in file_path.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return file_path

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/{self.bucket}/{quote(path)}"

    def _auth_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if not self._session:
            self._session = aiohttp.ClientSession()
        return self._session
