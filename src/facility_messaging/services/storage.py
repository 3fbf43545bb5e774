"""Object storage for message attachments.

The messaging core only needs ``upload(bytes, content_type) -> reference``.
:class:`HttpObjectStore` talks to a storage REST endpoint with httpx;
:class:`MemoryObjectStore` keeps objects in memory for tests and tools.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import httpx

from facility_messaging.core.errors import ConflictError, TransportError
from facility_messaging.core.settings import settings
from facility_messaging.db.time import utcnow

logger = logging.getLogger(__name__)

HTTP_CONFLICT = 409

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass(frozen=True)
class StoredObject:
    """Reference to an uploaded object."""

    path: str
    url: str


class ObjectStore(Protocol):
    """Binary object store collaborator."""

    async def upload(self, data: bytes, content_type: str, *, path: str) -> StoredObject:
        """Store ``data`` under ``path`` and return its reference."""
        ...


def safe_filename(name: str) -> str:
    """Replace characters that are unsafe in object paths with underscores."""
    cleaned = _UNSAFE_CHARS.sub("_", name or "")
    return cleaned or "file"


def attachment_path(
    scope_id: str, thread_id: str, filename: str, now: datetime | None = None
) -> str:
    """Return ``<scope>/<thread>/<millis>_<safe-name>``."""
    moment = now or utcnow()
    millis = int(moment.timestamp() * 1000)
    return f"supervisor/{scope_id}/{thread_id}/{millis}_{safe_filename(filename)}"


def media_kind(content_type: str | None) -> str:
    """Return ``image`` for image content types, otherwise ``file``."""
    return "image" if (content_type or "").startswith("image/") else "file"


class HttpObjectStore:
    """Uploads attachments to a storage REST API."""

    def __init__(
        self,
        base_url: str,
        bucket: str,
        *,
        api_key: str | None = None,
        cache_control: str = "3153600000",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.api_key = api_key
        self.cache_control = cache_control
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._client_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> HttpObjectStore:
        """Build a store from the global settings."""
        if not settings.storage_base_url:
            raise ValueError("STORAGE_BASE_URL is not configured")
        return cls(
            settings.storage_base_url,
            settings.storage_bucket,
            api_key=settings.storage_api_key,
            cache_control=settings.storage_cache_control,
            timeout_seconds=settings.storage_timeout_seconds,
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    def _headers(self, content_type: str) -> dict[str, str]:
        headers = {
            "Content-Type": content_type,
            "Cache-Control": f"max-age={self.cache_control}",
            "x-upsert": "false",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["apikey"] = self.api_key
        return headers

    def public_url(self, path: str) -> str:
        """Return the public download URL of ``path``."""
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    async def upload(self, data: bytes, content_type: str, *, path: str) -> StoredObject:
        """Upload ``data`` to ``path``; existing objects are never overwritten.

        Raises:
            ConflictError: If an object already exists at ``path``.
            TransportError: On network failures or other error responses.
        """
        client = await self._ensure_client()
        url = f"{self.base_url}/storage/v1/object/{self.bucket}/{path}"
        try:
            response = await client.post(url, content=data, headers=self._headers(content_type))
        except httpx.HTTPError as exc:
            raise TransportError(f"Upload of {path} failed: {exc}") from exc

        if response.status_code == HTTP_CONFLICT:
            raise ConflictError(f"Object {path} already exists")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"Upload of {path} rejected with status {response.status_code}"
            ) from exc

        logger.debug("Uploaded %d bytes to %s", len(data), path)
        return StoredObject(path=path, url=self.public_url(path))

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class MemoryObjectStore:
    """Keeps uploaded objects in a dict."""

    def __init__(self, base_url: str = "memory://messenger") -> None:
        self.base_url = base_url.rstrip("/")
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def upload(self, data: bytes, content_type: str, *, path: str) -> StoredObject:
        """Store ``data`` under ``path``."""
        if path in self.objects:
            raise ConflictError(f"Object {path} already exists")
        self.objects[path] = (bytes(data), content_type)
        return StoredObject(path=path, url=f"{self.base_url}/{path}")
