from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Callable
from urllib.parse import urlsplit
from uuid import uuid4

import httpx

from app.services.protocols import ArtifactStore
from app.services.storage import StorageNotConfiguredError

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}


class ArtifactPersistError(RuntimeError):
    pass


class ArtifactTooLargeError(ArtifactPersistError):
    pass


@dataclass(frozen=True)
class PersistedArtifact:
    storage_key: str
    storage_url: str
    size_bytes: int
    content_type: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extension_for(url: str, content_type: str | None) -> str:
    suffix = PurePosixPath(urlsplit(url).path).suffix.lower().lstrip(".")
    if suffix and suffix.isalnum() and len(suffix) <= 5:
        return suffix
    ct = (content_type or "").split(";", 1)[0].strip().lower()
    return CONTENT_TYPE_EXTENSIONS.get(ct, "bin")


def build_storage_key(owner_id: str, category: str, ext: str, *, now: datetime | None = None, token: str | None = None) -> str:
    day = (now or _utcnow()).strftime("%Y-%m-%d")
    return f"{owner_id}/{category}/{day}-{token or uuid4()}.{ext}"


class ArtifactPersister:
    def __init__(
        self,
        store: ArtifactStore,
        http_client: httpx.AsyncClient,
        *,
        download_timeout_s: float = 120.0,
        max_bytes: int = 512 * 1024 * 1024,
        signed_url_ttl_s: int = 86400,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._client = http_client
        self._download_timeout_s = download_timeout_s
        self._max_bytes = max_bytes
        self.signed_url_ttl_s = signed_url_ttl_s
        self._clock = clock

    async def _download(self, url: str) -> tuple[bytes, str]:
        try:
            async with self._client.stream("GET", url, timeout=self._download_timeout_s) as resp:
                if resp.status_code >= 400:
                    raise ArtifactPersistError(f"Failed to download artifact: HTTP {resp.status_code}")

                declared = resp.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self._max_bytes:
                    raise ArtifactTooLargeError(f"Artifact exceeds {self._max_bytes} bytes")

                chunks: list[bytes] = []
                size = 0
                async for chunk in resp.aiter_bytes():
                    size += len(chunk)
                    if size > self._max_bytes:
                        raise ArtifactTooLargeError(f"Artifact exceeds {self._max_bytes} bytes")
                    chunks.append(chunk)

                content_type = resp.headers.get("content-type") or "application/octet-stream"
        except httpx.HTTPError as e:
            raise ArtifactPersistError(f"Failed to download artifact: {e}") from e
        return b"".join(chunks), content_type.split(";", 1)[0].strip()

    async def persist(self, external_url: str, owner_id: str, category: str) -> PersistedArtifact:
        if not external_url:
            raise ArtifactPersistError("Artifact URL is required")

        body, content_type = await self._download(external_url)
        key = build_storage_key(owner_id, category, extension_for(external_url, content_type), now=self._clock())

        try:
            await self._store.put(key, body, content_type)
            url = await self._store.signed_url(key, self.signed_url_ttl_s)
        except StorageNotConfiguredError:
            raise
        except Exception as e:
            logger.warning("artifacts.upload_failed key=%s error=%s", key, e)
            raise ArtifactPersistError(f"Failed to store artifact: {e}") from e

        logger.info("artifacts.persisted owner_id=%s key=%s bytes=%s", owner_id, key, len(body))
        return PersistedArtifact(storage_key=key, storage_url=url, size_bytes=len(body), content_type=content_type)

    async def signed_url(self, key: str, ttl_s: int | None = None) -> str:
        return await self._store.signed_url(key, ttl_s or self.signed_url_ttl_s)

    async def delete(self, key: str) -> None:
        await self._store.delete(key)
