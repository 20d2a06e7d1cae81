"""
Object Storage

Durable storage for audio files (call-to-record captures and uploaded
robocall audio). Two backends share one narrow interface:

- ``GCSObjectStorage``: Google Cloud Storage, private objects served through
  V4 signed URLs. Used in production.
- ``LocalObjectStorage``: files under ``settings.local_storage_dir``. Used in
  development and tests.

Object names are chosen by the caller and only sanitized here. Captured
recordings are named after their recording SID, so storing the same one twice
overwrites rather than duplicates; uploads add a timestamp to stay distinct.

The google-cloud-storage client is synchronous; calls are run in a worker
thread so they don't block the event loop.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Protocol

from google.cloud import storage as gcs

from app.core.config import settings

logger = logging.getLogger(__name__)

AUDIO_PREFIX = "robocalls"

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class StorageError(Exception):
    """Raised when an object can't be stored or a URL can't be issued."""


@dataclass(frozen=True)
class StoredObject:
    """Where an uploaded object lives and a URL that can read it."""

    path: str
    url: str


class ObjectStorage(Protocol):
    async def upload(self, data: bytes, name: str, content_type: str) -> StoredObject: ...

    async def signed_url(self, path: str, expires_in: timedelta | None = None) -> str: ...


def object_path(name: str, prefix: str = AUDIO_PREFIX) -> str:
    """Build the storage path for a file name, stripping unsafe characters."""
    return f"{prefix}/{_UNSAFE_NAME_CHARS.sub('_', name)}"


def _default_ttl() -> timedelta:
    return timedelta(hours=settings.signed_url_ttl_hours)


class GCSObjectStorage:
    """Private objects in a single Google Cloud Storage bucket."""

    def __init__(self, bucket_name: str, project: str | None = None):
        self._bucket_name = bucket_name
        self._project = project
        self._client: gcs.Client | None = None

    def _bucket(self) -> gcs.Bucket:
        if self._client is None:
            self._client = gcs.Client(project=self._project)
        return self._client.bucket(self._bucket_name)

    def _upload_sync(self, data: bytes, path: str, content_type: str, ttl: timedelta) -> str:
        blob = self._bucket().blob(path)
        blob.cache_control = "private, max-age=31536000"
        blob.upload_from_string(data, content_type=content_type)
        return blob.generate_signed_url(version="v4", expiration=ttl, method="GET")

    def _signed_url_sync(self, path: str, ttl: timedelta) -> str:
        blob = self._bucket().blob(path)
        if not blob.exists():
            raise StorageError(f"Object not found: {path}")
        return blob.generate_signed_url(version="v4", expiration=ttl, method="GET")

    async def upload(self, data: bytes, name: str, content_type: str) -> StoredObject:
        path = object_path(name)
        try:
            url = await asyncio.to_thread(
                self._upload_sync, data, path, content_type, _default_ttl()
            )
        except Exception as e:
            raise StorageError(f"Failed to upload {path}: {e}") from e

        logger.info(f"Uploaded {len(data)} bytes to gs://{self._bucket_name}/{path}")
        return StoredObject(path=path, url=url)

    async def signed_url(self, path: str, expires_in: timedelta | None = None) -> str:
        try:
            return await asyncio.to_thread(self._signed_url_sync, path, expires_in or _default_ttl())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to sign URL for {path}: {e}") from e


class LocalObjectStorage:
    """Files on local disk. URLs are ``file://`` URIs and never expire."""

    def __init__(self, root: str | Path):
        self._root = Path(root)

    def _resolve(self, path: str) -> Path:
        full = (self._root / path).resolve()
        if self._root.resolve() not in full.parents:
            raise StorageError(f"Path escapes storage root: {path}")
        return full

    async def upload(self, data: bytes, name: str, content_type: str) -> StoredObject:
        path = object_path(name)
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, data)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

        logger.info(f"Stored {len(data)} bytes ({content_type}) at {target}")
        return StoredObject(path=path, url=target.as_uri())

    async def signed_url(self, path: str, expires_in: timedelta | None = None) -> str:
        target = self._resolve(path)
        if not target.exists():
            raise StorageError(f"Object not found: {path}")
        return target.as_uri()


@lru_cache
def get_storage() -> ObjectStorage:
    """
    FastAPI dependency returning the configured storage backend.

    Raises:
        StorageError: If the GCS backend is selected without a bucket name
    """
    if settings.storage_backend == "gcs":
        if not settings.gcs_bucket_name:
            raise StorageError("GCS_BUCKET_NAME must be set when STORAGE_BACKEND=gcs")
        return GCSObjectStorage(settings.gcs_bucket_name, settings.google_cloud_project)

    return LocalObjectStorage(settings.local_storage_dir)


__all__ = [
    "GCSObjectStorage",
    "LocalObjectStorage",
    "ObjectStorage",
    "StorageError",
    "StoredObject",
    "get_storage",
    "object_path",
]
