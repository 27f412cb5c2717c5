"""Publishing of final job outputs.

Two backends:
- LocalStorage copies the output into ``storage.output_dir`` and records a
  ``file://`` URI; the API serves it from ``/api/templates/{id}/download``.
- GCSStorage uploads to ``storage.gcs_bucket`` and records the public
  ``https://storage.googleapis.com/...`` URL; readers get a V4 signed URL.

Usage:
    from templatepipe.services.storage import get_storage

    storage = get_storage()
    output_url = await storage.publish(final_path, job.id)
"""

import asyncio
import logging
import shutil
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse
from urllib.request import url2pathname

from google.cloud import storage as gcs

from templatepipe.config import settings
from templatepipe.services.file_manager import FileManager

logger = logging.getLogger(__name__)

GCS_PUBLIC_HOST = "storage.googleapis.com"


def local_path_from_uri(uri: str) -> Optional[Path]:
    """Filesystem path of a ``file://`` URI, or None for other schemes."""
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return None
    return Path(url2pathname(parsed.path))


class StorageBackend(ABC):
    """Destination for final artifacts."""

    @abstractmethod
    async def publish(self, local_path: Path, job_id: uuid.UUID) -> str:
        """Store the artifact and return its durable URL."""
        ...

    @abstractmethod
    async def signed_url(self, output_url: str, job_id: uuid.UUID) -> Optional[str]:
        """Short-lived URL a browser can fetch, or None if not managed here."""
        ...


class LocalStorage(StorageBackend):
    """Keeps outputs on the local filesystem."""

    def __init__(self, file_mgr: Optional[FileManager] = None):
        self.file_mgr = file_mgr or FileManager()

    async def publish(self, local_path: Path, job_id: uuid.UUID) -> str:
        dest = self.file_mgr.get_output_path(job_id, local_path.suffix or ".mp4")
        await asyncio.to_thread(shutil.copyfile, local_path, dest)
        logger.info(f"Job {job_id}: published output to {dest}")
        return dest.as_uri()

    async def signed_url(self, output_url: str, job_id: uuid.UUID) -> Optional[str]:
        if local_path_from_uri(output_url) is None:
            return None
        return f"/api/templates/{job_id}/download"


class GCSStorage(StorageBackend):
    """Uploads outputs to a Google Cloud Storage bucket."""

    def __init__(self, bucket_name: str, prefix: str = "template-outputs"):
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        self._client: Optional[gcs.Client] = None

    @property
    def client(self) -> gcs.Client:
        if self._client is None:
            self._client = gcs.Client(project=settings.google_cloud.project_id)
        return self._client

    def _blob_name_from_url(self, url: str) -> Optional[str]:
        parsed = urlparse(url)
        if parsed.scheme == "gs" and parsed.netloc == self.bucket_name:
            return parsed.path.lstrip("/")
        if parsed.netloc == GCS_PUBLIC_HOST:
            bucket, _, name = parsed.path.lstrip("/").partition("/")
            if bucket == self.bucket_name and name:
                return name
        return None

    def _upload(self, local_path: Path, blob_name: str) -> None:
        blob = self.client.bucket(self.bucket_name).blob(blob_name)
        blob.upload_from_filename(str(local_path), content_type="video/mp4")

    def _sign(self, blob_name: str) -> str:
        blob = self.client.bucket(self.bucket_name).blob(blob_name)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=settings.storage.signed_url_ttl_seconds),
            method="GET",
        )

    async def publish(self, local_path: Path, job_id: uuid.UUID) -> str:
        blob_name = f"{self.prefix}/{job_id}{local_path.suffix or '.mp4'}"
        await asyncio.to_thread(self._upload, local_path, blob_name)
        url = f"https://{GCS_PUBLIC_HOST}/{self.bucket_name}/{blob_name}"
        logger.info(f"Job {job_id}: uploaded output to {url}")
        return url

    async def signed_url(self, output_url: str, job_id: uuid.UUID) -> Optional[str]:
        blob_name = self._blob_name_from_url(output_url)
        if blob_name is None:
            return None
        return await asyncio.to_thread(self._sign, blob_name)


_storage: Optional[StorageBackend] = None


def get_storage() -> StorageBackend:
    """Storage backend selected by ``storage.gcs_bucket`` (cached)."""
    global _storage
    if _storage is None:
        if settings.storage.gcs_bucket:
            _storage = GCSStorage(settings.storage.gcs_bucket)
        else:
            _storage = LocalStorage()
    return _storage
