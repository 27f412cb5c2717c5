"""Staging of remote media into a run's working directory.

Handles the URL forms a pipeline can reference:
- local paths and ``file://`` URIs under ``storage.upload_dir`` (copied, so the
  run never deletes them)
- ``gs://`` URIs (read through the public storage.googleapis.com endpoint)
- ``http(s)://`` URLs (streamed with httpx)
- TikTok links (downloaded with the yt-dlp CLI)
"""

import asyncio
import logging
import shutil
import subprocess
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import httpx

from templatepipe.config import settings
from templatepipe.errors import SourceFetchError, StepTimeoutError
from templatepipe.services.storage import GCS_PUBLIC_HOST, local_path_from_uri

logger = logging.getLogger(__name__)


def _timeout(timeout: Optional[float]) -> float:
    return timeout if timeout is not None else settings.pipeline.step_timeout_seconds


def url_suffix(url: str, default: str = ".mp4") -> str:
    """File extension of the URL path, e.g. '.mp3'; ``default`` if none."""
    suffix = PurePosixPath(urlparse(url).path).suffix
    return suffix.lower() if suffix and len(suffix) <= 6 else default


def _http_url(url: str) -> Optional[str]:
    parsed = urlparse(url)
    if parsed.scheme == "gs":
        return f"https://{GCS_PUBLIC_HOST}/{parsed.netloc}{parsed.path}"
    if parsed.scheme in ("http", "https"):
        return url
    return None


def local_source_path(url: str) -> Optional[Path]:
    """Resolved path of a local or ``file://`` source; None for remote URLs.

    Raises:
        SourceFetchError: The path resolves outside ``storage.upload_dir``.
    """
    path = local_path_from_uri(url)
    if path is None:
        if urlparse(url).scheme:
            return None
        path = Path(url)
    root = settings.storage.upload_dir.resolve()
    resolved = path.resolve()
    # Path traversal protection
    if not resolved.is_relative_to(root):
        raise SourceFetchError(f"Local source is outside the upload directory: {url}")
    return resolved


async def _stream_to_file(http_url: str, dest: Path, timeout: float) -> None:
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(timeout, connect=30.0),
    ) as client:
        async with client.stream("GET", http_url) as response:
            response.raise_for_status()
            with open(dest, "wb") as f:
                async for chunk in response.aiter_bytes():
                    f.write(chunk)


async def fetch_to_file(url: str, dest: Path, timeout: Optional[float] = None) -> Path:
    """Copy or download ``url`` to ``dest`` and return ``dest``.

    Raises:
        SourceFetchError: Unsupported URL, missing file, local path outside the
            upload directory, or HTTP failure.
        StepTimeoutError: The download exceeded the step timeout.
    """
    limit = _timeout(timeout)
    local = local_source_path(url)
    if local is not None:
        if not local.is_file():
            raise SourceFetchError(f"Source file not found: {local}")
        await asyncio.to_thread(shutil.copyfile, local, dest)
        return dest

    http_url = _http_url(url)
    if http_url is None:
        raise SourceFetchError(f"Unsupported source URL: {url}")

    logger.info(f"Downloading {http_url[:120]} -> {dest.name}")
    try:
        await asyncio.wait_for(_stream_to_file(http_url, dest, limit), timeout=limit)
    except asyncio.TimeoutError as e:
        raise StepTimeoutError(f"Download did not finish within {limit:g}s: {url}") from e
    except httpx.HTTPStatusError as e:
        raise SourceFetchError(
            f"Download failed with HTTP {e.response.status_code}: {url}"
        ) from e
    except httpx.HTTPError as e:
        raise SourceFetchError(f"Download failed: {url}: {e}") from e
    return dest


async def fetch_bytes(url: str, timeout: Optional[float] = None) -> bytes:
    """Read a small remote or local resource (e.g. an image) into memory."""
    limit = _timeout(timeout)
    local = local_source_path(url)
    if local is not None:
        if not local.is_file():
            raise SourceFetchError(f"Source file not found: {local}")
        return await asyncio.to_thread(local.read_bytes)

    http_url = _http_url(url)
    if http_url is None:
        raise SourceFetchError(f"Unsupported source URL: {url}")
    try:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(limit, connect=30.0),
        ) as client:
            response = await client.get(http_url)
            response.raise_for_status()
            return response.content
    except httpx.HTTPStatusError as e:
        raise SourceFetchError(
            f"Download failed with HTTP {e.response.status_code}: {url}"
        ) from e
    except httpx.TimeoutException as e:
        raise StepTimeoutError(f"Download did not finish within {limit:g}s: {url}") from e
    except httpx.HTTPError as e:
        raise SourceFetchError(f"Download failed: {url}: {e}") from e


def _run_yt_dlp(url: str, dest: Path, timeout: float) -> None:
    cmd = [
        settings.binaries.yt_dlp,
        "-f", "best[ext=mp4]/best",
        "-o", str(dest),
        "--no-playlist",
        "--no-warnings",
        url,
    ]
    try:
        subprocess.run(cmd, check=True, capture_output=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise StepTimeoutError(f"TikTok download did not finish within {timeout:g}s") from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
        raise SourceFetchError(
            f"TikTok download failed: {stderr[-300:] or 'no error output'}"
        ) from e
    except FileNotFoundError as e:
        raise SourceFetchError(
            f"yt-dlp executable not found: {settings.binaries.yt_dlp}"
        ) from e


async def fetch_tiktok(url: str, dest: Path, timeout: Optional[float] = None) -> Path:
    """Download a TikTok video with yt-dlp."""
    limit = _timeout(timeout)
    logger.info(f"yt-dlp download: {url[:80]}")
    await asyncio.to_thread(_run_yt_dlp, url, dest, limit)
    if not dest.exists():
        raise SourceFetchError("yt-dlp did not create output file")
    return dest
