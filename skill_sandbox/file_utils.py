"""
File helpers: directory walking, bucket snapshots, downloads and uploads.

The local bucket is a plain directory tree::

    <bucket_dir>/executions/<execution_id>/...   snapshots of one-shot runs
    <bucket_dir>/invokes/<execution_id>/...      new files produced by deployment invokes
"""

import logging
import mimetypes
import os
import shutil
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiohttp

from .errors import NotFoundError, SetupError

logger = logging.getLogger(__name__)

BUCKET_KINDS = ("executions", "invokes")

PathLike = Union[str, Path]


@dataclass
class UploadConfig:
    """Where and how to push produced files. Uploads only happen when both url and token are set."""
    file_upload_url: Optional[str] = None
    upload_token: Optional[str] = None
    is_public: Optional[bool] = None

    @property
    def enabled(self) -> bool:
        return bool(self.file_upload_url and self.upload_token)


@dataclass
class UploadResult:
    filename: str
    status: int
    url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def walk(directory: PathLike) -> List[str]:
    """Return every regular file under *directory* (recursively), sorted."""
    out: List[str] = []
    for root, _dirnames, filenames in os.walk(directory, onerror=_log_walk_error, followlinks=False):
        for name in filenames:
            full = os.path.join(root, name)
            if os.path.isfile(full) and not os.path.islink(full):
                out.append(full)
    return sorted(out)


def _log_walk_error(err: OSError) -> None:
    logger.error("Error walking directory %s: %s", err.filename, err)


def resolve_inside(root: PathLike, relpath: str) -> Optional[Path]:
    """
    Resolve *relpath* against *root*.
    Returns None if the result escapes *root*.
    """
    try:
        root_path = Path(root).resolve()
        full_path = (root_path / relpath).resolve()
    except (OSError, RuntimeError):
        return None
    if full_path == root_path or not full_path.is_relative_to(root_path):
        return None
    return full_path


def resolve_bucket_file(bucket_dir: PathLike, kind: str, execution_id: str, filename: str) -> Path:
    """Locate a cached artifact, raising NotFoundError if it is missing."""
    if kind not in BUCKET_KINDS:
        raise NotFoundError(f"Unknown bucket: {kind}")
    execution_dir = resolve_inside(Path(bucket_dir) / kind, execution_id)
    file_path = resolve_inside(execution_dir, filename) if execution_dir is not None else None
    if file_path is None or not file_path.is_file():
        raise NotFoundError("File not found")
    return file_path


def _excluded(exclude: Iterable[PathLike]) -> set:
    return {os.path.realpath(p) for p in exclude}


def cache_to_local_bucket(
    work_dir: PathLike,
    target_bucket_dir: PathLike,
    exclude: Iterable[PathLike] = (),
) -> List[str]:
    """Copy files under *work_dir* (minus *exclude*) into *target_bucket_dir*.

    Files that cannot be read are logged and skipped. Returns the relative
    paths that were copied.
    """
    current_files = walk(work_dir)
    if not current_files:
        return []

    exclude_set = _excluded(exclude)
    cached: List[str] = []
    for file_path in current_files:
        if os.path.realpath(file_path) in exclude_set:
            continue
        rel_path = os.path.relpath(file_path, work_dir)
        dest_path = Path(target_bucket_dir) / rel_path
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(file_path, dest_path)
        except OSError as e:
            logger.warning("Skipping %s while caching to bucket: %s", rel_path, e)
            continue
        cached.append(rel_path)
    return cached


async def download_file(session: aiohttp.ClientSession, url: str, dest: PathLike) -> None:
    """Fetch *url* into *dest*, creating parent directories. Raises SetupError on failure."""
    try:
        async with session.get(url) as resp:
            if resp.status >= 400:
                raise SetupError(f"Failed to download {url}: HTTP {resp.status} {resp.reason}")
            content = await resp.read()
    except aiohttp.ClientError as e:
        raise SetupError(f"Failed to download {url}: {e}") from e

    dest_path = Path(dest)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    dest_path.write_bytes(content)


def _uploaded_url(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for candidate in (payload, payload.get("data"), payload.get("file")):
        if isinstance(candidate, dict) and candidate.get("url"):
            return candidate["url"]
    return None


async def upload_files(
    work_dir: PathLike,
    config: UploadConfig,
    exclude: Iterable[PathLike] = (),
    session: Optional[aiohttp.ClientSession] = None,
) -> List[UploadResult]:
    """POST every file under *work_dir* (minus *exclude*) to the upload endpoint.

    One multipart request per file. Failures are reported per file, never raised.
    """
    if not config.enabled:
        return []

    params = {}
    if config.is_public is not None:
        params["public"] = "true" if config.is_public else "false"
    headers = {"Authorization": f"Bearer {config.upload_token}"}

    own_session = session is None
    if own_session:
        session = aiohttp.ClientSession()

    uploads: List[UploadResult] = []
    try:
        exclude_set = _excluded(exclude)
        for file_path in walk(work_dir):
            if os.path.realpath(file_path) in exclude_set:
                continue
            filename = os.path.relpath(file_path, work_dir)
            mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

            try:
                content = Path(file_path).read_bytes()
            except OSError as e:
                logger.warning("Cannot read %s for upload: %s", filename, e)
                uploads.append(UploadResult(filename=filename, status=0, error=str(e)))
                continue

            form = aiohttp.FormData()
            form.add_field("file", content, filename=filename, content_type=mime_type)
            try:
                async with session.post(
                    config.file_upload_url, data=form, params=params, headers=headers
                ) as resp:
                    try:
                        payload = await resp.json(content_type=None)
                    except ValueError:
                        payload = None
                    uploads.append(UploadResult(filename=filename, status=resp.status, url=_uploaded_url(payload)))
            except aiohttp.ClientError as e:
                logger.warning("Upload of %s failed: %s", filename, e)
                uploads.append(UploadResult(filename=filename, status=0, error=str(e)))
    finally:
        if own_session:
            await session.close()
    return uploads
