"""Report blob storage. Local filesystem for dev, Google Cloud Storage for production.

Both backends share one contract:
    upload(local_path, remote_path)            overwrites an existing object
    create_signed_url(remote_path, ttl)        time-limited download link
Any failure raises StorageError so a job can never succeed without a URL.
"""
import hashlib
import hmac
import logging
import os
import time
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

import aiofiles
from fastapi.concurrency import run_in_threadpool

from app.config import clamp_ttl, settings

logger = logging.getLogger(__name__)

_COPY_CHUNK_BYTES = 64 * 1024


class StorageError(Exception):
    """Raised when an upload or signed-URL request fails."""
    pass


class ReportStorage:
    """Interface shared by storage backends."""

    bucket: str

    async def upload(self, local_path: Path, remote_path: str) -> None:
        raise NotImplementedError

    async def create_signed_url(self, remote_path: str, ttl_seconds: Optional[int] = None) -> str:
        raise NotImplementedError


class LocalReportStorage(ReportStorage):
    """Stores objects under FILE_STORAGE_PATH/<bucket>/ and signs URLs with HMAC.

    Signed URLs point at the API's file download route, which checks the
    signature and expiry via verify_signature().
    """

    def __init__(
        self,
        base_path: Optional[str] = None,
        bucket: Optional[str] = None,
        secret: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        self.bucket = bucket or settings.REPORTS_STORAGE_BUCKET
        self.root = (Path(base_path or settings.FILE_STORAGE_PATH) / self.bucket).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._secret = (secret or settings.SIGNING_SECRET).encode()
        self._public_base_url = (public_base_url or settings.PUBLIC_BASE_URL).rstrip("/")

    def object_path(self, remote_path: str) -> Path:
        """Filesystem path for an object; rejects paths escaping the bucket."""
        path = (self.root / remote_path).resolve()
        if not path.is_relative_to(self.root) or path == self.root:
            raise StorageError(f"Invalid object path: {remote_path}")
        return path

    async def upload(self, local_path: Path, remote_path: str) -> None:
        target = self.object_path(remote_path)
        partial = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(local_path, "rb") as src, aiofiles.open(partial, "wb") as dst:
                while chunk := await src.read(_COPY_CHUNK_BYTES):
                    await dst.write(chunk)
            os.replace(partial, target)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise StorageError(f"Upload of {remote_path} failed: {e}") from e
        logger.info(f"Stored {remote_path} in local bucket '{self.bucket}'")

    def _signature(self, remote_path: str, expires: int) -> str:
        message = f"{self.bucket}/{remote_path}:{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    async def create_signed_url(self, remote_path: str, ttl_seconds: Optional[int] = None) -> str:
        if not self.object_path(remote_path).is_file():
            raise StorageError(f"Object not found: {remote_path}")
        expires = int(time.time()) + clamp_ttl(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._signature(remote_path, expires)})
        return f"{self._public_base_url}/api/report-exports/files/{quote(remote_path)}?{query}"

    def verify_signature(self, remote_path: str, expires: int, signature: str) -> bool:
        """True if the signature matches and has not expired."""
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(remote_path, expires), signature)


class GCSReportStorage(ReportStorage):
    """Google Cloud Storage backend. SDK calls are blocking, so they run in a thread pool."""

    def __init__(self, bucket: Optional[str] = None, project: Optional[str] = None):
        from google.cloud import storage

        self.bucket = bucket or settings.REPORTS_STORAGE_BUCKET
        self._client = storage.Client(project=project or settings.GCP_PROJECT_ID or None)

    async def upload(self, local_path: Path, remote_path: str) -> None:
        blob = self._client.bucket(self.bucket).blob(remote_path)
        try:
            # upload_from_filename replaces any existing object at this name
            await run_in_threadpool(blob.upload_from_filename, str(local_path), content_type="text/csv")
        except Exception as e:
            raise StorageError(f"Upload of {remote_path} failed: {e}") from e
        logger.info(f"Uploaded {remote_path} to gs://{self.bucket}")

    async def create_signed_url(self, remote_path: str, ttl_seconds: Optional[int] = None) -> str:
        blob = self._client.bucket(self.bucket).blob(remote_path)
        expiration = timedelta(seconds=clamp_ttl(ttl_seconds))
        try:
            url = await run_in_threadpool(blob.generate_signed_url, expiration=expiration, method="GET", version="v4")
        except Exception as e:
            raise StorageError(f"Signing {remote_path} failed: {e}") from e
        if not url:
            raise StorageError(f"Signing {remote_path} returned no URL")
        return url


_storage: Optional[ReportStorage] = None


def get_report_storage() -> ReportStorage:
    """Return the configured storage backend (created once per process)."""
    global _storage
    if _storage is None:
        if settings.FILE_STORAGE_TYPE == "local":
            _storage = LocalReportStorage()
        elif settings.FILE_STORAGE_TYPE == "gcs":
            _storage = GCSReportStorage()
        else:
            raise ValueError(f"Unknown storage type: {settings.FILE_STORAGE_TYPE}")
    return _storage
