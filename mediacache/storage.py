"""Storage adapter interface and implementations."""
import asyncio
import logging
import mimetypes
import re
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mediacache.errors import StorageConfigError, UploadError
from mediacache.settings import settings

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/heic": "heic",
    "image/heif": "heif",
    "image/svg+xml": "svg",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/wav": "wav",
    "audio/webm": "weba",
}


def extension_for(content_type: Optional[str]) -> Optional[str]:
    """Map a content type (parameters ignored) to a file extension."""
    if not content_type:
        return None
    base = content_type.split(";")[0].strip().lower()
    if base in EXTENSIONS:
        return EXTENSIONS[base]
    guessed = mimetypes.guess_extension(base)
    return guessed.lstrip(".") if guessed else None


def build_key(folder: str, filename: Optional[str] = None, content_type: Optional[str] = None) -> str:
    """Build a unique object key under ``folder``.

    Keys never collide between uploads, so concurrent workers can write
    without coordination.
    """
    folder = (folder or "media").strip("/") or "media"
    prefix = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"
    if filename:
        safe = _UNSAFE_FILENAME_RE.sub("_", Path(filename).name).strip("._")
        if safe:
            return f"{folder}/{prefix}-{safe}"
    ext = extension_for(content_type)
    return f"{folder}/{prefix}.{ext}" if ext else f"{folder}/{prefix}"


@dataclass(frozen=True)
class UploadResult:
    key: str
    url: str


class StorageAdapter(ABC):
    """Abstract storage adapter interface (S3-style)."""

    def __init__(self, public_url: str = ""):
        self.public_base = (public_url or "").rstrip("/")

    @abstractmethod
    async def save(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """
        Save data to storage and return its public URL.

        Raises:
            UploadError: If the write fails
        """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Retrieve data from storage."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete data from storage.

        Returns:
            True if deleted, False if not found
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists in storage."""

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Public (unsigned) URL for a key."""

    async def presigned_url(self, key: str, expires_in: Optional[int] = None) -> str:
        """Time-limited URL for a key. Adapters without signing return the public URL."""
        return self.public_url(key)

    async def upload(
        self,
        data: bytes,
        folder: str = "media",
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> UploadResult:
        key = build_key(folder, filename, content_type)
        url = await self.save(key, data, content_type)
        return UploadResult(key=key, url=url)

    def is_own_url(self, url: str) -> bool:
        """True if ``url`` already points into this store's public base."""
        return bool(self.public_base) and url.startswith(self.public_base + "/")

    def key_from_url(self, url: str) -> str:
        if not self.is_own_url(url):
            raise ValueError(f"Not a URL of this store: {url}")
        return url[len(self.public_base) + 1:]


class LocalStorageAdapter(StorageAdapter):
    """Local filesystem storage adapter (for development and tests)."""

    def __init__(self, base_path: str = None, public_url: str = None):
        super().__init__(settings.STORAGE_PUBLIC_URL if public_url is None else public_url)
        self.base_path = Path(base_path or settings.STORAGE_BASE_PATH).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        """Get full filesystem path for a key, refusing paths outside the base."""
        full_path = (self.base_path / key.lstrip("/")).resolve()
        if not full_path.is_relative_to(self.base_path):
            raise ValueError(f"Key escapes storage root: {key}")
        return full_path

    async def save(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        full_path = self._get_full_path(key)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            with open(full_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise UploadError(f"Failed to write {key}: {e}") from e
        return self.public_url(key)

    async def get(self, key: str) -> bytes:
        full_path = self._get_full_path(key)
        if not full_path.exists():
            raise FileNotFoundError(f"Key not found: {key}")

        with open(full_path, "rb") as f:
            return f.read()

    async def delete(self, key: str) -> bool:
        full_path = self._get_full_path(key)
        if not full_path.exists():
            return False

        full_path.unlink()
        return True

    async def exists(self, key: str) -> bool:
        return self._get_full_path(key).exists()

    def public_url(self, key: str) -> str:
        if self.public_base:
            return f"{self.public_base}/{key.lstrip('/')}"
        return self._get_full_path(key).as_uri()


class S3StorageAdapter(StorageAdapter):
    """S3-compatible storage adapter (Cloudflare R2, MinIO, AWS S3).

    boto3 is synchronous; calls run in a worker thread so the event loop
    keeps serving other jobs.
    """

    def __init__(
        self,
        bucket: str = None,
        endpoint_url: Optional[str] = None,
        access_key_id: str = None,
        secret_access_key: str = None,
        region: str = None,
        public_url: str = None,
        presign_expires: int = None,
        client=None,
    ):
        super().__init__(settings.STORAGE_PUBLIC_URL if public_url is None else public_url)
        self.bucket = bucket or settings.S3_BUCKET
        if not self.bucket:
            raise StorageConfigError("S3_BUCKET must be set for the s3 storage type")
        self.presign_expires = presign_expires or settings.PRESIGNED_URL_EXPIRES

        if client is None:
            import boto3

            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url or settings.S3_ENDPOINT_URL,
                aws_access_key_id=access_key_id or settings.S3_ACCESS_KEY_ID or None,
                aws_secret_access_key=secret_access_key or settings.S3_SECRET_ACCESS_KEY or None,
                region_name=region or settings.S3_REGION,
            )
        self.client = client

    async def save(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        extra = {"ContentType": content_type} if content_type else {}
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                CacheControl="public, max-age=31536000",  # 1 year
                **extra,
            )
        except (BotoCoreError, ClientError) as e:
            raise UploadError(f"Failed to upload s3://{self.bucket}/{key}: {e}") from e
        logger.info("Uploaded s3://%s/%s (%d bytes)", self.bucket, key, len(data))
        return self.public_url(key) if self.public_base else key

    async def get(self, key: str) -> bytes:
        from botocore.exceptions import ClientError

        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise FileNotFoundError(f"Blob not found: {key}") from e
        return await asyncio.to_thread(response["Body"].read)

    async def delete(self, key: str) -> bool:
        if not await self.exists(key):
            return False
        await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        return True

    async def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def public_url(self, key: str) -> str:
        if not self.public_base:
            raise StorageConfigError("STORAGE_PUBLIC_URL must be set to build public URLs")
        return f"{self.public_base}/{key}"

    async def presigned_url(self, key: str, expires_in: Optional[int] = None) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in or self.presign_expires,
        )


def get_storage_adapter() -> StorageAdapter:
    """Factory function to get storage adapter based on settings."""
    if settings.STORAGE_TYPE == "local":
        return LocalStorageAdapter()
    elif settings.STORAGE_TYPE == "s3":
        return S3StorageAdapter()
    else:
        raise StorageConfigError(f"Unknown storage type: {settings.STORAGE_TYPE}")
