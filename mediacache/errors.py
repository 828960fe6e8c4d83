"""Error taxonomy for the media cache.

Every error carries ``retryable`` so the worker can decide between scheduling
another attempt and failing the job right away.
"""
from typing import Any, Optional


class CacheError(Exception):
    """Base class for media cache errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CacheError):
    """Malformed input to a public operation; never enqueued."""


class NotFoundError(CacheError):
    """Lookup against an id that does not exist."""


class DownloadError(CacheError):
    """Network/HTTP failure fetching external media."""

    retryable = True

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, details={"url": url, "status": status})
        self.url = url
        self.status = status


class UploadError(CacheError):
    """Object-store write failure."""

    retryable = True


class HashComputationError(CacheError):
    """Image bytes could not be decoded or resized (the bytes won't change on retry)."""


class StorageConfigError(CacheError):
    """Object store is missing required configuration."""


class ConversionError(CacheError):
    """HEIC/HEIF bytes could not be re-encoded as JPEG."""
