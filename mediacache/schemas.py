"""Pydantic schemas for request/response validation, job payloads and events."""
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from mediacache.models import CacheStatus


class CamelModel(BaseModel):
    """Base for wire schemas: camelCase on the wire, snake_case in Python."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# --- Cache assets -----------------------------------------------------------

class CacheAssetCreate(CamelModel):
    """Register an external URL for caching."""
    original_url: str
    folder: str = "media"
    filename: Optional[str] = None
    force_recache: bool = False


class BulkCacheAssetCreate(CamelModel):
    urls: List[str]
    folder: str = "media"
    force_recache: bool = False


class CacheAssetCreated(CamelModel):
    success: bool = True
    cache_asset_id: str
    status: CacheStatus


class CacheAssetUrl(CamelModel):
    success: bool = True
    url: str


class CacheAssetOut(CamelModel):
    """Cache asset row plus its resolved URL."""
    id: str
    original_url: str
    status: CacheStatus
    cache_key: Optional[str] = None
    content_type: Optional[str] = None
    file_size: Optional[int] = None
    image_hash: Optional[str] = None
    cached_at: Optional[datetime] = None
    created_at: datetime
    url: Optional[str] = None


class CacheAssetPage(CamelModel):
    items: List[CacheAssetOut]
    total: int
    page: int
    limit: int
    has_more: bool


class DeleteResponse(CamelModel):
    success: bool = True
    deleted: int


class CacheStats(CamelModel):
    total: int = 0
    pending: int = 0
    caching: int = 0
    cached: int = 0
    failed: int = 0


class RetryFailedResponse(CamelModel):
    success: bool = True
    queued: int


# --- Queue ------------------------------------------------------------------

class QueueStats(CamelModel):
    """Point-in-time job counts; approximate under churn."""
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    total: int = 0


class OcrQueueAllRequest(CamelModel):
    post_ids: List[str]
    priority: int = 0


class OcrQueueAllResponse(CamelModel):
    success: bool = True
    message: str
    queued: int
    queue_stats: QueueStats


class CacheMediaJobData(BaseModel):
    """Payload of a media caching job. The job id is the cache asset id."""
    job_type: Literal["cache-media"] = "cache-media"
    original_url: str
    cache_asset_id: str
    folder: str = "media"
    filename: Optional[str] = None

    @property
    def job_id(self) -> str:
        return self.cache_asset_id


class OcrJobData(BaseModel):
    """Payload of an OCR job. Only enqueued here; processed elsewhere."""
    job_type: Literal["ocr"] = "ocr"
    post_id: str

    @property
    def job_id(self) -> str:
        return self.post_id


class HashBackfillJobData(BaseModel):
    """Payload of a hash backfill job for an already cached asset."""
    job_type: Literal["hash-backfill"] = "hash-backfill"
    cache_asset_id: str

    @property
    def job_id(self) -> str:
        return self.cache_asset_id


JobData = Annotated[
    Union[CacheMediaJobData, OcrJobData, HashBackfillJobData],
    Field(discriminator="job_type"),
]
job_data_adapter = TypeAdapter(JobData)


class CacheMediaJobResult(CamelModel):
    success: bool
    cache_asset_id: str
    cache_key: Optional[str] = None
    file_size: Optional[int] = None
    content_type: Optional[str] = None
    image_hash: Optional[str] = None


class HashBackfillJobResult(CamelModel):
    success: bool
    cache_asset_id: str
    image_hash: Optional[str] = None
    error: Optional[str] = None


class HashBackfillResponse(CamelModel):
    success: bool = True
    message: str
    queued: int
    queue_stats: QueueStats


class HashCoverage(CamelModel):
    """Cached raster images with and without a stored hash."""
    total_images: int = 0
    with_hash: int = 0
    without_hash: int = 0
    percentage_complete: int = 100


class HashBackfillStats(CamelModel):
    success: bool = True
    stats: HashCoverage
    queue: QueueStats


# --- Server-sent events -----------------------------------------------------

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectedEvent(CamelModel):
    type: Literal["connected"] = "connected"
    timestamp: str = Field(default_factory=_timestamp)


class OcrCompletedEvent(CamelModel):
    type: Literal["ocr:completed"] = "ocr:completed"
    post_id: str
    success: bool
    timestamp: str = Field(default_factory=_timestamp)


class CacheCompletedEvent(CamelModel):
    type: Literal["cache:completed"] = "cache:completed"
    cache_asset_id: str
    success: bool
    timestamp: str = Field(default_factory=_timestamp)


SSEEvent = Annotated[Union[OcrCompletedEvent, CacheCompletedEvent], Field(discriminator="type")]
sse_event_adapter = TypeAdapter(SSEEvent)
