"""API endpoints for the media cache."""
import re
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from mediacache.db import get_db
from mediacache.errors import NotFoundError, ValidationError
from mediacache.events import EventBroker
from mediacache.queue import HASH_BACKFILL_QUEUE, MEDIA_CACHE_QUEUE, OCR_QUEUE, JobQueue
from mediacache.schemas import (
    BulkCacheAssetCreate,
    CacheAssetCreate,
    CacheAssetCreated,
    CacheAssetOut,
    CacheAssetPage,
    CacheAssetUrl,
    CacheStats,
    DeleteResponse,
    HashBackfillJobData,
    HashBackfillResponse,
    HashBackfillStats,
    OcrJobData,
    OcrQueueAllRequest,
    OcrQueueAllResponse,
    QueueStats,
    RetryFailedResponse,
)
from mediacache.service import CacheAssetService
from mediacache.settings import settings
from mediacache.sse import SSEBridge
from mediacache.storage import StorageAdapter

router = APIRouter(prefix=settings.API_PREFIX)

_CHANNEL_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")


def get_storage(request: Request) -> StorageAdapter:
    return request.app.state.storage


def get_queues(request: Request) -> Dict[str, JobQueue]:
    return request.app.state.queues


def get_event_broker(request: Request) -> EventBroker:
    return request.app.state.event_broker


def get_queue(name: str, queues: Dict[str, JobQueue] = Depends(get_queues)) -> JobQueue:
    if name not in queues:
        raise NotFoundError(f"Unknown queue: {name}", details={"queues": sorted(queues)})
    return queues[name]


def get_cache_asset_service(
    db: AsyncSession = Depends(get_db),
    queues: Dict[str, JobQueue] = Depends(get_queues),
    storage: StorageAdapter = Depends(get_storage),
) -> CacheAssetService:
    return CacheAssetService(db, queues[MEDIA_CACHE_QUEUE], storage)


# --- Cache assets -----------------------------------------------------------

@router.post("/cache-assets", response_model=CacheAssetCreated, status_code=status.HTTP_201_CREATED)
async def create_cache_asset(
    body: CacheAssetCreate,
    service: CacheAssetService = Depends(get_cache_asset_service),
):
    """
    Register an external URL for caching.

    Returns immediately; caching happens in the worker. Registering a URL a
    second time returns the existing asset without queueing anything.
    """
    asset = await service.create_cache_asset(
        body.original_url,
        folder=body.folder,
        filename=body.filename,
        force_recache=body.force_recache,
    )
    return CacheAssetCreated(cache_asset_id=asset.id, status=asset.status)


@router.post("/cache-assets/bulk", response_model=List[CacheAssetCreated], status_code=status.HTTP_201_CREATED)
async def create_bulk_cache_assets(
    body: BulkCacheAssetCreate,
    service: CacheAssetService = Depends(get_cache_asset_service),
):
    if not body.urls:
        raise ValidationError("urls must not be empty")
    assets = await service.create_bulk_cache_assets(body.urls, folder=body.folder, force_recache=body.force_recache)
    return [CacheAssetCreated(cache_asset_id=a.id, status=a.status) for a in assets]


@router.get("/cache-assets")
async def get_cache_assets(
    id: Optional[str] = None,
    fallback_url: Optional[str] = Query(None, alias="fallbackUrl"),
    prefer_public: bool = Query(False, alias="preferPublic"),
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    content_type: Optional[str] = Query(None, alias="contentType"),
    service: CacheAssetService = Depends(get_cache_asset_service),
):
    """Resolve one asset to a URL (``?id=``), or list assets page by page."""
    if id:
        url = await service.get_url(id, fallback_url=fallback_url, prefer_public=prefer_public)
        return CacheAssetUrl(url=url)

    assets, total = await service.list_cache_assets(page=page, limit=limit, search=search, content_type=content_type)
    items = []
    for asset in assets:
        item = CacheAssetOut.model_validate(asset)
        item.url = await service.resolve_url(asset, prefer_public=prefer_public)
        items.append(item)
    return CacheAssetPage(items=items, total=total, page=page, limit=limit, has_more=page * limit < total)


@router.delete("/cache-assets", response_model=DeleteResponse)
async def delete_cache_assets(
    ids: str = Query(..., description="Comma-separated cache asset ids"),
    service: CacheAssetService = Depends(get_cache_asset_service),
):
    id_list = [i.strip() for i in ids.split(",") if i.strip()]
    if not id_list:
        raise ValidationError("ids must contain at least one id")
    deleted = await service.delete_cache_assets(id_list)
    return DeleteResponse(deleted=deleted)


@router.get("/cache-assets/stats", response_model=CacheStats)
async def get_cache_stats(service: CacheAssetService = Depends(get_cache_asset_service)):
    return await service.get_stats()


@router.post("/cache-assets/retry-failed", response_model=RetryFailedResponse)
async def retry_failed_cache_assets(service: CacheAssetService = Depends(get_cache_asset_service)):
    queued = await service.retry_failed()
    return RetryFailedResponse(queued=queued)


@router.post("/cache-assets/backfill-hashes", response_model=HashBackfillResponse)
async def backfill_hashes(
    limit: int = settings.HASH_BACKFILL_LIMIT,
    service: CacheAssetService = Depends(get_cache_asset_service),
    queues: Dict[str, JobQueue] = Depends(get_queues),
):
    """Queue hash computation for cached images that have none (e.g. stored without a download)."""
    missing = await service.find_missing_hashes(limit=limit)
    queue = queues[HASH_BACKFILL_QUEUE]
    queued = await queue.add_bulk_jobs(HashBackfillJobData(cache_asset_id=a.id) for a in missing)
    return HashBackfillResponse(
        message=f"Queued {queued} of {len(missing)} cache assets for hash computation",
        queued=queued,
        queue_stats=await queue.get_stats(),
    )


@router.get("/cache-assets/backfill-hashes", response_model=HashBackfillStats)
async def get_backfill_stats(
    service: CacheAssetService = Depends(get_cache_asset_service),
    queues: Dict[str, JobQueue] = Depends(get_queues),
):
    return HashBackfillStats(
        stats=await service.get_hash_coverage(),
        queue=await queues[HASH_BACKFILL_QUEUE].get_stats(),
    )


# --- Server-sent events -----------------------------------------------------

@router.get("/events/{channel}")
async def stream_events(
    channel: str,
    request: Request,
    broker: EventBroker = Depends(get_event_broker),
):
    """Stream every event published on ``channel`` until the client disconnects."""
    if not _CHANNEL_RE.match(channel):
        raise ValidationError(f"Invalid channel name: {channel}")
    return SSEBridge(broker, channel).response(request.is_disconnected)


# --- Admin ------------------------------------------------------------------

@router.post("/admin/ocr/queue-all", response_model=OcrQueueAllResponse)
async def queue_all_for_ocr(
    body: OcrQueueAllRequest,
    queues: Dict[str, JobQueue] = Depends(get_queues),
):
    """Queue OCR for a batch of posts. Posts already queued are skipped."""
    post_ids = [p for p in dict.fromkeys(body.post_ids) if p]
    if not post_ids:
        raise ValidationError("postIds must not be empty")

    queue = queues[OCR_QUEUE]
    queued = await queue.add_bulk_jobs((OcrJobData(post_id=p) for p in post_ids), priority=body.priority)
    return OcrQueueAllResponse(
        message=f"Queued {queued} of {len(post_ids)} posts for OCR",
        queued=queued,
        queue_stats=await queue.get_stats(),
    )


@router.get("/admin/queues/{name}/stats", response_model=QueueStats)
async def get_queue_stats(queue: JobQueue = Depends(get_queue)):
    return await queue.get_stats()


@router.delete("/admin/queues/{name}", response_model=DeleteResponse)
async def clear_queue(queue: JobQueue = Depends(get_queue)):
    deleted = await queue.clear_queue()
    return DeleteResponse(deleted=deleted)
