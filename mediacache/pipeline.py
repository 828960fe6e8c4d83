"""Job processors run by the queue worker.

A processor turns one claimed job into a result dict. Raising marks the
attempt failed; the worker asks the queue whether another attempt follows and
calls ``on_failed`` once the job is terminally failed.
"""
import logging
import mimetypes
import os
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from mediacache.download import MediaDownloader
from mediacache.errors import ConversionError
from mediacache.events import EventEmitter
from mediacache.image_utils import (
    compute_image_hash,
    convert_heic_to_jpeg,
    is_hashable_content_type,
    is_heic_content,
    is_image_content_type,
)
from mediacache.models import CacheAsset, CacheStatus, QueueJob, utcnow
from mediacache.schemas import CacheMediaJobData, CacheMediaJobResult, HashBackfillJobData, HashBackfillJobResult
from mediacache.storage import StorageAdapter

logger = logging.getLogger(__name__)


def with_extension(filename: str, extension: str) -> str:
    """``photo.heic`` -> ``photo.jpg``; names without an extension get one appended."""
    return os.path.splitext(filename)[0] + extension


class JobProcessor(ABC):
    job_type: str

    @abstractmethod
    async def process(self, job: QueueJob, data) -> dict:
        """Run one attempt of ``job``. Returns the stored job result."""

    async def on_failed(self, job: QueueJob, data, error: Exception) -> None:
        """Called once when ``job`` is terminally failed."""


class MediaCachePipeline(JobProcessor):
    """Download -> hash -> upload -> mark CACHED -> notify."""

    job_type = "cache-media"

    def __init__(
        self,
        session_factory: async_sessionmaker,
        storage: StorageAdapter,
        downloader: MediaDownloader,
        emitter: EventEmitter,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.downloader = downloader
        self.emitter = emitter

    async def _set_status(self, cache_asset_id: str, status: CacheStatus) -> Optional[CacheAsset]:
        async with self.session_factory() as session:
            asset = await session.get(CacheAsset, cache_asset_id)
            if asset is not None:
                asset.status = status
                await session.commit()
            return asset

    async def _mark_cached(
        self,
        cache_asset_id: str,
        cache_key: str,
        content_type: Optional[str],
        file_size: Optional[int],
        image_hash: Optional[str],
    ) -> bool:
        async with self.session_factory() as session:
            asset = await session.get(CacheAsset, cache_asset_id)
            if asset is None:
                return False
            previous_key = asset.cache_key
            asset.status = CacheStatus.CACHED
            asset.cache_key = cache_key
            asset.content_type = content_type
            asset.file_size = file_size
            asset.image_hash = image_hash
            asset.cached_at = utcnow()
            await session.commit()

        if previous_key and previous_key != cache_key:
            # Superseded by a recache; the row no longer references it
            try:
                await self.storage.delete(previous_key)
            except Exception as e:
                logger.warning("Failed to delete superseded blob %s of %s: %s", previous_key, cache_asset_id, e)
        return True

    async def process(self, job: QueueJob, data: CacheMediaJobData) -> dict:
        logger.info("Processing cache job %s (attempt %d): %s", job.id, job.attempts_made, data.original_url)

        if await self._set_status(data.cache_asset_id, CacheStatus.CACHING) is None:
            logger.warning("Cache asset %s was deleted before caching, skipping", data.cache_asset_id)
            return CacheMediaJobResult(success=False, cache_asset_id=data.cache_asset_id).model_dump(by_alias=True)

        if self.storage.is_own_url(data.original_url):
            # Already in our bucket: record the key, nothing to fetch
            key = self.storage.key_from_url(data.original_url)
            content_type, _ = mimetypes.guess_type(key)
            await self._mark_cached(data.cache_asset_id, key, content_type, None, None)
            logger.info("Cache asset %s already points into the store (%s)", data.cache_asset_id, key)
            await self.emitter.emit_cache_completed(data.cache_asset_id, True)
            return CacheMediaJobResult(
                success=True,
                cache_asset_id=data.cache_asset_id,
                cache_key=key,
                content_type=content_type,
            ).model_dump(by_alias=True)

        download = await self.downloader.download(data.original_url)
        body = download.data
        content_type = download.content_type
        filename = data.filename or download.filename
        hashable = is_hashable_content_type(content_type)

        if is_heic_content(data.original_url, content_type):
            try:
                body = convert_heic_to_jpeg(download.data)
            except ConversionError as e:
                logger.warning("Keeping original bytes of %s: %s", data.cache_asset_id, e)
            else:
                logger.info(
                    "Converted HEIC %s to JPEG (%d -> %d bytes)", data.cache_asset_id, download.size, len(body)
                )
                content_type = "image/jpeg"
                filename = with_extension(filename or "image", ".jpg")
                hashable = True

        image_hash = None
        if hashable:
            image_hash = compute_image_hash(body)
        elif is_image_content_type(content_type):
            logger.info("No raster decoder for %s (%s), caching without a hash", data.cache_asset_id, content_type)

        upload = await self.storage.upload(body, folder=data.folder, filename=filename, content_type=content_type)

        if not await self._mark_cached(data.cache_asset_id, upload.key, content_type, len(body), image_hash):
            logger.warning("Cache asset %s was deleted while caching, removing %s", data.cache_asset_id, upload.key)
            await self.storage.delete(upload.key)
            return CacheMediaJobResult(success=False, cache_asset_id=data.cache_asset_id).model_dump(by_alias=True)

        logger.info("Cached %s as %s (%d bytes, %s)", data.cache_asset_id, upload.key, len(body), content_type)
        await self.emitter.emit_cache_completed(data.cache_asset_id, True)
        return CacheMediaJobResult(
            success=True,
            cache_asset_id=data.cache_asset_id,
            cache_key=upload.key,
            file_size=len(body),
            content_type=content_type,
            image_hash=image_hash,
        ).model_dump(by_alias=True)

    async def on_failed(self, job: QueueJob, data: CacheMediaJobData, error: Exception) -> None:
        await self._set_status(data.cache_asset_id, CacheStatus.FAILED)
        logger.error("Cache asset %s marked FAILED: %s", data.cache_asset_id, error)
        await self.emitter.emit_cache_completed(data.cache_asset_id, False)


class HashBackfillProcessor(JobProcessor):
    """Computes the missing aHash of an asset already cached in the object store."""

    job_type = "hash-backfill"

    def __init__(self, session_factory: async_sessionmaker, storage: StorageAdapter):
        self.session_factory = session_factory
        self.storage = storage

    def _result(self, data: HashBackfillJobData, success: bool, **fields) -> dict:
        return HashBackfillJobResult(
            success=success, cache_asset_id=data.cache_asset_id, **fields
        ).model_dump(by_alias=True)

    async def process(self, job: QueueJob, data: HashBackfillJobData) -> dict:
        async with self.session_factory() as session:
            asset = await session.get(CacheAsset, data.cache_asset_id)

        if asset is None:
            logger.warning("Cache asset %s not found, nothing to hash", data.cache_asset_id)
            return self._result(data, False, error="Cache asset not found")
        if asset.image_hash:
            return self._result(data, True, image_hash=asset.image_hash)
        if asset.status != CacheStatus.CACHED or not asset.cache_key:
            return self._result(data, False, error=f"Cache asset is {asset.status.value}, not cached")
        if not is_hashable_content_type(asset.content_type):
            return self._result(data, False, error=f"Not a raster image: {asset.content_type}")

        blob = await self.storage.get(asset.cache_key)
        image_hash = compute_image_hash(blob)

        values = {"image_hash": image_hash}
        if asset.file_size is None:
            values["file_size"] = len(blob)
        async with self.session_factory() as session:
            await session.execute(
                update(CacheAsset)
                .where(CacheAsset.id == asset.id, CacheAsset.cache_key == asset.cache_key)
                .values(**values)
            )
            await session.commit()

        logger.info("Backfilled hash of %s: %s", asset.id, image_hash)
        return self._result(data, True, image_hash=image_hash)

    async def on_failed(self, job: QueueJob, data: HashBackfillJobData, error: Exception) -> None:
        logger.error("Hash backfill of %s failed: %s", data.cache_asset_id, error)
