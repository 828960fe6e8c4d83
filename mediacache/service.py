"""Cache asset service: register, resolve and batch-resolve cached media.

Route handlers depend on this service only. Registration writes a PENDING row
and enqueues a caching job; every other operation reads the store.
"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mediacache.errors import NotFoundError, ValidationError
from mediacache.image_utils import is_hashable_content_type
from mediacache.models import CacheAsset, CacheStatus, new_id, utcnow
from mediacache.queue import JobQueue
from mediacache.schemas import CacheMediaJobData, CacheStats, HashCoverage
from mediacache.storage import StorageAdapter

logger = logging.getLogger(__name__)

RETRY_PRIORITY = 10
MAX_PAGE_SIZE = 100


def validate_url(original_url: Optional[str]) -> str:
    """Return the stripped URL or raise ValidationError if it is not an absolute http(s) URL."""
    if not isinstance(original_url, str) or not original_url.strip():
        raise ValidationError("originalUrl is required")
    url = original_url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("originalUrl must be an absolute http(s) URL", details={"originalUrl": url})
    return url


class CacheAssetService:
    def __init__(self, db: AsyncSession, queue: JobQueue, storage: StorageAdapter):
        self.db = db
        self.queue = queue
        self.storage = storage

    async def _enqueue(self, asset: CacheAsset, folder: str, filename: Optional[str] = None, priority: int = 0) -> bool:
        return await self.queue.add_job(
            CacheMediaJobData(
                original_url=asset.original_url,
                cache_asset_id=asset.id,
                folder=folder,
                filename=filename,
            ),
            priority=priority,
        )

    async def create_cache_asset(
        self,
        original_url: str,
        folder: str = "media",
        filename: Optional[str] = None,
        force_recache: bool = False,
    ) -> CacheAsset:
        """
        Register ``original_url`` for caching.

        Idempotent: an already registered URL returns the existing row and
        enqueues nothing, unless ``force_recache`` resets it to PENDING.

        Raises:
            ValidationError: If the URL is empty or malformed
        """
        url = validate_url(original_url)

        existing = await self.get_cache_asset_by_url(url)
        if existing is not None:
            logger.info("Cache asset already exists for %s: %s", url, existing.id)
            if force_recache:
                existing.status = CacheStatus.PENDING
                await self.db.commit()
                await self._enqueue(existing, folder, filename)
                logger.info("Cache asset %s reset and queued for recaching", existing.id)
            return existing

        asset = CacheAsset(id=new_id(), original_url=url, status=CacheStatus.PENDING)
        self.db.add(asset)
        try:
            await self.db.commit()
        except IntegrityError:
            # Registered concurrently by another request; theirs wins
            await self.db.rollback()
            existing = await self.get_cache_asset_by_url(url)
            if existing is None:
                raise
            return existing

        logger.info("Created cache asset %s for %s", asset.id, url)
        await self._enqueue(asset, folder, filename)
        return asset

    async def create_bulk_cache_assets(
        self,
        urls: Sequence[str],
        folder: str = "media",
        force_recache: bool = False,
    ) -> List[CacheAsset]:
        """Register many URLs; results follow input order, new jobs go in one bulk add."""
        invalid = []
        cleaned: List[str] = []
        for url in urls:
            try:
                cleaned.append(validate_url(url))
            except ValidationError:
                invalid.append(url)
        if invalid:
            raise ValidationError("Invalid URLs in batch", details={"invalid": invalid})

        unique = list(dict.fromkeys(cleaned))
        rows = await self.db.execute(select(CacheAsset).where(CacheAsset.original_url.in_(unique)))
        by_url: Dict[str, CacheAsset] = {asset.original_url: asset for asset in rows.scalars()}

        to_queue: List[CacheAsset] = []
        for url in unique:
            asset = by_url.get(url)
            if asset is None:
                asset = CacheAsset(id=new_id(), original_url=url, status=CacheStatus.PENDING)
                self.db.add(asset)
                by_url[url] = asset
                to_queue.append(asset)
            elif force_recache:
                asset.status = CacheStatus.PENDING
                to_queue.append(asset)
        await self.db.commit()

        if to_queue:
            await self.queue.add_bulk_jobs(
                CacheMediaJobData(original_url=a.original_url, cache_asset_id=a.id, folder=folder)
                for a in to_queue
            )
        logger.info("Registered %d URLs, queued %d jobs", len(unique), len(to_queue))
        return [by_url[url] for url in cleaned]

    async def get_cache_asset(self, cache_asset_id: str) -> Optional[CacheAsset]:
        return await self.db.get(CacheAsset, cache_asset_id)

    async def get_cache_asset_by_url(self, original_url: str) -> Optional[CacheAsset]:
        result = await self.db.execute(
            select(CacheAsset).where(CacheAsset.original_url == original_url.strip())
        )
        return result.scalar_one_or_none()

    async def resolve_url(
        self,
        asset: CacheAsset,
        fallback_url: Optional[str] = None,
        prefer_public: bool = False,
    ) -> str:
        """Best available URL for a row: object store when cached, else the fallback/original."""
        if asset.status == CacheStatus.CACHED and asset.cache_key:
            if prefer_public:
                try:
                    return self.storage.public_url(asset.cache_key)
                except Exception as e:
                    logger.warning("Failed to build public URL for %s: %s", asset.id, e)
            else:
                try:
                    return await self.storage.presigned_url(asset.cache_key)
                except Exception as e:
                    logger.warning("Failed to presign URL for %s, trying public URL: %s", asset.id, e)
                    try:
                        return self.storage.public_url(asset.cache_key)
                    except Exception as fallback_error:
                        logger.warning("Failed to build public URL for %s: %s", asset.id, fallback_error)
        return fallback_url or asset.original_url

    async def get_url(
        self,
        cache_asset_id: str,
        fallback_url: Optional[str] = None,
        prefer_public: bool = False,
    ) -> str:
        """
        Resolve one cache asset to a URL without waiting for caching.

        Raises:
            NotFoundError: If the id does not exist
        """
        asset = await self.get_cache_asset(cache_asset_id)
        if asset is None:
            raise NotFoundError(f"Cache asset {cache_asset_id} not found")
        return await self.resolve_url(asset, fallback_url, prefer_public)

    async def get_urls(
        self,
        cache_asset_ids: Sequence[Optional[str]],
        fallback_urls: Optional[Sequence[Optional[str]]] = None,
        prefer_public: bool = False,
    ) -> List[Optional[str]]:
        """Batch variant of get_url: one query, input order kept, missing ids map to None (or their fallback)."""
        wanted = {cid for cid in cache_asset_ids if cid}
        by_id: Dict[str, CacheAsset] = {}
        if wanted:
            rows = await self.db.execute(select(CacheAsset).where(CacheAsset.id.in_(wanted)))
            by_id = {asset.id: asset for asset in rows.scalars()}

        urls: List[Optional[str]] = []
        for index, cache_asset_id in enumerate(cache_asset_ids):
            fallback = fallback_urls[index] if fallback_urls and index < len(fallback_urls) else None
            asset = by_id.get(cache_asset_id) if cache_asset_id else None
            if asset is None:
                urls.append(fallback or None)
            else:
                urls.append(await self.resolve_url(asset, fallback, prefer_public))
        return urls

    async def list_cache_assets(
        self,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Tuple[List[CacheAsset], int]:
        """Paginated listing, newest first. ``content_type`` matches as a prefix (``image/``)."""
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        filters = []
        if search:
            filters.append(CacheAsset.original_url.contains(search, autoescape=True))
        if content_type:
            filters.append(CacheAsset.content_type.startswith(content_type, autoescape=True))

        total = (await self.db.execute(select(func.count(CacheAsset.id)).where(*filters))).scalar_one()
        rows = await self.db.execute(
            select(CacheAsset)
            .where(*filters)
            .order_by(CacheAsset.created_at.desc(), CacheAsset.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(rows.scalars()), total

    async def delete_cache_assets(self, cache_asset_ids: Sequence[str]) -> int:
        """Delete rows and, best-effort, their object-store blobs."""
        if not cache_asset_ids:
            return 0
        rows = await self.db.execute(select(CacheAsset).where(CacheAsset.id.in_(set(cache_asset_ids))))
        assets = list(rows.scalars())

        for asset in assets:
            if asset.cache_key:
                try:
                    await self.storage.delete(asset.cache_key)
                except Exception as e:
                    logger.warning("Failed to delete blob %s for cache asset %s: %s", asset.cache_key, asset.id, e)
            await self.db.delete(asset)
        await self.db.commit()

        logger.info("Deleted %d cache assets", len(assets))
        return len(assets)

    async def get_stats(self) -> CacheStats:
        rows = await self.db.execute(
            select(CacheAsset.status, func.count(CacheAsset.id)).group_by(CacheAsset.status)
        )
        stats = CacheStats()
        for status, count in rows.all():
            setattr(stats, status.value.lower(), count)
            stats.total += count
        return stats

    async def retry_failed(self, folder: str = "media") -> int:
        """Reset every FAILED asset to PENDING and re-enqueue it at raised priority."""
        rows = await self.db.execute(select(CacheAsset).where(CacheAsset.status == CacheStatus.FAILED))
        failed = list(rows.scalars())
        if not failed:
            return 0

        for asset in failed:
            asset.status = CacheStatus.PENDING
        await self.db.commit()

        await self.queue.add_bulk_jobs(
            (CacheMediaJobData(original_url=a.original_url, cache_asset_id=a.id, folder=folder) for a in failed),
            priority=RETRY_PRIORITY,
        )
        logger.info("Queued %d failed cache assets for retry", len(failed))
        return len(failed)

    async def cleanup(self, older_than_days: int = 30) -> int:
        """Delete CACHED/FAILED assets created more than ``older_than_days`` ago."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        rows = await self.db.execute(
            select(CacheAsset.id).where(
                CacheAsset.created_at < cutoff,
                CacheAsset.status.in_((CacheStatus.CACHED, CacheStatus.FAILED)),
            )
        )
        ids = list(rows.scalars())
        deleted = await self.delete_cache_assets(ids)
        logger.info("Cleaned up %d cache assets older than %d days", deleted, older_than_days)
        return deleted

    def _cached_images(self, *columns):
        return select(*columns).where(
            CacheAsset.status == CacheStatus.CACHED,
            CacheAsset.cache_key.is_not(None),
            CacheAsset.content_type.startswith("image/"),
        )

    async def find_missing_hashes(self, limit: int = 100) -> List[CacheAsset]:
        """Cached raster images without a hash, oldest first."""
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        rows = await self.db.execute(
            self._cached_images(CacheAsset)
            .where(CacheAsset.image_hash.is_(None))
            .order_by(CacheAsset.created_at, CacheAsset.id)
        )
        missing = [asset for asset in rows.scalars() if is_hashable_content_type(asset.content_type)]
        return missing[:limit]

    async def get_hash_coverage(self) -> HashCoverage:
        rows = await self.db.execute(self._cached_images(CacheAsset.content_type, CacheAsset.image_hash))
        coverage = HashCoverage()
        for content_type, image_hash in rows.all():
            if not is_hashable_content_type(content_type):
                continue
            coverage.total_images += 1
            if image_hash:
                coverage.with_hash += 1
        coverage.without_hash = coverage.total_images - coverage.with_hash
        if coverage.total_images:
            coverage.percentage_complete = round(coverage.with_hash * 100 / coverage.total_images)
        return coverage
