"""Durable job queue backed by the ``queue_jobs`` table.

One ``JobQueue`` instance per job family. Producers (the web tier) admit jobs;
consumers (the worker process) claim them atomically, then acknowledge with
``complete`` or ``fail``. The job id doubles as the admission key: a job whose
id is already waiting, delayed or active cannot be admitted twice.

State machine::

    waiting -> active -> completed
                      -> delayed -> active ...   (retryable, attempts left)
                      -> failed                  (terminal)
"""
import logging
from datetime import timedelta
from typing import Iterable, List, Optional, Tuple, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediacache.models import IN_FLIGHT_STATUSES, JobStatus, QueueJob, utcnow
from mediacache.retry import RetryPolicy
from mediacache.schemas import CacheMediaJobData, HashBackfillJobData, OcrJobData, QueueStats, job_data_adapter
from mediacache.settings import settings

logger = logging.getLogger(__name__)

MEDIA_CACHE_QUEUE = "media-cache"
OCR_QUEUE = "ocr"
HASH_BACKFILL_QUEUE = "hash-backfill"

JobPayload = Union[CacheMediaJobData, OcrJobData, HashBackfillJobData]

_CLAIMABLE = (JobStatus.WAITING, JobStatus.DELAYED)


class JobQueue:
    """Persisted work queue for one job family."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        name: str,
        policy: Optional[RetryPolicy] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.name = name
        self.policy = policy or RetryPolicy.from_settings()
        self.lease_seconds = lease_seconds or settings.JOB_LEASE_SECONDS

    def _key(self, job_id: str) -> Tuple[str, str]:
        return (self.name, job_id)

    @staticmethod
    def parse(job: QueueJob) -> JobPayload:
        """Validate a stored payload against its job type's schema."""
        return job_data_adapter.validate_python(job.data)

    async def _admit(self, session: AsyncSession, data: JobPayload, priority: int) -> bool:
        existing = await session.get(QueueJob, self._key(data.job_id))
        if existing is not None:
            if existing.status in IN_FLIGHT_STATUSES:
                logger.debug("Job %s/%s already %s, not admitted", self.name, data.job_id, existing.status.value)
                return False
            # Terminal job with the same id: replace it
            existing.job_type = data.job_type
            existing.data = data.model_dump(mode="json")
            existing.status = JobStatus.WAITING
            existing.priority = priority
            existing.attempts_made = 0
            existing.max_attempts = self.policy.attempts
            existing.available_at = utcnow()
            existing.locked_by = None
            existing.lease_expires_at = None
            existing.failed_reason = None
            existing.result = None
            existing.finished_at = None
            return True

        session.add(
            QueueJob(
                queue_name=self.name,
                id=data.job_id,
                job_type=data.job_type,
                data=data.model_dump(mode="json"),
                status=JobStatus.WAITING,
                priority=priority,
                attempts_made=0,
                max_attempts=self.policy.attempts,
                available_at=utcnow(),
            )
        )
        return True

    async def add_job(self, data: JobPayload, priority: int = 0) -> bool:
        """
        Admit one job.

        Returns:
            True if admitted, False if a job with the same id is already in flight
        """
        async with self.session_factory() as session:
            admitted = await self._admit(session, data, priority)
            try:
                await session.commit()
            except IntegrityError:
                # Another producer inserted the same id between our read and write
                await session.rollback()
                admitted = False

        if admitted:
            logger.info("Queued %s job %s (priority %d)", self.name, data.job_id, priority)
        return admitted

    async def add_bulk_jobs(self, jobs: Iterable[JobPayload], priority: int = 0) -> int:
        """Admit many jobs in one transaction. Returns the number admitted."""
        jobs = list(jobs)
        if not jobs:
            return 0

        async with self.session_factory() as session:
            admitted = 0
            seen = set()
            for data in jobs:
                if data.job_id in seen:
                    continue
                seen.add(data.job_id)
                if await self._admit(session, data, priority):
                    admitted += 1
                await session.flush()
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning("Bulk admission to %s raced another producer, admitting one by one", self.name)
                admitted = 0
                for data in jobs:
                    if await self.add_job(data, priority):
                        admitted += 1
                return admitted

        logger.info("Queued %d/%d %s jobs", admitted, len(jobs), self.name)
        return admitted

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        async with self.session_factory() as session:
            return await session.get(QueueJob, self._key(job_id))

    async def get_stats(self) -> QueueStats:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(QueueJob.status, func.count())
                .where(QueueJob.queue_name == self.name)
                .group_by(QueueJob.status)
            )
            counts = {status.value: count for status, count in rows.all()}

        stats = QueueStats(**counts)
        stats.total = stats.waiting + stats.active + stats.completed + stats.failed + stats.delayed
        return stats

    async def clear_queue(self) -> int:
        """Drop every job of this queue, in-flight ones included. Maintenance only."""
        async with self.session_factory() as session:
            result = await session.execute(delete(QueueJob).where(QueueJob.queue_name == self.name))
            await session.commit()
        logger.warning("Cleared %d jobs from queue %s", result.rowcount or 0, self.name)
        return result.rowcount or 0

    async def claim_next(self, worker_id: str) -> Optional[QueueJob]:
        """Atomically claim the highest-priority available job, if any."""
        now = utcnow()
        async with self.session_factory() as session:
            pick_id = (
                select(QueueJob.id)
                .where(
                    QueueJob.queue_name == self.name,
                    QueueJob.status.in_(_CLAIMABLE),
                    QueueJob.available_at <= now,
                )
                .order_by(QueueJob.priority.desc(), QueueJob.available_at.asc(), QueueJob.created_at.asc())
                .limit(1)
                .scalar_subquery()
            )

            # The status guard makes the update a no-op if another worker won the race
            stmt = (
                update(QueueJob)
                .where(
                    QueueJob.queue_name == self.name,
                    QueueJob.id == pick_id,
                    QueueJob.status.in_(_CLAIMABLE),
                )
                .values(
                    status=JobStatus.ACTIVE,
                    attempts_made=QueueJob.attempts_made + 1,
                    locked_by=worker_id,
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .returning(QueueJob.id)
                .execution_options(synchronize_session=False)
            )
            job_id = (await session.execute(stmt)).scalar_one_or_none()
            if job_id is None:
                await session.rollback()
                return None
            await session.commit()
            return await session.get(QueueJob, self._key(job_id))

    async def complete(self, job: QueueJob, result: Optional[dict] = None) -> None:
        async with self.session_factory() as session:
            row = await session.get(QueueJob, self._key(job.id))
            if row is None:
                logger.warning("Completed job %s/%s no longer exists (queue cleared?)", self.name, job.id)
                return
            row.status = JobStatus.COMPLETED
            row.result = result
            row.failed_reason = None
            row.finished_at = utcnow()
            row.locked_by = None
            row.lease_expires_at = None
            await session.commit()

    async def fail(self, job: QueueJob, error: str, retryable: bool = True) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the job is now terminally failed, False if it will be retried
        """
        async with self.session_factory() as session:
            row = await session.get(QueueJob, self._key(job.id))
            if row is None:
                logger.warning("Failed job %s/%s no longer exists (queue cleared?)", self.name, job.id)
                return True

            row.failed_reason = (error or "")[:2000]
            row.locked_by = None
            row.lease_expires_at = None
            terminal = not retryable or row.attempts_made >= row.max_attempts
            if terminal:
                row.status = JobStatus.FAILED
                row.finished_at = utcnow()
            else:
                delay = self.policy.job_backoff(row.attempts_made)
                row.status = JobStatus.DELAYED
                row.available_at = utcnow() + timedelta(seconds=delay)
            attempts_made = row.attempts_made
            await session.commit()

        if terminal:
            logger.error(
                "Job %s/%s failed terminally after %d attempt(s): %s", self.name, job.id, attempts_made, error
            )
        else:
            logger.warning(
                "Job %s/%s attempt %d failed, will retry: %s", self.name, job.id, attempts_made, error
            )
        return terminal

    async def reclaim_expired(self) -> List[QueueJob]:
        """
        Return active jobs whose lease elapsed to the queue.

        A worker that crashed mid-job never acknowledges it; its claim expires
        after the lease. Jobs with attempts left go back to ``waiting``, the
        rest are failed.

        Returns:
            The jobs that were terminally failed by this call
        """
        now = utcnow()
        failed: List[QueueJob] = []
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(QueueJob).where(
                        QueueJob.queue_name == self.name,
                        QueueJob.status == JobStatus.ACTIVE,
                        QueueJob.lease_expires_at < now,
                    )
                )
            ).scalars().all()

            for row in rows:
                logger.warning("Lease expired for job %s/%s (worker %s)", self.name, row.id, row.locked_by)
                row.locked_by = None
                row.lease_expires_at = None
                if row.attempts_made >= row.max_attempts:
                    row.status = JobStatus.FAILED
                    row.failed_reason = "lease expired"
                    row.finished_at = now
                    failed.append(row)
                else:
                    row.status = JobStatus.WAITING
                    row.available_at = now
            await session.commit()
        return failed
