"""Background worker consuming the media caching and hash backfill queues.

Run as its own process::

    python -m mediacache.worker
"""
import asyncio
import logging
import os
import signal
import socket
import time
from typing import Dict, Iterable, Optional, Set

import pydantic

from mediacache.db import create_session_factory
from mediacache.download import MediaDownloader
from mediacache.events import EventEmitter, create_event_broker
from mediacache.models import QueueJob
from mediacache.pipeline import HashBackfillProcessor, JobProcessor, MediaCachePipeline
from mediacache.queue import HASH_BACKFILL_QUEUE, MEDIA_CACHE_QUEUE, JobQueue
from mediacache.retry import RetryPolicy
from mediacache.settings import settings
from mediacache.storage import get_storage_adapter

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return settings.WORKER_ID or f"{socket.gethostname()}:{os.getpid()}"


class QueueWorker:
    """Claims jobs from one queue and runs up to ``concurrency`` of them at a time."""

    def __init__(
        self,
        queue: JobQueue,
        processors: Iterable[JobProcessor],
        concurrency: int = None,
        poll_interval: float = None,
        worker_id: str = None,
        reclaim_interval: float = None,
    ):
        self.queue = queue
        self.processors: Dict[str, JobProcessor] = {p.job_type: p for p in processors}
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL
        self.worker_id = worker_id or default_worker_id()
        self.reclaim_interval = reclaim_interval or max(queue.lease_seconds / 4, self.poll_interval)
        self._stop_event = asyncio.Event()
        self._running: Set[asyncio.Task] = set()
        self._task: Optional[asyncio.Task] = None

    async def run_job(self, job: QueueJob) -> bool:
        """
        Run one claimed job and acknowledge it.

        Returns:
            True if the job completed
        """
        try:
            data = self.queue.parse(job)
        except pydantic.ValidationError as e:
            await self.queue.fail(job, f"Invalid job payload: {e}", retryable=False)
            return False

        processor = self.processors.get(job.job_type)
        if processor is None:
            await self.queue.fail(job, f"No processor for job type {job.job_type!r}", retryable=False)
            return False

        try:
            result = await processor.process(job, data)
        except Exception as e:
            logger.exception("Job %s/%s attempt %d raised", self.queue.name, job.id, job.attempts_made)
            retryable = getattr(e, "retryable", True)
            try:
                if await self.queue.fail(job, str(e), retryable=retryable):
                    await processor.on_failed(job, data, e)
            except Exception:
                logger.exception("Failed to record failure of job %s/%s", self.queue.name, job.id)
            return False

        try:
            await self.queue.complete(job, result)
        except Exception:
            # Left active; reclaimed once the lease expires
            logger.exception("Failed to acknowledge job %s/%s", self.queue.name, job.id)
            return False
        logger.info("Job %s/%s completed", self.queue.name, job.id)
        return True

    async def reclaim(self) -> int:
        """Requeue jobs whose lease expired; fail the ones out of attempts."""
        failed = await self.queue.reclaim_expired()
        for job in failed:
            processor = self.processors.get(job.job_type)
            if processor is None:
                continue
            try:
                data = self.queue.parse(job)
            except pydantic.ValidationError:
                continue
            try:
                await processor.on_failed(job, data, RuntimeError("lease expired"))
            except Exception:
                logger.exception("Failure handler for expired job %s/%s raised", self.queue.name, job.id)
        return len(failed)

    async def drain(self) -> int:
        """Process available jobs one at a time until none is claimable. Returns jobs run."""
        processed = 0
        while True:
            job = await self.queue.claim_next(self.worker_id)
            if job is None:
                return processed
            await self.run_job(job)
            processed += 1

    async def _wait_for_stop(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        logger.info(
            "Worker %s consuming %s (concurrency %d)", self.worker_id, self.queue.name, self.concurrency
        )
        last_reclaim = 0.0
        while not self._stop_event.is_set():
            try:
                if time.monotonic() - last_reclaim >= self.reclaim_interval:
                    last_reclaim = time.monotonic()
                    await self.reclaim()

                if len(self._running) >= self.concurrency:
                    await asyncio.wait(self._running, return_when=asyncio.FIRST_COMPLETED)
                    continue

                job = await self.queue.claim_next(self.worker_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker loop failed")
                await self._wait_for_stop(self.poll_interval)
                continue

            if job is None:
                await self._wait_for_stop(self.poll_interval)
                continue

            task = asyncio.create_task(self.run_job(job), name=f"{self.queue.name}:{job.id}")
            self._running.add(task)
            task.add_done_callback(self._running.discard)

        if self._running:
            logger.info("Waiting for %d running job(s) to finish", len(self._running))
            await asyncio.gather(*self._running, return_exceptions=True)
        logger.info("Worker %s stopped", self.worker_id)

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name=f"{self.queue.name}-worker")

    def request_stop(self) -> None:
        """Stop claiming new jobs; running ones finish."""
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop claiming new jobs and wait for running ones to finish."""
        self.request_stop()
        if self._task is None:
            return
        try:
            await self._task
        finally:
            self._task = None


async def run_worker() -> None:
    engine, session_factory = create_session_factory(settings.DATABASE_URL)
    policy = RetryPolicy.from_settings()
    broker = create_event_broker()
    await broker.open()
    downloader = MediaDownloader(policy=policy, max_bytes=settings.MAX_DOWNLOAD_BYTES)

    storage = get_storage_adapter()
    workers = [
        QueueWorker(
            JobQueue(session_factory, MEDIA_CACHE_QUEUE, policy=policy),
            [MediaCachePipeline(session_factory, storage, downloader, EventEmitter(broker))],
        ),
        QueueWorker(
            JobQueue(session_factory, HASH_BACKFILL_QUEUE, policy=policy),
            [HashBackfillProcessor(session_factory, storage)],
            concurrency=settings.HASH_BACKFILL_CONCURRENCY,
        ),
    ]

    def request_stop():
        for worker in workers:
            worker.request_stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop)

    try:
        await asyncio.gather(*(worker.run() for worker in workers))
    finally:
        await downloader.aclose()
        await broker.close()
        await engine.dispose()


def main() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
