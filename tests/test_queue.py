"""Tests for the SQL-backed job queue and the retry policy."""
from datetime import timedelta

import pytest
from sqlalchemy import update

from mediacache.models import JobStatus, QueueJob, utcnow
from mediacache.queue import JobQueue
from mediacache.retry import RetryPolicy
from mediacache.schemas import CacheMediaJobData, OcrJobData


def cache_job(asset_id: str, url: str = "https://example.com/a.jpg") -> CacheMediaJobData:
    return CacheMediaJobData(original_url=url, cache_asset_id=asset_id)


async def test_add_job_is_idempotent_while_in_flight(media_queue):
    assert await media_queue.add_job(cache_job("a")) is True
    assert await media_queue.add_job(cache_job("a")) is False

    stats = await media_queue.get_stats()
    assert stats.waiting == 1
    assert stats.total == 1

    job = await media_queue.claim_next("w1")
    assert job.status == JobStatus.ACTIVE
    assert await media_queue.add_job(cache_job("a")) is False


async def test_terminal_job_is_replaced(media_queue):
    await media_queue.add_job(cache_job("a"))
    job = await media_queue.claim_next("w1")
    await media_queue.complete(job, {"success": True})

    assert await media_queue.add_job(cache_job("a"), priority=5) is True
    replaced = await media_queue.get_job("a")
    assert replaced.status == JobStatus.WAITING
    assert replaced.attempts_made == 0
    assert replaced.priority == 5
    assert replaced.result is None


async def test_same_id_in_different_queues(media_queue, ocr_queue):
    assert await media_queue.add_job(cache_job("x"))
    assert await ocr_queue.add_job(OcrJobData(post_id="x"))
    assert (await media_queue.get_stats()).waiting == 1
    assert (await ocr_queue.get_stats()).waiting == 1


async def test_claim_order_priority_then_age(media_queue):
    await media_queue.add_job(cache_job("old"))
    await media_queue.add_job(cache_job("new"))
    await media_queue.add_job(cache_job("urgent"), priority=10)

    claimed = [(await media_queue.claim_next("w1")).id for _ in range(3)]
    assert claimed == ["urgent", "old", "new"]
    assert await media_queue.claim_next("w1") is None


async def test_claim_sets_lease_and_attempt(media_queue):
    await media_queue.add_job(cache_job("a"))
    job = await media_queue.claim_next("worker-7")

    assert job.attempts_made == 1
    assert job.locked_by == "worker-7"
    assert job.lease_expires_at is not None
    assert (await media_queue.get_stats()).active == 1


async def test_parse_returns_typed_payload(media_queue):
    await media_queue.add_job(cache_job("a", "https://example.com/cat.png"))
    job = await media_queue.claim_next("w1")
    data = JobQueue.parse(job)

    assert isinstance(data, CacheMediaJobData)
    assert data.original_url == "https://example.com/cat.png"
    assert data.folder == "media"


async def test_retryable_failure_until_budget_spent(media_queue):
    await media_queue.add_job(cache_job("a"))

    for attempt in (1, 2):
        job = await media_queue.claim_next("w1")
        assert job.attempts_made == attempt
        assert await media_queue.fail(job, "HTTP 503") is False
        assert (await media_queue.get_job("a")).status == JobStatus.DELAYED

    job = await media_queue.claim_next("w1")
    assert job.attempts_made == 3
    assert await media_queue.fail(job, "HTTP 503") is True

    failed = await media_queue.get_job("a")
    assert failed.status == JobStatus.FAILED
    assert failed.failed_reason == "HTTP 503"
    assert failed.finished_at is not None
    assert await media_queue.claim_next("w1") is None


async def test_non_retryable_failure_is_terminal(media_queue):
    await media_queue.add_job(cache_job("a"))
    job = await media_queue.claim_next("w1")

    assert await media_queue.fail(job, "corrupt image", retryable=False) is True
    assert (await media_queue.get_job("a")).status == JobStatus.FAILED


async def test_backoff_delays_next_claim(session_factory):
    queue = JobQueue(session_factory, "slow", policy=RetryPolicy(backoff_base=60))
    await queue.add_job(cache_job("a"))
    await queue.fail(await queue.claim_next("w1"), "boom")

    assert await queue.claim_next("w1") is None
    job = await queue.get_job("a")
    assert job.status == JobStatus.DELAYED
    assert (await queue.get_stats()).delayed == 1


async def test_add_bulk_jobs(media_queue):
    await media_queue.add_job(cache_job("b"))
    admitted = await media_queue.add_bulk_jobs([cache_job("a"), cache_job("a"), cache_job("b"), cache_job("c")])

    assert admitted == 2
    assert (await media_queue.get_stats()).waiting == 3
    assert await media_queue.add_bulk_jobs([]) == 0


async def test_clear_queue(media_queue, ocr_queue):
    await media_queue.add_bulk_jobs([cache_job("a"), cache_job("b")])
    await media_queue.claim_next("w1")
    await ocr_queue.add_job(OcrJobData(post_id="p1"))

    assert await media_queue.clear_queue() == 2
    assert (await media_queue.get_stats()).total == 0
    assert (await ocr_queue.get_stats()).total == 1


async def expire_lease(session_factory, job_id: str, attempts_made: int = None):
    values = {"lease_expires_at": utcnow() - timedelta(seconds=1)}
    if attempts_made is not None:
        values["attempts_made"] = attempts_made
    async with session_factory() as session:
        await session.execute(update(QueueJob).where(QueueJob.id == job_id).values(**values))
        await session.commit()


async def test_reclaim_expired_requeues_job(media_queue, session_factory):
    await media_queue.add_job(cache_job("a"))
    await media_queue.claim_next("crashed-worker")
    await expire_lease(session_factory, "a")

    assert await media_queue.reclaim_expired() == []
    job = await media_queue.get_job("a")
    assert job.status == JobStatus.WAITING
    assert job.locked_by is None

    reclaimed = await media_queue.claim_next("w2")
    assert reclaimed.id == "a"
    assert reclaimed.attempts_made == 2


async def test_reclaim_expired_fails_spent_job(media_queue, session_factory):
    await media_queue.add_job(cache_job("a"))
    await media_queue.claim_next("crashed-worker")
    await expire_lease(session_factory, "a", attempts_made=3)

    failed = await media_queue.reclaim_expired()
    assert [job.id for job in failed] == ["a"]
    assert (await media_queue.get_job("a")).status == JobStatus.FAILED


async def test_reclaim_ignores_live_leases(media_queue):
    await media_queue.add_job(cache_job("a"))
    await media_queue.claim_next("w1")

    assert await media_queue.reclaim_expired() == []
    assert (await media_queue.get_job("a")).status == JobStatus.ACTIVE


def test_retry_policy_backoff():
    policy = RetryPolicy(backoff_base=2, backoff_max=5)
    assert policy.job_backoff(0) == 0
    assert policy.job_backoff(1) == 2
    assert policy.job_backoff(2) == 4
    assert policy.job_backoff(3) == 5


def test_retry_policy_total_download_attempts():
    assert RetryPolicy().total_download_attempts == 3
    assert RetryPolicy(attempts=2, download_attempts=3).total_download_attempts == 6


def test_retry_policy_rejects_empty_budget():
    with pytest.raises(ValueError):
        RetryPolicy(attempts=0)
