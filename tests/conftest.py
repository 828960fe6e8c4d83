"""Shared fixtures: throwaway SQLite database, local storage, in-process broker and a media server."""
import asyncio
from io import BytesIO

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from httpx import ASGITransport, AsyncClient
from PIL import Image

from mediacache.db import create_session_factory, create_tables, get_db
from mediacache.download import MediaDownloader
from mediacache.events import EventEmitter, LocalEventBroker
from mediacache.pipeline import HashBackfillProcessor, MediaCachePipeline
from mediacache.queue import HASH_BACKFILL_QUEUE, MEDIA_CACHE_QUEUE, OCR_QUEUE, JobQueue
from mediacache.retry import RetryPolicy
from mediacache.service import CacheAssetService
from mediacache.storage import LocalStorageAdapter
from mediacache.worker import QueueWorker

PUBLIC_BASE = "http://cdn.test"

SVG = b'<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10"><rect width="10" height="10"/></svg>'


def render_image(pattern: str = "left-right", fmt: str = "PNG", size: int = 64) -> bytes:
    """Encode a synthetic test image. ``HEIF`` relies on the opener registered by ``mediacache.image_utils``."""
    img = Image.new("RGB", (size, size), color="black")
    pixels = img.load()
    half = size // 2
    for x in range(size):
        for y in range(size):
            if pattern == "left-right":
                value = 0 if x < half else 255
            elif pattern == "right-left":
                value = 255 if x < half else 0
            elif pattern == "top-bottom":
                value = 255 if y < half else 0
            elif pattern == "bottom-top":
                value = 0 if y < half else 255
            elif pattern == "uniform":
                value = 128
            elif pattern == "gradient":
                pixels[x, y] = (x * 255 // size, y * 255 // size, (x + y) * 127 // size)
                continue
            else:
                raise ValueError(pattern)
            pixels[x, y] = (value, value, value)

    buf = BytesIO()
    if fmt == "JPEG":
        img.save(buf, fmt, quality=95)
    else:
        img.save(buf, fmt)
    return buf.getvalue()


@pytest.fixture
def make_image():
    return render_image


@pytest.fixture
def policy():
    """Production attempt budgets, no waiting between attempts."""
    return RetryPolicy(
        attempts=3,
        backoff_base=0,
        backoff_max=0,
        download_attempts=1,
        download_backoff_max=0,
        download_timeout=5,
    )


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path):
    return LocalStorageAdapter(base_path=str(tmp_path / "storage"), public_url=PUBLIC_BASE)


@pytest.fixture
async def broker():
    broker = LocalEventBroker()
    await broker.open()
    yield broker
    await broker.close()


@pytest.fixture
def media_queue(session_factory, policy):
    return JobQueue(session_factory, MEDIA_CACHE_QUEUE, policy=policy)


@pytest.fixture
def ocr_queue(session_factory, policy):
    return JobQueue(session_factory, OCR_QUEUE, policy=policy)


@pytest.fixture
def backfill_queue(session_factory, policy):
    return JobQueue(session_factory, HASH_BACKFILL_QUEUE, policy=policy)


@pytest.fixture
def service(db, media_queue, storage):
    return CacheAssetService(db, media_queue, storage)


@pytest.fixture
async def downloader(policy):
    downloader = MediaDownloader(policy=policy)
    yield downloader
    await downloader.aclose()


@pytest.fixture
def pipeline(session_factory, storage, downloader, broker):
    return MediaCachePipeline(session_factory, storage, downloader, EventEmitter(broker))


@pytest.fixture
def worker(media_queue, pipeline):
    return QueueWorker(media_queue, [pipeline], concurrency=2, poll_interval=0.05, worker_id="test-worker")


@pytest.fixture
def backfill_worker(backfill_queue, session_factory, storage):
    return QueueWorker(
        backfill_queue,
        [HashBackfillProcessor(session_factory, storage)],
        poll_interval=0.05,
        worker_id="test-worker",
    )


class MediaServer:
    """Local HTTP server standing in for external media hosts."""

    def __init__(self, server: TestServer, hits: dict):
        self.server = server
        self.hits = hits

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))


@pytest.fixture
async def media_server():
    hits = {}
    jpeg = render_image("left-right", "JPEG")
    png = render_image("top-bottom", "PNG")
    heic = render_image("left-right", "HEIF")

    def counted(handler):
        async def wrapper(request):
            hits[request.path] = hits.get(request.path, 0) + 1
            return await handler(request)
        return wrapper

    async def image_jpg(request):
        return web.Response(body=jpeg, content_type="image/jpeg")

    async def blob(request):
        return web.Response(body=png, content_type="image/png")

    async def corrupt(request):
        return web.Response(body=b"definitely not a jpeg", content_type="image/jpeg")

    async def vector(request):
        return web.Response(body=SVG, content_type="image/svg+xml")

    async def photo_heic(request):
        return web.Response(body=heic, content_type="image/heic")

    async def broken_heic(request):
        return web.Response(body=b"\x00\x00\x00\x18ftypheic truncated", content_type="image/heic")

    async def text(request):
        return web.Response(text="hello media cache", content_type="text/plain")

    async def missing(request):
        return web.Response(status=404, text="not here")

    async def flaky(request):
        # Fails until the third request
        if hits[request.path] < 3:
            return web.Response(status=503, text="try later")
        return web.Response(body=jpeg, content_type="image/jpeg")

    async def slow(request):
        await asyncio.sleep(2)
        return web.Response(body=jpeg, content_type="image/jpeg")

    async def echo_headers(request):
        return web.json_response(dict(request.headers))

    app = web.Application()
    app.router.add_get("/image.jpg", counted(image_jpg))
    app.router.add_get("/blob", counted(blob))
    app.router.add_get("/corrupt.jpg", counted(corrupt))
    app.router.add_get("/notes.txt", counted(text))
    app.router.add_get("/vector.svg", counted(vector))
    app.router.add_get("/photo.heic", counted(photo_heic))
    app.router.add_get("/broken.heic", counted(broken_heic))
    app.router.add_get("/missing.jpg", counted(missing))
    app.router.add_get("/flaky.jpg", counted(flaky))
    app.router.add_get("/slow.jpg", counted(slow))
    app.router.add_get("/headers", counted(echo_headers))

    server = TestServer(app)
    await server.start_server()
    yield MediaServer(server, hits)
    await server.close()


@pytest.fixture
async def client(session_factory, storage, media_queue, ocr_queue, backfill_queue, broker):
    """HTTPX async test client against the API."""
    from mediacache.app import app
    from mediacache.endpoints import get_event_broker, get_queues, get_storage

    async def override_get_db():
        async with session_factory() as session:
            yield session

    queues = {MEDIA_CACHE_QUEUE: media_queue, OCR_QUEUE: ocr_queue, HASH_BACKFILL_QUEUE: backfill_queue}
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_queues] = lambda: queues
    app.dependency_overrides[get_event_broker] = lambda: broker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
