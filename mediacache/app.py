"""FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mediacache.db import AsyncSessionLocal
from mediacache.endpoints import router
from mediacache.errors import CacheError, NotFoundError, ValidationError
from mediacache.events import create_event_broker
from mediacache.queue import HASH_BACKFILL_QUEUE, MEDIA_CACHE_QUEUE, OCR_QUEUE, JobQueue
from mediacache.retry import RetryPolicy
from mediacache.settings import settings
from mediacache.storage import get_storage_adapter

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    policy = RetryPolicy.from_settings()
    app.state.storage = get_storage_adapter()
    app.state.queues = {
        MEDIA_CACHE_QUEUE: JobQueue(AsyncSessionLocal, MEDIA_CACHE_QUEUE, policy=policy),
        OCR_QUEUE: JobQueue(AsyncSessionLocal, OCR_QUEUE, policy=policy),
        HASH_BACKFILL_QUEUE: JobQueue(AsyncSessionLocal, HASH_BACKFILL_QUEUE, policy=policy),
    }
    app.state.event_broker = create_event_broker()
    await app.state.event_broker.open()
    logger.info("Media cache API started (storage=%s, broker=%s)", settings.STORAGE_TYPE, settings.EVENT_BROKER)
    try:
        yield
    finally:
        await app.state.event_broker.close()


app = FastAPI(
    title="Media Cache",
    description="Caches external media into object storage with a background job queue",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware (configure for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, error: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "details": jsonable_encoder(details)},
    )


@app.exception_handler(CacheError)
async def cache_error_handler(request: Request, exc: CacheError):
    if isinstance(exc, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    else:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return error_response(code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", exc.errors())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


# Include API router
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Media Cache",
        "version": "1.0.0",
        "endpoints": {
            "register": "POST /cache-assets",
            "register_bulk": "POST /cache-assets/bulk",
            "resolve": "GET /cache-assets?id=",
            "list": "GET /cache-assets",
            "delete": "DELETE /cache-assets?ids=",
            "stats": "GET /cache-assets/stats",
            "retry_failed": "POST /cache-assets/retry-failed",
            "backfill_hashes": "POST /cache-assets/backfill-hashes",
            "events": "GET /events/{channel}",
            "ocr_queue_all": "POST /admin/ocr/queue-all",
            "queue_stats": "GET /admin/queues/{name}/stats",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
