"""Bridge a pub/sub channel to a Server-Sent Events stream."""
import json
import logging
import time
from typing import AsyncIterator, Awaitable, Callable

from fastapi.responses import StreamingResponse

from mediacache.events import EventBroker, channel_name
from mediacache.schemas import ConnectedEvent
from mediacache.settings import settings

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

HEARTBEAT = ":heartbeat\n\n"


def format_data(payload: str) -> str:
    return f"data: {payload}\n\n"


class SSEBridge:
    """Forwards every message on one channel to one browser client.

    Each bridge holds its own subscription for the lifetime of the stream and
    releases it when the client goes away.
    """

    def __init__(
        self,
        broker: EventBroker,
        channel: str,
        heartbeat_interval: float = None,
        poll_interval: float = None,
    ):
        self.broker = broker
        self.channel = channel_name(channel)
        self.heartbeat_interval = heartbeat_interval or settings.SSE_HEARTBEAT_SECONDS
        self.poll_interval = poll_interval or settings.SSE_POLL_SECONDS

    async def stream(self, is_disconnected: Callable[[], Awaitable[bool]]) -> AsyncIterator[str]:
        subscription = await self.broker.subscribe(self.channel)
        logger.info("SSE client connected to %s", self.channel)
        try:
            yield format_data(ConnectedEvent().model_dump_json(by_alias=True))

            last_beat = time.monotonic()
            while not await is_disconnected():
                timeout = min(self.poll_interval, self.heartbeat_interval)
                message = await subscription.get_message(timeout=timeout)
                if message is not None:
                    try:
                        json.loads(message)
                    except ValueError:
                        logger.error("Dropping malformed event on %s: %r", self.channel, message[:200])
                    else:
                        yield format_data(message)

                if time.monotonic() - last_beat >= self.heartbeat_interval:
                    last_beat = time.monotonic()
                    yield HEARTBEAT
        finally:
            logger.info("SSE client disconnected from %s", self.channel)
            await subscription.close()

    def response(self, is_disconnected: Callable[[], Awaitable[bool]]) -> StreamingResponse:
        return StreamingResponse(
            self.stream(is_disconnected),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
