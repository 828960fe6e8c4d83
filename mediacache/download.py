"""Media downloader with browser-like headers, timeouts and retry/backoff."""
import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, List, Optional
from urllib.parse import unquote, urlparse

import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mediacache.errors import DownloadError
from mediacache.retry import RetryPolicy
from mediacache.storage import extension_for

logger = logging.getLogger(__name__)

# Some CDNs reject obvious bot traffic; look like a desktop browser
DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
    "Cache-Control": "max-age=0",
}


@dataclass(frozen=True)
class DownloadResult:
    data: bytes
    content_type: str
    size: int
    filename: Optional[str] = None


@dataclass(frozen=True)
class FileInfo:
    content_type: str
    size: int
    exists: bool


def extract_filename(url: str, content_type: Optional[str]) -> Optional[str]:
    """Filename from the URL path, else ``media_<ms>.<ext>`` from the content type."""
    name = PurePosixPath(unquote(urlparse(url).path or "")).name
    if name and "." in name:
        return name
    ext = extension_for(content_type)
    if ext:
        return f"media_{int(time.time() * 1000)}.{ext}"
    return None


class MediaDownloader:
    """Fetches bytes from arbitrary external URLs. Stateless per call."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        policy: Optional[RetryPolicy] = None,
        headers: Optional[Dict[str, str]] = None,
        max_bytes: Optional[int] = None,
    ):
        self.policy = policy or RetryPolicy.from_settings()
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}
        self.max_bytes = max_bytes
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "MediaDownloader":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def download(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        attempts: Optional[int] = None,
    ) -> DownloadResult:
        """
        Download ``url`` with up to ``attempts`` tries.

        Backoff between tries is exponential from 1s, capped by the policy.

        Raises:
            DownloadError: On a non-2xx response, timeout or connection
                failure on the last attempt
        """
        if not isinstance(url, str) or not url.strip():
            raise DownloadError("url required")
        url = url.strip()
        attempts = attempts or self.policy.download_attempts
        timeout = timeout or self.policy.download_timeout

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=1, max=self.policy.download_backoff_max),
            retry=retry_if_exception_type(DownloadError),
            before_sleep=lambda state: logger.warning(
                "Download attempt %d failed for %s, retrying in %.1fs: %s",
                state.attempt_number,
                url,
                state.next_action.sleep if state.next_action else 0.0,
                state.outcome.exception() if state.outcome else None,
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._fetch(url, headers, timeout)
        except DownloadError as e:
            if attempts == 1:
                raise
            raise DownloadError(
                f"Failed to download {url} after {attempts} attempts: {e.message}",
                url=url,
                status=e.status,
            ) from e
        raise DownloadError(f"Unexpected error downloading {url}", url=url)

    async def _fetch(self, url: str, headers: Optional[Dict[str, str]], timeout: float) -> DownloadResult:
        session = await self._get_session()
        merged = {**self.headers, **(headers or {})}
        try:
            async with session.get(
                url,
                headers=merged,
                timeout=aiohttp.ClientTimeout(total=timeout),
                allow_redirects=True,
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise DownloadError(f"HTTP {resp.status}: {resp.reason}", url=url, status=resp.status)

                content_type = resp.headers.get("Content-Type") or "application/octet-stream"
                data = await self._read_body(resp, url)
        except asyncio.TimeoutError as e:
            raise DownloadError(f"Timed out after {timeout}s", url=url) from e
        except aiohttp.ClientError as e:
            raise DownloadError(f"{type(e).__name__}: {e}", url=url) from e

        return DownloadResult(
            data=data,
            content_type=content_type,
            size=len(data),
            filename=extract_filename(url, content_type),
        )

    async def _read_body(self, resp: aiohttp.ClientResponse, url: str) -> bytes:
        if not self.max_bytes:
            return await resp.read()
        chunks = []
        size = 0
        async for chunk in resp.content.iter_chunked(64 * 1024):
            size += len(chunk)
            if size > self.max_bytes:
                raise DownloadError(f"Response exceeds {self.max_bytes} bytes", url=url, status=resp.status)
            chunks.append(chunk)
        return b"".join(chunks)

    async def download_many(
        self,
        urls: List[str],
        concurrency: int = 3,
        **options,
    ) -> List[DownloadResult]:
        """Download several URLs; failures are logged and skipped."""
        semaphore = asyncio.Semaphore(concurrency)

        async def _one(url: str) -> Optional[DownloadResult]:
            async with semaphore:
                try:
                    return await self.download(url, **options)
                except DownloadError as e:
                    logger.error("Skipping failed download %s: %s", url, e)
                    return None

        results = await asyncio.gather(*(_one(url) for url in urls))
        return [result for result in results if result is not None]

    async def get_file_info(self, url: str) -> FileInfo:
        """HEAD the URL; unreachable resources report ``exists=False``."""
        session = await self._get_session()
        try:
            async with session.head(
                url,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.policy.download_timeout),
                allow_redirects=True,
            ) as resp:
                if not 200 <= resp.status < 300:
                    return FileInfo(content_type="", size=0, exists=False)
                return FileInfo(
                    content_type=resp.headers.get("Content-Type") or "application/octet-stream",
                    size=int(resp.headers.get("Content-Length") or 0),
                    exists=True,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
            return FileInfo(content_type="", size=0, exists=False)
