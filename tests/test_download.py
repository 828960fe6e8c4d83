"""Tests for the media download client against a local HTTP server."""
import re

import pytest

from mediacache.download import MediaDownloader, extract_filename
from mediacache.errors import DownloadError
from mediacache.retry import RetryPolicy


async def test_download_returns_bytes_and_metadata(downloader, media_server):
    result = await downloader.download(media_server.url("/image.jpg"))

    assert result.content_type == "image/jpeg"
    assert result.size == len(result.data) > 0
    assert result.data[:2] == b"\xff\xd8"
    assert result.filename == "image.jpg"


async def test_filename_derived_from_content_type(downloader, media_server):
    result = await downloader.download(media_server.url("/blob"))
    assert re.match(r"^media_\d+\.png$", result.filename)


async def test_non_2xx_raises_download_error(downloader, media_server):
    with pytest.raises(DownloadError) as exc_info:
        await downloader.download(media_server.url("/missing.jpg"))

    assert exc_info.value.status == 404
    assert exc_info.value.retryable
    assert media_server.hits["/missing.jpg"] == 1


async def test_retries_until_success(downloader, media_server):
    result = await downloader.download(media_server.url("/flaky.jpg"), attempts=3)
    assert result.content_type == "image/jpeg"
    assert media_server.hits["/flaky.jpg"] == 3


async def test_gives_up_after_attempt_budget(downloader, media_server):
    url = media_server.url("/missing.jpg")
    with pytest.raises(DownloadError) as exc_info:
        await downloader.download(url, attempts=2)

    assert "after 2 attempts" in str(exc_info.value)
    assert exc_info.value.status == 404
    assert media_server.hits["/missing.jpg"] == 2


async def test_timeout_raises_download_error(downloader, media_server):
    with pytest.raises(DownloadError, match="Timed out"):
        await downloader.download(media_server.url("/slow.jpg"), timeout=0.2)


async def test_connection_failure_raises_download_error(downloader):
    # Port 9 (discard) is closed on test hosts
    with pytest.raises(DownloadError):
        await downloader.download("http://127.0.0.1:9/nothing.jpg")


async def test_empty_url_rejected(downloader):
    with pytest.raises(DownloadError):
        await downloader.download("  ")


async def test_browser_headers_sent_and_merged(downloader, media_server):
    result = await downloader.download(media_server.url("/headers"), headers={"Referer": "https://example.com/"})
    sent = result.data.decode()

    assert "Mozilla/5.0" in sent
    assert "https://example.com/" in sent
    assert "en-US" in sent


async def test_max_bytes_enforced(policy, media_server):
    async with MediaDownloader(policy=policy, max_bytes=10) as small:
        with pytest.raises(DownloadError, match="exceeds"):
            await small.download(media_server.url("/image.jpg"))


async def test_download_many_skips_failures(downloader, media_server):
    results = await downloader.download_many(
        [media_server.url("/image.jpg"), media_server.url("/missing.jpg"), media_server.url("/notes.txt")]
    )
    assert [r.content_type.split(";")[0] for r in results] == ["image/jpeg", "text/plain"]


async def test_get_file_info(downloader, media_server):
    # aiohttp answers HEAD on GET routes
    info = await downloader.get_file_info(media_server.url("/image.jpg"))
    assert info.exists
    assert info.content_type == "image/jpeg"

    missing = await downloader.get_file_info(media_server.url("/missing.jpg"))
    assert not missing.exists


async def test_session_is_closed_by_owner(media_server):
    downloader = MediaDownloader(policy=RetryPolicy(download_backoff_max=0))
    await downloader.download(media_server.url("/image.jpg"))
    session = downloader._session
    await downloader.aclose()
    assert session.closed


def test_extract_filename():
    assert extract_filename("https://cdn.example.com/a/b/photo%20one.jpg?x=1", "image/jpeg") == "photo one.jpg"
    assert extract_filename("https://cdn.example.com/no-extension", None) is None
    assert re.match(r"^media_\d+\.webp$", extract_filename("https://cdn.example.com/", "image/webp"))
