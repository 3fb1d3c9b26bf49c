"""
Catalog Client Module
=====================

Fetches the supplier manifest, raw item payloads and binary assets with
rate limiting and retry classification.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import IO, Any

import httpx

from catalog_sync.core.errors import FatalSyncError, ItemValidationError, TransientError
from catalog_sync.ingestion.registry import GlobalConfig, RateLimitConfig

logger = logging.getLogger(__name__)

# Upper bound for any single backoff or Retry-After wait
MAX_BACKOFF_SECONDS = 30.0

# Bytes per chunk when streaming asset downloads
DOWNLOAD_CHUNK_SIZE = 64 * 1024


class TokenBucket:
    """
    Token bucket rate limiter.

    Allows bursting up to burst_limit requests, then enforces
    the steady-state rate of requests_per_second.
    """

    def __init__(self, requests_per_second: float, burst_limit: int) -> None:
        self.requests_per_second = requests_per_second
        self.burst_limit = burst_limit
        self.tokens = float(burst_limit)
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """
        Acquire a token, waiting if necessary.

        This method blocks until a token is available.
        """
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.last_update = now

            self.tokens = min(
                self.burst_limit, self.tokens + elapsed * self.requests_per_second
            )

            if self.tokens < 1.0:
                wait_time = (1.0 - self.tokens) / self.requests_per_second
                await asyncio.sleep(wait_time)
                self.tokens = 0.0
            else:
                self.tokens -= 1.0


def _retry_after_seconds(response: httpx.Response) -> float | None:
    """Parse a numeric Retry-After header."""
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return min(float(value), MAX_BACKOFF_SECONDS)
    except ValueError:
        return None


class CatalogClient:
    """
    HTTP client for the remote supplier catalog.

    Features:
    - Shared token bucket across all requests of the client
    - Retries timeouts, transport errors, 429 and 5xx responses
    - Fails fast on authentication errors and other 4xx responses
    """

    def __init__(
        self,
        config: GlobalConfig | None = None,
        rate_limit: RateLimitConfig | None = None,
        backoff_base: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or GlobalConfig()
        self.backoff_base = backoff_base
        rate_limit = rate_limit or self.config.default_rate_limit
        self._rate_limiter = TokenBucket(
            requests_per_second=rate_limit.requests_per_second,
            burst_limit=rate_limit.burst_limit,
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> CatalogClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.request_timeout,
                headers={"User-Agent": self.config.user_agent},
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _backoff(self, attempt: int) -> float:
        return min((2**attempt) * self.backoff_base, MAX_BACKOFF_SECONDS)

    async def _request(self, url: str, auth_fatal: bool = True, stream: bool = False) -> httpx.Response:
        """
        GET a URL with rate limiting and retry classification.

        Args:
            url: URL to fetch
            auth_fatal: Treat 401/403 as a rejected catalog source; when False
                they are reported like any other 4xx for that one URL
            stream: Return before the body is read; the caller must close it

        Raises:
            TransientError: Retries exhausted on retryable failures
            FatalSyncError: Authentication rejected by the catalog source
            ItemValidationError: Any other 4xx response
        """
        client = self._get_client()
        last_error = "Unknown error"

        for attempt in range(self.config.max_retries):
            await self._rate_limiter.acquire()
            wait = self._backoff(attempt)
            try:
                response = await client.send(client.build_request("GET", url), stream=stream)
            except httpx.TimeoutException:
                last_error = f"Timeout after {self.config.request_timeout}s"
                logger.warning(f"Timeout fetching {url} (attempt {attempt + 1}/{self.config.max_retries})")
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(f"HTTP error fetching {url}: {e} (attempt {attempt + 1}/{self.config.max_retries})")
            else:
                status = response.status_code
                if 200 <= status < 300:
                    return response
                await response.aclose()
                if status in (401, 403) and auth_fatal:
                    raise FatalSyncError(
                        f"Authentication rejected by catalog source ({status})", {"url": url}
                    )
                if status == 429:
                    last_error = "Rate limited (429)"
                    wait = _retry_after_seconds(response) or wait
                    logger.warning(f"Rate limited fetching {url}, waiting {wait:.1f}s")
                elif status >= 500:
                    last_error = f"Server error ({status})"
                    logger.warning(f"Server error {status} fetching {url} (attempt {attempt + 1}/{self.config.max_retries})")
                else:
                    raise ItemValidationError(f"Client error ({status}) fetching {url}", {"url": url})

            if attempt < self.config.max_retries - 1:
                await asyncio.sleep(wait)

        raise TransientError(f"Failed to fetch {url}: {last_error}", {"url": url})

    async def fetch_manifest(self, url: str | None = None) -> str:
        """
        Fetch the manifest text.

        Any failure here is fatal for the run: without the manifest there
        is nothing to diff.

        Args:
            url: Override for the configured manifest URL

        Returns:
            Manifest body as text
        """
        url = url or self.config.manifest_url
        try:
            response = await self._request(url)
        except (TransientError, ItemValidationError) as e:
            raise FatalSyncError(f"Manifest unreachable: {e}", {"url": url}) from e
        logger.info(f"Fetched manifest from {url} ({len(response.content)} bytes)")
        return response.text

    async def fetch_item(self, url: str) -> Any:
        """
        Fetch and decode one raw item payload.

        Raises:
            ItemValidationError: Payload is not valid JSON
        """
        response = await self._request(url)
        try:
            return response.json()
        except ValueError as e:
            raise ItemValidationError(f"Invalid JSON payload at {url}", {"url": url}) from e

    async def fetch_items(self, urls: list[str]) -> list[Any | Exception]:
        """
        Fetch multiple payloads with controlled concurrency.

        Failures are returned in place instead of raised so one bad item
        does not abort its siblings.

        Returns:
            Payloads or exceptions in the same order as input URLs
        """
        semaphore = asyncio.Semaphore(self.config.fetch_concurrency)

        async def fetch_with_semaphore(url: str) -> Any:
            async with semaphore:
                return await self.fetch_item(url)

        tasks = [fetch_with_semaphore(url) for url in urls]
        return await asyncio.gather(*tasks, return_exceptions=True)

    @asynccontextmanager
    async def _stream(self, url: str) -> AsyncIterator[httpx.Response]:
        response = await self._request(url, auth_fatal=False, stream=True)
        try:
            yield response
        finally:
            await response.aclose()

    async def download(self, url: str, destination: IO[bytes]) -> str | None:
        """
        Download a binary asset into a writable buffer.

        The body is streamed in chunks so a spooled destination can roll over
        to disk. Asset hosts answering 401/403 fail only this asset.

        Args:
            url: Asset URL
            destination: File-like object receiving the bytes

        Returns:
            The response content type header, if any
        """
        async with self._stream(url) as response:
            try:
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                    destination.write(chunk)
            except httpx.HTTPError as e:
                raise TransientError(f"Download of {url} interrupted: {e}", {"url": url}) from e
            return response.headers.get("content-type", "").split(";")[0].strip() or None
