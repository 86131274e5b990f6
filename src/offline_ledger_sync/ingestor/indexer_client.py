"""Async HTTP client for the ledger indexer with rate limiting and retry logic."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Constants
DEFAULT_BASE_URL = "https://indexer.v4testnet.blackbottle.trade"
DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_REQUESTS_PER_SECOND = 10.0
DEFAULT_PAGE_LIMIT = 100

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.5
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class RateLimiter:
    """Minimum-interval rate limiter shared by all requests of one client."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def with_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator adding exponential-backoff retries to a coroutine function.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.

    Returns:
        Decorated coroutine function with retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == max_retries:
                        break

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                        attempt + 1,
                        max_retries + 1,
                        str(e),
                        delay,
                    )
                    await asyncio.sleep(delay)

            raise RetryError(
                f"All {max_retries + 1} attempts failed for {func.__name__}: {last_exception}",
                last_exception=last_exception,
            )

        return wrapper

    return decorator


class IndexerClientError(Exception):
    """Base exception for indexer client errors."""


class IndexerNotFoundError(IndexerClientError):
    """Raised when a requested resource does not exist (404)."""


class IndexerTransientError(IndexerClientError):
    """Raised for retryable errors (429/5xx, network issues)."""


class IndexerClient:
    """Read-only client for the indexer REST API.

    Requests share one rate limiter and are retried with exponential
    backoff on transient failures. Every endpoint accepts a ``base_url``
    override so a single client can serve callers pointing at another
    indexer.

    Example:
        >>> async with IndexerClient() as client:
        ...     account = await client.get_account("blackbottle1...")
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the indexer client.

        Args:
            base_url: Default indexer base URL.
            timeout_seconds: Per-request timeout.
            max_retries: Maximum retry attempts for transient failures.
            retry_base_delay: First backoff delay in seconds.
            requests_per_second: Rate limit for API requests.
            page_limit: ``limit`` sent to list endpoints.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.page_limit = page_limit
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._rate_limiter = RateLimiter(requests_per_second)
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )

        logger.info(
            "Initialized IndexerClient with base_url=%s, rate_limit=%.1f req/s",
            self.base_url,
            requests_per_second,
        )

    async def __aenter__(self) -> "IndexerClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, path: str, base_url: str | None) -> str:
        return f"{(base_url or self.base_url).rstrip('/')}{path}"

    async def _request_once(self, url: str, params: dict[str, Any] | None) -> Any:
        await self._rate_limiter.acquire()
        try:
            response = await self._client.get(url, params=params)
        except httpx.TransportError as e:
            raise IndexerTransientError(f"GET {url} failed: {e}") from e

        status = response.status_code
        if status == 404:
            raise IndexerNotFoundError(f"GET {url} returned 404")
        if status in RETRY_STATUS_CODES:
            raise IndexerTransientError(f"GET {url} returned HTTP {status}")
        if status >= 400:
            raise IndexerClientError(f"GET {url} returned HTTP {status}")

        try:
            return response.json()
        except ValueError as e:
            raise IndexerClientError(f"GET {url} returned invalid JSON") from e

    async def get_json(
        self, path: str, *, params: dict[str, Any] | None = None, base_url: str | None = None
    ) -> Any:
        """GET a JSON document, retrying transient failures.

        Raises:
            IndexerNotFoundError: On 404.
            IndexerClientError: On other non-retryable errors.
            RetryError: When transient failures exhaust all retries.
        """
        url = self._url(path, base_url)
        logger.debug("Fetching %s params=%s", url, params)
        request = with_retry(
            max_retries=self._max_retries,
            base_delay=self._retry_base_delay,
            retry_on=(IndexerTransientError,),
        )(self._request_once)
        return await request(url, params)

    async def get_account(self, address: str, *, base_url: str | None = None) -> dict[str, Any]:
        """Fetch the account document, including its sub-accounts."""
        data = await self.get_json(f"/v4/addresses/{quote(address, safe='')}", base_url=base_url)
        if not isinstance(data, dict):
            raise IndexerClientError("Unexpected account response shape")
        return data

    async def get_orders(self, address: str, *, base_url: str | None = None) -> list[dict[str, Any]]:
        data = await self.get_json(
            "/v4/orders", params={"address": address, "limit": self.page_limit}, base_url=base_url
        )
        if isinstance(data, dict) and isinstance(data.get("orders"), list):
            data = data["orders"]
        if not isinstance(data, list):
            raise IndexerClientError("Unexpected orders response shape")
        return [o for o in data if isinstance(o, dict)]

    async def get_fills(self, address: str, *, base_url: str | None = None) -> list[dict[str, Any]]:
        data = await self.get_json(
            "/v4/fills", params={"address": address, "limit": self.page_limit}, base_url=base_url
        )
        if not isinstance(data, dict):
            raise IndexerClientError("Unexpected fills response shape")
        return [f for f in data.get("fills") or [] if isinstance(f, dict)]

    async def get_transfers(
        self, address: str, *, base_url: str | None = None
    ) -> list[dict[str, Any]]:
        data = await self.get_json(
            "/v4/transfers", params={"address": address, "limit": self.page_limit}, base_url=base_url
        )
        if not isinstance(data, dict):
            raise IndexerClientError("Unexpected transfers response shape")
        return [t for t in data.get("transfers") or [] if isinstance(t, dict)]

    async def get_perpetual_markets(self, *, base_url: str | None = None) -> dict[str, dict[str, Any]]:
        data = await self.get_json("/v4/perpetualMarkets", base_url=base_url)
        if not isinstance(data, dict):
            raise IndexerClientError("Unexpected markets response shape")
        markets = data.get("markets") or {}
        if not isinstance(markets, dict):
            raise IndexerClientError("Unexpected markets response shape")
        return {k: v for k, v in markets.items() if isinstance(v, dict)}
