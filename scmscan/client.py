"""Async HTTP client shared by the platform adapters."""

import asyncio
import logging
from collections.abc import Mapping
from types import TracebackType
from typing import TYPE_CHECKING, Any, Self
from urllib.parse import unquote, urlsplit

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .errors import PlatformApiError, RateLimitExceededError
from .ratelimit import RateLimiter, RateLimitKey, parse_rate_limit_headers

if TYPE_CHECKING:
    from .config import ScannerSettings

LOGGER = logging.getLogger(__name__)

_RATE_LIMIT_STATUS = 429
_REDIRECT_LOWER = 300
_REDIRECT_UPPER = 400
_ALLOWED_REDIRECT_SCHEMES = frozenset({"http", "https"})
_USER_AGENT = "scmscan/0.1"


class _RateLimited(Exception):
    """Internal signal that a 429 response should be retried."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


class PlatformHttpClient:
    """Asynchronous client bound to one platform API base and credential."""

    def __init__(
        self,
        platform: str,
        base_url: str,
        settings: "ScannerSettings",
        *,
        headers: Mapping[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        rate_limiter: RateLimiter | None = None,
        rate_limit_key: RateLimitKey | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Configure the HTTP client with credentials and the 429 retry policy."""
        self.platform = platform
        self.base_url = base_url.rstrip("/")
        request_headers = {"User-Agent": _USER_AGENT, "Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=request_headers,
            auth=auth,
            timeout=httpx.Timeout(settings.http_timeout),
            transport=transport,
        )
        self._max_attempts = settings.max_attempts
        self._rate_limiter = rate_limiter
        self._rate_limit_key = rate_limit_key

    async def __aenter__(self) -> Self:
        """Enter the async context manager and return the client."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the underlying HTTP client when leaving the context."""
        del exc_type, exc, tb
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        if self._rate_limiter is not None and self._rate_limit_key is not None:
            await self._rate_limiter.acquire(self._rate_limit_key)
        LOGGER.debug("%s %s %s", self.platform, method, url)
        try:
            response = await self._client.request(method, url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise PlatformApiError(self.platform, f"transport failure for {url}", cause=exc) from exc
        if self._rate_limiter is not None and self._rate_limit_key is not None:
            status = parse_rate_limit_headers(response.headers)
            if status is not None:
                self._rate_limiter.update(self._rate_limit_key, status)
        return response

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        allow_redirects: bool = False,
    ) -> httpx.Response:
        """Perform a request, retrying only when the platform answers HTTP 429."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception_type(_RateLimited),
            wait=wait_exponential_jitter(initial=1, max=10),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(method, url, params=params, headers=headers)
                    if response.status_code == _RATE_LIMIT_STATUS:
                        retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                        LOGGER.warning("%s rate limit hit, retrying in %ss", self.platform, retry_after)
                        await asyncio.sleep(retry_after)
                        raise _RateLimited(retry_after)
                    if allow_redirects and _REDIRECT_LOWER <= response.status_code < _REDIRECT_UPPER:
                        return response
                    if not response.is_success:
                        message = f"{method} {url} returned {response.status_code}: {response.text[:200]}"
                        raise PlatformApiError(self.platform, message, status_code=response.status_code)
                    return response
        except _RateLimited as exc:
            raise RateLimitExceededError(self.platform, "rate limit retries exhausted") from exc
        except RetryError as exc:  # pragma: no cover - reraise=True surfaces the last error instead
            raise PlatformApiError(self.platform, "request failed after retries", cause=exc) from exc
        raise PlatformApiError(self.platform, "request failed after retries")

    async def get_json(self, url: str, *, params: Mapping[str, Any] | None = None) -> Any:
        """GET a resource and decode its JSON body."""
        response = await self.request("GET", url, params=params)
        return self.parse_json(response)

    def parse_json(self, response: httpx.Response) -> Any:
        """Decode a JSON response or raise a PlatformApiError on failure."""
        try:
            return response.json()
        except ValueError as exc:
            content_type = response.headers.get("Content-Type", "unknown")
            message = (
                "invalid JSON payload "
                f"(status {response.status_code}, content-type {content_type})"
            )
            raise PlatformApiError(self.platform, message, cause=exc, status_code=response.status_code) from exc

    async def get_text_following_redirect(self, url: str, *, params: Mapping[str, Any] | None = None) -> str:
        """GET text content, following one redirect to an absolute http(s) location.

        A redirect without a usable ``Location`` yields an empty string.
        """
        response = await self.request("GET", url, params=params, allow_redirects=True)
        if not _REDIRECT_LOWER <= response.status_code < _REDIRECT_UPPER:
            return response.text
        location = response.headers.get("Location")
        if not location:
            LOGGER.warning("%s redirect from %s has no Location header; treating as empty", self.platform, url)
            return ""
        target = unquote(location).strip()
        parts = urlsplit(target)
        if parts.scheme.lower() not in _ALLOWED_REDIRECT_SCHEMES or not parts.netloc:
            LOGGER.warning("%s redirect from %s to non-absolute location; treating as empty", self.platform, url)
            return ""
        followed = await self.request("GET", target, allow_redirects=True)
        if _REDIRECT_LOWER <= followed.status_code < _REDIRECT_UPPER:
            LOGGER.warning("%s redirect from %s redirected again; treating as empty", self.platform, url)
            return ""
        return followed.text


def _parse_retry_after(value: str | None) -> float:
    if not value:
        return 1.0
    try:
        return max(float(value), 0.0)
    except ValueError:
        return 1.0
