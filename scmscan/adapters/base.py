"""Shared adapter contract, page collection and record filtering."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx

from ..client import PlatformHttpClient
from ..errors import PlatformApiError
from ..ratelimit import RateLimiter, RateLimitKey

if TYPE_CHECKING:
    from ..config import ScannerSettings
    from ..models import CommitRecord, Credential, MergeRequestRecord, Platform, RepoInfo

LOGGER = logging.getLogger(__name__)

CursorT = TypeVar("CursorT")
ItemT = TypeVar("ItemT")
RecordT = TypeVar("RecordT")


@dataclass(slots=True)
class Page(Generic[ItemT, CursorT]):
    """One platform page: its raw items and the cursor of the next page."""

    items: list[ItemT] = field(default_factory=list)
    next_cursor: CursorT | None = None


async def collect_pages(
    platform: str,
    fetch_page: Callable[[CursorT], Awaitable[Page[ItemT, CursorT]]],
    first_cursor: CursorT,
) -> list[ItemT]:
    """Fetch pages sequentially until no next cursor is reported.

    A cursor that repeats stops the loop so a misbehaving platform cannot make
    it spin or return duplicate pages.
    """
    items: list[ItemT] = []
    seen: set[Any] = set()
    cursor: CursorT | None = first_cursor
    pages = 0
    while cursor is not None:
        if cursor in seen:
            LOGGER.warning("%s returned a repeated page cursor %r; stopping pagination", platform, cursor)
            break
        seen.add(cursor)
        page = await fetch_page(cursor)
        pages += 1
        items.extend(page.items)
        cursor = page.next_cursor
    LOGGER.debug("%s pagination finished after %s page(s) with %s item(s)", platform, pages, len(items))
    return items


def parse_records(
    platform: str,
    items: Iterable[ItemT],
    parse: Callable[[ItemT], RecordT],
    kind: str,
) -> list[RecordT]:
    """Parse raw items, skipping individual malformed records with a warning."""
    records: list[RecordT] = []
    for item in items:
        try:
            records.append(parse(item))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            LOGGER.warning("Skipping malformed %s %s record: %s", platform, kind, exc)
    return records


def expect_list(platform: str, payload: Any, key: str | None = None) -> list[dict[str, Any]]:
    """Extract the item list from a page payload or raise PlatformApiError."""
    value = payload.get(key) if key is not None and isinstance(payload, dict) else payload
    if not isinstance(value, list):
        msg = f"unexpected page payload type {type(value).__name__}"
        raise PlatformApiError(platform, msg)
    return value


def expect_dict(platform: str, payload: Any) -> dict[str, Any]:
    """Return a JSON object payload or raise PlatformApiError."""
    if not isinstance(payload, dict):
        msg = f"unexpected payload type {type(payload).__name__}"
        raise PlatformApiError(platform, msg)
    return payload


ClientFactory = Callable[..., PlatformHttpClient]


class PlatformAdapter(ABC):
    """Uniform commit and merge request retrieval for one platform variant."""

    platform: "Platform"

    def __init__(
        self,
        settings: "ScannerSettings",
        *,
        rate_limiter: RateLimiter | None = None,
        client_factory: ClientFactory | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Keep shared settings; ``client_factory`` and ``transport`` let tests replace the HTTP layer."""
        self._settings = settings
        self._rate_limiter = rate_limiter
        self._client_factory: ClientFactory = client_factory or PlatformHttpClient
        self._transport = transport

    @abstractmethod
    def api_base(self, repo: "RepoInfo") -> str:
        """Return the REST base URL used for a repository."""

    @abstractmethod
    def auth_options(self, credential: "Credential") -> dict[str, Any]:
        """Return ``headers``/``auth`` keyword arguments for the HTTP client."""

    def open_client(self, repo: "RepoInfo", credential: "Credential") -> PlatformHttpClient:
        """Create an HTTP client bound to this repository and credential."""
        base_url = self.api_base(repo)
        key = RateLimitKey.build(
            self.platform.value,
            credential.token.get_secret_value(),
            repo.full_name,
            base_url,
        )
        return self._client_factory(
            self.platform.value,
            base_url,
            self._settings,
            rate_limiter=self._rate_limiter,
            rate_limit_key=key,
            transport=self._transport,
            **self.auth_options(credential),
        )

    @abstractmethod
    async def fetch_commits(
        self,
        repo: "RepoInfo",
        branch: str | None,
        credential: "Credential",
        since: datetime | None,
        until: datetime | None,
    ) -> list["CommitRecord"]:
        """Return every commit of the branch touched inside the window."""

    @abstractmethod
    async def fetch_merge_requests(
        self,
        config_id: str,
        repo: "RepoInfo",
        branch: str | None,
        credential: "Credential",
        since: datetime | None,
        until: datetime | None,
    ) -> list["MergeRequestRecord"]:
        """Return every merge request updated inside the window."""
