"""Platform adapters and the closed platform-to-adapter registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from ..models import Platform
from .base import ClientFactory, Page, PlatformAdapter, collect_pages
from .azure import AzureDevOpsAdapter
from .bitbucket import BitbucketCloudAdapter, BitbucketServerAdapter
from .github import GitHubAdapter
from .gitlab import GitLabAdapter

if TYPE_CHECKING:
    from ..config import ScannerSettings
    from ..ratelimit import RateLimiter

ADAPTER_TYPES: dict[Platform, type[PlatformAdapter]] = {
    Platform.GITHUB: GitHubAdapter,
    Platform.GITLAB: GitLabAdapter,
    Platform.BITBUCKET_CLOUD: BitbucketCloudAdapter,
    Platform.BITBUCKET_SERVER: BitbucketServerAdapter,
    Platform.AZURE: AzureDevOpsAdapter,
}


class UnsupportedPlatformError(LookupError):
    """Raised when no adapter exists for a platform."""


class AdapterRegistry:
    """Adapters for every supported platform, built once at startup."""

    def __init__(self, adapters: dict[Platform, PlatformAdapter]) -> None:
        self._adapters = dict(adapters)

    @classmethod
    def build(
        cls,
        settings: "ScannerSettings",
        *,
        rate_limiter: "RateLimiter | None" = None,
        client_factory: ClientFactory | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "AdapterRegistry":
        return cls(
            {
                platform: adapter_type(
                    settings,
                    rate_limiter=rate_limiter,
                    client_factory=client_factory,
                    transport=transport,
                )
                for platform, adapter_type in ADAPTER_TYPES.items()
            }
        )

    def supports(self, platform: Platform) -> bool:
        """Return whether an adapter is registered for the platform."""
        return platform in self._adapters

    def get(self, platform: Platform) -> PlatformAdapter:
        """Return the adapter for a platform or raise UnsupportedPlatformError."""
        try:
            return self._adapters[platform]
        except KeyError as exc:
            msg = f"No adapter registered for platform {platform.value}"
            raise UnsupportedPlatformError(msg) from exc


__all__ = [
    "ADAPTER_TYPES",
    "AdapterRegistry",
    "AzureDevOpsAdapter",
    "BitbucketCloudAdapter",
    "BitbucketServerAdapter",
    "GitHubAdapter",
    "GitLabAdapter",
    "Page",
    "PlatformAdapter",
    "UnsupportedPlatformError",
    "collect_pages",
]
