"""Per-credential call budget tracking for platform APIs."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING

import pendulum
from pydantic import BaseModel, ConfigDict

from .errors import RateLimitExceededError

if TYPE_CHECKING:
    from .config import ScannerSettings

LOGGER = logging.getLogger(__name__)

_FINGERPRINT_LENGTH = 16


def credential_fingerprint(token: str) -> str:
    """Return a short, non-reversible fingerprint of a token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:_FINGERPRINT_LENGTH]


class RateLimitKey(BaseModel):
    """Identity of one call budget."""

    model_config = ConfigDict(frozen=True)

    platform: str
    credential_fingerprint: str
    repository: str
    base_url: str

    @classmethod
    def build(cls, platform: str, token: str, repository: str, base_url: str) -> "RateLimitKey":
        """Build a key, fingerprinting the token and normalizing the base URL."""
        return cls(
            platform=platform,
            credential_fingerprint=credential_fingerprint(token),
            repository=repository,
            base_url=base_url.rstrip("/"),
        )


class RateLimitStatus(BaseModel):
    """Budget reported by a platform for one key."""

    model_config = ConfigDict(frozen=True)

    limit: int
    remaining: int
    reset_at: datetime

    @property
    def usage(self) -> float:
        if self.limit <= 0:
            return 0.0
        return (self.limit - self.remaining) / self.limit

    def exceeds(self, threshold: float) -> bool:
        return self.limit > 0 and self.usage >= threshold

    def consume(self) -> "RateLimitStatus":
        return self.model_copy(update={"remaining": max(self.remaining - 1, 0)})


Sleeper = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return pendulum.now("UTC")


class RateLimiter:
    """Block calls once a budget nears exhaustion until the platform resets it."""

    def __init__(
        self,
        settings: "ScannerSettings",
        *,
        sleep: Sleeper | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Read thresholds from settings; ``sleep`` and ``clock`` are injectable for tests."""
        self._enabled = settings.rate_limit_enabled
        self._threshold = settings.rate_limit_threshold
        self._max_cooldown_seconds = settings.rate_limit_max_cooldown_hours * 3600
        self._fail_on_excessive = settings.rate_limit_fail_on_excessive_cooldown
        self._buffer_seconds = settings.rate_limit_reset_buffer_seconds
        self._sleep: Sleeper = sleep or asyncio.sleep
        self._clock: Clock = clock or _utc_now
        self._statuses: dict[RateLimitKey, RateLimitStatus] = {}
        self._locks: dict[RateLimitKey, asyncio.Lock] = {}

    def _lock_for(self, key: RateLimitKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _drop(self, key: RateLimitKey) -> None:
        # Tasks still queued on the dropped lock find no status and pass through.
        self._statuses.pop(key, None)
        self._locks.pop(key, None)

    def status(self, key: RateLimitKey) -> RateLimitStatus | None:
        """Return the last known budget for a key."""
        return self._statuses.get(key)

    def update(self, key: RateLimitKey, status: RateLimitStatus) -> None:
        """Record the budget reported by the platform."""
        self._statuses[key] = status
        LOGGER.debug(
            "Rate limit for %s on %s: %s/%s remaining until %s",
            key.platform,
            key.repository,
            status.remaining,
            status.limit,
            status.reset_at,
        )

    async def acquire(self, key: RateLimitKey) -> None:
        """Count one call against the key, waiting when the budget is nearly spent."""
        if not self._enabled or key not in self._statuses:
            return
        async with self._lock_for(key):
            status = self._statuses.get(key)
            if status is None:
                return
            now = self._clock()
            if status.reset_at <= now:
                self._drop(key)
                return
            if not status.exceeds(self._threshold):
                self._statuses[key] = status.consume()
                return

            wait_seconds = (status.reset_at - now).total_seconds() + self._buffer_seconds
            if wait_seconds > self._max_cooldown_seconds:
                if self._fail_on_excessive:
                    msg = f"cooldown of {wait_seconds:.0f}s exceeds the configured maximum"
                    raise RateLimitExceededError(key.platform, msg, reset_at=status.reset_at)
                LOGGER.warning(
                    "Rate limit cooldown of %.0fs for %s on %s exceeds the maximum; proceeding",
                    wait_seconds,
                    key.platform,
                    key.repository,
                )
                self._statuses[key] = status.consume()
                return

            LOGGER.warning(
                "Rate limit usage %.0f%% for %s on %s; sleeping %.0fs until reset",
                status.usage * 100,
                key.platform,
                key.repository,
                wait_seconds,
            )
            await self._sleep(wait_seconds)
            self._drop(key)


def parse_rate_limit_headers(headers: object, now: datetime | None = None) -> RateLimitStatus | None:
    """Build a status from ``X-RateLimit-*`` or ``RateLimit-*`` headers."""
    get = getattr(headers, "get", None)
    if get is None:
        return None
    limit = get("X-RateLimit-Limit") or get("RateLimit-Limit")
    remaining = get("X-RateLimit-Remaining") or get("RateLimit-Remaining")
    reset = get("X-RateLimit-Reset") or get("RateLimit-Reset")
    if limit is None or remaining is None or reset is None:
        return None
    try:
        limit_value = int(limit)
        remaining_value = int(remaining)
        reset_value = int(float(reset))
    except ValueError:
        LOGGER.warning("Ignoring malformed rate limit headers limit=%r remaining=%r reset=%r", limit, remaining, reset)
        return None
    current = now or pendulum.now("UTC")
    # Small values are delta-seconds, large values are epoch seconds.
    if reset_value < 10_000_000:
        reset_at = pendulum.instance(current).add(seconds=reset_value)
    else:
        reset_at = pendulum.from_timestamp(reset_value, tz="UTC")
    return RateLimitStatus(limit=limit_value, remaining=remaining_value, reset_at=reset_at)
