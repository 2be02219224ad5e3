"""Exception hierarchy shared by the scan engine."""

from __future__ import annotations


class ScmScanError(RuntimeError):
    """Base class for all scan engine failures."""


class PlatformApiError(ScmScanError):
    """Raised when talking to a hosting platform fails."""

    def __init__(
        self,
        platform: str,
        message: str,
        *,
        cause: BaseException | None = None,
        status_code: int | None = None,
    ) -> None:
        """Attach the platform name, HTTP status and underlying cause."""
        super().__init__(f"{platform}: {message}")
        self.platform = platform
        self.message = message
        self.cause = cause
        self.status_code = status_code
        if cause is not None:
            self.__cause__ = cause


class RateLimitExceededError(PlatformApiError):
    """Raised when a call budget is exhausted and waiting is not an option."""

    def __init__(self, platform: str, message: str = "rate limit exceeded", *, reset_at: object = None) -> None:
        """Record when the platform expects the budget to reset."""
        super().__init__(platform, message, status_code=429)
        self.reset_at = reset_at


class NoStrategyAvailable(ScmScanError):
    """Raised when no commit fetch strategy supports a scan request."""


class UserPersistenceError(ScmScanError):
    """Raised when a user record cannot be created or resolved."""


class DataProcessingError(ScmScanError):
    """Wrap an unexpected failure during scan orchestration."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        """Keep the original failure reachable from the wrapper."""
        super().__init__(message if cause is None else f"{message}: {cause}")
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class DuplicateKeyError(ScmScanError):
    """Raised by a store when an insert violates a natural-key constraint."""

    def __init__(self, collection: str, key: str) -> None:
        """Describe the colliding key."""
        super().__init__(f"Duplicate key {key!r} in {collection}")
        self.collection = collection
        self.key = key
