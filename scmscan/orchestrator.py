"""Repository scan orchestration."""

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import pendulum

from .adapters import AdapterRegistry, UnsupportedPlatformError
from .errors import DataProcessingError, PlatformApiError
from .models import CommitRecord, MergeRequestRecord, ScanRequest, ScanResult
from .persistence import PersistenceGateway
from .ratelimit import RateLimiter
from .reconciler import MergeRequestReconciler
from .references import link_commits, link_merge_requests
from .store import JsonlScanStore, ScanStore
from .strategies import CloneCommitStrategy, CommitFetchStrategy, RestApiCommitStrategy, select_strategy
from .urls import parse_repository_url
from .users import UserResolver

if TYPE_CHECKING:
    from .config import ScannerSettings

LOGGER = logging.getLogger(__name__)


def default_strategies(settings: "ScannerSettings", adapters: AdapterRegistry) -> dict[str, CommitFetchStrategy]:
    """Return the built-in strategies in registration order."""
    strategies: list[CommitFetchStrategy] = [RestApiCommitStrategy(adapters), CloneCommitStrategy(settings)]
    return {strategy.name: strategy for strategy in strategies}


class ScanOrchestrator:
    """Run repository scans from strategy selection through persistence."""

    def __init__(
        self,
        settings: "ScannerSettings",
        *,
        store: ScanStore | Callable[[Path], ScanStore] | None = None,
        adapters: AdapterRegistry | None = None,
        strategies: dict[str, CommitFetchStrategy] | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Wire the scan components, building defaults for anything not supplied."""
        self._settings = settings
        self._clock = clock or (lambda: pendulum.now("UTC"))
        self._semaphore = asyncio.Semaphore(settings.max_concurrency)
        if store is None:
            self._store: ScanStore = JsonlScanStore(settings.store_dir)
        elif callable(store):
            self._store = store(settings.store_dir)
        else:
            self._store = store
        self._rate_limiter = rate_limiter or RateLimiter(settings)
        self._adapters = adapters or AdapterRegistry.build(settings, rate_limiter=self._rate_limiter)
        self._strategies = strategies if strategies is not None else default_strategies(settings, self._adapters)
        self._gateway = PersistenceGateway(self._store, clock=self._clock)
        self._reconciler = MergeRequestReconciler(settings, self._gateway, clock=self._clock)
        self._users = UserResolver(self._gateway)

    @property
    def gateway(self) -> PersistenceGateway:
        return self._gateway

    async def scan_repository(self, request: ScanRequest) -> ScanResult:
        """Scan one repository and return its summary.

        Raises NoStrategyAvailable before any network call when no strategy
        supports the request, and DataProcessingError for unexpected failures.
        """
        started = self._clock()
        LOGGER.info("Starting scan of %s", request.display_name())
        strategy = select_strategy(request, self._strategies)
        try:
            return await self._run(request, strategy, started)
        except DataProcessingError:
            raise
        except Exception as exc:
            LOGGER.exception("Scan of %s failed", request.display_name())
            msg = f"Scan of {request.display_name()} failed"
            raise DataProcessingError(msg, exc) from exc

    def scan_repository_async(self, request: ScanRequest) -> "asyncio.Task[ScanResult]":
        """Schedule a scan on the running loop and return its task."""
        return asyncio.create_task(self.scan_repository(request), name=f"scan:{request.display_name()}")

    async def scan_many(self, requests: Iterable[ScanRequest]) -> list[ScanResult]:
        """Scan repositories concurrently; a failed scan never cancels the others."""
        request_list = list(requests)

        async def bounded(request: ScanRequest) -> ScanResult:
            async with self._semaphore:
                return await self.scan_repository(request)

        outcomes = await asyncio.gather(*(bounded(request) for request in request_list), return_exceptions=True)
        results: list[ScanResult] = []
        for request, outcome in zip(request_list, outcomes, strict=True):
            if isinstance(outcome, ScanResult):
                results.append(outcome)
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            LOGGER.error("Scan of %s failed: %s", request.display_name(), outcome)
            now = self._clock()
            results.append(
                ScanResult(
                    repository_url=request.repository_url,
                    repository_name=request.repository_name,
                    start_time=now,
                    end_time=now,
                    duration_ms=0,
                    success=False,
                    error_message=str(outcome),
                )
            )
        return results

    async def _run(self, request: ScanRequest, strategy: CommitFetchStrategy, started: datetime) -> ScanResult:
        repo = parse_repository_url(request.repository_url, request.tool_type, request.repository_name)
        repository_name = request.repository_name or repo.full_name
        since = request.effective_since(self._settings.first_scan_from_months, started)
        LOGGER.debug("Fetching commits for %s since %s via %s", repository_name, since, strategy.name)

        try:
            commits = await strategy.fetch_commits(request, repo, since)
        except PlatformApiError as exc:
            LOGGER.error("Commit fetch failed for %s: %s", repository_name, exc)
            return self._result(request, started, success=False, error_message=str(exc))
        if request.limit:
            commits = commits[: request.limit]

        error_message: str | None = None
        merge_requests: list[MergeRequestRecord] = []
        try:
            adapter = self._adapters.get(repo.platform)
        except UnsupportedPlatformError as exc:
            LOGGER.warning("Skipping merge requests for %s: %s", repository_name, exc)
        else:
            try:
                merge_requests = await self._reconciler.reconcile(request, repo, adapter)
            except PlatformApiError as exc:
                LOGGER.error("Merge request fetch failed for %s: %s", repository_name, exc)
                error_message = str(exc)

        candidates = self._users.extract_users(commits, merge_requests, repository_name)
        users = self._users.resolve(candidates)
        link_commits(commits, users, repository_name)
        link_merge_requests(merge_requests, users, repository_name, self._gateway)

        saved_commits: list[CommitRecord] = self._gateway.upsert_commits(commits)
        saved_merge_requests = self._gateway.upsert_merge_requests(merge_requests)
        self._gateway.flush()

        result = self._result(
            request,
            started,
            commits=len(saved_commits),
            merge_requests=len(saved_merge_requests),
            users=len(users),
            success=error_message is None,
            error_message=error_message,
        )
        LOGGER.info(
            "Finished scan of %s: %s commit(s), %s merge request(s), %s user(s) in %sms",
            repository_name,
            result.commits_found,
            result.merge_requests_found,
            result.users_found,
            result.duration_ms,
        )
        return result

    def _result(
        self,
        request: ScanRequest,
        started: datetime,
        *,
        commits: int = 0,
        merge_requests: int = 0,
        users: int = 0,
        success: bool,
        error_message: str | None = None,
    ) -> ScanResult:
        finished = self._clock()
        return ScanResult(
            repository_url=request.repository_url,
            repository_name=request.repository_name,
            start_time=started,
            end_time=finished,
            duration_ms=max(int((finished - started).total_seconds() * 1000), 0),
            commits_found=commits,
            merge_requests_found=merge_requests,
            users_found=users,
            success=success,
            error_message=error_message,
        )
