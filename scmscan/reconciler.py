"""Combine new merge requests with a refresh of still-open stored ones."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING

import pendulum

from .models import MergeRequestRecord, RepoInfo, ScanRequest

if TYPE_CHECKING:
    from .adapters import PlatformAdapter
    from .config import ScannerSettings
    from .persistence import PersistenceGateway

LOGGER = logging.getLogger(__name__)


def refresh_window_start(
    open_merge_requests: Iterable[MergeRequestRecord],
    now: datetime,
    *,
    default_months: int,
    max_months: int,
) -> datetime:
    """Return the start of the open merge request refresh window.

    The window reaches back to the oldest ``updated_on`` among the open records
    (``default_months`` when none carries one) and never beyond ``max_months``.
    """
    current = pendulum.instance(now, tz="UTC")
    floor = current.subtract(months=max_months)
    timestamps = [
        pendulum.instance(record.updated_on, tz="UTC")
        for record in open_merge_requests
        if record.updated_on is not None
    ]
    oldest = min(timestamps) if timestamps else current.subtract(months=default_months)
    return max(floor, oldest)


def combine(
    fetched: Iterable[MergeRequestRecord],
    refreshed: Iterable[MergeRequestRecord],
) -> list[MergeRequestRecord]:
    """Deduplicate by external id; refreshed records replace fetched ones."""
    combined: dict[str, MergeRequestRecord] = {}
    for record in (*fetched, *refreshed):
        if record.external_id is None:
            LOGGER.warning("Dropping merge request without external id: %s", record.title)
            continue
        combined[record.external_id] = record
    return list(combined.values())


class MergeRequestReconciler:
    """Fetch merge requests for a scan, keeping stored OPEN ones current."""

    def __init__(
        self,
        settings: "ScannerSettings",
        gateway: "PersistenceGateway",
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._clock = clock or (lambda: pendulum.now("UTC"))

    def _load_open(self, config_id: str) -> list[MergeRequestRecord]:
        # Fail open: a store failure is treated as "no open merge requests".
        try:
            return self._gateway.find_open_merge_requests(
                config_id,
                self._settings.max_merge_requests_per_scan,
                self._settings.open_merge_request_max_pages,
            )
        except Exception:
            LOGGER.warning("Could not load open merge requests for %s; skipping refresh", config_id, exc_info=True)
            return []

    async def reconcile(
        self,
        request: ScanRequest,
        repo: RepoInfo,
        adapter: "PlatformAdapter",
    ) -> list[MergeRequestRecord]:
        """Return new merge requests plus the refreshed state of stored open ones."""
        now = self._clock()
        window_start = request.effective_since(self._settings.first_scan_from_months, now)
        fetched = await adapter.fetch_merge_requests(
            request.config_id,
            repo,
            request.branch_name,
            request.credential,
            window_start,
            request.until,
        )
        LOGGER.info("Found %s merge request(s) updated since %s", len(fetched), window_start)

        stored_open = self._load_open(request.config_id)
        if not stored_open:
            return combine(fetched, [])

        refresh_start = refresh_window_start(
            stored_open,
            now,
            default_months=self._settings.refresh_default_lookback_months,
            max_months=self._settings.refresh_max_lookback_months,
        )
        open_ids = {record.external_id for record in stored_open if record.external_id is not None}
        recent = await adapter.fetch_merge_requests(
            request.config_id,
            repo,
            request.branch_name,
            request.credential,
            refresh_start,
            None,
        )
        refreshed = [record for record in recent if record.external_id in open_ids]
        LOGGER.info(
            "Refreshed %s of %s open merge request(s) since %s",
            len(refreshed),
            len(open_ids),
            refresh_start,
        )
        return combine(fetched, refreshed)
