"""Azure DevOps (Azure Repos) REST adapter."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from ..client import PlatformHttpClient
from ..dates import is_in_range, isoformat, parse_timestamp_or_none
from ..models import CommitRecord, Credential, FileChange, MergeRequestRecord, MergeRequestState, Platform, RepoInfo
from ..urls import azure_api_base
from .base import Page, PlatformAdapter, collect_pages, expect_list, parse_records

LOGGER = logging.getLogger(__name__)

API_VERSION = "7.1"
_BRANCH_PREFIX = "refs/heads/"

_STATE_MAP = {
    "active": MergeRequestState.OPEN,
    "completed": MergeRequestState.MERGED,
    "abandoned": MergeRequestState.CLOSED,
}

_CHANGE_TYPES = (
    ("delete", "DELETED"),
    ("add", "ADDED"),
    ("rename", "RENAMED"),
)


def _branch_name(ref: str | None) -> str | None:
    if ref and ref.startswith(_BRANCH_PREFIX):
        return ref[len(_BRANCH_PREFIX) :]
    return ref


def _change_type(value: str | None) -> str:
    # Azure reports combined flags such as "edit, rename".
    flags = {flag.strip() for flag in (value or "").lower().split(",")}
    for flag, change_type in _CHANGE_TYPES:
        if flag in flags:
            return change_type
    return "MODIFIED"


def _file_change(entry: dict[str, Any]) -> FileChange | None:
    item = entry.get("item") or {}
    if item.get("isFolder") or item.get("gitObjectType") == "tree":
        return None
    path = item.get("path") or entry.get("originalPath")
    if not path:
        return None
    return FileChange(path=path.lstrip("/"), change_type=_change_type(entry.get("changeType")))


class AzureDevOpsAdapter(PlatformAdapter):
    """Fetch commits and pull requests from the Azure DevOps Git REST API.

    Personal access tokens are sent as basic auth with an empty user name.
    Pages are addressed with ``$top``/``$skip``; a short page ends paging.
    """

    platform = Platform.AZURE

    def api_base(self, repo: RepoInfo) -> str:
        try:
            host = azure_api_base(repo.original_url)
        except ValueError:
            host = f"{str(self._settings.azure_devops_api_url).rstrip('/')}/{repo.namespace}"
        return f"{host}/_apis/git/repositories/{quote(repo.name, safe='')}"

    def auth_options(self, credential: Credential) -> dict[str, Any]:
        token = credential.token.get_secret_value()
        return {"auth": httpx.BasicAuth(credential.username or "", token)} if token else {}

    async def _paginate(
        self,
        client: PlatformHttpClient,
        path: str,
        params: dict[str, Any],
        *,
        paging_prefix: str = "",
    ) -> list[dict[str, Any]]:
        page_size = self._settings.per_page
        base_params = {key: value for key, value in params.items() if value is not None}
        base_params["api-version"] = API_VERSION
        base_params[f"{paging_prefix}$top"] = page_size

        async def fetch_page(skip: int) -> Page[dict[str, Any], int]:
            payload = await client.get_json(path, params={**base_params, f"{paging_prefix}$skip": skip})
            items = expect_list(self.platform.value, payload, "value")
            return Page(items=items, next_cursor=skip + len(items) if len(items) >= page_size else None)

        return await collect_pages(self.platform.value, fetch_page, 0)

    async def fetch_commits(
        self,
        repo: RepoInfo,
        branch: str | None,
        credential: Credential,
        since: datetime | None,
        until: datetime | None,
    ) -> list[CommitRecord]:
        """Collect commits of the branch with their changed paths."""
        params = {
            "searchCriteria.itemVersion.version": branch,
            "searchCriteria.itemVersion.versionType": "branch" if branch else None,
            "searchCriteria.fromDate": isoformat(since) if since else None,
            "searchCriteria.toDate": isoformat(until) if until else None,
        }
        async with self.open_client(repo, credential) as client:
            items = await self._paginate(client, "/commits", params, paging_prefix="searchCriteria.")
            items = [item for item in items if is_in_range(self._commit_date(item), since, until)]
            changes: dict[str, list[dict[str, Any]]] = {}
            for item in items:
                sha = item.get("commitId")
                if sha:
                    payload = await client.get_json(f"/commits/{sha}/changes", params={"api-version": API_VERSION})
                    entries = payload.get("changes") if isinstance(payload, dict) else None
                    changes[sha] = entries if isinstance(entries, list) else []

        commits = parse_records(
            self.platform.value,
            items,
            lambda item: self._parse_commit(item, changes.get(item["commitId"], []), branch, repo),
            "commit",
        )
        LOGGER.info("Fetched %s Azure DevOps commit(s) for %s", len(commits), repo.full_name)
        return commits

    @staticmethod
    def _commit_date(item: dict[str, Any]) -> object:
        return (item.get("committer") or {}).get("date") or (item.get("author") or {}).get("date")

    def _parse_commit(
        self,
        item: dict[str, Any],
        change_entries: list[dict[str, Any]],
        branch: str | None,
        repo: RepoInfo,
    ) -> CommitRecord:
        author = item.get("author") or {}
        committer = item.get("committer") or {}
        file_changes = [change for change in map(_file_change, change_entries) if change is not None]
        parents = item.get("parents")
        return CommitRecord(
            sha=item["commitId"],
            message=item.get("comment"),
            author_name=author.get("name"),
            author_email=author.get("email"),
            committer_name=committer.get("name"),
            committer_email=committer.get("email"),
            committed_at=parse_timestamp_or_none(self._commit_date(item)),
            files_changed=len(file_changes),
            file_changes=file_changes,
            parent_shas=list(parents) if parents is not None else None,
            is_merge_commit=len(parents) > 1 if parents is not None else None,
            branch_name=branch,
            repository_name=repo.full_name,
            url=item.get("remoteUrl"),
        )

    async def fetch_merge_requests(
        self,
        config_id: str,
        repo: RepoInfo,
        branch: str | None,
        credential: Credential,
        since: datetime | None,
        until: datetime | None,
    ) -> list[MergeRequestRecord]:
        """Collect pull requests created or closed in the window with threads and commits.

        Azure exposes no last-updated timestamp, so the closing time (or the
        creation time of a pull request still open) decides window membership.
        """
        params = {
            "searchCriteria.status": "all",
            "searchCriteria.targetRefName": f"{_BRANCH_PREFIX}{branch}" if branch else None,
        }
        async with self.open_client(repo, credential) as client:
            items = await self._paginate(client, "/pullrequests", params)
            items = [item for item in items if is_in_range(self._updated_value(item), since, until)]
            enriched: list[tuple[dict[str, Any], list[dict[str, Any]], list[dict[str, Any]]]] = []
            for item in items:
                pull_id = item.get("pullRequestId")
                if pull_id is None:
                    LOGGER.warning("Skipping Azure DevOps pull request without id in %s", repo.full_name)
                    continue
                # Threads are returned in one response.
                payload = await client.get_json(f"/pullrequests/{pull_id}/threads", params={"api-version": API_VERSION})
                threads = expect_list(self.platform.value, payload, "value")
                commits = await self._paginate(client, f"/pullrequests/{pull_id}/commits", {})
                enriched.append((item, threads, commits))

        records = parse_records(
            self.platform.value,
            enriched,
            lambda entry: self._parse_pull_request(config_id, repo, *entry),
            "pull request",
        )
        LOGGER.info("Fetched %s Azure DevOps pull request(s) for %s", len(records), repo.full_name)
        return records

    @staticmethod
    def _updated_value(item: dict[str, Any]) -> object:
        return item.get("closedDate") or item.get("creationDate")

    def _parse_pull_request(
        self,
        config_id: str,
        repo: RepoInfo,
        item: dict[str, Any],
        threads: list[dict[str, Any]],
        commits: list[dict[str, Any]],
    ) -> MergeRequestRecord:
        author = item.get("createdBy") or {}
        state = _STATE_MAP.get(str(item.get("status", "")).lower(), MergeRequestState.OPEN)
        created = parse_timestamp_or_none(item.get("creationDate"))
        closed = parse_timestamp_or_none(item.get("closedDate"))
        reviewers = [reviewer["uniqueName"] for reviewer in item.get("reviewers") or [] if reviewer.get("uniqueName")]
        return MergeRequestRecord(
            config_id=config_id,
            external_id=str(item["pullRequestId"]),
            title=item.get("title"),
            description=item.get("description"),
            state=state,
            source_branch=_branch_name(item.get("sourceRefName")),
            target_branch=_branch_name(item.get("targetRefName")),
            author_username=author.get("uniqueName"),
            author_name=author.get("displayName"),
            reviewers=reviewers,
            created_on=created,
            updated_on=parse_timestamp_or_none(self._updated_value(item)),
            merged_at=closed if state is MergeRequestState.MERGED else None,
            closed_at=closed if state is not MergeRequestState.OPEN else None,
            picked_for_review_on=self._pickup_time(threads, author.get("uniqueName"), created),
            commit_count=len(commits),
            is_draft=item.get("isDraft"),
            url=f"{repo.original_url.rstrip('/')}/pullrequest/{item['pullRequestId']}",
            repository_name=repo.full_name,
        )

    @staticmethod
    def _pickup_time(
        threads: list[dict[str, Any]],
        author_username: str | None,
        created: datetime | None,
    ) -> datetime | None:
        earliest: datetime | None = None
        for thread in threads:
            for comment in thread.get("comments") or []:
                if comment.get("commentType") == "system":
                    continue
                if (comment.get("author") or {}).get("uniqueName") == author_username:
                    continue
                published = parse_timestamp_or_none(comment.get("publishedDate"))
                if published is None or (created is not None and published < created):
                    continue
                if earliest is None or published < earliest:
                    earliest = published
        return earliest
