"""Bitbucket Cloud and Bitbucket Server adapters."""

from __future__ import annotations

import logging
import re
from abc import abstractmethod
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import httpx
import orjson
import pendulum

from ..client import PlatformHttpClient
from ..dates import is_in_range, isoformat, parse_timestamp, parse_timestamp_or_none
from ..diffs import is_binary_path, parse_unified_diff
from ..errors import PlatformApiError
from ..models import CommitRecord, Credential, FileChange, MergeRequestRecord, MergeRequestState, Platform, RepoInfo
from ..urls import bitbucket_api_base, relativize
from .base import Page, PlatformAdapter, collect_pages, expect_dict, expect_list, parse_records

LOGGER = logging.getLogger(__name__)

_RAW_AUTHOR = re.compile(r"^\s*(?P<name>.*?)\s*<(?P<email>[^>]*)>\s*$")
_CLOUD_STATES = ("OPEN", "MERGED", "DECLINED", "SUPERSEDED")
_SERVER_PICKUP_ACTIONS = frozenset({"RESCOPED", "COMMENTED", "APPROVED"})
_STATE_MAP = {
    "OPEN": MergeRequestState.OPEN,
    "MERGED": MergeRequestState.MERGED,
    "DECLINED": MergeRequestState.CLOSED,
    "SUPERSEDED": MergeRequestState.CLOSED,
}


def split_raw_author(raw: str | None) -> tuple[str | None, str | None]:
    """Split ``Name <email>`` into its parts."""
    if not raw:
        return None, None
    match = _RAW_AUTHOR.match(raw)
    if match is None:
        return raw.strip() or None, None
    return match.group("name") or None, match.group("email") or None


def _older_than(value: object, since: datetime | None) -> bool:
    if since is None:
        return False
    try:
        moment = parse_timestamp(value)
    except ValueError:
        return False
    return moment is not None and moment < pendulum.instance(since, tz="UTC")


class BitbucketAdapter(PlatformAdapter):
    """Behaviour shared by the Cloud and Server variants."""

    def api_base(self, repo: RepoInfo) -> str:
        return bitbucket_api_base(repo.original_url, str(self._settings.bitbucket_cloud_api_url))

    def auth_options(self, credential: Credential) -> dict[str, Any]:
        token = credential.token.get_secret_value()
        if credential.username:
            return {"auth": httpx.BasicAuth(credential.username, token)}
        return {"headers": {"Authorization": f"Bearer {token}"}} if token else {}

    @abstractmethod
    async def _paginate(
        self,
        client: PlatformHttpClient,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]],
        *,
        since: datetime | None = None,
        timestamp_field: str | None = None,
    ) -> list[dict[str, Any]]:
        """Collect every item of a paged collection."""

    @abstractmethod
    def _commit_diff_path(self, repo: RepoInfo, sha: str) -> str:
        """Return the diff path of one commit."""

    @abstractmethod
    def _pull_request_diff_path(self, repo: RepoInfo, pull_request_id: str) -> str:
        """Return the diff path of one pull request."""

    async def fetch_commit_diff(self, repo: RepoInfo, credential: Credential, sha: str) -> str:
        """Return the raw diff of a commit, following one redirect."""
        async with self.open_client(repo, credential) as client:
            return await client.get_text_following_redirect(self._commit_diff_path(repo, sha))

    async def fetch_pull_request_diff(self, repo: RepoInfo, credential: Credential, pull_request_id: str) -> str:
        """Return the raw diff of a pull request, following one redirect."""
        async with self.open_client(repo, credential) as client:
            return await client.get_text_following_redirect(self._pull_request_diff_path(repo, pull_request_id))


class BitbucketCloudAdapter(BitbucketAdapter):
    """Bitbucket Cloud (bitbucket.org) REST 2.0 adapter."""

    platform = Platform.BITBUCKET_CLOUD

    def _repo_path(self, repo: RepoInfo) -> str:
        return f"/repositories/{repo.owner}/{repo.name}"

    def _commit_diff_path(self, repo: RepoInfo, sha: str) -> str:
        return f"{self._repo_path(repo)}/diff/{sha}"

    def _pull_request_diff_path(self, repo: RepoInfo, pull_request_id: str) -> str:
        return f"{self._repo_path(repo)}/pullrequests/{pull_request_id}/diff"

    async def _paginate(
        self,
        client: PlatformHttpClient,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]],
        *,
        since: datetime | None = None,
        timestamp_field: str | None = None,
    ) -> list[dict[str, Any]]:
        pairs = list(params.items()) if isinstance(params, dict) else list(params)
        pairs.append(("pagelen", self._settings.per_page))
        query = urlencode([(key, value) for key, value in pairs if value is not None])

        async def fetch_page(cursor: str) -> Page[dict[str, Any], str]:
            payload = expect_dict(self.platform.value, await client.get_json(cursor))
            items = expect_list(self.platform.value, payload, "values")
            next_url = payload.get("next")
            next_cursor = relativize(next_url, client.base_url) if next_url else None
            if timestamp_field and items and all(_older_than(item.get(timestamp_field), since) for item in items):
                next_cursor = None
            return Page(items=items, next_cursor=next_cursor)

        return await collect_pages(self.platform.value, fetch_page, f"{path}?{query}")

    async def fetch_commits(
        self,
        repo: RepoInfo,
        branch: str | None,
        credential: Credential,
        since: datetime | None,
        until: datetime | None,
    ) -> list[CommitRecord]:
        """Collect commits reachable from the branch, newest first."""
        params = {
            "include": branch,
            "q": f"date >= {isoformat(since)}" if since else None,
        }
        async with self.open_client(repo, credential) as client:
            items = await self._paginate(
                client,
                f"{self._repo_path(repo)}/commits",
                params,
                since=since,
                timestamp_field="date",
            )
            items = [item for item in items if is_in_range(item.get("date"), since, until)]
            diffs: dict[str, str] = {}
            for item in items:
                sha = item.get("hash")
                if sha:
                    diffs[sha] = await client.get_text_following_redirect(self._commit_diff_path(repo, sha))

        commits = parse_records(
            self.platform.value,
            items,
            lambda item: self._parse_commit(item, diffs.get(item["hash"], ""), branch, repo),
            "commit",
        )
        LOGGER.info("Fetched %s Bitbucket Cloud commit(s) for %s", len(commits), repo.full_name)
        return commits

    def _parse_commit(self, item: dict[str, Any], diff: str, branch: str | None, repo: RepoInfo) -> CommitRecord:
        author = item.get("author") or {}
        name, email = split_raw_author(author.get("raw"))
        user = author.get("user") or {}
        parents = [parent["hash"] for parent in item.get("parents") or []]
        file_changes = parse_unified_diff(diff)
        added = sum(change.added_lines for change in file_changes)
        removed = sum(change.removed_lines for change in file_changes)
        return CommitRecord(
            sha=item["hash"],
            message=item.get("message"),
            author_username=user.get("nickname"),
            author_name=user.get("display_name") or name,
            author_email=email,
            committer_name=name,
            committer_email=email,
            committed_at=parse_timestamp_or_none(item.get("date")),
            added_lines=added,
            removed_lines=removed,
            changed_lines=added + removed,
            files_changed=len(file_changes),
            file_changes=file_changes,
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            branch_name=branch,
            repository_name=repo.full_name,
            url=((item.get("links") or {}).get("html") or {}).get("href"),
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
        """Collect pull requests in every state updated inside the window."""
        params: list[tuple[str, Any]] = [("state", state) for state in _CLOUD_STATES]
        params.append(("sort", "-updated_on"))
        if since is not None:
            params.append(("q", f"updated_on >= {isoformat(since)}"))
        base = f"{self._repo_path(repo)}/pullrequests"
        async with self.open_client(repo, credential) as client:
            items = await self._paginate(client, base, params, since=since, timestamp_field="updated_on")
            items = [
                item
                for item in items
                if is_in_range(item.get("updated_on"), since, until)
                and (not branch or ((item.get("destination") or {}).get("branch") or {}).get("name") == branch)
            ]
            enriched: list[tuple[dict[str, Any], list[dict[str, Any]], list[dict[str, Any]]]] = []
            for item in items:
                pull_id = item.get("id")
                if pull_id is None:
                    LOGGER.warning("Skipping Bitbucket Cloud pull request without id in %s", repo.full_name)
                    continue
                diffstat = await self._paginate(client, f"{base}/{pull_id}/diffstat", {})
                commits = await self._paginate(client, f"{base}/{pull_id}/commits", {})
                enriched.append((item, diffstat, commits))

        records = parse_records(
            self.platform.value,
            enriched,
            lambda entry: self._parse_pull_request(config_id, repo, *entry),
            "pull request",
        )
        LOGGER.info("Fetched %s Bitbucket Cloud pull request(s) for %s", len(records), repo.full_name)
        return records

    def _parse_pull_request(
        self,
        config_id: str,
        repo: RepoInfo,
        item: dict[str, Any],
        diffstat: list[dict[str, Any]],
        commits: list[dict[str, Any]],
    ) -> MergeRequestRecord:
        author = item.get("author") or {}
        state = _STATE_MAP.get(item.get("state", ""), MergeRequestState.OPEN)
        reviewers = [reviewer["nickname"] for reviewer in item.get("reviewers") or [] if reviewer.get("nickname")]
        pickup: datetime | None = None
        for participant in item.get("participants") or []:
            nickname = (participant.get("user") or {}).get("nickname")
            if participant.get("role") == "REVIEWER" and nickname and nickname not in reviewers:
                reviewers.append(nickname)
            participated = parse_timestamp_or_none(participant.get("participated_on"))
            if nickname == author.get("nickname") or participated is None:
                continue
            if pickup is None or participated < pickup:
                pickup = participated
        added = sum(entry.get("lines_added") or 0 for entry in diffstat)
        removed = sum(entry.get("lines_removed") or 0 for entry in diffstat)
        updated = parse_timestamp_or_none(item.get("updated_on"))
        return MergeRequestRecord(
            config_id=config_id,
            external_id=str(item["id"]),
            title=item.get("title"),
            description=item.get("description"),
            state=state,
            source_branch=((item.get("source") or {}).get("branch") or {}).get("name"),
            target_branch=((item.get("destination") or {}).get("branch") or {}).get("name"),
            author_username=author.get("nickname"),
            author_name=author.get("display_name"),
            reviewers=reviewers,
            created_on=parse_timestamp_or_none(item.get("created_on")),
            updated_on=updated,
            merged_at=updated if state is MergeRequestState.MERGED else None,
            closed_at=updated if state is not MergeRequestState.OPEN else None,
            picked_for_review_on=pickup,
            lines_changed=added + removed,
            added_lines=added,
            removed_lines=removed,
            commit_count=len(commits),
            files_changed=len(diffstat),
            is_draft=item.get("draft"),
            url=((item.get("links") or {}).get("html") or {}).get("href"),
            repository_name=repo.full_name,
        )


def _diff_entries(platform: str, value: object, what: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(entry, dict) for entry in value):
        msg = f"malformed {what} in diff payload"
        raise PlatformApiError(platform, msg)
    return value


def _diff_path(value: object) -> str | None:
    path = value.get("toString") if isinstance(value, dict) else None
    return path if isinstance(path, str) else None


def _add_line_number(lines: set[int], value: object) -> None:
    if isinstance(value, int) and not isinstance(value, bool):
        lines.add(value)


def parse_server_diff(text: str, platform: str) -> list[FileChange]:
    """Convert a Bitbucket Server JSON diff into per-file changes.

    Raises PlatformApiError when the body is not a JSON diff document.
    """
    if not text.strip():
        return []
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise PlatformApiError(platform, "invalid JSON diff payload", cause=exc) from exc
    payload = expect_dict(platform, payload)
    changes: list[FileChange] = []
    for diff in _diff_entries(platform, payload.get("diffs"), "diffs"):
        source = _diff_path(diff.get("source"))
        destination = _diff_path(diff.get("destination"))
        path = destination or source
        if not path:
            continue
        if source is None:
            change_type = "ADDED"
        elif destination is None:
            change_type = "DELETED"
        elif source != destination:
            change_type = "RENAMED"
        else:
            change_type = "MODIFIED"
        added = removed = 0
        lines: set[int] = set()
        for hunk in _diff_entries(platform, diff.get("hunks"), "hunks"):
            for segment in _diff_entries(platform, hunk.get("segments"), "segments"):
                kind = segment.get("type")
                for line in _diff_entries(platform, segment.get("lines"), "lines"):
                    if kind == "ADDED":
                        added += 1
                        _add_line_number(lines, line.get("destination"))
                    elif kind == "REMOVED":
                        removed += 1
                        _add_line_number(lines, line.get("source"))
        changes.append(
            FileChange(
                path=path,
                change_type=change_type,
                added_lines=added,
                removed_lines=removed,
                binary=bool(diff.get("binary")) or is_binary_path(path),
                changed_line_numbers=sorted(lines),
            )
        )
    return changes


class BitbucketServerAdapter(BitbucketAdapter):
    """Bitbucket Server / Data Center REST 1.0 adapter."""

    platform = Platform.BITBUCKET_SERVER

    def _repo_path(self, repo: RepoInfo) -> str:
        return f"/projects/{repo.owner}/repos/{repo.name}"

    def _commit_diff_path(self, repo: RepoInfo, sha: str) -> str:
        return f"{self._repo_path(repo)}/commits/{sha}/diff"

    def _pull_request_diff_path(self, repo: RepoInfo, pull_request_id: str) -> str:
        return f"{self._repo_path(repo)}/pull-requests/{pull_request_id}/diff"

    def _file_changes(self, text: str, repo: RepoInfo, what: str) -> list[FileChange]:
        """Parse one diff body, keeping the record without file changes when it is malformed."""
        try:
            return parse_server_diff(text, self.platform.value)
        except PlatformApiError as exc:
            LOGGER.warning("Ignoring unreadable diff of %s in %s: %s", what, repo.full_name, exc)
            return []

    async def _paginate(
        self,
        client: PlatformHttpClient,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]],
        *,
        since: datetime | None = None,
        timestamp_field: str | None = None,
    ) -> list[dict[str, Any]]:
        base_params = {key: value for key, value in dict(params).items() if value is not None}
        base_params["limit"] = self._settings.per_page

        async def fetch_page(start: int) -> Page[dict[str, Any], int]:
            payload = expect_dict(
                self.platform.value,
                await client.get_json(path, params={**base_params, "start": start}),
            )
            items = expect_list(self.platform.value, payload, "values")
            next_start = None if payload.get("isLastPage", True) else payload.get("nextPageStart")
            if timestamp_field and items and all(_older_than(item.get(timestamp_field), since) for item in items):
                next_start = None
            return Page(items=items, next_cursor=next_start)

        return await collect_pages(self.platform.value, fetch_page, 0)

    async def fetch_commits(
        self,
        repo: RepoInfo,
        branch: str | None,
        credential: Credential,
        since: datetime | None,
        until: datetime | None,
    ) -> list[CommitRecord]:
        """Collect commits reachable from the branch, newest first."""
        params = {"until": f"refs/heads/{branch}" if branch else None}
        async with self.open_client(repo, credential) as client:
            items = await self._paginate(
                client,
                f"{self._repo_path(repo)}/commits",
                params,
                since=since,
                timestamp_field="committerTimestamp",
            )
            items = [item for item in items if is_in_range(item.get("committerTimestamp"), since, until)]
            diffs: dict[str, list[FileChange]] = {}
            for item in items:
                sha = item.get("id")
                if sha:
                    text = await client.get_text_following_redirect(self._commit_diff_path(repo, sha))
                    diffs[sha] = self._file_changes(text, repo, f"commit {sha}")

        commits = parse_records(
            self.platform.value,
            items,
            lambda item: self._parse_commit(item, diffs.get(item["id"], []), branch, repo),
            "commit",
        )
        LOGGER.info("Fetched %s Bitbucket Server commit(s) for %s", len(commits), repo.full_name)
        return commits

    def _parse_commit(
        self,
        item: dict[str, Any],
        file_changes: list[FileChange],
        branch: str | None,
        repo: RepoInfo,
    ) -> CommitRecord:
        author = item.get("author") or {}
        committer = item.get("committer") or author
        parents = [parent["id"] for parent in item.get("parents") or []]
        added = sum(change.added_lines for change in file_changes)
        removed = sum(change.removed_lines for change in file_changes)
        return CommitRecord(
            sha=item["id"],
            message=item.get("message"),
            author_username=author.get("name"),
            author_name=author.get("displayName") or author.get("name"),
            author_email=author.get("emailAddress"),
            committer_name=committer.get("displayName") or committer.get("name"),
            committer_email=committer.get("emailAddress"),
            committed_at=parse_timestamp_or_none(item.get("committerTimestamp") or item.get("authorTimestamp")),
            added_lines=added,
            removed_lines=removed,
            changed_lines=added + removed,
            files_changed=len(file_changes),
            file_changes=file_changes,
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            branch_name=branch,
            repository_name=repo.full_name,
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
        """Collect pull requests in every state updated inside the window."""
        params = {
            "state": "ALL",
            "order": "NEWEST",
            "direction": "INCOMING",
            "at": f"refs/heads/{branch}" if branch else None,
        }
        base = f"{self._repo_path(repo)}/pull-requests"
        async with self.open_client(repo, credential) as client:
            items = await self._paginate(client, base, params, since=since, timestamp_field="updatedDate")
            items = [
                item
                for item in items
                if is_in_range(item.get("updatedDate"), since, until)
                and (not branch or (item.get("toRef") or {}).get("displayId") == branch)
            ]
            enriched: list[tuple[dict[str, Any], list[dict[str, Any]], list[dict[str, Any]], list[FileChange]]] = []
            for item in items:
                pull_id = item.get("id")
                if pull_id is None:
                    LOGGER.warning("Skipping Bitbucket Server pull request without id in %s", repo.full_name)
                    continue
                activities = await self._paginate(client, f"{base}/{pull_id}/activities", {})
                commits = await self._paginate(client, f"{base}/{pull_id}/commits", {})
                text = await client.get_text_following_redirect(self._pull_request_diff_path(repo, str(pull_id)))
                file_changes = self._file_changes(text, repo, f"pull request {pull_id}")
                enriched.append((item, activities, commits, file_changes))

        records = parse_records(
            self.platform.value,
            enriched,
            lambda entry: self._parse_pull_request(config_id, repo, *entry),
            "pull request",
        )
        LOGGER.info("Fetched %s Bitbucket Server pull request(s) for %s", len(records), repo.full_name)
        return records

    def _parse_pull_request(
        self,
        config_id: str,
        repo: RepoInfo,
        item: dict[str, Any],
        activities: list[dict[str, Any]],
        commits: list[dict[str, Any]],
        file_changes: list[FileChange],
    ) -> MergeRequestRecord:
        author = (item.get("author") or {}).get("user") or {}
        state = _STATE_MAP.get(item.get("state", ""), MergeRequestState.OPEN)
        reviewers = [
            user["name"]
            for user in ((reviewer.get("user") or {}) for reviewer in item.get("reviewers") or [])
            if user.get("name")
        ]
        pickup: datetime | None = None
        merged_at: datetime | None = None
        for activity in activities:
            action = activity.get("action")
            created = parse_timestamp_or_none(activity.get("createdDate"))
            if created is None:
                continue
            if action == "MERGED" and (merged_at is None or created < merged_at):
                merged_at = created
            actor = (activity.get("user") or {}).get("name")
            if action in _SERVER_PICKUP_ACTIONS and actor != author.get("name"):
                if pickup is None or created < pickup:
                    pickup = created
        closed_at = parse_timestamp_or_none(item.get("closedDate"))
        if state is MergeRequestState.MERGED and merged_at is None:
            merged_at = closed_at
        added = sum(change.added_lines for change in file_changes)
        removed = sum(change.removed_lines for change in file_changes)
        links = (item.get("links") or {}).get("self") or [{}]
        return MergeRequestRecord(
            config_id=config_id,
            external_id=str(item["id"]),
            title=item.get("title"),
            description=item.get("description"),
            state=state,
            source_branch=(item.get("fromRef") or {}).get("displayId"),
            target_branch=(item.get("toRef") or {}).get("displayId"),
            author_username=author.get("name"),
            author_name=author.get("displayName"),
            author_email=author.get("emailAddress"),
            reviewers=reviewers,
            created_on=parse_timestamp_or_none(item.get("createdDate")),
            updated_on=parse_timestamp_or_none(item.get("updatedDate")),
            merged_at=merged_at,
            closed_at=closed_at,
            picked_for_review_on=pickup,
            lines_changed=added + removed,
            added_lines=added,
            removed_lines=removed,
            commit_count=len(commits),
            files_changed=len(file_changes),
            is_draft=item.get("draft"),
            url=links[0].get("href"),
            repository_name=repo.full_name,
        )
