"""GitHub REST adapter."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

from ..client import PlatformHttpClient
from ..dates import is_in_range, isoformat, parse_timestamp_or_none
from ..diffs import file_change_from_patch
from ..models import CommitRecord, Credential, MergeRequestRecord, MergeRequestState, Platform, RepoInfo
from ..urls import relativize
from .base import Page, PlatformAdapter, collect_pages, expect_dict, expect_list, parse_records

LOGGER = logging.getLogger(__name__)

_PICKUP_REVIEW_STATES = frozenset({"APPROVED", "COMMENTED", "CHANGES_REQUESTED", "DISMISSED"})
_FILE_STATUS = {"added": "ADDED", "removed": "DELETED", "renamed": "RENAMED", "modified": "MODIFIED"}


def _with_query(path: str, params: dict[str, Any]) -> str:
    query = urlencode({key: value for key, value in params.items() if value is not None})
    return f"{path}?{query}" if query else path


def _summary_date(summary: dict[str, Any]) -> object:
    commit = summary.get("commit") or {}
    return (commit.get("committer") or {}).get("date") or (commit.get("author") or {}).get("date")


def map_pull_request_state(state: str | None, merged_at: object) -> MergeRequestState:
    if state == "closed":
        return MergeRequestState.MERGED if merged_at else MergeRequestState.CLOSED
    return MergeRequestState.OPEN


class GitHubAdapter(PlatformAdapter):
    """Fetch commits and pull requests from the GitHub REST API."""

    platform = Platform.GITHUB

    def api_base(self, repo: RepoInfo) -> str:
        return str(self._settings.github_api_url).rstrip("/")

    def auth_options(self, credential: Credential) -> dict[str, Any]:
        token = credential.token.get_secret_value()
        headers = {"Accept": "application/vnd.github+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return {"headers": headers}

    async def _link_page(self, client: PlatformHttpClient, cursor: str) -> Page[dict[str, Any], str]:
        response = await client.request("GET", cursor)
        items = expect_list(self.platform.value, client.parse_json(response))
        next_url = response.links.get("next", {}).get("url")
        next_cursor = relativize(next_url, client.base_url) if next_url else None
        return Page(items=items, next_cursor=next_cursor)

    async def fetch_commits(
        self,
        repo: RepoInfo,
        branch: str | None,
        credential: Credential,
        since: datetime | None,
        until: datetime | None,
    ) -> list[CommitRecord]:
        """Collect commits with per-commit stats and file changes."""
        path = f"/repos/{repo.owner}/{repo.name}/commits"
        params = {
            "sha": branch,
            "since": isoformat(since) if since else None,
            "until": isoformat(until) if until else None,
            "per_page": self._settings.per_page,
        }
        async with self.open_client(repo, credential) as client:

            async def fetch_page(cursor: str) -> Page[dict[str, Any], str]:
                return await self._link_page(client, cursor)

            summaries = await collect_pages(self.platform.value, fetch_page, _with_query(path, params))
            summaries = [summary for summary in summaries if is_in_range(_summary_date(summary), since, until)]
            details: list[dict[str, Any]] = []
            for summary in summaries:
                sha = summary.get("sha")
                if not sha:
                    LOGGER.warning("Skipping GitHub commit without sha in %s", repo.full_name)
                    continue
                payload = await client.get_json(f"{path}/{sha}")
                details.append(expect_dict(self.platform.value, payload))

        commits = parse_records(
            self.platform.value,
            details,
            lambda item: self._parse_commit(item, branch, repo),
            "commit",
        )
        LOGGER.info("Fetched %s GitHub commit(s) for %s", len(commits), repo.full_name)
        return commits

    def _parse_commit(self, item: dict[str, Any], branch: str | None, repo: RepoInfo) -> CommitRecord:
        commit = item["commit"]
        author = commit.get("author") or {}
        committer = commit.get("committer") or {}
        stats = item.get("stats") or {}
        files = item.get("files") or []
        parents = [parent["sha"] for parent in item.get("parents") or []]
        file_changes = [
            file_change_from_patch(
                entry["filename"],
                entry.get("patch"),
                change_type=_FILE_STATUS.get(entry.get("status", ""), "MODIFIED"),
                binary=True if entry.get("patch") is None and not entry.get("changes") else None,
            )
            for entry in files
        ]
        return CommitRecord(
            sha=item["sha"],
            message=commit.get("message"),
            author_username=(item.get("author") or {}).get("login"),
            author_name=author.get("name"),
            author_email=author.get("email"),
            committer_name=committer.get("name"),
            committer_email=committer.get("email"),
            committed_at=parse_timestamp_or_none(committer.get("date") or author.get("date")),
            added_lines=stats.get("additions"),
            removed_lines=stats.get("deletions"),
            changed_lines=stats.get("total"),
            files_changed=len(files),
            file_changes=file_changes,
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            branch_name=branch,
            repository_name=repo.full_name,
            url=item.get("html_url"),
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
        """Collect pull requests updated in the window, newest first."""
        path = f"/repos/{repo.owner}/{repo.name}/pulls"
        params = {
            "state": "all",
            "sort": "updated",
            "direction": "desc",
            "base": branch,
            "per_page": self._settings.per_page,
        }
        async with self.open_client(repo, credential) as client:

            async def fetch_page(cursor: str) -> Page[dict[str, Any], str]:
                page = await self._link_page(client, cursor)
                kept: list[dict[str, Any]] = []
                for item in page.items:
                    updated = item.get("updated_at")
                    if since is not None and not is_in_range(updated, since, None):
                        # Sorted by update time: everything after this is older.
                        page.next_cursor = None
                        break
                    if branch and (item.get("base") or {}).get("ref") != branch:
                        continue
                    if is_in_range(updated, None, until):
                        kept.append(item)
                page.items = kept
                return page

            pulls = await collect_pages(self.platform.value, fetch_page, _with_query(path, params))
            enriched: list[tuple[dict[str, Any], dict[str, Any], list[dict[str, Any]]]] = []
            for pull in pulls:
                number = pull.get("number")
                if number is None:
                    LOGGER.warning("Skipping GitHub pull request without number in %s", repo.full_name)
                    continue
                detail = expect_dict(self.platform.value, await client.get_json(f"{path}/{number}"))

                async def fetch_reviews(cursor: str) -> Page[dict[str, Any], str]:
                    return await self._link_page(client, cursor)

                reviews = await collect_pages(
                    self.platform.value,
                    fetch_reviews,
                    _with_query(f"{path}/{number}/reviews", {"per_page": self._settings.per_page}),
                )
                enriched.append((pull, detail, reviews))

        records = parse_records(
            self.platform.value,
            enriched,
            lambda entry: self._parse_pull(config_id, repo, *entry),
            "pull request",
        )
        LOGGER.info("Fetched %s GitHub pull request(s) for %s", len(records), repo.full_name)
        return records

    def _parse_pull(
        self,
        config_id: str,
        repo: RepoInfo,
        pull: dict[str, Any],
        detail: dict[str, Any],
        reviews: list[dict[str, Any]],
    ) -> MergeRequestRecord:
        merged = {**pull, **detail}
        user = merged.get("user") or {}
        reviewers: list[str] = []
        for requested in merged.get("requested_reviewers") or []:
            login = requested.get("login")
            if login and login not in reviewers:
                reviewers.append(login)
        pickup: datetime | None = None
        for review in reviews:
            login = (review.get("user") or {}).get("login")
            if login and login not in reviewers:
                reviewers.append(login)
            if review.get("state") in _PICKUP_REVIEW_STATES:
                submitted = parse_timestamp_or_none(review.get("submitted_at"))
                if submitted is not None and (pickup is None or submitted < pickup):
                    pickup = submitted
        additions = merged.get("additions")
        deletions = merged.get("deletions")
        lines_changed = additions + deletions if additions is not None and deletions is not None else None
        return MergeRequestRecord(
            config_id=config_id,
            external_id=str(merged["number"]),
            title=merged.get("title"),
            description=merged.get("body"),
            state=map_pull_request_state(merged.get("state"), merged.get("merged_at")),
            source_branch=(merged.get("head") or {}).get("ref"),
            target_branch=(merged.get("base") or {}).get("ref"),
            author_username=user.get("login"),
            reviewers=reviewers,
            created_on=parse_timestamp_or_none(merged.get("created_at")),
            updated_on=parse_timestamp_or_none(merged.get("updated_at")),
            merged_at=parse_timestamp_or_none(merged.get("merged_at")),
            closed_at=parse_timestamp_or_none(merged.get("closed_at")),
            picked_for_review_on=pickup,
            lines_changed=lines_changed,
            added_lines=additions,
            removed_lines=deletions,
            commit_count=merged.get("commits"),
            files_changed=merged.get("changed_files"),
            is_draft=merged.get("draft"),
            url=merged.get("html_url"),
            repository_name=repo.full_name,
        )
