"""GitLab REST adapter for gitlab.com and self-hosted instances."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

from ..client import PlatformHttpClient
from ..dates import is_in_range, isoformat, parse_timestamp_or_none
from ..diffs import file_change_from_patch
from ..models import CommitRecord, Credential, FileChange, MergeRequestRecord, MergeRequestState, Platform, RepoInfo
from ..urls import gitlab_api_base
from .base import Page, PlatformAdapter, collect_pages, expect_list, parse_records

LOGGER = logging.getLogger(__name__)

_STATE_MAP = {
    "opened": MergeRequestState.OPEN,
    "merged": MergeRequestState.MERGED,
    "closed": MergeRequestState.CLOSED,
    "locked": MergeRequestState.CLOSED,
}


def _project_id(repo: RepoInfo) -> str:
    return quote(repo.full_name, safe="")


def _diff_change(entry: dict[str, Any]) -> FileChange:
    if entry.get("new_file"):
        change_type = "ADDED"
    elif entry.get("deleted_file"):
        change_type = "DELETED"
    elif entry.get("renamed_file"):
        change_type = "RENAMED"
    else:
        change_type = "MODIFIED"
    return file_change_from_patch(
        entry.get("new_path") or entry["old_path"],
        entry.get("diff"),
        change_type=change_type,
        binary=True if entry.get("diff") == "" and not entry.get("too_large") else None,
    )


class GitLabAdapter(PlatformAdapter):
    """Fetch commits and merge requests from the GitLab v4 REST API."""

    platform = Platform.GITLAB

    def api_base(self, repo: RepoInfo) -> str:
        try:
            host = gitlab_api_base(repo.original_url)
        except ValueError:
            host = str(self._settings.gitlab_api_url).rstrip("/")
        return f"{host}/api/v4"

    def auth_options(self, credential: Credential) -> dict[str, Any]:
        token = credential.token.get_secret_value()
        return {"headers": {"PRIVATE-TOKEN": token}} if token else {}

    async def _paginate(
        self,
        client: PlatformHttpClient,
        path: str,
        params: dict[str, Any],
    ) -> list[dict[str, Any]]:
        base_params = {key: value for key, value in params.items() if value is not None}
        base_params["per_page"] = self._settings.per_page

        async def fetch_page(page: str) -> Page[dict[str, Any], str]:
            response = await client.request("GET", path, params={**base_params, "page": page})
            items = expect_list(self.platform.value, client.parse_json(response))
            next_page = response.headers.get("X-Next-Page") or None
            return Page(items=items, next_cursor=next_page)

        return await collect_pages(self.platform.value, fetch_page, "1")

    async def fetch_commits(
        self,
        repo: RepoInfo,
        branch: str | None,
        credential: Credential,
        since: datetime | None,
        until: datetime | None,
    ) -> list[CommitRecord]:
        """Collect commits with stats and per-file diffs."""
        project = _project_id(repo)
        params = {
            "ref_name": branch,
            "all": None if branch else "true",
            "since": isoformat(since) if since else None,
            "until": isoformat(until) if until else None,
            "with_stats": "true",
        }
        async with self.open_client(repo, credential) as client:
            items = await self._paginate(client, f"/projects/{project}/repository/commits", params)
            items = [
                item
                for item in items
                if is_in_range(item.get("committed_date") or item.get("authored_date"), since, until)
            ]
            diffs: dict[str, list[dict[str, Any]]] = {}
            for item in items:
                sha = item.get("id")
                if sha:
                    diffs[sha] = await self._paginate(client, f"/projects/{project}/repository/commits/{sha}/diff", {})

        commits = parse_records(
            self.platform.value,
            items,
            lambda item: self._parse_commit(item, diffs.get(item["id"], []), branch, repo),
            "commit",
        )
        LOGGER.info("Fetched %s GitLab commit(s) for %s", len(commits), repo.full_name)
        return commits

    def _parse_commit(
        self,
        item: dict[str, Any],
        diff_entries: list[dict[str, Any]],
        branch: str | None,
        repo: RepoInfo,
    ) -> CommitRecord:
        stats = item.get("stats") or {}
        parents = list(item.get("parent_ids") or [])
        file_changes = [_diff_change(entry) for entry in diff_entries]
        return CommitRecord(
            sha=item["id"],
            message=item.get("message"),
            author_name=item.get("author_name"),
            author_email=item.get("author_email"),
            committer_name=item.get("committer_name"),
            committer_email=item.get("committer_email"),
            committed_at=parse_timestamp_or_none(item.get("committed_date") or item.get("authored_date")),
            added_lines=stats.get("additions"),
            removed_lines=stats.get("deletions"),
            changed_lines=stats.get("total"),
            files_changed=len(file_changes),
            file_changes=file_changes,
            parent_shas=parents,
            is_merge_commit=len(parents) > 1,
            branch_name=branch,
            repository_name=repo.full_name,
            url=item.get("web_url"),
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
        """Collect merge requests updated in the window with changes and notes."""
        project = _project_id(repo)
        params = {
            "state": "all",
            "scope": "all",
            "order_by": "updated_at",
            "sort": "desc",
            "updated_after": isoformat(since) if since else None,
            "updated_before": isoformat(until) if until else None,
            "target_branch": branch,
        }
        async with self.open_client(repo, credential) as client:
            items = await self._paginate(client, f"/projects/{project}/merge_requests", params)
            items = [item for item in items if is_in_range(item.get("updated_at"), since, until)]
            enriched: list[tuple[dict[str, Any], dict[str, Any], list[dict[str, Any]], list[dict[str, Any]]]] = []
            for item in items:
                iid = item.get("iid")
                if iid is None:
                    LOGGER.warning("Skipping GitLab merge request without iid in %s", repo.full_name)
                    continue
                base = f"/projects/{project}/merge_requests/{iid}"
                changes = await client.get_json(f"{base}/changes")
                commits = await self._paginate(client, f"{base}/commits", {})
                notes = await self._paginate(client, f"{base}/notes", {"sort": "asc", "order_by": "created_at"})
                enriched.append((item, changes if isinstance(changes, dict) else {}, commits, notes))

        records = parse_records(
            self.platform.value,
            enriched,
            lambda entry: self._parse_merge_request(config_id, repo, *entry),
            "merge request",
        )
        LOGGER.info("Fetched %s GitLab merge request(s) for %s", len(records), repo.full_name)
        return records

    def _parse_merge_request(
        self,
        config_id: str,
        repo: RepoInfo,
        item: dict[str, Any],
        changes: dict[str, Any],
        commits: list[dict[str, Any]],
        notes: list[dict[str, Any]],
    ) -> MergeRequestRecord:
        author = item.get("author") or {}
        reviewers = [reviewer["username"] for reviewer in item.get("reviewers") or [] if reviewer.get("username")]
        file_changes = [_diff_change(entry) for entry in changes.get("changes") or []]
        added = sum(change.added_lines for change in file_changes)
        removed = sum(change.removed_lines for change in file_changes)
        return MergeRequestRecord(
            config_id=config_id,
            external_id=str(item["iid"]),
            title=item.get("title"),
            description=item.get("description"),
            state=_STATE_MAP.get(item.get("state", ""), MergeRequestState.OPEN),
            source_branch=item.get("source_branch"),
            target_branch=item.get("target_branch"),
            author_username=author.get("username"),
            author_name=author.get("name"),
            reviewers=reviewers,
            created_on=parse_timestamp_or_none(item.get("created_at")),
            updated_on=parse_timestamp_or_none(item.get("updated_at")),
            merged_at=parse_timestamp_or_none(item.get("merged_at")),
            closed_at=parse_timestamp_or_none(item.get("closed_at")),
            picked_for_review_on=self._pickup_time(notes, author.get("username")),
            lines_changed=added + removed if file_changes else None,
            added_lines=added if file_changes else None,
            removed_lines=removed if file_changes else None,
            commit_count=len(commits),
            files_changed=len(file_changes) if file_changes else None,
            is_draft=item.get("draft", item.get("work_in_progress")),
            url=item.get("web_url"),
            repository_name=repo.full_name,
        )

    @staticmethod
    def _pickup_time(notes: list[dict[str, Any]], author_username: str | None) -> datetime | None:
        earliest: datetime | None = None
        for note in notes:
            if note.get("system"):
                continue
            if (note.get("author") or {}).get("username") == author_username:
                continue
            created = parse_timestamp_or_none(note.get("created_at"))
            if created is not None and (earliest is None or created < earliest):
                earliest = created
        return earliest
