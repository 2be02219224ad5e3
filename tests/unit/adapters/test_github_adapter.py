"""Tests for the GitHub adapter."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pendulum
import pytest
from httpx import Response
from pydantic import SecretStr

from scmscan.adapters import GitHubAdapter
from scmscan.errors import PlatformApiError
from scmscan.models import Credential, MergeRequestState, ToolType
from scmscan.urls import parse_repository_url

if TYPE_CHECKING:
    from respx import MockRouter

    from scmscan.config import ScannerSettings

API = "https://api.github.com"
REPO = parse_repository_url("https://github.com/octo/widgets", ToolType.GITHUB)
CREDENTIAL = Credential(token=SecretStr("ghp_token"))
SINCE = pendulum.datetime(2024, 1, 10, tz="UTC")
UNTIL = pendulum.datetime(2024, 1, 20, tz="UTC")


def _summary(sha: str, date: str) -> dict[str, Any]:
    return {"sha": sha, "commit": {"committer": {"date": date}}}


def _detail(sha: str, date: str) -> dict[str, Any]:
    return {
        "sha": sha,
        "html_url": f"https://github.com/octo/widgets/commit/{sha}",
        "author": {"login": "alice"},
        "commit": {
            "message": f"commit {sha}",
            "author": {"name": "Alice", "email": "alice@example.com", "date": date},
            "committer": {"name": "Alice", "email": "alice@example.com", "date": date},
        },
        "parents": [{"sha": "p1"}],
        "stats": {"additions": 3, "deletions": 1, "total": 4},
        "files": [
            {"filename": "app.py", "status": "modified", "patch": "@@ -1,2 +1,3 @@\n a\n-b\n+c\n+d", "changes": 3},
        ],
    }


@pytest.mark.asyncio
async def test_fetch_commits_follows_link_header_and_filters_dates(
    settings: ScannerSettings,
    respx_mock: MockRouter,
) -> None:
    """Commits are paged via Link headers and only in-window commits get details."""
    next_link = f'<{API}/repositories/1/commits?page=2>; rel="next"'
    first = respx_mock.get(f"{API}/repos/octo/widgets/commits", params={"sha": "main"}).mock(
        return_value=Response(200, json=[_summary("aaa", "2024-01-15T00:00:00Z")], headers={"Link": next_link}),
    )
    second = respx_mock.get(f"{API}/repositories/1/commits", params={"page": "2"}).mock(
        return_value=Response(200, json=[_summary("bbb", "2024-02-01T00:00:00Z")]),
    )
    detail = respx_mock.get(f"{API}/repos/octo/widgets/commits/aaa").mock(
        return_value=Response(200, json=_detail("aaa", "2024-01-15T00:00:00Z")),
    )

    adapter = GitHubAdapter(settings)
    commits = await adapter.fetch_commits(REPO, "main", CREDENTIAL, SINCE, UNTIL)

    assert [commit.sha for commit in commits] == ["aaa"]
    commit = commits[0]
    assert commit.author_username == "alice"
    assert (commit.added_lines, commit.removed_lines, commit.files_changed) == (3, 1, 1)
    assert commit.file_changes is not None
    assert commit.file_changes[0].changed_line_numbers == [2, 3]
    assert first.called
    assert second.called
    assert detail.calls.last.request.headers["Authorization"] == "Bearer ghp_token"


@pytest.mark.asyncio
async def test_fetch_merge_requests_stops_at_older_items(
    settings: ScannerSettings,
    respx_mock: MockRouter,
) -> None:
    """Pull requests are read newest first until one predates the window."""
    pulls = [
        {
            "number": 7,
            "state": "closed",
            "merged_at": "2024-01-14T00:00:00Z",
            "updated_at": "2024-01-15T00:00:00Z",
            "created_at": "2024-01-11T00:00:00Z",
            "title": "Add feature",
            "user": {"login": "alice"},
            "base": {"ref": "main"},
            "head": {"ref": "feature"},
            "requested_reviewers": [{"login": "carol"}],
        },
        {"number": 3, "state": "open", "updated_at": "2023-12-01T00:00:00Z", "base": {"ref": "main"}},
    ]
    respx_mock.get(f"{API}/repos/octo/widgets/pulls", params={"state": "all", "sort": "updated"}).mock(
        return_value=Response(200, json=pulls),
    )
    respx_mock.get(f"{API}/repos/octo/widgets/pulls/7").mock(
        return_value=Response(200, json={**pulls[0], "additions": 12, "deletions": 4, "commits": 2, "changed_files": 3}),
    )
    respx_mock.get(f"{API}/repos/octo/widgets/pulls/7/reviews").mock(
        return_value=Response(
            200,
            json=[
                {"user": {"login": "bob"}, "state": "COMMENTED", "submitted_at": "2024-01-13T00:00:00Z"},
                {"user": {"login": "bob"}, "state": "APPROVED", "submitted_at": "2024-01-12T00:00:00Z"},
            ],
        ),
    )

    adapter = GitHubAdapter(settings)
    records = await adapter.fetch_merge_requests("cfg-1", REPO, "main", CREDENTIAL, SINCE, None)

    assert len(records) == 1
    record = records[0]
    assert record.external_id == "7"
    assert record.state is MergeRequestState.MERGED
    assert record.reviewers == ["carol", "bob"]
    assert record.picked_for_review_on == pendulum.datetime(2024, 1, 12, tz="UTC")
    assert (record.lines_changed, record.commit_count, record.files_changed) == (16, 2, 3)
    assert record.config_id == "cfg-1"


@pytest.mark.asyncio
async def test_fetch_commits_page_failure_aborts_fetch(
    settings: ScannerSettings,
    respx_mock: MockRouter,
) -> None:
    """A failing page surfaces PlatformApiError and no partial results."""
    respx_mock.get(f"{API}/repos/octo/widgets/commits").mock(return_value=Response(500, text="boom"))

    adapter = GitHubAdapter(settings)
    with pytest.raises(PlatformApiError) as excinfo:
        await adapter.fetch_commits(REPO, None, CREDENTIAL, SINCE, UNTIL)

    assert excinfo.value.platform == "github"
