"""Tests for the Bitbucket Cloud and Server adapters."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import pendulum
import pytest
from httpx import Response
from pydantic import SecretStr

from scmscan.adapters import BitbucketCloudAdapter, BitbucketServerAdapter
from scmscan.adapters.bitbucket import parse_server_diff, split_raw_author
from scmscan.errors import PlatformApiError
from scmscan.models import Credential, MergeRequestState, ToolType
from scmscan.urls import parse_repository_url

if TYPE_CHECKING:
    from respx import MockRouter

    from scmscan.config import ScannerSettings

CLOUD_API = "https://api.bitbucket.org/2.0"
SERVER_API = "https://bitbucket.example.com/rest/api/1.0"
CLOUD_REPO = parse_repository_url("https://bitbucket.org/ws/repo", ToolType.BITBUCKET)
SERVER_REPO = parse_repository_url("https://bitbucket.example.com/scm/PROJ/repo.git", ToolType.BITBUCKET)
CREDENTIAL = Credential(username="user", token=SecretStr("app-password"))
SINCE = pendulum.datetime(2024, 1, 10, tz="UTC")
UNTIL = pendulum.datetime(2024, 1, 20, tz="UTC")
DATES = ["2024-02-01", "2024-01-15", "2024-01-01"]


def _millis(day: str) -> int:
    return int(pendulum.parse(day, tz="UTC").timestamp() * 1000)


def _cloud_commit(index: int, day: str) -> dict[str, Any]:
    return {
        "hash": f"h{index}",
        "message": f"commit {index}",
        "date": f"{day}T00:00:00+00:00",
        "author": {"raw": "Alice <alice@example.com>", "user": {"nickname": "alice", "display_name": "Alice"}},
        "parents": [{"hash": "p"}],
    }


def _server_commit(index: int, day: str) -> dict[str, Any]:
    return {
        "id": f"h{index}",
        "message": f"commit {index}",
        "author": {"name": "alice", "emailAddress": "alice@example.com", "displayName": "Alice"},
        "authorTimestamp": _millis(day),
        "committerTimestamp": _millis(day),
        "parents": [{"id": "p"}],
    }


@pytest.mark.asyncio
async def test_cloud_commits_keep_only_window_iso_dates(
    settings: ScannerSettings,
    respx_mock: MockRouter,
) -> None:
    """ISO-8601 Cloud commits outside the window are dropped."""
    respx_mock.get(f"{CLOUD_API}/repositories/ws/repo/commits").mock(
        return_value=Response(
            200,
            json={"values": [_cloud_commit(index, day) for index, day in enumerate(DATES)]},
        ),
    )
    diff = respx_mock.get(f"{CLOUD_API}/repositories/ws/repo/diff/h1").mock(
        return_value=Response(200, text="diff --git a/x b/x\n--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+b\n"),
    )

    adapter = BitbucketCloudAdapter(settings)
    commits = await adapter.fetch_commits(CLOUD_REPO, "main", CREDENTIAL, SINCE, UNTIL)

    assert [commit.sha for commit in commits] == ["h1"]
    assert commits[0].committed_at == pendulum.datetime(2024, 1, 15, tz="UTC")
    assert (commits[0].added_lines, commits[0].removed_lines) == (1, 1)
    assert commits[0].author_email == "alice@example.com"
    assert diff.calls.last.request.headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_server_commits_keep_only_window_epoch_millis(
    settings: ScannerSettings,
    respx_mock: MockRouter,
) -> None:
    """Epoch-millis Server commits outside the window are dropped."""
    respx_mock.get(f"{SERVER_API}/projects/PROJ/repos/repo/commits", params={"until": "refs/heads/main"}).mock(
        return_value=Response(
            200,
            json={
                "values": [_server_commit(index, day) for index, day in enumerate(DATES)],
                "isLastPage": True,
            },
        ),
    )
    respx_mock.get(f"{SERVER_API}/projects/PROJ/repos/repo/commits/h1/diff").mock(
        return_value=Response(200, json={"diffs": []}),
    )

    adapter = BitbucketServerAdapter(settings)
    commits = await adapter.fetch_commits(SERVER_REPO, "main", CREDENTIAL, SINCE, UNTIL)

    assert [commit.sha for commit in commits] == ["h1"]
    assert commits[0].committed_at == pendulum.datetime(2024, 1, 15, tz="UTC")


@pytest.mark.asyncio
async def test_server_pagination_uses_next_page_start(
    settings: ScannerSettings,
    respx_mock: MockRouter,
) -> None:
    """isLastPage/nextPageStart drive Server pagination."""
    first = respx_mock.get(f"{SERVER_API}/projects/PROJ/repos/repo/commits", params={"start": "0"}).mock(
        return_value=Response(
            200,
            json={"values": [_server_commit(0, "2024-01-16")], "isLastPage": False, "nextPageStart": 25},
        ),
    )
    second = respx_mock.get(f"{SERVER_API}/projects/PROJ/repos/repo/commits", params={"start": "25"}).mock(
        return_value=Response(200, json={"values": [_server_commit(1, "2024-01-15")], "isLastPage": True}),
    )
    respx_mock.get(url__regex=rf"{SERVER_API}/projects/PROJ/repos/repo/commits/h\d/diff").mock(
        return_value=Response(200, json={"diffs": []}),
    )

    adapter = BitbucketServerAdapter(settings)
    commits = await adapter.fetch_commits(SERVER_REPO, None, CREDENTIAL, SINCE, UNTIL)

    assert [commit.sha for commit in commits] == ["h0", "h1"]
    assert first.called
    assert second.called


@pytest.mark.asyncio
async def test_server_pull_requests_use_activities_for_pickup(
    settings: ScannerSettings,
    respx_mock: MockRouter,
) -> None:
    """Server pull requests map DECLINED to CLOSED and take pickup from activities."""
    base = f"{SERVER_API}/projects/PROJ/repos/repo/pull-requests"
    respx_mock.get(base, params={"state": "ALL"}).mock(
        return_value=Response(
            200,
            json={
                "isLastPage": True,
                "values": [
                    {
                        "id": 9,
                        "title": "Tidy",
                        "state": "DECLINED",
                        "author": {"user": {"name": "alice", "emailAddress": "alice@example.com"}},
                        "reviewers": [{"user": {"name": "bob"}}],
                        "createdDate": _millis("2024-01-11"),
                        "updatedDate": _millis("2024-01-12"),
                        "closedDate": _millis("2024-01-12"),
                        "fromRef": {"displayId": "tidy"},
                        "toRef": {"displayId": "main"},
                        "links": {"self": [{"href": "https://bitbucket.example.com/pr/9"}]},
                    },
                ],
            },
        ),
    )
    respx_mock.get(f"{base}/9/activities").mock(
        return_value=Response(
            200,
            json={
                "isLastPage": True,
                "values": [
                    {"action": "OPENED", "createdDate": _millis("2024-01-11"), "user": {"name": "alice"}},
                    {"action": "COMMENTED", "createdDate": _millis("2024-01-11") + 5000, "user": {"name": "bob"}},
                ],
            },
        ),
    )
    respx_mock.get(f"{base}/9/commits").mock(
        return_value=Response(200, json={"isLastPage": True, "values": [{"id": "c1"}]}),
    )
    respx_mock.get(f"{base}/9/diff").mock(
        return_value=Response(
            302,
            headers={"Location": "https://bitbucket.example.com/rest/api/1.0/raw-diff/9"},
        ),
    )
    respx_mock.get("https://bitbucket.example.com/rest/api/1.0/raw-diff/9").mock(
        return_value=Response(
            200,
            json={
                "diffs": [
                    {
                        "source": {"toString": "a.py"},
                        "destination": {"toString": "a.py"},
                        "hunks": [
                            {
                                "segments": [
                                    {"type": "REMOVED", "lines": [{"source": 3, "destination": 3}]},
                                    {"type": "ADDED", "lines": [{"source": 3, "destination": 3}]},
                                ],
                            },
                        ],
                    },
                ],
            },
        ),
    )

    adapter = BitbucketServerAdapter(settings)
    records = await adapter.fetch_merge_requests("cfg-1", SERVER_REPO, "main", CREDENTIAL, SINCE, UNTIL)

    assert len(records) == 1
    record = records[0]
    assert record.state is MergeRequestState.CLOSED
    assert record.reviewers == ["bob"]
    assert record.picked_for_review_on == pendulum.from_timestamp((_millis("2024-01-11") + 5000) / 1000, tz="UTC")
    assert (record.lines_changed, record.commit_count, record.files_changed) == (2, 1, 1)
    assert record.url == "https://bitbucket.example.com/pr/9"


@pytest.mark.asyncio
async def test_fetch_commit_diff_follows_redirect(settings: ScannerSettings, respx_mock: MockRouter) -> None:
    """Cloud diff downloads follow a single absolute redirect."""
    respx_mock.get(f"{CLOUD_API}/repositories/ws/repo/diff/abc").mock(
        return_value=Response(302, headers={"Location": "https://bbuseruploads.example.com/diff/abc"}),
    )
    respx_mock.get("https://bbuseruploads.example.com/diff/abc").mock(return_value=Response(200, text="diff content"))

    adapter = BitbucketCloudAdapter(settings)

    assert await adapter.fetch_commit_diff(CLOUD_REPO, CREDENTIAL, "abc") == "diff content"


@pytest.mark.asyncio
async def test_server_commit_keeps_record_when_diff_is_unreadable(
    settings: ScannerSettings,
    respx_mock: MockRouter,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A diff body that is not a JSON diff object leaves the commit without file changes."""
    caplog.set_level(logging.WARNING)
    commits_path = f"{SERVER_API}/projects/PROJ/repos/repo/commits"
    respx_mock.get(commits_path).mock(
        return_value=Response(
            200,
            json={
                "values": [
                    _server_commit(3, "2024-01-17"),
                    _server_commit(2, "2024-01-16"),
                    _server_commit(1, "2024-01-15"),
                ],
                "isLastPage": True,
            },
        ),
    )
    respx_mock.get(f"{commits_path}/h1/diff").mock(return_value=Response(200, json={"diffs": []}))
    respx_mock.get(f"{commits_path}/h2/diff").mock(
        return_value=Response(302, headers={"Location": "https://bitbucket.example.com/rest/api/1.0/raw/h2"}),
    )
    respx_mock.get("https://bitbucket.example.com/rest/api/1.0/raw/h2").mock(
        return_value=Response(200, text="diff content"),
    )
    respx_mock.get(f"{commits_path}/h3/diff").mock(return_value=Response(200, json=[]))

    adapter = BitbucketServerAdapter(settings)
    commits = await adapter.fetch_commits(SERVER_REPO, None, CREDENTIAL, SINCE, UNTIL)

    assert [commit.sha for commit in commits] == ["h3", "h2", "h1"]
    assert all(commit.file_changes == [] for commit in commits)
    warnings = [record.message for record in caplog.records if "Ignoring unreadable diff" in record.message]
    assert len(warnings) == 2


@pytest.mark.asyncio
async def test_server_commit_without_id_is_skipped(
    settings: ScannerSettings,
    respx_mock: MockRouter,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """One malformed commit is dropped with a warning while the rest of the page survives."""
    caplog.set_level(logging.WARNING)
    broken = _server_commit(9, "2024-01-16")
    del broken["id"]
    respx_mock.get(f"{SERVER_API}/projects/PROJ/repos/repo/commits").mock(
        return_value=Response(200, json={"values": [broken, _server_commit(1, "2024-01-15")], "isLastPage": True}),
    )
    respx_mock.get(f"{SERVER_API}/projects/PROJ/repos/repo/commits/h1/diff").mock(
        return_value=Response(200, json={"diffs": []}),
    )

    adapter = BitbucketServerAdapter(settings)
    commits = await adapter.fetch_commits(SERVER_REPO, None, CREDENTIAL, SINCE, UNTIL)

    assert [commit.sha for commit in commits] == ["h1"]
    assert any("Skipping malformed bitbucket_server commit" in record.message for record in caplog.records)


def _cloud_pull_request(pull_id: int, state: str, target: str, updated: str) -> dict[str, Any]:
    return {
        "id": pull_id,
        "title": f"Change {pull_id}",
        "state": state,
        "author": {"nickname": "alice", "display_name": "Alice"},
        "reviewers": [{"nickname": "bob"}],
        "participants": [
            {"user": {"nickname": "alice"}, "role": "PARTICIPANT", "participated_on": "2024-01-11T09:00:00+00:00"},
            {"user": {"nickname": "carol"}, "role": "REVIEWER", "participated_on": "2024-01-11T12:00:00+00:00"},
            {"user": {"nickname": "bob"}, "role": "REVIEWER", "participated_on": "2024-01-11T15:00:00+00:00"},
        ],
        "source": {"branch": {"name": f"feature-{pull_id}"}},
        "destination": {"branch": {"name": target}},
        "created_on": "2024-01-11T08:00:00+00:00",
        "updated_on": updated,
    }


@pytest.mark.asyncio
async def test_cloud_pull_requests_request_every_state(
    settings: ScannerSettings,
    respx_mock: MockRouter,
) -> None:
    """Cloud pull requests ask for each state, map closed states and sum the diffstat."""
    pulls = respx_mock.get(f"{CLOUD_API}/repositories/ws/repo/pullrequests").mock(
        return_value=Response(
            200,
            json={
                "values": [
                    _cloud_pull_request(3, "OPEN", "develop", "2024-01-14T10:00:00+00:00"),
                    _cloud_pull_request(2, "SUPERSEDED", "main", "2024-01-13T10:00:00+00:00"),
                    _cloud_pull_request(1, "DECLINED", "main", "2024-01-12T10:00:00+00:00"),
                ],
            },
        ),
    )
    respx_mock.get(url__regex=rf"{CLOUD_API}/repositories/ws/repo/pullrequests/\d/diffstat").mock(
        return_value=Response(
            200,
            json={"values": [{"lines_added": 3, "lines_removed": 1}, {"lines_added": 2, "lines_removed": 0}]},
        ),
    )
    respx_mock.get(url__regex=rf"{CLOUD_API}/repositories/ws/repo/pullrequests/\d/commits").mock(
        return_value=Response(200, json={"values": [{"hash": "c1"}, {"hash": "c2"}]}),
    )

    adapter = BitbucketCloudAdapter(settings)
    records = await adapter.fetch_merge_requests("cfg-1", CLOUD_REPO, "main", CREDENTIAL, SINCE, UNTIL)

    params = pulls.calls.last.request.url.params
    assert params.get_list("state") == ["OPEN", "MERGED", "DECLINED", "SUPERSEDED"]
    assert params["sort"] == "-updated_on"
    assert [record.external_id for record in records] == ["2", "1"]
    assert all(record.state is MergeRequestState.CLOSED for record in records)
    declined = records[1]
    assert declined.merged_at is None
    assert declined.closed_at == pendulum.datetime(2024, 1, 12, 10, tz="UTC")
    assert declined.reviewers == ["bob", "carol"]
    assert declined.picked_for_review_on == pendulum.datetime(2024, 1, 11, 12, tz="UTC")
    assert (declined.added_lines, declined.removed_lines, declined.lines_changed) == (5, 1, 6)
    assert (declined.files_changed, declined.commit_count) == (2, 2)
    assert declined.target_branch == "main"


def test_split_raw_author() -> None:
    """Raw author strings split into name and email."""
    assert split_raw_author("Alice Smith <alice@example.com>") == ("Alice Smith", "alice@example.com")
    assert split_raw_author("alice") == ("alice", None)
    assert split_raw_author(None) == (None, None)


def test_parse_server_diff_handles_added_files() -> None:
    """A diff without a source is an added file."""
    changes = parse_server_diff(
        '{"diffs": [{"source": null, "destination": {"toString": "new.py"}, "hunks": []}]}',
        "bitbucket_server",
    )

    assert [(change.path, change.change_type) for change in changes] == [("new.py", "ADDED")]


@pytest.mark.parametrize(
    "text",
    [
        "[]",
        "diff content",
        '{"diffs": {"source": null}}',
        '{"diffs": [{"destination": {"toString": "a.py"}, "hunks": ["not a hunk"]}]}',
    ],
)
def test_parse_server_diff_rejects_malformed_bodies(text: str) -> None:
    """Bodies that are not a JSON diff document raise PlatformApiError."""
    with pytest.raises(PlatformApiError):
        parse_server_diff(text, "bitbucket_server")
