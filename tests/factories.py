"""Factories for constructing common domain objects in tests."""

from __future__ import annotations

from typing import Any

import pendulum
from pydantic import SecretStr

from scmscan.models import (
    CommitRecord,
    Credential,
    MergeRequestRecord,
    MergeRequestState,
    ScanRequest,
    ToolType,
    UserRecord,
)

REFERENCE = pendulum.datetime(2024, 6, 1, tz="UTC")


def build_request(**overrides: Any) -> ScanRequest:
    """Create a GitHub scan request with a fixed since date."""
    values: dict[str, Any] = {
        "repository_url": "https://github.com/octo/widgets",
        "repository_name": "octo/widgets",
        "branch_name": "main",
        "credential": Credential(username="octo", token=SecretStr("token")),
        "tool_type": ToolType.GITHUB,
        "config_id": "cfg-1",
        "since": pendulum.datetime(2024, 5, 1, tz="UTC"),
    }
    values.update(overrides)
    return ScanRequest(**values)


def build_commit(sha: str = "abc123", **overrides: Any) -> CommitRecord:
    """Create a commit authored by alice."""
    values: dict[str, Any] = {
        "config_id": "cfg-1",
        "sha": sha,
        "message": "Fix widget rendering",
        "author_username": "alice",
        "author_name": "Alice",
        "author_email": "alice@example.com",
        "committer_name": "Alice",
        "committer_email": "alice@example.com",
        "committed_at": REFERENCE.subtract(days=2),
        "added_lines": 10,
        "removed_lines": 2,
        "changed_lines": 12,
        "parent_shas": ["parent1"],
        "is_merge_commit": False,
        "branch_name": "main",
    }
    values.update(overrides)
    return CommitRecord(**values)


def build_merge_request(external_id: str = "42", **overrides: Any) -> MergeRequestRecord:
    """Create an open merge request authored by alice and reviewed by bob."""
    values: dict[str, Any] = {
        "config_id": "cfg-1",
        "external_id": external_id,
        "title": "Refactor service module",
        "state": MergeRequestState.OPEN,
        "source_branch": "feature",
        "target_branch": "main",
        "author_username": "alice",
        "author_name": "Alice",
        "author_email": "alice@example.com",
        "reviewers": ["bob"],
        "created_on": REFERENCE.subtract(days=3),
        "updated_on": REFERENCE.subtract(days=1),
    }
    values.update(overrides)
    return MergeRequestRecord(**values)


def build_user(username: str = "alice", **overrides: Any) -> UserRecord:
    """Create an active repository-scoped user."""
    values: dict[str, Any] = {
        "repository_name": "octo/widgets",
        "username": username,
        "display_name": username.title(),
        "email": f"{username}@example.com",
        "active": True,
    }
    values.update(overrides)
    return UserRecord(**values)
