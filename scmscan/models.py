"""Pydantic models describing scan requests, results and stored records."""

from datetime import datetime
from enum import StrEnum
from typing import Any

import pendulum
from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


class ToolType(StrEnum):
    """Hosting tool named by a scan request."""

    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    AZURE = "azure"


class Platform(StrEnum):
    """Concrete platform API variant an adapter talks to."""

    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET_CLOUD = "bitbucket_cloud"
    BITBUCKET_SERVER = "bitbucket_server"
    AZURE = "azure"


class MergeRequestState(StrEnum):
    """Tri-state lifecycle of a merge request."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    MERGED = "MERGED"


class Credential(BaseModel):
    """Username and token pair supplied by the credential store."""

    model_config = ConfigDict(frozen=True)

    username: str | None = None
    token: SecretStr = SecretStr("")


class RepoInfo(BaseModel):
    """Repository coordinates derived from a repository URL."""

    model_config = ConfigDict(frozen=True)

    platform: Platform
    owner: str
    name: str
    namespace: str
    original_url: str
    is_cloud: bool = True

    @property
    def full_name(self) -> str:
        """Return ``namespace/name`` as used in platform API paths."""
        return f"{self.namespace}/{self.name}"


class ScanRequest(BaseModel):
    """Immutable description of one repository scan."""

    model_config = ConfigDict(frozen=True)

    repository_url: str
    repository_name: str | None = None
    branch_name: str | None = None
    credential: Credential = Field(default_factory=Credential)
    tool_type: ToolType
    config_id: str
    clone_enabled: bool = False
    since: datetime | None = None
    until: datetime | None = None
    last_scan_from: int | None = None
    limit: int = Field(default=0, ge=0)
    commit_fetch_strategy: str | None = None

    @model_validator(mode="after")
    def _require_repository_url(self) -> "ScanRequest":
        if not self.repository_url.strip():
            msg = "repository_url must not be empty"
            raise ValueError(msg)
        if not self.config_id.strip():
            msg = "config_id must not be empty"
            raise ValueError(msg)
        return self

    def effective_since(self, first_scan_from_months: int, now: datetime | None = None) -> datetime:
        """Return the window start: watermark, then since, then N months back."""
        if self.last_scan_from is not None:
            return pendulum.from_timestamp(self.last_scan_from / 1000, tz="UTC")
        if self.since is not None:
            return pendulum.instance(self.since, tz="UTC")
        current = pendulum.instance(now, tz="UTC") if now is not None else pendulum.now("UTC")
        return current.subtract(months=first_scan_from_months)

    def display_name(self) -> str:
        """Return the repository name, or the URL when no name was given."""
        return self.repository_name or self.repository_url


class ScanResult(BaseModel):
    """Summary of a single repository scan."""

    model_config = ConfigDict(frozen=True)

    repository_url: str
    repository_name: str | None = None
    start_time: datetime
    end_time: datetime
    duration_ms: int
    commits_found: int = 0
    merge_requests_found: int = 0
    users_found: int = 0
    success: bool = True
    error_message: str | None = None


class FileChange(BaseModel):
    """Per-file statistics of a commit."""

    path: str
    change_type: str = "MODIFIED"
    added_lines: int = 0
    removed_lines: int = 0
    binary: bool = False
    changed_line_numbers: list[int] = Field(default_factory=list)


class UserRecord(BaseModel):
    """Repository-scoped contributor identity."""

    id: str | None = None
    repository_name: str | None = None
    username: str | None = None
    display_name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    profile_url: str | None = None
    bio: str | None = None
    company: str | None = None
    location: str | None = None
    active: bool | None = None
    bot: bool | None = None
    external_id: str | None = None
    last_seen_at: datetime | None = None
    platform_metadata: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def natural_key(self) -> str:
        return f"{self.repository_name}#{self.username}"


class CommitRecord(BaseModel):
    """Commit as reported by a platform adapter or a clone walk."""

    id: str | None = None
    config_id: str | None = None
    sha: str
    message: str | None = None
    author_username: str | None = None
    author_name: str | None = None
    author_email: str | None = None
    committer_name: str | None = None
    committer_email: str | None = None
    author_id: str | None = None
    committer_id: str | None = None
    committed_at: datetime | None = None
    added_lines: int | None = None
    removed_lines: int | None = None
    changed_lines: int | None = None
    files_changed: int | None = None
    file_changes: list[FileChange] | None = None
    parent_shas: list[str] | None = None
    is_merge_commit: bool | None = None
    branch_name: str | None = None
    repository_name: str | None = None
    url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def natural_key(self) -> str:
        return f"{self.config_id}#{self.sha}"


class MergeRequestRecord(BaseModel):
    """Merge or pull request as reported by a platform adapter."""

    id: str | None = None
    config_id: str | None = None
    external_id: str | None = None
    title: str | None = None
    description: str | None = None
    state: MergeRequestState | None = None
    source_branch: str | None = None
    target_branch: str | None = None
    author_username: str | None = None
    author_name: str | None = None
    author_email: str | None = None
    author_id: str | None = None
    reviewers: list[str] | None = None
    reviewer_ids: list[str] | None = None
    created_on: datetime | None = None
    updated_on: datetime | None = None
    merged_at: datetime | None = None
    closed_at: datetime | None = None
    picked_for_review_on: datetime | None = None
    lines_changed: int | None = None
    added_lines: int | None = None
    removed_lines: int | None = None
    commit_count: int | None = None
    files_changed: int | None = None
    is_draft: bool | None = None
    url: str | None = None
    repository_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def natural_key(self) -> str:
        return f"{self.config_id}#{self.external_id}"
