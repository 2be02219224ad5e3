"""Commit fetch strategies and the selection policy between them."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote, urlsplit, urlunsplit

from .dates import isoformat, parse_timestamp_or_none
from .diffs import is_binary_path
from .errors import NoStrategyAvailable, PlatformApiError
from .models import CommitRecord, FileChange, RepoInfo, ScanRequest, ToolType
from .urls import detect_tool_type, resolve_platform

if TYPE_CHECKING:
    from .adapters import AdapterRegistry
    from .config import ScannerSettings

LOGGER = logging.getLogger(__name__)

REST_STRATEGY = "rest_api"
CLONE_STRATEGY = "clone"

_RECORD_SEPARATOR = "\x1e"
_FIELD_SEPARATOR = "\x1f"
_LOG_FORMAT = _RECORD_SEPARATOR + _FIELD_SEPARATOR.join(["%H", "%P", "%an", "%ae", "%cn", "%ce", "%cI", "%B"]) + _FIELD_SEPARATOR


class CommitFetchStrategy(ABC):
    """A way of obtaining the commits of a repository."""

    name: str
    tool_types: frozenset[ToolType]

    def supports(self, repository_url: str, tool_type: ToolType | None) -> bool:
        """Match on tool type, falling back to URL substrings when it is absent."""
        if tool_type is not None:
            return tool_type in self.tool_types
        detected = detect_tool_type(repository_url)
        return detected is not None and detected in self.tool_types

    @abstractmethod
    async def fetch_commits(self, request: ScanRequest, repo: RepoInfo, since: datetime) -> list[CommitRecord]:
        """Return commits of the requested branch since ``since``."""


class RestApiCommitStrategy(CommitFetchStrategy):
    """Fetch commits through the platform adapter."""

    name = REST_STRATEGY
    tool_types = frozenset({ToolType.GITHUB, ToolType.GITLAB, ToolType.BITBUCKET, ToolType.AZURE})

    def __init__(self, adapters: "AdapterRegistry") -> None:
        self._adapters = adapters

    def supports(self, repository_url: str, tool_type: ToolType | None) -> bool:
        if not super().supports(repository_url, tool_type):
            return False
        effective = tool_type or detect_tool_type(repository_url)
        if effective is None:
            return False
        try:
            return self._adapters.supports(resolve_platform(effective, repository_url))
        except ValueError:
            return False

    async def fetch_commits(self, request: ScanRequest, repo: RepoInfo, since: datetime) -> list[CommitRecord]:
        adapter = self._adapters.get(repo.platform)
        commits = await adapter.fetch_commits(repo, request.branch_name, request.credential, since, request.until)
        return [commit.model_copy(update={"config_id": request.config_id}) for commit in commits]


class CloneCommitStrategy(CommitFetchStrategy):
    """Walk a local clone of the repository with ``git log --numstat``."""

    name = CLONE_STRATEGY
    tool_types = frozenset({ToolType.GITHUB, ToolType.GITLAB, ToolType.BITBUCKET, ToolType.AZURE})

    def __init__(self, settings: "ScannerSettings", *, git_binary: str = "git") -> None:
        self._clone_dir = Path(settings.clone_dir)
        self._git = git_binary

    async def _git_command(
        self,
        *args: str,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        secrets: tuple[str, ...] = (),
    ) -> str:
        process = await asyncio.create_subprocess_exec(
            self._git,
            *args,
            cwd=str(cwd) if cwd else None,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0", **(env or {})},
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            for secret in secrets:
                message = message.replace(secret, "***")
            command = args[0] if args else "git"
            raise PlatformApiError("git", f"git {command} exited with {process.returncode}: {message}")
        return stdout.decode("utf-8", errors="replace")

    @staticmethod
    def _remote_url(request: ScanRequest) -> str:
        """Return the repository URL with any embedded user info removed."""
        parts = urlsplit(request.repository_url)
        host = parts.netloc.rpartition("@")[2]
        return urlunsplit((parts.scheme, host, parts.path, parts.query, ""))

    @staticmethod
    def _credentials(request: ScanRequest) -> tuple[dict[str, str], tuple[str, ...]]:
        """Return the git environment carrying the auth header and the values to redact.

        The header travels through ``GIT_CONFIG_*`` variables so it never lands
        in the clone's config file or on the command line.
        """
        token = request.credential.token.get_secret_value()
        if not token:
            return {}, ()
        username = request.credential.username or "oauth2"
        encoded = base64.b64encode(f"{username}:{token}".encode()).decode("ascii")
        env = {
            "GIT_CONFIG_COUNT": "1",
            "GIT_CONFIG_KEY_0": "http.extraHeader",
            "GIT_CONFIG_VALUE_0": f"Authorization: Basic {encoded}",
        }
        return env, (token, quote(token, safe=""), encoded)

    async def _prepare_clone(self, request: ScanRequest) -> Path:
        target = self._clone_dir / f"{request.config_id}.git"
        url = self._remote_url(request)
        env, secrets = self._credentials(request)
        if target.exists():
            LOGGER.debug("Fetching existing clone for %s", request.display_name())
            await self._git_command("remote", "set-url", "origin", url, cwd=target, secrets=secrets)
            await self._git_command(
                "fetch",
                "--prune",
                "origin",
                "+refs/heads/*:refs/heads/*",
                cwd=target,
                env=env,
                secrets=secrets,
            )
        else:
            LOGGER.info("Cloning %s", request.display_name())
            target.parent.mkdir(parents=True, exist_ok=True)
            await self._git_command("clone", "--bare", url, str(target), env=env, secrets=secrets)
        return target

    async def fetch_commits(self, request: ScanRequest, repo: RepoInfo, since: datetime) -> list[CommitRecord]:
        clone = await self._prepare_clone(request)
        args = ["log", "--numstat", f"--format={_LOG_FORMAT}", f"--since={isoformat(since)}"]
        if request.until is not None:
            args.append(f"--until={isoformat(request.until)}")
        args.append(request.branch_name or "--all")
        output = await self._git_command(*args, cwd=clone)
        commits = [
            commit.model_copy(update={"config_id": request.config_id})
            for commit in parse_git_log(output, request.branch_name, repo.full_name)
        ]
        LOGGER.info("Walked %s commit(s) from clone of %s", len(commits), repo.full_name)
        return commits


def parse_git_log(output: str, branch: str | None, repository_name: str) -> list[CommitRecord]:
    """Parse ``git log --numstat`` output produced with the clone log format."""
    commits: list[CommitRecord] = []
    for chunk in output.split(_RECORD_SEPARATOR):
        if not chunk.strip():
            continue
        fields = chunk.split(_FIELD_SEPARATOR)
        if len(fields) < 9:
            LOGGER.warning("Skipping malformed git log entry: %r", chunk[:80])
            continue
        sha, parents, author_name, author_email, committer_name, committer_email, date, body = fields[:8]
        file_changes = [_numstat_change(line) for line in fields[8].splitlines() if line.strip()]
        added = sum(change.added_lines for change in file_changes)
        removed = sum(change.removed_lines for change in file_changes)
        parent_shas = parents.split()
        commits.append(
            CommitRecord(
                sha=sha.strip(),
                message=body.strip(),
                author_name=author_name or None,
                author_email=author_email or None,
                committer_name=committer_name or None,
                committer_email=committer_email or None,
                committed_at=parse_timestamp_or_none(date),
                added_lines=added,
                removed_lines=removed,
                changed_lines=added + removed,
                files_changed=len(file_changes),
                file_changes=file_changes,
                parent_shas=parent_shas,
                is_merge_commit=len(parent_shas) > 1,
                branch_name=branch,
                repository_name=repository_name,
            )
        )
    return commits


def _numstat_change(line: str) -> FileChange:
    added, removed, path = line.split("\t", 2)
    binary = added == "-" and removed == "-"
    if " => " in path:
        change_type = "RENAMED"
        path = _renamed_target(path)
    else:
        change_type = "MODIFIED"
    return FileChange(
        path=path,
        change_type=change_type,
        added_lines=0 if binary else int(added),
        removed_lines=0 if binary else int(removed),
        binary=binary or is_binary_path(path),
    )


def _renamed_target(path: str) -> str:
    if "{" in path and "}" in path:
        prefix, _, rest = path.partition("{")
        inner, _, suffix = rest.partition("}")
        target = inner.split(" => ", 1)[1]
        return (prefix + target + suffix).replace("//", "/")
    return path.split(" => ", 1)[1]


def select_strategy(request: ScanRequest, strategies: Mapping[str, CommitFetchStrategy]) -> CommitFetchStrategy:
    """Pick the commit fetch strategy for a request.

    An explicitly named strategy wins when it exists and supports the
    repository. Otherwise the clone strategy is used when cloning is enabled,
    else the REST strategy. As a last resort the first registered strategy
    that supports the repository is returned.
    """
    url, tool_type = request.repository_url, request.tool_type
    if request.commit_fetch_strategy:
        named = strategies.get(request.commit_fetch_strategy)
        if named is not None and named.supports(url, tool_type):
            LOGGER.debug("Using requested strategy %s", named.name)
            return named
        LOGGER.debug("Requested strategy %s is unavailable; falling back", request.commit_fetch_strategy)

    preferred = strategies.get(CLONE_STRATEGY if request.clone_enabled else REST_STRATEGY)
    if preferred is not None and preferred.supports(url, tool_type):
        LOGGER.debug("Using %s strategy", preferred.name)
        return preferred

    for strategy in strategies.values():
        if strategy.supports(url, tool_type):
            LOGGER.debug("Using fallback strategy %s", strategy.name)
            return strategy
    msg = f"No commit fetch strategy supports {request.display_name()} ({tool_type.value})"
    raise NoStrategyAvailable(msg)
