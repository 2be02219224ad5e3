"""Annotate commits and merge requests with resolved user ids."""

from __future__ import annotations

import logging

from .errors import UserPersistenceError
from .models import CommitRecord, MergeRequestRecord, UserRecord
from .persistence import PersistenceGateway

LOGGER = logging.getLogger(__name__)


class _UserIndex:
    """Lookup of resolved users by username, email and display name."""

    def __init__(self, users: dict[str, UserRecord]) -> None:
        self._by_username = dict(users)
        self._by_email: dict[str, UserRecord] = {}
        self._by_name: dict[str, UserRecord] = {}
        for user in users.values():
            if user.email:
                self._by_email.setdefault(user.email.lower(), user)
            if user.display_name:
                self._by_name.setdefault(user.display_name, user)

    def find(self, username: str | None = None, email: str | None = None, name: str | None = None) -> UserRecord | None:
        if username and username in self._by_username:
            return self._by_username[username]
        if email and email.lower() in self._by_email:
            return self._by_email[email.lower()]
        if name:
            return self._by_username.get(name) or self._by_name.get(name)
        return None


def link_commits(
    commits: list[CommitRecord],
    users: dict[str, UserRecord],
    repository_name: str,
) -> list[CommitRecord]:
    index = _UserIndex(users)
    for commit in commits:
        commit.repository_name = repository_name
        author = index.find(commit.author_username, commit.author_email, commit.author_name)
        if author is not None:
            commit.author_id = author.id
        committer = index.find(None, commit.committer_email, commit.committer_name)
        if committer is not None:
            commit.committer_id = committer.id
    return commits


def link_merge_requests(
    merge_requests: list[MergeRequestRecord],
    users: dict[str, UserRecord],
    repository_name: str,
    gateway: PersistenceGateway,
) -> list[MergeRequestRecord]:
    """Link MR authors and reviewers, creating missing authors on the spot."""
    index = _UserIndex(users)
    for merge_request in merge_requests:
        merge_request.repository_name = repository_name
        author = index.find(merge_request.author_username, merge_request.author_email, merge_request.author_name)
        if author is None and merge_request.author_username:
            try:
                author = gateway.find_or_create_user(
                    repository_name,
                    merge_request.author_username,
                    email=merge_request.author_email,
                    display_name=merge_request.author_name,
                )
            except UserPersistenceError as exc:
                LOGGER.warning(
                    "Leaving merge request %s without author link: %s",
                    merge_request.external_id,
                    exc,
                )
        if author is not None:
            merge_request.author_id = author.id

        reviewer_ids: list[str] = []
        for reviewer in merge_request.reviewers or []:
            user = index.find(reviewer) or gateway.find_user(repository_name, reviewer)
            if user is not None and user.id and user.id not in reviewer_ids:
                reviewer_ids.append(user.id)
        merge_request.reviewer_ids = reviewer_ids
    return merge_requests
