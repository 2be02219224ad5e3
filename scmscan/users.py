"""Extraction and resolution of repository-scoped contributor identities."""

from __future__ import annotations

import logging

from .errors import UserPersistenceError
from .models import CommitRecord, MergeRequestRecord, UserRecord
from .persistence import PersistenceGateway

LOGGER = logging.getLogger(__name__)


class UserResolver:
    """Turn commit and merge request identities into stored user records."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    def extract_users(
        self,
        commits: list[CommitRecord],
        merge_requests: list[MergeRequestRecord],
        repository_name: str,
    ) -> list[UserRecord]:
        """Collect unique candidate users from commit authors, MR authors and reviewers."""
        candidates: list[UserRecord] = []
        for commit in commits:
            candidates.append(
                UserRecord(
                    repository_name=repository_name,
                    username=commit.author_username or commit.author_name,
                    display_name=commit.author_name,
                    email=commit.author_email,
                    active=True,
                )
            )
        for merge_request in merge_requests:
            candidates.append(
                UserRecord(
                    repository_name=repository_name,
                    username=merge_request.author_username,
                    display_name=merge_request.author_name,
                    email=merge_request.author_email,
                    active=True,
                )
            )
            for reviewer in merge_request.reviewers or []:
                candidates.append(UserRecord(repository_name=repository_name, username=reviewer, active=True))
        return _unique(candidates)

    def resolve(self, users: list[UserRecord]) -> dict[str, UserRecord]:
        """Persist candidates and map each username to its stored record.

        Candidates without a username or email are skipped. A user that cannot
        be persisted is logged and left out of the mapping.
        """
        resolved: dict[str, UserRecord] = {}
        skipped = 0
        for candidate in _unique(users):
            if candidate.username is None or candidate.email is None:
                skipped += 1
                continue
            try:
                saved = self._gateway.upsert_user(candidate)
            except UserPersistenceError as exc:
                LOGGER.warning("Skipping user %s: %s", candidate.username, exc)
                continue
            resolved[candidate.username] = saved
        if skipped:
            LOGGER.debug("Skipped %s user candidate(s) without username or email", skipped)
        LOGGER.info("Resolved %s user(s)", len(resolved))
        return resolved


def _unique(users: list[UserRecord]) -> list[UserRecord]:
    seen: dict[str, UserRecord] = {}
    for user in users:
        seen.setdefault(user.model_dump_json(), user)
    return list(seen.values())
