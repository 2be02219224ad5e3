"""Idempotent upserts of users, commits and merge requests."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

import pendulum
from pydantic import BaseModel

from .errors import DataProcessingError, DuplicateKeyError, UserPersistenceError
from .models import CommitRecord, MergeRequestRecord, MergeRequestState, UserRecord
from .store import ScanStore

LOGGER = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

_BOOKKEEPING_FIELDS = frozenset({"id", "created_at", "updated_at"})
_USER_KEY_FIELDS = frozenset({"repository_name", "username"})


def merge_non_null(target: RecordT, source: BaseModel, *, keep: frozenset[str] = frozenset()) -> RecordT:
    """Copy every non-null field of ``source`` onto ``target``.

    Storage identity, bookkeeping timestamps and the ``keep`` fields are never
    overwritten.
    """
    for name in type(source).model_fields:
        if name in _BOOKKEEPING_FIELDS or name in keep:
            continue
        value = getattr(source, name)
        if value is not None:
            setattr(target, name, value)
    return target


def _new_id() -> str:
    return uuid.uuid4().hex


class PersistenceGateway:
    """Upsert records by natural key with field-level merge on update."""

    def __init__(self, store: ScanStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or (lambda: pendulum.now("UTC"))

    @property
    def store(self) -> ScanStore:
        return self._store

    def _upsert(
        self,
        record: RecordT,
        find: Callable[[], RecordT | None],
        insert: Callable[[RecordT], RecordT],
        replace: Callable[[RecordT], RecordT],
        describe: str,
    ) -> RecordT:
        now = self._clock()
        existing = find()
        if existing is None:
            created = record.model_copy(deep=True, update={"id": _new_id(), "created_at": now, "updated_at": now})
            try:
                return insert(created)
            except DuplicateKeyError as exc:
                LOGGER.debug("Concurrent insert of %s; merging into the winner", describe)
                existing = find()
                if existing is None:
                    msg = f"{describe} vanished after a duplicate key error"
                    raise DataProcessingError(msg, exc) from exc
        merged = merge_non_null(existing, record).model_copy(update={"updated_at": now})
        return replace(merged)

    def upsert_commits(self, commits: list[CommitRecord]) -> list[CommitRecord]:
        """Insert or merge commits keyed on ``(config_id, sha)``."""
        saved = [
            self._upsert(
                commit,
                lambda commit=commit: self._store.find_commit(str(commit.config_id), commit.sha),
                self._store.insert_commit,
                self._store.replace_commit,
                f"commit {commit.sha}",
            )
            for commit in commits
        ]
        LOGGER.info("Persisted %s commit(s)", len(saved))
        return saved

    def upsert_merge_requests(self, merge_requests: list[MergeRequestRecord]) -> list[MergeRequestRecord]:
        """Insert or merge merge requests keyed on ``(config_id, external_id)``."""
        saved: list[MergeRequestRecord] = []
        for merge_request in merge_requests:
            if merge_request.external_id is None:
                LOGGER.warning("Skipping merge request without external id: %s", merge_request.title)
                continue
            saved.append(
                self._upsert(
                    merge_request,
                    lambda mr=merge_request: self._store.find_merge_request(str(mr.config_id), str(mr.external_id)),
                    self._store.insert_merge_request,
                    self._store.replace_merge_request,
                    f"merge request {merge_request.external_id}",
                )
            )
        LOGGER.info("Persisted %s merge request(s)", len(saved))
        return saved

    def upsert_user(self, user: UserRecord) -> UserRecord:
        """Insert or merge a user keyed on repository and username, then email."""
        if user.repository_name is None or user.username is None:
            msg = "user records need a repository name and username"
            raise UserPersistenceError(msg)
        repository_name = user.repository_name
        username = user.username

        def find() -> UserRecord | None:
            existing = self._store.find_user_by_username(repository_name, username)
            if existing is None and user.email:
                existing = self._store.find_user_by_email(repository_name, user.email)
            return existing

        now = self._clock()
        existing = find()
        if existing is not None:
            merge_non_null(existing, user, keep=_USER_KEY_FIELDS)
            existing.updated_at = now
            return self._store.replace_user(existing)

        created = user.model_copy(deep=True)
        created.id = _new_id()
        created.created_at = now
        created.updated_at = now
        try:
            return self._store.insert_user(created)
        except DuplicateKeyError as exc:
            winner = self._store.find_user_by_username(repository_name, username)
            if winner is None:
                msg = f"could not create or resolve user {username!r} in {repository_name}"
                raise UserPersistenceError(msg) from exc
            return winner

    def find_or_create_user(
        self,
        repository_name: str,
        username: str,
        *,
        email: str | None = None,
        display_name: str | None = None,
    ) -> UserRecord:
        """Return the stored user for a username, creating a stub when absent."""
        existing = self._store.find_user_by_username(repository_name, username)
        if existing is not None:
            return existing
        return self.upsert_user(
            UserRecord(
                repository_name=repository_name,
                username=username,
                email=email,
                display_name=display_name,
                active=True,
            )
        )

    def find_user(self, repository_name: str, username: str) -> UserRecord | None:
        return self._store.find_user_by_username(repository_name, username)

    def find_open_merge_requests(self, config_id: str, page_size: int, max_pages: int) -> list[MergeRequestRecord]:
        """Load stored OPEN merge requests page by page up to ``max_pages``."""
        records: list[MergeRequestRecord] = []
        for page in range(max_pages):
            items, has_next = self._store.find_merge_requests_by_state(
                config_id,
                MergeRequestState.OPEN,
                page,
                page_size,
            )
            records.extend(items)
            if not has_next:
                break
        else:
            LOGGER.warning("Stopped loading open merge requests for %s after %s page(s)", config_id, max_pages)
        return records

    def flush(self) -> None:
        self._store.flush()
