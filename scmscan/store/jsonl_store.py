"""JSONL-backed record store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Generic, TypeVar

import orjson
from pydantic import BaseModel, ValidationError

from ..errors import DuplicateKeyError
from ..models import CommitRecord, MergeRequestRecord, MergeRequestState, UserRecord

LOGGER = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class _JsonlCollection(Generic[RecordT]):
    """One JSONL file of records indexed by natural key."""

    def __init__(self, path: Path, model: type[RecordT], key: Callable[[RecordT], str]) -> None:
        self._path = path
        self._model = model
        self._key = key
        self._records: dict[str, RecordT] = {}
        self._load()

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[RecordT]:
        return iter(self._records.values())

    def _load(self) -> None:
        if not self._path.exists():
            return
        with self._path.open("rb") as handle:
            for index, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    payload = orjson.loads(line)
                except orjson.JSONDecodeError as error:
                    LOGGER.warning("Skipping invalid JSON store line %s:%s: %s", self._path, index, error)
                    continue
                try:
                    record = self._model.model_validate(payload)
                except ValidationError as error:
                    LOGGER.warning("Skipping invalid store record %s:%s: %s", self._path, index, error)
                    continue
                self._records[self._key(record)] = record

    def get(self, key: str) -> RecordT | None:
        record = self._records.get(key)
        return record.model_copy(deep=True) if record is not None else None

    def insert(self, record: RecordT) -> RecordT:
        key = self._key(record)
        if key in self._records:
            raise DuplicateKeyError(self._path.stem, key)
        self._records[key] = record.model_copy(deep=True)
        return record

    def replace(self, record: RecordT) -> RecordT:
        self._records[self._key(record)] = record.model_copy(deep=True)
        return record

    def flush(self) -> None:
        ordered = sorted(self._records.items())
        with self._path.open("wb") as handle:
            for _, record in ordered:
                handle.write(orjson.dumps(record.model_dump(mode="json", exclude_none=True)))
                handle.write(b"\n")


def _user_key(user: UserRecord) -> str:
    return user.natural_key()


def _email_key(repository_name: str | None, email: str) -> str:
    return f"{repository_name}#{email.lower()}"


class JsonlScanStore:
    """Persist users, commits and merge requests as JSONL files."""

    def __init__(self, store_dir: Path) -> None:
        """Load existing records from ``store_dir``, creating it when missing."""
        self._dir = Path(store_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._users = _JsonlCollection(self._dir / "users.jsonl", UserRecord, _user_key)
        self._commits = _JsonlCollection(self._dir / "commits.jsonl", CommitRecord, CommitRecord.natural_key)
        self._merge_requests = _JsonlCollection(
            self._dir / "merge_requests.jsonl",
            MergeRequestRecord,
            MergeRequestRecord.natural_key,
        )
        self._user_emails: dict[str, str] = {}
        for user in self._users:
            self._index_email(user)

    @property
    def path(self) -> Path:
        return self._dir

    def counts(self) -> dict[str, int]:
        return {
            "users": len(self._users),
            "commits": len(self._commits),
            "merge_requests": len(self._merge_requests),
        }

    def _index_email(self, user: UserRecord) -> None:
        if user.email:
            self._user_emails.setdefault(_email_key(user.repository_name, user.email), user.natural_key())

    def _unindex_email(self, user: UserRecord) -> None:
        if not user.email:
            return
        email_key = _email_key(user.repository_name, user.email)
        if self._user_emails.get(email_key) != user.natural_key():
            return
        del self._user_emails[email_key]
        for other in self._users:
            if other.natural_key() == user.natural_key() or not other.email:
                continue
            if _email_key(other.repository_name, other.email) == email_key:
                self._user_emails[email_key] = other.natural_key()
                break

    def find_user_by_username(self, repository_name: str, username: str) -> UserRecord | None:
        return self._users.get(f"{repository_name}#{username}")

    def find_user_by_email(self, repository_name: str, email: str) -> UserRecord | None:
        key = self._user_emails.get(_email_key(repository_name, email))
        return self._users.get(key) if key is not None else None

    def insert_user(self, user: UserRecord) -> UserRecord:
        self._users.insert(user)
        self._index_email(user)
        return user

    def replace_user(self, user: UserRecord) -> UserRecord:
        previous = self._users.get(user.natural_key())
        if previous is not None:
            self._unindex_email(previous)
        self._users.replace(user)
        self._index_email(user)
        return user

    def find_commit(self, config_id: str, sha: str) -> CommitRecord | None:
        return self._commits.get(f"{config_id}#{sha}")

    def insert_commit(self, commit: CommitRecord) -> CommitRecord:
        return self._commits.insert(commit)

    def replace_commit(self, commit: CommitRecord) -> CommitRecord:
        return self._commits.replace(commit)

    def find_merge_request(self, config_id: str, external_id: str) -> MergeRequestRecord | None:
        return self._merge_requests.get(f"{config_id}#{external_id}")

    def find_merge_requests_by_state(
        self,
        config_id: str,
        state: MergeRequestState,
        page: int,
        size: int,
    ) -> tuple[list[MergeRequestRecord], bool]:
        """Return one zero-based page of merge requests in a state."""
        matching = sorted(
            (
                record
                for record in self._merge_requests
                if record.config_id == config_id and record.state == state
            ),
            key=lambda record: record.natural_key(),
        )
        start = page * size
        window = matching[start : start + size]
        return [record.model_copy(deep=True) for record in window], start + size < len(matching)

    def insert_merge_request(self, merge_request: MergeRequestRecord) -> MergeRequestRecord:
        return self._merge_requests.insert(merge_request)

    def replace_merge_request(self, merge_request: MergeRequestRecord) -> MergeRequestRecord:
        return self._merge_requests.replace(merge_request)

    def flush(self) -> None:
        """Write every collection back to disk sorted by natural key."""
        self._users.flush()
        self._commits.flush()
        self._merge_requests.flush()
        LOGGER.debug("Flushed store to %s", self._dir)
