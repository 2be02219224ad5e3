"""Storage contract honoured by every record store."""

from __future__ import annotations

from typing import Protocol

from ..models import CommitRecord, MergeRequestRecord, MergeRequestState, UserRecord


class ScanStore(Protocol):
    """Natural-key lookups plus insert/replace for scanned records.

    ``insert_*`` raises :class:`~scmscan.errors.DuplicateKeyError` when the
    natural key is already taken. Lookups return copies, so callers must call
    ``replace_*`` to make changes visible.
    """

    def find_user_by_username(self, repository_name: str, username: str) -> UserRecord | None: ...

    def find_user_by_email(self, repository_name: str, email: str) -> UserRecord | None: ...

    def insert_user(self, user: UserRecord) -> UserRecord: ...

    def replace_user(self, user: UserRecord) -> UserRecord: ...

    def find_commit(self, config_id: str, sha: str) -> CommitRecord | None: ...

    def insert_commit(self, commit: CommitRecord) -> CommitRecord: ...

    def replace_commit(self, commit: CommitRecord) -> CommitRecord: ...

    def find_merge_request(self, config_id: str, external_id: str) -> MergeRequestRecord | None: ...

    def find_merge_requests_by_state(
        self,
        config_id: str,
        state: MergeRequestState,
        page: int,
        size: int,
    ) -> tuple[list[MergeRequestRecord], bool]: ...

    def insert_merge_request(self, merge_request: MergeRequestRecord) -> MergeRequestRecord: ...

    def replace_merge_request(self, merge_request: MergeRequestRecord) -> MergeRequestRecord: ...

    def flush(self) -> None: ...
