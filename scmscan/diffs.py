"""Unified diff parsing used to derive per-file line statistics."""

from __future__ import annotations

import re

from .models import FileChange

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_DIFF_GIT = re.compile(r"^diff --git a/(.+) b/(.+)$")
_BINARY_SUFFIXES = (
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".pdf", ".zip", ".gz", ".tar",
    ".jar", ".class", ".exe", ".dll", ".so", ".dylib", ".woff", ".woff2", ".ttf",
)


def is_binary_path(path: str) -> bool:
    """Guess from the file extension whether a path holds binary content."""
    return path.lower().endswith(_BINARY_SUFFIXES)


def patch_line_stats(patch: str | None) -> tuple[int, int, list[int]]:
    """Count added and removed lines of one file patch.

    Returns ``(added, removed, changed_line_numbers)`` where line numbers refer
    to the new file for additions and the old file for removals.
    """
    if not patch:
        return 0, 0, []
    added = removed = 0
    changed: set[int] = set()
    old_line = new_line = 0
    in_hunk = False
    for line in patch.splitlines():
        header = _HUNK_HEADER.match(line)
        if header:
            old_line = int(header.group(1))
            new_line = int(header.group(3))
            in_hunk = True
            continue
        if not in_hunk:
            continue
        if line.startswith("+"):
            added += 1
            changed.add(new_line)
            new_line += 1
        elif line.startswith("-"):
            removed += 1
            changed.add(old_line)
            old_line += 1
        elif line.startswith("\\"):
            continue
        else:
            old_line += 1
            new_line += 1
    return added, removed, sorted(changed)


def file_change_from_patch(
    path: str,
    patch: str | None,
    *,
    change_type: str = "MODIFIED",
    binary: bool | None = None,
) -> FileChange:
    """Build a file change from a unified patch.

    ``binary`` overrides the extension guess when the platform reports it.
    """
    added, removed, lines = patch_line_stats(patch)
    return FileChange(
        path=path,
        change_type=change_type,
        added_lines=added,
        removed_lines=removed,
        binary=is_binary_path(path) if binary is None else binary,
        changed_line_numbers=lines,
    )


def parse_unified_diff(text: str) -> list[FileChange]:
    """Split a multi-file ``git diff`` into per-file changes."""
    changes: list[FileChange] = []
    current_path: str | None = None
    change_type = "MODIFIED"
    binary = False
    seen_hunk = False
    body: list[str] = []

    def _emit() -> None:
        if current_path is not None:
            changes.append(
                file_change_from_patch(
                    current_path,
                    "\n".join(body),
                    change_type=change_type,
                    binary=binary or is_binary_path(current_path),
                )
            )

    for line in text.splitlines():
        header = _DIFF_GIT.match(line)
        if header:
            _emit()
            current_path = header.group(2)
            change_type = "MODIFIED"
            binary = False
            seen_hunk = False
            body = []
            continue
        if current_path is None:
            continue
        if seen_hunk or line.startswith("@@"):
            seen_hunk = True
            body.append(line)
            continue
        if line.startswith("new file mode"):
            change_type = "ADDED"
        elif line.startswith("deleted file mode"):
            change_type = "DELETED"
        elif line.startswith("rename to "):
            change_type = "RENAMED"
            current_path = line[len("rename to ") :]
        elif line.startswith("Binary files "):
            binary = True
        elif line.startswith("+++ ") and line[4:] != "/dev/null":
            current_path = line[4:].removeprefix("b/")
    _emit()
    return changes
