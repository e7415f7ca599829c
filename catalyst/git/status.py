"""Working tree status: is mainline or a workspace dirty, and with what."""

from pathlib import Path

from catalyst.git.runner import require_success, run_git, split_nul

# Porcelain status codes whose entry is followed by the source path
_TWO_PATH_CODES = ("R", "C")


def has_uncommitted_changes(worktree: Path) -> bool:
    """True if anything is staged, modified or untracked (ignored files do not count)."""
    return bool(run_git(["status", "--porcelain"], worktree).stdout.strip())


def _porcelain_paths(raw: str) -> list[str]:
    entries = iter(split_nul(raw))
    paths = []
    for entry in entries:
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        paths.append(path)
        if code[0] in _TWO_PATH_CODES:
            next(entries, None)
    return paths


def get_changed_files(worktree: Path) -> list[str]:
    """
    Paths with uncommitted changes, untracked files included.

    Parsed from NUL-separated porcelain output so names with spaces or
    newlines come through intact. A rename reports only its destination.

    Raises:
        GitCommandError: git could not report status, so cleanliness is unknown
    """
    result = require_success(run_git(["status", "--porcelain", "-z"], worktree), worktree)
    return _porcelain_paths(result.stdout)
