"""Git worktree operations."""

from pathlib import Path

from catalyst.git.runner import run_git, GitResult

WORKTREE_TIMEOUT = 60


def add_worktree(repo: Path, path: Path, branch: str, start_point: str) -> GitResult:
    """Create branch at start_point and check it out into path."""
    return run_git(
        ["worktree", "add", "-b", branch, str(path), start_point],
        repo,
        timeout=WORKTREE_TIMEOUT,
    )


def remove_worktree(repo: Path, path: Path) -> GitResult:
    """Remove a worktree, discarding any uncommitted changes in it."""
    return run_git(["worktree", "remove", "--force", str(path)], repo, timeout=WORKTREE_TIMEOUT)


def prune_worktrees(repo: Path) -> GitResult:
    """Drop administrative records for worktrees whose directories are gone."""
    return run_git(["worktree", "prune"], repo)
