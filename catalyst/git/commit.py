"""Git commit and merge operations."""

from pathlib import Path

from catalyst.git.runner import run_git, GitResult


def stage_files(worktree: Path, files: list[str]) -> GitResult:
    """Stage specific files, including deletions."""
    return run_git(["add", "-A", "--"] + files, worktree)


def stage_all(worktree: Path) -> GitResult:
    """Stage all changes (new, modified, deleted)."""
    return run_git(["add", "-A"], worktree)


def commit(worktree: Path, message: str, allow_empty: bool = False) -> GitResult:
    """Create a commit with the given message."""
    args = ["commit", "-m", message]
    if allow_empty:
        args.append("--allow-empty")
    return run_git(args, worktree)


def merge_no_commit(repo: Path, branch: str, timeout: int = 120) -> GitResult:
    """Start a non-fast-forward merge of branch and stop before committing.

    A non-zero exit may just mean git found textual conflicts; callers
    overwrite the affected files and commit, or abort.
    """
    return run_git(["merge", "--no-ff", "--no-commit", branch], repo, timeout=timeout)


def merge_ff_only(repo: Path, branch: str, timeout: int = 120) -> GitResult:
    """Fast-forward the checked-out branch to branch."""
    return run_git(["merge", "--ff-only", branch], repo, timeout=timeout)


def merge_abort(repo: Path) -> GitResult:
    """Abort an in-progress merge."""
    return run_git(["merge", "--abort"], repo)


def reset_hard(worktree: Path, ref: str = "HEAD") -> GitResult:
    """Drop staged and unstaged changes to tracked files."""
    return run_git(["reset", "--hard", ref], worktree)


def clean_untracked(worktree: Path) -> GitResult:
    """Delete untracked files and directories; ignored files stay."""
    return run_git(["clean", "-fd"], worktree)
