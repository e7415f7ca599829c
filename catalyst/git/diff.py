"""Comparing refs and reading file content at a ref."""

from pathlib import Path

from catalyst.git.runner import require_success, run_git, split_nul


def _name_list(worktree: Path, args: list[str]) -> list[str]:
    # -z keeps paths verbatim; without it git C-quotes non-ASCII names
    result = require_success(run_git(["diff", "--name-only", "-z"] + args, worktree), worktree)
    return split_nul(result.stdout)


def get_diff_names(worktree: Path, base: str, head: str) -> list[str]:
    """
    Paths that differ between base and head.

    Renames are not detected, so a moved file contributes both its old
    and new path.

    Raises:
        GitCommandError: either ref is unknown or git failed
    """
    return _name_list(worktree, ["--no-renames", base, head])


def get_conflicted_files(worktree: Path) -> list[str]:
    """Unmerged paths of an in-progress merge."""
    return _name_list(worktree, ["--diff-filter=U"])


def show_file(repo: Path, ref: str, path: str) -> str | None:
    result = run_git(["show", f"{ref}:{path}"], repo)
    return result.stdout if result.success else None
