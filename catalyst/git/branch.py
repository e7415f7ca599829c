"""Refs: current branch, commit lookup, ancestry and feature branch cleanup."""

from pathlib import Path

from catalyst.git.runner import GitResult, run_git


def get_current_branch(worktree: Path) -> str | None:
    """Checked-out branch name; None on detached HEAD or error."""
    result = run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], worktree)
    return result.stdout.strip() or None if result.success else None


def branch_exists(repo: Path, branch: str) -> bool:
    return run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], repo).success


def get_commit_sha(worktree: Path, ref: str = "HEAD") -> str | None:
    """Full sha the ref points at, or None if it does not resolve to a commit."""
    result = run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], worktree)
    return result.stdout.strip() or None if result.success else None


def is_ancestor(worktree: Path, ancestor: str, descendant: str) -> bool:
    """True when ancestor is reachable from descendant (a commit is its own ancestor)."""
    return run_git(["merge-base", "--is-ancestor", ancestor, descendant], worktree).returncode == 0


def delete_branch(repo: Path, branch: str, force: bool = False) -> GitResult:
    """Delete a local branch; without force git refuses if it is unmerged."""
    return run_git(["branch", "--delete"] + (["--force"] if force else []) + [branch], repo)
