"""
Thin git wrappers used by the workspace manager and merge path.

Nothing else in catalyst shells out to git. Helpers that act return a
GitResult the caller checks and predicates return bool. Path listings
(status, diff) raise GitCommandError when git fails, since an empty list
would read as "nothing changed". show_file and get_commit_sha return None
for a missing path or ref.
"""

from catalyst.git.branch import branch_exists, delete_branch, get_commit_sha, get_current_branch, is_ancestor
from catalyst.git.commit import (
    clean_untracked,
    commit,
    merge_abort,
    merge_ff_only,
    merge_no_commit,
    reset_hard,
    stage_all,
    stage_files,
)
from catalyst.git.diff import get_conflicted_files, get_diff_names, show_file
from catalyst.git.runner import GitResult, run_git
from catalyst.git.status import get_changed_files, has_uncommitted_changes
from catalyst.git.worktree import add_worktree, prune_worktrees, remove_worktree

__all__ = [
    "GitResult", "run_git",
    "has_uncommitted_changes", "get_changed_files",
    "get_diff_names", "get_conflicted_files", "show_file",
    "get_current_branch", "branch_exists", "get_commit_sha", "is_ancestor", "delete_branch",
    "stage_files", "stage_all", "commit", "merge_no_commit", "merge_ff_only", "merge_abort",
    "reset_hard", "clean_untracked",
    "add_worktree", "remove_worktree", "prune_worktrees",
]
