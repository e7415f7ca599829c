"""
Workspace Manager: isolated, branch-backed worktrees per feature.

Each feature gets branch catalyst/<feature_id> checked out at
<state_dir>/worktrees/<feature_id>, created from the mainline tip. All code
changes for a feature happen there; mainline is only written by merge().

Workspace records live in <state_dir>/workspaces/<feature_id>.json and are
owned exclusively by this manager. Callers hold only the workspace id.
"""

import logging
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path

from catalyst.git import (
    add_worktree,
    branch_exists,
    clean_untracked,
    commit,
    delete_branch,
    get_changed_files,
    get_commit_sha,
    get_conflicted_files,
    get_current_branch,
    get_diff_names,
    has_uncommitted_changes,
    is_ancestor,
    merge_abort,
    merge_ff_only,
    merge_no_commit,
    prune_worktrees,
    remove_worktree,
    reset_hard,
    show_file,
    stage_all,
    stage_files,
)
from catalyst.lib.errors import (
    DirtyMainline,
    InvariantViolation,
    WorkspaceAlreadyOpen,
    WorkspaceError,
    WorkspaceNotFound,
)
from catalyst.state.io import now_iso, read_json, write_json
from catalyst.state.locking import mainline_lock, workspace_lock
from catalyst.workflow.reconcile import MergeResult, has_conflict_markers, merge_trees

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "catalyst/"
WORKTREES_DIR = "worktrees"
RECORDS_DIR = "workspaces"

STATUS_OPEN = "open"
STATUS_MERGED = "merged"
STATUS_DISCARDED = "discarded"


@dataclass
class WorkspaceHandle:
    """Workspace record."""
    feature_id: str
    path: Path
    branch: str
    parent_commit: str
    status: str = STATUS_OPEN
    created_at: str = ""
    updated_at: str = ""
    merge_commit: str | None = None
    pending_conflicts: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"ws-{self.feature_id}"

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    def to_dict(self) -> dict:
        data = asdict(self)
        data["path"] = str(self.path)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WorkspaceHandle":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["path"] = Path(known["path"])
        return cls(**known)


def _write_text(path: Path, text: str | None) -> None:
    if text is None:
        path.unlink(missing_ok=True)
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(text.encode("utf-8", "surrogateescape"))


class WorkspaceManager:
    """Open, commit, merge and discard feature workspaces in one repository."""

    def __init__(self, repo: Path, state_dir: Path, mainline: str = "main"):
        self.repo = Path(repo)
        self.state_dir = Path(state_dir)
        self.mainline = mainline

    def branch_for(self, feature_id: str) -> str:
        return f"{BRANCH_PREFIX}{feature_id}"

    def path_for(self, feature_id: str) -> Path:
        return self.state_dir / WORKTREES_DIR / feature_id

    def _record_path(self, feature_id: str) -> Path:
        return self.state_dir / RECORDS_DIR / f"{feature_id}.json"

    def _save(self, handle: WorkspaceHandle) -> None:
        handle.updated_at = now_iso()
        write_json(self._record_path(handle.feature_id), handle.to_dict(), "workspace")

    def get(self, feature_id: str) -> WorkspaceHandle | None:
        """Latest workspace record for a feature, whatever its status."""
        try:
            return WorkspaceHandle.from_dict(read_json(self._record_path(feature_id), "workspace"))
        except FileNotFoundError:
            return None

    def _require_open(self, feature_id: str) -> WorkspaceHandle:
        handle = self.get(feature_id)
        if handle is None or not handle.is_open:
            raise WorkspaceNotFound(feature_id)
        if not handle.path.exists():
            raise InvariantViolation(f"Workspace for {feature_id} is open but {handle.path} is missing")
        return handle

    def open(self, feature_id: str) -> WorkspaceHandle:
        """
        Create the feature's branch and worktree from the mainline tip.

        Raises:
            WorkspaceAlreadyOpen: an open workspace exists for this feature
            DirtyMainline: mainline has uncommitted changes
            WorkspaceError: git refused to create the worktree
        """
        with workspace_lock(self.state_dir, feature_id):
            existing = self.get(feature_id)
            if existing and existing.is_open:
                raise WorkspaceAlreadyOpen(feature_id, existing.path)

            path = self.path_for(feature_id)
            branch = self.branch_for(feature_id)

            with mainline_lock(self.state_dir):
                dirty = get_changed_files(self.repo)
                if dirty:
                    raise DirtyMainline(self.repo, dirty)

                parent = get_commit_sha(self.repo, self.mainline)
                if parent is None:
                    raise WorkspaceError(feature_id, "resolve mainline", f"unknown branch {self.mainline}")

                if path.exists() or branch_exists(self.repo, branch):
                    self._remove_leftovers(feature_id, path, branch)

                path.parent.mkdir(parents=True, exist_ok=True)
                result = add_worktree(self.repo, path, branch, parent)
                if not result.success:
                    raise WorkspaceError(feature_id, "worktree add", result.stderr)

            now = now_iso()
            handle = WorkspaceHandle(
                feature_id=feature_id,
                path=path,
                branch=branch,
                parent_commit=parent,
                created_at=now,
            )
            self._save(handle)

        logger.info(f"[workspace] {feature_id}: opened {branch} at {path} (parent {parent[:8]})")
        return handle

    def _remove_leftovers(self, feature_id: str, path: Path, branch: str) -> None:
        """Clear a worktree/branch left behind by a crash. Caller holds the mainline lock."""
        logger.warning(f"[workspace] {feature_id}: removing leftover worktree/branch {branch}")
        if path.exists():
            remove_worktree(self.repo, path)
            shutil.rmtree(path, ignore_errors=True)
        prune_worktrees(self.repo)
        if branch_exists(self.repo, branch):
            result = delete_branch(self.repo, branch, force=True)
            if not result.success:
                raise WorkspaceError(feature_id, "delete leftover branch", result.stderr)

    def commit(self, feature_id: str, message: str) -> str | None:
        """Commit everything in the workspace. Returns the new sha, or None if clean."""
        with workspace_lock(self.state_dir, feature_id):
            handle = self._require_open(feature_id)
            return self._commit_pending(handle, message)

    def _commit_pending(self, handle: WorkspaceHandle, message: str) -> str | None:
        if not has_uncommitted_changes(handle.path):
            return None
        staged = stage_all(handle.path)
        if not staged.success:
            raise WorkspaceError(handle.feature_id, "stage", staged.stderr)
        result = commit(handle.path, message)
        if not result.success:
            raise WorkspaceError(handle.feature_id, "commit", result.stderr or result.stdout)
        sha = get_commit_sha(handle.path)
        logger.info(f"[workspace] {handle.feature_id}: committed {sha[:8] if sha else '?'} {message}")
        return sha

    def reset(self, feature_id: str) -> list[str]:
        """
        Throw away uncommitted changes in the workspace, untracked files included.

        Committed work is kept. Returns the paths that were dropped.
        """
        with workspace_lock(self.state_dir, feature_id):
            handle = self._require_open(feature_id)
            dropped = get_changed_files(handle.path)
            if not dropped:
                return []
            for step, run in (("reset", reset_hard), ("clean", clean_untracked)):
                result = run(handle.path)
                if not result.success:
                    raise WorkspaceError(feature_id, step, result.stderr)

        logger.warning(f"[workspace] {feature_id}: dropped uncommitted changes in {', '.join(dropped)}")
        return dropped

    def changed_files(self, feature_id: str) -> list[str]:
        """Files the workspace changed relative to its parent commit (committed work only)."""
        handle = self._require_open(feature_id)
        return get_diff_names(self.repo, handle.parent_commit, handle.branch)

    def merge(self, feature_id: str) -> MergeResult:
        """
        Reconcile the workspace branch into mainline.

        Base is the workspace's parent commit, ours the branch tip, theirs the
        mainline tip. On a clean result mainline is fast-forwarded when it has
        not moved, otherwise a merge commit carrying the reconciled content is
        created, and the workspace is marked merged. On conflicts nothing is
        written and the workspace stays open.

        Raises:
            WorkspaceNotFound: no open workspace
            DirtyMainline: mainline has uncommitted changes
            WorkspaceError: a git step failed (any partial merge is aborted)
        """
        with workspace_lock(self.state_dir, feature_id):
            handle = self._require_open(feature_id)
            self._commit_pending(handle, f"catalyst: {feature_id} pending changes")

            with mainline_lock(self.state_dir):
                current = get_current_branch(self.repo)
                if current != self.mainline:
                    raise WorkspaceError(
                        feature_id, "merge", f"repository is on {current}, expected {self.mainline}"
                    )
                dirty = get_changed_files(self.repo)
                if dirty:
                    raise DirtyMainline(self.repo, dirty)

                base = handle.parent_commit
                ours = get_commit_sha(self.repo, handle.branch)
                theirs = get_commit_sha(self.repo, self.mainline)
                if ours is None or theirs is None:
                    raise WorkspaceError(feature_id, "merge", "could not resolve branch tips")

                paths = sorted(
                    set(get_diff_names(self.repo, base, ours))
                    | set(get_diff_names(self.repo, base, theirs))
                )
                result = merge_trees(
                    {p: show_file(self.repo, base, p) for p in paths},
                    {p: show_file(self.repo, ours, p) for p in paths},
                    {p: show_file(self.repo, theirs, p) for p in paths},
                )
                result.mainline_commit = theirs

                if not result.is_merged:
                    logger.info(
                        f"[workspace] {feature_id}: {len(result.conflicts)} conflict(s) in "
                        f"{', '.join(result.conflicted_paths)}"
                    )
                    return result

                result.commit_sha = self._integrate(handle, result, ours, theirs)

            handle.status = STATUS_MERGED
            handle.merge_commit = result.commit_sha
            handle.pending_conflicts = []
            self._save(handle)
            self._remove_checkout(handle)

        logger.info(f"[workspace] {feature_id}: merged into {self.mainline} at {result.commit_sha[:8]}")
        return result

    def _integrate(self, handle: WorkspaceHandle, result: MergeResult, ours: str, theirs: str) -> str:
        """Write a clean MergeResult onto mainline. Caller holds the mainline lock."""
        feature_id = handle.feature_id

        if is_ancestor(self.repo, theirs, ours):
            ff = merge_ff_only(self.repo, handle.branch)
            if not ff.success:
                raise WorkspaceError(feature_id, "fast-forward", ff.stderr)
            return get_commit_sha(self.repo)

        started = merge_no_commit(self.repo, handle.branch)
        # Non-zero with conflicted files is git's own textual view; our content replaces it
        if not started.success and not get_conflicted_files(self.repo):
            merge_abort(self.repo)
            raise WorkspaceError(feature_id, "merge", started.stderr or started.stdout)

        try:
            for path, text in result.files.items():
                _write_text(self.repo / path, text)
            if result.files:
                staged = stage_files(self.repo, list(result.files))
                if not staged.success:
                    raise WorkspaceError(feature_id, "stage merge", staged.stderr)
            leftover = get_conflicted_files(self.repo)
            if leftover:
                raise WorkspaceError(feature_id, "merge", f"unreconciled paths: {', '.join(leftover)}")
            done = commit(self.repo, f"Merge {handle.branch} into {self.mainline}", allow_empty=True)
            if not done.success:
                raise WorkspaceError(feature_id, "commit merge", done.stderr or done.stdout)
        except BaseException:
            merge_abort(self.repo)
            raise

        return get_commit_sha(self.repo)

    def prepare_resolution(self, feature_id: str, result: MergeResult) -> list[str]:
        """
        Bring mainline's side of a conflicted merge into the workspace.

        Cleanly merged files are written as merged, conflicted files with
        conflict markers, and the workspace's base moves to the mainline
        commit the merge was computed against. Returns the conflicted paths.
        """
        if result.is_merged or result.mainline_commit is None:
            raise InvariantViolation(f"{feature_id}: no conflicted merge to prepare")

        with workspace_lock(self.state_dir, feature_id):
            handle = self._require_open(feature_id)
            for path, text in result.files.items():
                _write_text(handle.path / path, text)
            for path, text in result.marked.items():
                _write_text(handle.path / path, text)
            handle.parent_commit = result.mainline_commit
            handle.pending_conflicts = sorted(result.marked)
            self._save(handle)

        logger.info(f"[workspace] {feature_id}: conflict markers written to {len(result.marked)} file(s)")
        return handle.pending_conflicts

    def apply_files(self, feature_id: str, files: dict[str, str | None]) -> None:
        """Write contents into the workspace (None deletes)."""
        with workspace_lock(self.state_dir, feature_id):
            handle = self._require_open(feature_id)
            root = handle.path.resolve()
            for path, text in files.items():
                target = (handle.path / path).resolve()
                if root not in target.parents:
                    raise ValueError(f"Path escapes workspace: {path}")
                _write_text(target, text)

    def unresolved_files(self, feature_id: str) -> list[str]:
        """Pending conflict files that still contain conflict markers."""
        handle = self._require_open(feature_id)
        unresolved = []
        for path in handle.pending_conflicts:
            target = handle.path / path
            if target.exists() and has_conflict_markers(target.read_text(errors="surrogateescape")):
                unresolved.append(path)
        return unresolved

    def discard(self, feature_id: str) -> bool:
        """
        Remove the worktree and delete the branch without touching mainline.

        Returns False if there was no open workspace.
        """
        with workspace_lock(self.state_dir, feature_id):
            handle = self.get(feature_id)
            if handle is None or not handle.is_open:
                return False
            self._remove_checkout(handle, force=True)
            handle.status = STATUS_DISCARDED
            self._save(handle)

        logger.info(f"[workspace] {feature_id}: discarded {handle.branch}")
        return True

    def _remove_checkout(self, handle: WorkspaceHandle, force: bool = False) -> None:
        with mainline_lock(self.state_dir):
            removed = remove_worktree(self.repo, handle.path)
            if not removed.success:
                logger.warning(f"[workspace] {handle.feature_id}: worktree remove failed: {removed.stderr.strip()}")
                shutil.rmtree(handle.path, ignore_errors=True)
                prune_worktrees(self.repo)
            deleted = delete_branch(self.repo, handle.branch, force=force)
            if not deleted.success and branch_exists(self.repo, handle.branch):
                logger.warning(f"[workspace] {handle.feature_id}: could not delete {handle.branch}: {deleted.stderr.strip()}")
