"""Tests for the Workspace Manager against real repositories."""

import pytest

from catalyst.git import get_commit_sha, branch_exists
from catalyst.lib.errors import (
    DirtyMainline,
    InvariantViolation,
    WorkspaceAlreadyOpen,
    WorkspaceNotFound,
)
from catalyst.workflow.workspace import (
    STATUS_DISCARDED,
    STATUS_MERGED,
    WorkspaceManager,
)
from gitutil import commit_file, git


@pytest.fixture
def manager(git_repo, state_dir):
    return WorkspaceManager(git_repo, state_dir, "main")


def edit(handle, path, content):
    target = handle.path / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)


class TestOpen:
    """Opening workspaces."""

    def test_creates_branch_and_worktree_at_mainline_tip(self, manager, git_repo):
        handle = manager.open("f-1")
        assert handle.branch == "catalyst/f-1"
        assert handle.path.is_dir()
        assert handle.parent_commit == get_commit_sha(git_repo, "main")
        assert (handle.path / "app.txt").read_text() == "one\ntwo\nthree\nfour\nfive\n"
        assert manager.get("f-1").is_open

    def test_second_open_is_refused(self, manager):
        manager.open("f-1")
        with pytest.raises(WorkspaceAlreadyOpen):
            manager.open("f-1")

    def test_dirty_mainline_is_refused(self, manager, git_repo):
        (git_repo / "app.txt").write_text("local edit\n")
        with pytest.raises(DirtyMainline) as exc:
            manager.open("f-1")
        assert "app.txt" in exc.value.changed_files
        assert manager.get("f-1") is None

    def test_leftover_branch_is_replaced(self, manager, git_repo):
        git(git_repo, "branch", "catalyst/f-1")
        handle = manager.open("f-1")
        assert handle.is_open

    def test_workspaces_are_isolated(self, manager):
        a = manager.open("f-a")
        b = manager.open("f-b")
        edit(a, "app.txt", "changed in a\n")
        assert (b.path / "app.txt").read_text() == "one\ntwo\nthree\nfour\nfive\n"


class TestCommit:
    """Committing workspace changes."""

    def test_commit_returns_sha(self, manager):
        handle = manager.open("f-1")
        edit(handle, "src/new.py", "x = 1\n")
        sha = manager.commit("f-1", "add new")
        assert sha == get_commit_sha(handle.path)
        assert manager.changed_files("f-1") == ["src/new.py"]

    def test_clean_commit_returns_none(self, manager):
        manager.open("f-1")
        assert manager.commit("f-1", "nothing") is None

    def test_commit_without_workspace(self, manager):
        with pytest.raises(WorkspaceNotFound):
            manager.commit("f-missing", "x")


class TestMerge:
    """Reconciling workspaces into mainline."""

    def test_fast_forward_when_mainline_unchanged(self, manager, git_repo):
        handle = manager.open("f-1")
        edit(handle, "app.txt", "one\nTWO\nthree\nfour\nfive\n")
        manager.commit("f-1", "edit")

        result = manager.merge("f-1")
        assert result.is_merged
        assert result.commit_sha == get_commit_sha(git_repo, "main")
        assert (git_repo / "app.txt").read_text() == "one\nTWO\nthree\nfour\nfive\n"
        record = manager.get("f-1")
        assert record.status == STATUS_MERGED
        assert not handle.path.exists()
        assert not branch_exists(git_repo, "catalyst/f-1")

    def test_uncommitted_workspace_changes_are_merged(self, manager, git_repo):
        handle = manager.open("f-1")
        edit(handle, "notes.md", "pending\n")
        assert manager.merge("f-1").is_merged
        assert (git_repo / "notes.md").read_text() == "pending\n"

    def test_disjoint_features_both_merge(self, manager, git_repo):
        a = manager.open("f-2")
        b = manager.open("f-3")
        edit(a, "a.py", "A\n")
        edit(b, "b.py", "B\n")
        manager.commit("f-2", "a")
        manager.commit("f-3", "b")

        assert manager.merge("f-2").is_merged
        second = manager.merge("f-3")
        assert second.is_merged
        assert (git_repo / "a.py").read_text() == "A\n"
        assert (git_repo / "b.py").read_text() == "B\n"
        assert git(git_repo, "status", "--porcelain") == ""
        assert get_commit_sha(git_repo, "main") == second.commit_sha

    def test_disjoint_hunks_in_one_file_merge(self, manager, git_repo):
        handle = manager.open("f-1")
        edit(handle, "app.txt", "ONE\ntwo\nthree\nfour\nfive\n")
        manager.commit("f-1", "top")
        commit_file(git_repo, "app.txt", "one\ntwo\nthree\nfour\nFIVE\n")

        result = manager.merge("f-1")
        assert result.is_merged
        assert (git_repo / "app.txt").read_text() == "ONE\ntwo\nthree\nfour\nFIVE\n"

    def test_overlapping_edit_reports_conflict_and_leaves_mainline(self, manager, git_repo):
        handle = manager.open("f-4")
        edit(handle, "app.txt", "one\ntwo\nfeature\nfour\nfive\n")
        manager.commit("f-4", "feature edit")
        mainline = commit_file(git_repo, "app.txt", "one\ntwo\nmainline\nfour\nfive\n")

        result = manager.merge("f-4")
        assert not result.is_merged
        assert len(result.conflicts) == 1
        assert result.conflicts[0].path == "app.txt"
        assert result.mainline_commit == mainline
        assert get_commit_sha(git_repo, "main") == mainline
        assert (git_repo / "app.txt").read_text() == "one\ntwo\nmainline\nfour\nfive\n"
        assert manager.get("f-4").is_open

    def test_non_ascii_path_merges_after_mainline_moved(self, manager, git_repo):
        handle = manager.open("f-1")
        edit(handle, "café.txt", "au lait\n")
        manager.commit("f-1", "add café")
        commit_file(git_repo, "README.md", "# moved on\n")

        result = manager.merge("f-1")
        assert result.is_merged
        assert "café.txt" in result.files
        assert (git_repo / "café.txt").read_text() == "au lait\n"
        assert git(git_repo, "status", "--porcelain") == ""

    def test_dirty_mainline_blocks_merge(self, manager, git_repo):
        manager.open("f-1")
        (git_repo / "scratch.txt").write_text("x\n")
        with pytest.raises(DirtyMainline):
            manager.merge("f-1")


class TestConflictResolution:
    """prepare_resolution, unresolved_files and the merge after resolving."""

    def _conflicted(self, manager, git_repo):
        handle = manager.open("f-4")
        edit(handle, "app.txt", "one\ntwo\nfeature\nfour\nfive\n")
        edit(handle, "feature.py", "F\n")
        manager.commit("f-4", "feature edit")
        commit_file(git_repo, "app.txt", "one\ntwo\nmainline\nfour\nfive\n")
        commit_file(git_repo, "other.py", "O\n")
        result = manager.merge("f-4")
        return handle, result

    def test_markers_written_into_workspace(self, manager, git_repo):
        handle, result = self._conflicted(manager, git_repo)
        paths = manager.prepare_resolution("f-4", result)
        assert paths == ["app.txt"]
        assert manager.unresolved_files("f-4") == ["app.txt"]
        text = (handle.path / "app.txt").read_text()
        assert "<<<<<<< workspace\nfeature\n" in text
        assert (handle.path / "other.py").read_text() == "O\n"
        assert manager.get("f-4").parent_commit == result.mainline_commit

    def test_resolved_workspace_merges(self, manager, git_repo):
        handle, result = self._conflicted(manager, git_repo)
        manager.prepare_resolution("f-4", result)
        edit(handle, "app.txt", "one\ntwo\nboth\nfour\nfive\n")
        assert manager.unresolved_files("f-4") == []
        manager.commit("f-4", "resolve")

        merged = manager.merge("f-4")
        assert merged.is_merged
        assert (git_repo / "app.txt").read_text() == "one\ntwo\nboth\nfour\nfive\n"
        assert (git_repo / "feature.py").read_text() == "F\n"
        assert (git_repo / "other.py").read_text() == "O\n"
        assert git(git_repo, "status", "--porcelain") == ""

    def test_apply_files_refuses_escaping_paths(self, manager, git_repo):
        manager.open("f-1")
        with pytest.raises(ValueError):
            manager.apply_files("f-1", {"../outside.txt": "x"})

    def test_prepare_requires_conflicted_result(self, manager, git_repo):
        manager.open("f-1")
        clean = manager.merge("f-1")
        with pytest.raises(InvariantViolation):
            manager.prepare_resolution("f-1", clean)


class TestReset:
    """Dropping uncommitted workspace changes."""

    def test_reset_keeps_commits_and_drops_the_rest(self, manager):
        handle = manager.open("f-1")
        edit(handle, "kept.txt", "kept\n")
        manager.commit("f-1", "kept")
        edit(handle, "kept.txt", "overwritten\n")
        edit(handle, "stray/new.txt", "stray\n")

        dropped = manager.reset("f-1")
        assert "kept.txt" in dropped
        assert any(p.startswith("stray") for p in dropped)
        assert (handle.path / "kept.txt").read_text() == "kept\n"
        assert not (handle.path / "stray").exists()

    def test_reset_clean_workspace(self, manager):
        manager.open("f-1")
        assert manager.reset("f-1") == []

    def test_reset_without_workspace(self, manager):
        with pytest.raises(WorkspaceNotFound):
            manager.reset("f-none")


class TestDiscard:
    """Discarding workspaces."""

    def test_discard_removes_branch_and_leaves_mainline(self, manager, git_repo):
        before = get_commit_sha(git_repo, "main")
        handle = manager.open("f-1")
        edit(handle, "app.txt", "scrapped\n")
        manager.commit("f-1", "scrapped")

        assert manager.discard("f-1") is True
        assert manager.get("f-1").status == STATUS_DISCARDED
        assert not handle.path.exists()
        assert not branch_exists(git_repo, "catalyst/f-1")
        assert get_commit_sha(git_repo, "main") == before

    def test_discard_without_workspace(self, manager):
        assert manager.discard("f-none") is False

    def test_reopen_after_discard(self, manager):
        manager.open("f-1")
        manager.discard("f-1")
        assert manager.open("f-1").is_open
