"""Shared fixtures: throwaway git repositories and state directories."""

import shutil

import pytest

from catalyst.state.store import StateStore
from gitutil import git


@pytest.fixture
def git_repo(tmp_path):
    """A repository on branch main with one commit holding app.txt and README.md."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "dev@example.com")
    git(repo, "config", "user.name", "Catalyst Tests")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# Demo\n")
    (repo / "app.txt").write_text("one\ntwo\nthree\nfour\nfive\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def store(state_dir):
    store = StateStore(state_dir)
    store.init_project("demo")
    return store


@pytest.fixture(autouse=True)
def no_state_dir_override(monkeypatch):
    monkeypatch.delenv("CATALYST_STATE_DIR", raising=False)
