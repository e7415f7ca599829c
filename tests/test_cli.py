"""Tests for the catalyst command line."""

import sys
from unittest.mock import patch

import pytest

from catalyst.cli import main
from catalyst.lib.config import ProjectMode
from catalyst.state.store import StateStore


@pytest.fixture
def run_cli(tmp_path):
    """Run catalyst with --repo/--state-dir pointing into tmp_path; returns the exit code."""
    state = tmp_path / "state"

    def run(*args):
        argv = ["catalyst", "--repo", str(tmp_path), "--state-dir", str(state), *args]
        with patch.object(sys, "argv", argv):
            return main()

    run.state = state
    return run


class TestInit:
    def test_creates_project(self, run_cli):
        assert run_cli("init", "demo", "--mode", "Fortress", "--stack", "python", "git") == 0
        doc = StateStore(run_cli.state).config.load_project()
        assert doc.project_name == "demo"
        assert doc.mode == ProjectMode.FORTRESS


class TestConfig:
    """catalyst config get/set."""

    def test_set_then_get(self, run_cli, capsys):
        run_cli("init", "demo")
        assert run_cli("config", "MAX_REJECTIONS", "5") == 0
        capsys.readouterr()
        assert run_cli("config", "MAX_REJECTIONS") == 0
        assert capsys.readouterr().out.strip() == "5"

    def test_get_missing_key(self, run_cli, capsys):
        run_cli("init", "demo")
        assert run_cli("config", "BUILD_COMMAND") == 1
        assert "BUILD_COMMAND is not set" in capsys.readouterr().out

    def test_list(self, run_cli, capsys):
        run_cli("init", "demo")
        run_cli("config", "TEST_COMMAND", "pytest")
        capsys.readouterr()
        run_cli("config")
        assert "TEST_COMMAND=pytest" in capsys.readouterr().out


class TestCommands:
    """Argument checks and error reporting."""

    def test_resume_needs_an_answer(self, run_cli, capsys):
        assert run_cli("resume", "f-1") == 2
        assert "Provide --option" in capsys.readouterr().out

    def test_engine_errors_exit_nonzero(self, run_cli, capsys):
        run_cli("init", "demo")
        assert run_cli("start", "   ") == 1
        assert "ERROR: InvalidGoal" in capsys.readouterr().out

    def test_status_of_unknown_feature(self, run_cli, capsys):
        run_cli("init", "demo")
        assert run_cli("status", "f-missing") == 1
        assert "FeatureNotFound" in capsys.readouterr().out

    def test_snapshot_create_and_list(self, run_cli, capsys):
        run_cli("init", "demo")
        assert run_cli("snapshot", "before upgrade") == 0
        capsys.readouterr()
        assert [s.reason for s in StateStore(run_cli.state).snapshots.all()] == ["before upgrade"]
        assert run_cli("snapshot") == 0
        assert "Snapshots" in capsys.readouterr().out
