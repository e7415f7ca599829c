"""
Error taxonomy for the catalyst engine.

External failures (agents, git, build/test tools) are converted into these
exceptions at the boundary so they can be persisted as structured data.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


class CatalystError(Exception):
    """Base class for all engine errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def reason(self) -> str:
        """Human-readable reason string stored on failed features."""
        return f"{self.kind}: {self}"


class InvalidGoal(CatalystError):
    """A goal was empty or otherwise unusable."""


class FeatureNotFound(CatalystError):
    """No feature record exists for the given id."""


class InteractionNotFound(CatalystError):
    """No pending interaction exists for the given feature or id."""


class SnapshotNotFound(CatalystError):
    """No snapshot exists with the given id."""


class InvariantViolation(CatalystError):
    """Engine-internal invariant broken. Halts the offending operation."""


@dataclass
class AgentFailure(CatalystError):
    """An agent bound to a stage returned an error or invalid output."""
    stage: str
    message: str
    details: Optional[dict] = None

    def __str__(self):
        return f"[{self.stage}] {self.message}"


@dataclass
class RejectionLoopExceeded(CatalystError):
    """The critic rejected more times than the configured maximum."""
    feature_id: str
    rejections: int
    max_rejections: int

    def __str__(self):
        return (
            f"{self.feature_id}: critic rejected {self.rejections} times "
            f"(max {self.max_rejections})"
        )


@dataclass
class DirtyMainline(CatalystError):
    """Mainline working copy has uncommitted changes."""
    repo: Path
    changed_files: list[str] = field(default_factory=list)

    def __str__(self):
        files = ", ".join(self.changed_files[:5])
        more = f" (+{len(self.changed_files) - 5} more)" if len(self.changed_files) > 5 else ""
        return f"Mainline at {self.repo} has uncommitted changes: {files}{more}"


@dataclass
class WorkspaceAlreadyOpen(CatalystError):
    """A workspace is already open for this feature."""
    feature_id: str
    path: Path

    def __str__(self):
        return f"Workspace for {self.feature_id} already open at {self.path}"


@dataclass
class WorkspaceNotFound(CatalystError):
    """No open workspace exists for this feature."""
    feature_id: str

    def __str__(self):
        return f"No open workspace for {self.feature_id}"


@dataclass
class WorkspaceError(CatalystError):
    """A git operation on a workspace failed."""
    feature_id: str
    operation: str
    stderr: str

    def __str__(self):
        return f"{self.operation} failed for {self.feature_id}: {self.stderr.strip()}"


@dataclass
class GitCommandError(CatalystError):
    """A git query whose answer callers depend on did not succeed."""
    command: str
    cwd: Path
    stderr: str

    def __str__(self):
        return f"git {self.command} failed in {self.cwd}: {self.stderr.strip() or 'no output'}"


@dataclass
class MergeConflict(CatalystError):
    """Reconciliation found overlapping edits."""
    feature_id: str
    regions: list = field(default_factory=list)

    def __str__(self):
        files = sorted({r.path for r in self.regions})
        return f"{self.feature_id}: {len(self.regions)} conflict region(s) in {', '.join(files)}"


@dataclass
class BuildFailure(CatalystError):
    """Build command failed. Carries parsed diagnostics."""
    message: str
    diagnostics: list = field(default_factory=list)
    output: str = ""

    def __str__(self):
        return self.message


@dataclass
class TestFailure(CatalystError):
    """Test command failed. Carries parsed diagnostics."""
    __test__ = False

    message: str
    diagnostics: list = field(default_factory=list)
    output: str = ""

    def __str__(self):
        return self.message


class CorruptState(CatalystError):
    """A persisted record is unreadable or does not match its schema."""

    def __init__(self, path: Path, message: str, restored_from: str | None = None):
        self.path = path
        self.message = message
        self.restored_from = restored_from
        suffix = f" (restored from snapshot {restored_from})" if restored_from else ""
        super().__init__(f"Corrupt state at {path}: {message}{suffix}")
