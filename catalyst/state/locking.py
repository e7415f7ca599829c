"""
flock-based locks for the state store.

Each lock lives in its own file under <state_dir>/locks/. Every acquisition
opens a fresh descriptor, so a held lock excludes other threads of the same
process as well as other processes. Lock files are left in place after
release: deleting one would let two holders lock different inodes.
"""

import fcntl
import time
from contextlib import contextmanager
from pathlib import Path

from catalyst.lib.errors import CatalystError

POLL_INTERVAL = 0.05
DEFAULT_TIMEOUT = 60
MAINLINE_TIMEOUT = 600


class LockTimeout(CatalystError):
    """Lock acquisition timed out."""


def _try_flock(handle) -> bool:
    try:
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


@contextmanager
def _held(path: Path, timeout: float, label: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    with open(path, "a") as handle:
        while not _try_flock(handle):
            if time.monotonic() >= deadline:
                raise LockTimeout(f"Could not acquire {label} within {timeout}s")
            time.sleep(POLL_INTERVAL)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


def _lock_path(state_dir: Path, *parts: str) -> Path:
    return Path(state_dir, "locks", *parts)


@contextmanager
def feature_lock(state_dir: Path, feature_id: str, timeout: float = DEFAULT_TIMEOUT):
    """Single writer per feature record; distinct features never contend."""
    with _held(_lock_path(state_dir, "features", f"{feature_id}.lock"), timeout, f"lock for {feature_id}"):
        yield


@contextmanager
def interaction_lock(state_dir: Path, feature_id: str, timeout: float = DEFAULT_TIMEOUT):
    with _held(_lock_path(state_dir, "interactions", f"{feature_id}.lock"), timeout,
               f"interaction lock for {feature_id}"):
        yield


@contextmanager
def document_lock(state_dir: Path, timeout: float = DEFAULT_TIMEOUT):
    """Guards settings, the project document, plan fragments, snapshot and rollback."""
    with _held(_lock_path(state_dir, "documents.lock"), timeout, "document lock"):
        yield


@contextmanager
def mainline_lock(state_dir: Path, timeout: float = MAINLINE_TIMEOUT):
    """
    Serializes anything that moves the mainline branch or touches shared
    git metadata: worktree add/remove and merges.
    """
    with _held(_lock_path(state_dir, "mainline.lock"), timeout, "mainline lock"):
        yield


@contextmanager
def workspace_lock(state_dir: Path, feature_id: str, timeout: float = MAINLINE_TIMEOUT):
    """One feature's workspace lifecycle: open, commit, merge, discard."""
    with _held(_lock_path(state_dir, "workspaces", f"{feature_id}.lock"), timeout,
               f"workspace lock for {feature_id}"):
        yield
