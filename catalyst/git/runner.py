"""Single entry point for running git against a repository or worktree."""

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from catalyst.lib.errors import GitCommandError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Never prompt for credentials; keep messages parseable regardless of locale
GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}


@dataclass
class GitResult:
    """Outcome of one git invocation. Non-zero exits and timeouts are data, not exceptions."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    args: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def lines(self) -> list[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """
    Run `git -C <cwd> <args>`.

    Output is decoded with surrogateescape so file contents that are not
    UTF-8 survive a show/write round trip byte for byte.
    """
    cmd = ["git", "-C", str(cwd)] + list(args)
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="surrogateescape",
            timeout=timeout,
            env={**os.environ, **GIT_ENV},
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"[git] {' '.join(args[:2])} timed out after {timeout}s in {cwd}")
        return GitResult(-1, "", f"Command timed out after {timeout}s", timed_out=True, args=list(args))

    if proc.returncode != 0:
        logger.debug(f"[git] {' '.join(args)} exited {proc.returncode}: {proc.stderr.strip()[:200]}")
    return GitResult(proc.returncode, proc.stdout, proc.stderr, args=list(args))


def require_success(result: GitResult, cwd: Path) -> GitResult:
    """Raise GitCommandError unless the invocation succeeded."""
    if not result.success:
        raise GitCommandError(" ".join(result.args), Path(cwd), result.stderr)
    return result


def split_nul(raw: str) -> list[str]:
    """Entries of git's -z output."""
    return [entry for entry in raw.split("\0") if entry]
