"""External command runner for build/test tools and command-backed agents."""

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of an external command."""
    cmd: list[str]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def run_command(
    cmd: list[str] | str,
    cwd: Path | None = None,
    timeout: float | None = None,
    stdin: str | None = None,
) -> CommandResult:
    """
    Run a command, capturing timeouts and missing executables as results.

    String commands are split with shlex; no shell is involved. On timeout
    the child is killed before returning.
    """
    argv = shlex.split(cmd) if isinstance(cmd, str) else list(cmd)
    start = time.monotonic()
    try:
        result = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=stdin,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return CommandResult(
            cmd=argv,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=time.monotonic() - start,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning(f"Command timed out after {timeout}s: {argv[0]}")
        return CommandResult(
            cmd=argv,
            returncode=-1,
            stdout=_text(e.stdout),
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
            duration=time.monotonic() - start,
        )
    except FileNotFoundError:
        return CommandResult(
            cmd=argv,
            returncode=127,
            stdout="",
            stderr=f"Command not found: {argv[0]}",
            duration=time.monotonic() - start,
        )


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
