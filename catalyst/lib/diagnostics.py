"""
Parse build and test tool output into structured diagnostics.

Supports:
- pytest output (FAILED lines plus traceback locations)
- compiler-style "file:line[:col]: message" lines (gcc, go, rustc short, tsc, mypy)

Unparsed output still yields one diagnostic carrying the tail of the output.
"""

import re
from dataclasses import asdict, dataclass


@dataclass
class Diagnostic:
    """A single build or test problem."""
    file: str | None
    line: int | None
    message: str
    kind: str = "test"  # "test", "build", "compile"

    def to_dict(self) -> dict:
        return asdict(self)


FILE_LINE_PATTERN = re.compile(
    r'^(?:\s*-->\s*)?([^\s:]+\.[A-Za-z0-9]+):(\d+)(?::\d+)?:?\s*(?:error:|warning:)?\s*(.*)$',
    re.MULTILINE,
)
PYTEST_FAILED_PATTERN = re.compile(r'^FAILED\s+([^:\s]+)::(\S+)(?:\s+-\s+(.+))?$', re.MULTILINE)
PYTEST_LOCATION_PATTERN = re.compile(r'^([^\s:]+\.py):(\d+):', re.MULTILINE)
PYTEST_ASSERTION_PATTERN = re.compile(r'^E\s+(?:AssertionError:\s*)?(.+)$', re.MULTILINE)


def parse_output(stdout: str, stderr: str, kind: str = "test") -> list[Diagnostic]:
    """Extract diagnostics from tool output.

    Tries pytest first, then generic file:line messages, and finally falls
    back to a single location-less diagnostic.
    """
    combined = f"{stdout}\n{stderr}"

    diagnostics = _parse_pytest(combined)
    if diagnostics:
        return diagnostics

    diagnostics = _parse_file_line(combined, kind)
    if diagnostics:
        return diagnostics

    tail = _truncate(combined.strip(), 500)
    return [Diagnostic(file=None, line=None, message=tail or f"{kind} failed", kind=kind)]


def _parse_pytest(combined: str) -> list[Diagnostic]:
    # Last traceback location per file is usually the assertion line
    file_to_line: dict[str, int] = {}
    for match in PYTEST_LOCATION_PATTERN.finditer(combined):
        file_to_line[match.group(1)] = int(match.group(2))

    assertion_messages = [m.group(1).strip() for m in PYTEST_ASSERTION_PATTERN.finditer(combined)]

    diagnostics = []
    for match in PYTEST_FAILED_PATTERN.finditer(combined):
        filepath, test_name, message = match.groups()
        if not message and assertion_messages:
            message = assertion_messages.pop(0)
        diagnostics.append(Diagnostic(
            file=filepath,
            line=file_to_line.get(filepath),
            message=f"{test_name}: {message}" if message else test_name,
            kind="test",
        ))
    return diagnostics


def _parse_file_line(combined: str, kind: str) -> list[Diagnostic]:
    seen: set[tuple[str, int, str]] = set()
    diagnostics = []
    for match in FILE_LINE_PATTERN.finditer(combined):
        filepath, line, message = match.groups()
        key = (filepath, int(line), message.strip())
        if key in seen:
            continue
        seen.add(key)
        diagnostics.append(Diagnostic(
            file=filepath,
            line=int(line),
            message=message.strip(),
            kind="compile" if kind == "build" else kind,
        ))
    return diagnostics


def summarize(diagnostics: list[Diagnostic]) -> str:
    """One-line summary, e.g. "2 problem(s): src/a.py:3 boom"."""
    if not diagnostics:
        return "no diagnostics"
    first = diagnostics[0]
    where = f"{first.file}:{first.line} " if first.file else ""
    return f"{len(diagnostics)} problem(s): {where}{first.message}"


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return "..." + text[-max_len:]
