"""
KEY=value reader and writer for settings.env.

The file is never sourced by a shell, but its values end up in commands
(BUILD_COMMAND, TEST_COMMAND), so anything resembling shell
metacharacters is refused at both read and write time.
"""

import re
from pathlib import Path

# Command substitution, expansion, chaining and pipes
_FORBIDDEN = re.compile(r"`|\$\(|\$\{|;|&&|\|")
_KEY = re.compile(r"[A-Z][A-Z0-9_]*")
_QUOTES = ('"', "'")


def check_key(key: str) -> None:
    if not _KEY.fullmatch(key):
        raise ValueError(f"Invalid key '{key}'")


def check_value(value: str) -> None:
    """Raise ValueError for multi-line values or shell metacharacters."""
    if any(c in value for c in "\r\n"):
        raise ValueError("Newline in value")
    if _FORBIDDEN.search(value):
        raise ValueError("Forbidden pattern in value")


def _unquote(value: str) -> str:
    if len(value) > 1 and value[0] in _QUOTES and value[-1] == value[0]:
        return value[1:-1]
    return value


def parse_env(text: str) -> dict[str, str]:
    """
    Parse settings text into a dict. Blank lines and # comments are skipped.

    Raises:
        ValueError: prefixed with the 1-based line number of the bad line
    """
    values = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not stripped or stripped[0] == "#":
            continue
        key, sep, value = stripped.partition("=")
        try:
            if not sep:
                raise ValueError("Invalid syntax (no '=')")
            key = key.strip()
            value = _unquote(value.strip())
            check_key(key)
            check_value(value)
        except ValueError as e:
            raise ValueError(f"Line {lineno}: {e}") from None
        values[key] = value
    return values


def load_env(filepath: Path) -> dict[str, str]:
    path = Path(filepath)
    if not path.is_file():
        raise FileNotFoundError(f"Env file not found: {filepath}")
    return parse_env(path.read_text())


def dump_env(values: dict[str, str]) -> str:
    """Render values as settings text, one double-quoted entry per line, keys sorted."""
    out = []
    for key, value in sorted(values.items()):
        value = str(value)
        check_key(key)
        check_value(value)
        out.append(f'{key}="{value}"\n')
    return "".join(out)
