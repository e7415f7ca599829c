"""
File primitives for the state store.

Writes go to a temp file in the target directory and are moved into place
with os.replace, so a crash or cancellation never leaves a half-written
document behind.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from catalyst.lib.errors import CorruptState
from catalyst.lib.validate import ValidationError, validate_before_write, validate_file


def now_iso() -> str:
    """Current UTC time as ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace path with data atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def write_json(path: Path, data: dict, schema_name: str | None = None) -> None:
    """Validate (when a schema is given) and atomically write JSON."""
    if schema_name:
        validate_before_write(data, schema_name, path)
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def read_json(path: Path, schema_name: str | None = None):
    """Read JSON, validating against schema_name when given.

    Raises:
        CorruptState: if the file is unreadable, not JSON, or fails validation
        FileNotFoundError: if the file does not exist
    """
    if not path.exists():
        raise FileNotFoundError(path)
    if schema_name:
        try:
            return validate_file(path, schema_name)
        except ValidationError as e:
            raise CorruptState(path, str(e)) from None
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CorruptState(path, f"Invalid JSON: {e}") from None


def append_line(path: Path, line: str) -> None:
    """Append one line to a log file and fsync it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line.rstrip("\n") + "\n")
        f.flush()
        os.fsync(f.fileno())
