"""
Key-value settings and the project configuration document.

settings.env holds scalar KEY=value settings (last write wins);
project.json holds {project_id, project_name, mode, stack, metadata}.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path

from catalyst.lib import envparse
from catalyst.lib.config import ProjectMode, parse_mode
from catalyst.lib.errors import CorruptState
from catalyst.state.io import atomic_write_text, now_iso, read_json, write_json
from catalyst.state.locking import document_lock

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.env"
PROJECT_FILE = "project.json"


@dataclass
class ProjectDocument:
    """Project configuration document."""
    project_id: str
    mode: ProjectMode = ProjectMode.LAB
    project_name: str = ""
    stack: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectDocument":
        return cls(
            project_id=data["project_id"],
            mode=parse_mode(data.get("mode")),
            project_name=data.get("project_name", ""),
            stack=list(data.get("stack", [])),
            metadata=dict(data.get("metadata", {})),
            created_at=data.get("created_at", ""),
        )

    @classmethod
    def new(cls, name: str, mode: ProjectMode, stack: list[str] | None = None) -> "ProjectDocument":
        return cls(
            project_id=f"proj-{uuid.uuid4().hex[:12]}",
            mode=mode,
            project_name=name,
            stack=list(stack or []),
            created_at=now_iso(),
        )


class ConfigStore:
    """Settings and project document, serialized through the document lock."""

    def __init__(self, root: Path):
        self.root = root

    @property
    def settings_path(self) -> Path:
        return self.root / SETTINGS_FILE

    @property
    def project_path(self) -> Path:
        return self.root / PROJECT_FILE

    def _read_settings(self) -> dict[str, str]:
        if not self.settings_path.exists():
            return {}
        try:
            return envparse.load_env(self.settings_path)
        except (ValueError, UnicodeDecodeError) as e:
            raise CorruptState(self.settings_path, str(e)) from None

    def settings(self) -> dict[str, str]:
        """All settings."""
        with document_lock(self.root):
            return self._read_settings()

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.settings().get(key, default)

    def set(self, key: str, value) -> None:
        """Write one setting. Raises ValueError for unsafe keys or values."""
        value = str(value).lower() if isinstance(value, bool) else str(value)
        envparse.check_key(key)
        envparse.check_value(value)
        with document_lock(self.root):
            values = self._read_settings()
            values[key] = value
            atomic_write_text(self.settings_path, envparse.dump_env(values))
        logger.debug(f"[state] setting {key}={value}")

    def unset(self, key: str) -> bool:
        with document_lock(self.root):
            values = self._read_settings()
            if key not in values:
                return False
            del values[key]
            atomic_write_text(self.settings_path, envparse.dump_env(values))
            return True

    def load_project(self) -> ProjectDocument | None:
        """Project document, or None before init."""
        with document_lock(self.root):
            try:
                data = read_json(self.project_path, "project")
            except FileNotFoundError:
                return None
        return ProjectDocument.from_dict(data)

    def save_project(self, doc: ProjectDocument) -> None:
        with document_lock(self.root):
            write_json(self.project_path, doc.to_dict(), "project")
